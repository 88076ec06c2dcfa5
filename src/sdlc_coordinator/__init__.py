from importlib.metadata import version

from .atomic_store import AtomicStore
from .canonical import content_digest, to_canonical_json
from .checkpoints import Checkpointer
from .cycles import CycleInfo, detect_cycles, propagate_blocking
from .errors import (
    AdminOverrideError,
    CheckpointNotFoundError,
    CheckpointValidationError,
    CoordinationError,
    EmptyGraphError,
    GraphValidationError,
    HistoryError,
    InvalidSkipError,
    InvalidTransitionError,
    IssueNotFoundError,
    LockContentionError,
    LockError,
    ProjectExistsError,
    ProjectNotFoundError,
    RequiredStageSkipError,
    RuleTableError,
    SchedulerError,
    SectionNotFoundError,
    StateManagerError,
)
from .graph import DependencyGraph, DependencyNode, NodeStatus, RawDependencyNode, RawDependencySpec
from .history import HistoryManager, RecoveryAuditLog
from .locking import Lock, LockManager, LockOptions, LockReleaseRequest
from .models import (
    LIFECYCLE_STREAM,
    AdminOverride,
    AuditKind,
    ChangeType,
    Checkpoint,
    CheckpointTrigger,
    HistoryKind,
    ProjectMeta,
    ProjectSummary,
    RecoveryAuditEntry,
    RestoreResult,
    SectionWriteResult,
    StateChangeEvent,
    StateHistoryEntry,
    StateSection,
    TransitionResult,
    WatcherFailure,
)
from .recovery import StateRecovery
from .scheduler import GraphAnalysis, GraphStatistics, Scheduler
from .settings import RuntimeSettings
from .state_manager import StateManager
from .state_rules import DEFAULT_RULE_TABLE, RuleTable, StateRule, StateRules, TransitionKind
from .state_store import StatePersistence
from .watchers import WatcherRegistry, WatchHandle


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AdminOverride",
    "AdminOverrideError",
    "AtomicStore",
    "AuditKind",
    "ChangeType",
    "Checkpoint",
    "CheckpointNotFoundError",
    "CheckpointTrigger",
    "CheckpointValidationError",
    "Checkpointer",
    "CoordinationError",
    "CycleInfo",
    "DEFAULT_RULE_TABLE",
    "DependencyGraph",
    "DependencyNode",
    "EmptyGraphError",
    "GraphAnalysis",
    "GraphStatistics",
    "GraphValidationError",
    "HistoryError",
    "HistoryKind",
    "HistoryManager",
    "InvalidSkipError",
    "InvalidTransitionError",
    "IssueNotFoundError",
    "LIFECYCLE_STREAM",
    "Lock",
    "LockContentionError",
    "LockError",
    "LockManager",
    "LockOptions",
    "LockReleaseRequest",
    "NodeStatus",
    "ProjectExistsError",
    "ProjectMeta",
    "ProjectNotFoundError",
    "ProjectSummary",
    "RawDependencyNode",
    "RawDependencySpec",
    "RecoveryAuditEntry",
    "RecoveryAuditLog",
    "RequiredStageSkipError",
    "RestoreResult",
    "RuleTable",
    "RuleTableError",
    "RuntimeSettings",
    "Scheduler",
    "SchedulerError",
    "SectionNotFoundError",
    "SectionWriteResult",
    "StateChangeEvent",
    "StateHistoryEntry",
    "StateManager",
    "StateManagerError",
    "StatePersistence",
    "StateRecovery",
    "StateRule",
    "StateRules",
    "StateSection",
    "TransitionKind",
    "TransitionResult",
    "WatchHandle",
    "WatcherFailure",
    "WatcherRegistry",
    "content_digest",
    "detect_cycles",
    "get_version",
    "propagate_blocking",
    "to_canonical_json",
]
