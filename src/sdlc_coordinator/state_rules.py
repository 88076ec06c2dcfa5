from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import RuleTableError


class TransitionKind(str, Enum):
    NORMAL = "normal"
    RECOVERY = "recovery"
    SKIP = "skip"
    ADMIN_ONLY = "admin_only"
    DENIED = "denied"


class StateRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    normal_next: tuple[str, ...] = ()
    recovery_targets: tuple[str, ...] = ()
    skip_targets: tuple[str, ...] = ()
    required: bool = False


class RuleTable(BaseModel):
    """Declared lifecycle states and what each one may move to.

    ``pipeline`` is the forward order used to work out which stages a skip
    would bypass. States outside it (such as ``cancelled``) can never be
    skipped over.
    """

    model_config = ConfigDict(frozen=True)

    initial_state: str
    pipeline: tuple[str, ...]
    states: dict[str, StateRule] = Field(min_length=1)

    def closure_issues(self) -> list[str]:
        issues: list[str] = []
        declared = set(self.states)
        if self.initial_state not in declared:
            issues.append(f"initial_state '{self.initial_state}' is not declared")
        for stage in self.pipeline:
            if stage not in declared:
                issues.append(f"pipeline stage '{stage}' is not declared")
        if len(set(self.pipeline)) != len(self.pipeline):
            issues.append("pipeline lists a stage more than once")
        for state, rule in self.states.items():
            for label, targets in (
                ("normal_next", rule.normal_next),
                ("recovery_targets", rule.recovery_targets),
                ("skip_targets", rule.skip_targets),
            ):
                for target in targets:
                    if target not in declared:
                        issues.append(f"{state}.{label} references undeclared state '{target}'")
        return issues


def _rule(normal: list[str], recovery: list[str], skip: list[str], required: bool) -> StateRule:
    return StateRule(
        normal_next=tuple(normal),
        recovery_targets=tuple(recovery),
        skip_targets=tuple(skip),
        required=required,
    )


DEFAULT_RULE_TABLE = RuleTable(
    initial_state="collecting",
    pipeline=(
        "collecting",
        "clarifying",
        "prd_drafting",
        "prd_approved",
        "srs_drafting",
        "srs_approved",
        "sds_drafting",
        "sds_approved",
        "issues_creating",
        "issues_created",
        "implementing",
        "pr_review",
        "merged",
    ),
    states={
        "collecting": _rule(["clarifying", "prd_drafting", "cancelled"], [], ["prd_drafting"], True),
        "clarifying": _rule(["collecting", "prd_drafting", "cancelled"], ["collecting"], [], False),
        "prd_drafting": _rule(["prd_approved", "collecting", "cancelled"], ["collecting", "clarifying"], [], True),
        "prd_approved": _rule(
            ["srs_drafting", "prd_drafting", "cancelled"], ["prd_drafting", "clarifying"], ["sds_drafting"], True
        ),
        "srs_drafting": _rule(
            ["srs_approved", "prd_approved", "cancelled"], ["prd_approved", "prd_drafting"], ["sds_drafting"], False
        ),
        "srs_approved": _rule(
            ["sds_drafting", "srs_drafting", "cancelled"], ["srs_drafting", "prd_approved"], ["issues_creating"], False
        ),
        "sds_drafting": _rule(
            ["sds_approved", "srs_approved", "cancelled"], ["srs_approved", "srs_drafting"], ["issues_creating"], False
        ),
        "sds_approved": _rule(["issues_creating", "sds_drafting", "cancelled"], ["sds_drafting", "srs_approved"], [], False),
        "issues_creating": _rule(
            ["issues_created", "sds_approved", "cancelled"], ["sds_approved", "srs_approved"], [], True
        ),
        "issues_created": _rule(
            ["implementing", "issues_creating", "cancelled"], ["issues_creating", "sds_approved"], [], True
        ),
        "implementing": _rule(["pr_review", "issues_created", "cancelled"], ["issues_created", "issues_creating"], [], True),
        "pr_review": _rule(["merged", "implementing", "cancelled"], ["implementing", "issues_created"], [], True),
        "merged": _rule([], [], [], True),
        "cancelled": _rule([], [], [], False),
    },
)


class StateRules:
    """Pure lookup over a :class:`RuleTable`.

    Nothing here reads or writes persisted data: whether a transition is legal
    in principle is answered from the table alone.
    """

    def __init__(self, table: RuleTable | None = None) -> None:
        self.table = table or DEFAULT_RULE_TABLE
        issues = self.table.closure_issues()
        if issues:
            raise RuleTableError("Invalid lifecycle rule table: " + "; ".join(issues))

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "StateRules":
        try:
            table = RuleTable.model_validate(data)
        except ValidationError as exc:
            raise RuleTableError(f"Invalid lifecycle rule table: {exc}") from exc
        return cls(table)

    @classmethod
    def from_file(cls, path: Path) -> "StateRules":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RuleTableError(f"Cannot load lifecycle rule table from {path}: {exc}") from exc
        return cls.from_mapping(data)

    # -- Table facts --

    @property
    def initial_state(self) -> str:
        return self.table.initial_state

    @property
    def states(self) -> tuple[str, ...]:
        return tuple(self.table.states)

    @property
    def pipeline(self) -> tuple[str, ...]:
        return self.table.pipeline

    def is_declared(self, state: str) -> bool:
        return state in self.table.states

    def rule_for(self, state: str) -> StateRule:
        try:
            return self.table.states[state]
        except KeyError:
            raise ValueError(f"Undeclared lifecycle state: {state!r}") from None

    def get_valid_transitions(self, state: str) -> tuple[str, ...]:
        return self.rule_for(state).normal_next

    def get_recovery_options(self, state: str) -> tuple[str, ...]:
        return self.rule_for(state).recovery_targets

    def get_skip_options(self, state: str) -> tuple[str, ...]:
        return self.rule_for(state).skip_targets

    def is_required(self, state: str) -> bool:
        return self.rule_for(state).required

    def is_terminal(self, state: str) -> bool:
        rule = self.rule_for(state)
        return not (rule.normal_next or rule.recovery_targets or rule.skip_targets)

    def stages_between(self, current: str, target: str) -> list[str]:
        """Pipeline stages strictly between *current* and *target*, in order.

        Empty when either state is off the pipeline or *target* is not ahead.
        """
        pipeline = self.table.pipeline
        if current not in pipeline or target not in pipeline:
            return []
        start, end = pipeline.index(current), pipeline.index(target)
        if start >= end:
            return []
        return list(pipeline[start + 1 : end])

    def required_stages_between(self, current: str, target: str) -> list[str]:
        return [stage for stage in self.stages_between(current, target) if self.is_required(stage)]

    # -- Decisions --

    def classify(self, current: str, target: str) -> TransitionKind:
        """Map (current, target) onto the kind of transition that would allow it.

        Normal wins over recovery, which wins over skip. A declared target that
        no rule reaches needs an admin override. Undeclared states are denied.
        """
        if not self.is_declared(current) or not self.is_declared(target):
            return TransitionKind.DENIED
        rule = self.table.states[current]
        if target in rule.normal_next:
            return TransitionKind.NORMAL
        if target in rule.recovery_targets:
            return TransitionKind.RECOVERY
        if target in rule.skip_targets:
            return TransitionKind.SKIP
        return TransitionKind.ADMIN_ONLY

    def can_transition(self, current: str, target: str) -> bool:
        return self.classify(current, target) is TransitionKind.NORMAL

    def can_recover_to(self, current: str, target: str) -> bool:
        return self.is_declared(current) and target in self.table.states[current].recovery_targets

    def can_skip_to(self, current: str, target: str) -> bool:
        return self.is_declared(current) and target in self.table.states[current].skip_targets
