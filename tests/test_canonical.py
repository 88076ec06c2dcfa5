from __future__ import annotations

from datetime import UTC, datetime

import pytest

from sdlc_coordinator import content_digest, to_canonical_json
from sdlc_coordinator.canonical import same_content
from sdlc_coordinator.models import CheckpointTrigger


def test_key_order_does_not_change_canonical_form() -> None:
    left = {"b": [1, {"y": 2, "x": 1}], "a": "text"}
    right = {"a": "text", "b": [1, {"x": 1, "y": 2}]}
    assert to_canonical_json(left) == '{"a":"text","b":[1,{"x":1,"y":2}]}'
    assert content_digest(left) == content_digest(right)
    assert same_content(left, right)
    assert not same_content(left, {"a": "text"})


def test_enums_and_datetimes_are_reduced_to_strings() -> None:
    value = {"trigger": CheckpointTrigger.SKIP, "at": datetime(2026, 1, 1, tzinfo=UTC)}
    assert to_canonical_json(value) == '{"at":"2026-01-01T00:00:00+00:00","trigger":"skip"}'


def test_unsupported_values_are_rejected() -> None:
    with pytest.raises(TypeError, match="set"):
        to_canonical_json({"tags": {"a", "b"}})
