from __future__ import annotations

from pathlib import Path

import pytest

from sdlc_coordinator.layout import ProjectLayout, sanitize_project_id, validate_section_name


def test_project_root_is_always_under_projects(tmp_path: Path) -> None:
    nested_root = tmp_path / "projects" / "p1"
    assert ProjectLayout.for_project(nested_root, "p1").root == nested_root / "projects" / "p1"
    assert ProjectLayout.for_project(nested_root, "p2").root == nested_root / "projects" / "p2"


def test_project_ids_are_rewritten_but_section_names_are_not() -> None:
    assert sanitize_project_id(" Checkout revamp/v2 ") == "Checkout-revamp-v2"
    assert validate_section_name("prd_v2.draft") == "prd_v2.draft"
    with pytest.raises(ValueError):
        validate_section_name("prd v2")
    with pytest.raises(ValueError, match="reserved"):
        validate_section_name("lifecycle")
