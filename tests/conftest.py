"""Pytest configuration for pushci tests."""

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch):
    """Reset global output state and disable colors and GHA markers."""
    from pushci.output import reset_output_manager

    # Must unset FORCE_COLOR because Rich ignores NO_COLOR when FORCE_COLOR is set
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")
    reset_output_manager()

    yield

    reset_output_manager()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A minimal Cargo project layout."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[package]\nname = "demo"\nversion = "0.1.0"\n')
    (root / "Cargo.lock").write_text("# lock\n")
    (root / "src" / "lib.rs").write_text("pub fn answer() -> u32 { 42 }\n")
    return root
