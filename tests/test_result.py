"""Tests for the Result type."""

import pytest

from pushci import Err, Ok, Result


def test_ok_creates_success_result():
    result = Ok({"RUSTUP_TOOLCHAIN": "stable"})
    assert result.ok is True
    assert result.failed is False
    assert result.value() == {"RUSTUP_TOOLCHAIN": "stable"}
    assert result.error is None
    assert result.kind is None


def test_err_creates_failure_result():
    result = Err("toolchain missing")
    assert result.ok is False
    assert result.failed is True
    assert result.error == "toolchain missing"
    with pytest.raises(RuntimeError, match="toolchain missing"):
        result.value()


def test_err_carries_kind():
    result = Err("rustup not found", kind="provisioning")
    assert result.kind == "provisioning"


def test_err_rejects_unknown_kind():
    with pytest.raises(ValueError):
        Err("boom", kind="explosion")  # type: ignore[arg-type]


def test_result_is_immutable():
    result = Ok(1)
    with pytest.raises(Exception):  # Pydantic raises ValidationError
        result.status = "failure"


def test_value_or():
    assert Ok("x").value_or("default") == "x"
    assert Ok(None).value_or("default") == "default"
    assert Err("nope").value_or("default") == "default"


def test_generic_annotation():
    def provision() -> Result[dict[str, str]]:
        return Ok({})

    assert provision().ok
