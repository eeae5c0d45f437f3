"""Tests for identifier validation."""

import pytest

from branchpod.validation import (
    ValidationError,
    validate_branch,
    validate_console_id,
    validate_project_id,
)


class TestValidateProjectId:
    @pytest.mark.parametrize("value", ["acme", "my-app", "my_app.v2", "A1"])
    def test_valid(self, value: str) -> None:
        assert validate_project_id(value) == value

    @pytest.mark.parametrize("value", ["", "..", "a/b", "a b", "x;rm -rf", "a" * 201])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValidationError):
            validate_project_id(value)

    def test_validation_error_is_value_error(self) -> None:
        with pytest.raises(ValueError, match="project"):
            validate_project_id("")


class TestValidateBranch:
    @pytest.mark.parametrize("value", ["main", "feature/x", "feature-x", "release/1.2", "fix@home"])
    def test_valid(self, value: str) -> None:
        assert validate_branch(value) == value

    @pytest.mark.parametrize(
        "value",
        ["", "../etc", "feature/../x", "/abs", "-flag", "trailing/", "topic.lock", "has space"],
    )
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValidationError):
            validate_branch(value)


def test_console_id_message() -> None:
    with pytest.raises(ValidationError, match="console_id"):
        validate_console_id("bad id")
