"""Validation: project input checks and stage output schema checks."""

from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft7Validator


@dataclass(frozen=True)
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_input(description: str) -> str:
    """Validate that the project description is a non-empty string.

    Returns the stripped input on success.
    Raises ValueError if input is empty or whitespace-only.
    """
    if not isinstance(description, str) or not description.strip():
        raise ValueError("Project description must be a non-empty string.")
    return description.strip()


def _pointer(path) -> str:
    parts = [str(p) for p in path]
    return "/" + "/".join(parts) if parts else "/"


def validate_output(value: Any, schema: dict) -> ValidationReport:
    """Check a parsed value against a stage schema.

    Every violation is reported, not just the first. Each error reads
    "<json pointer> <message>", e.g. "/auth 'choice' is a required property"
    or "/ 'name' is a required property" for the root.
    """
    validator = Draft7Validator(schema)
    found = sorted(validator.iter_errors(value), key=lambda e: [str(p) for p in e.absolute_path])
    errors = [f"{_pointer(e.absolute_path)} {e.message}" for e in found]
    return ValidationReport(valid=not errors, errors=errors)
