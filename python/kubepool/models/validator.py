"""
kubepool/models/validator.py

Validates loosely-typed payloads (JSON from Vault, Azure SDK attributes) against
a pydantic-compatible type with TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate `obj` against `expected_type` and return it typed.

    Raises:
        ValueError: If `obj` does not conform.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Expected {expected_type}, got {obj!r}: {e}") from e
