"""archflow JSON Schema definitions and validation utilities.

Schemas:
    - element.schema.json: Element list produced by the analysis capability
    - scheduler.schema.json: Job scheduler configuration file

Usage:
    from archflow.schemas import validate_elements, validate_scheduler_config

    validate_elements({"elements": [...]})  # Raises jsonschema.ValidationError if invalid
"""

from __future__ import annotations

import json
from functools import cache
from importlib.resources import files
from typing import Any

import jsonschema


@cache
def _load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema from the schemas package.

    Args:
        name: Schema filename (e.g., 'element.schema.json')

    Returns:
        Parsed JSON schema as a dictionary
    """
    schema_text = files("archflow.schemas").joinpath(name).read_text()
    result: dict[str, Any] = json.loads(schema_text)
    return result


def get_element_schema() -> dict[str, Any]:
    """Get the element list schema."""
    return _load_schema("element.schema.json")


def get_scheduler_schema() -> dict[str, Any]:
    """Get the scheduler configuration schema."""
    return _load_schema("scheduler.schema.json")


def validate_elements(data: Any) -> None:
    """Validate an analysis payload against the element schema.

    Args:
        data: Payload containing an "elements" list

    Raises:
        jsonschema.ValidationError: If validation fails
    """
    jsonschema.validate(data, get_element_schema())


def validate_scheduler_config(data: dict[str, Any]) -> None:
    """Validate a scheduler configuration.

    Args:
        data: Scheduler configuration dictionary

    Raises:
        jsonschema.ValidationError: If validation fails
    """
    jsonschema.validate(data, get_scheduler_schema())


__all__ = [
    "get_element_schema",
    "get_scheduler_schema",
    "validate_elements",
    "validate_scheduler_config",
]
