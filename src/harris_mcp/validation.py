"""
Input validation for Harris matrix MCP server tool parameters.

Each validator either returns the cleaned value or raises ValidationError
with a message the calling agent can act on. Stratigraphic consistency
checks live in ``harris_mcp.stratigraphy``; this module only guards inputs.
"""

from __future__ import annotations

import re
from typing import Any

from harris_mcp.models import UnitType


class ValidationError(Exception):
    """Raised when a tool parameter is rejected."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Primitive validators
# ---------------------------------------------------------------------------

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")


def validate_non_empty_string(value: Any, field_name: str) -> str:
    """Return *value* stripped; it must be a string with visible content."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field_name}' must be a non-empty string.")
    return value.strip()


def validate_string(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"'{field_name}' must be a string, got {type(value).__name__}.")
    return value


def validate_color(value: Any, field_name: str) -> str:
    """Hex colors only (#RGB, #RRGGBB, #RRGGBBAA), as phases and objects store them."""
    if not isinstance(value, str):
        raise ValidationError(f"'{field_name}' must be a color string, got {type(value).__name__}.")
    value = value.strip()
    if not _HEX_COLOR.match(value):
        raise ValidationError(
            f"'{field_name}' must be a hex color like '#3b82f6', got '{value}'."
        )
    return value


def validate_gap(value: Any, field_name: str) -> float:
    """Layout spacing in pixels; any non-negative number."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValidationError(f"'{field_name}' must be a number, got {type(value).__name__}.")
    if value < 0:
        raise ValidationError(f"'{field_name}' must be >= 0, got {value}.")
    return float(value)


def validate_index(value: Any, field_name: str) -> int:
    """A non-negative integer position (phase reordering)."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"'{field_name}' must be an integer, got {type(value).__name__}.")
    if value < 0:
        raise ValidationError(f"'{field_name}' must be >= 0, got {value}.")
    return value


def validate_list(value: Any, field_name: str) -> list:
    """A list with at least one item (batch parameters)."""
    if not isinstance(value, list):
        raise ValidationError(f"'{field_name}' must be a list, got {type(value).__name__}.")
    if not value:
        raise ValidationError(f"'{field_name}' must have at least 1 item.")
    return value


def validate_id_list(value: Any, field_name: str) -> list[str]:
    validate_list(value, field_name)
    for i, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"'{field_name}[{i}]' must be a non-empty string.")
    return value


# ---------------------------------------------------------------------------
# Tool actions
# ---------------------------------------------------------------------------

_MATRIX_ACTIONS = {"CREATE", "SAVE", "LOAD", "IMPORT_JSON", "GET_JSON", "LIST"}
_EDIT_ACTIONS = {
    "ADD_UNITS", "UPDATE_UNITS", "DELETE_UNITS",
    "ADD_RELATIONS", "DELETE_RELATIONS",
    "ADD_PHASE", "UPDATE_PHASE", "DELETE_PHASE", "REORDER_PHASES", "ASSIGN_PHASE",
    "ADD_OBJECT", "UPDATE_OBJECT", "DELETE_OBJECT",
    "ADD_UNITS_TO_OBJECT", "REMOVE_UNIT_FROM_OBJECT",
    "UNDO", "REDO",
}
_LAYOUT_ACTIONS = {"AUTO", "PREVIEW"}
_VALIDATE_ACTIONS = {"RUN", "SUMMARY"}
_INSPECT_ACTIONS = {
    "UNITS", "RELATIONS", "PHASES", "OBJECTS", "SEARCH", "INFO", "NODE_SIZE",
    "UNIT_OBJECTS", "CHECK_LABEL", "PHASE_RANGES",
}


def validate_action(value: Any, tool_name: str, allowed: set[str]) -> str:
    """Validate the action parameter for a tool; returns it lower-cased."""
    choices = ", ".join(sorted(a.lower() for a in allowed))
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"'{tool_name}' requires an 'action' parameter. Valid actions: {choices}."
        )
    if value.strip().upper() not in allowed:
        raise ValidationError(
            f"Unknown {tool_name} action '{value}'. Valid actions: {choices}."
        )
    return value.strip().lower()


# ---------------------------------------------------------------------------
# Unit / relation dicts
# ---------------------------------------------------------------------------

_UNIT_TYPES = {t.value for t in UnitType}
_UNIT_KEYS = {"label", "description", "type", "phase_id", "x", "y"}


def validate_unit_type(value: Any, field_name: str = "type") -> str:
    """Validate a unit type (layer, deposit, fill, structure, interface)."""
    if not isinstance(value, str) or value.strip().lower() not in _UNIT_TYPES:
        choices = ", ".join(sorted(_UNIT_TYPES))
        raise ValidationError(
            f"'{field_name}' must be one of [{choices}], got '{value}'."
        )
    return value.strip().lower()


def _check_unit_fields(u: dict, index: int, kind: str) -> None:
    for key in ("label", "description", "phase_id"):
        if key in u and not isinstance(u[key], str):
            raise ValidationError(f"{kind} at index {index}: '{key}' must be a string.")
    if "type" in u:
        validate_unit_type(u["type"], f"{kind.lower()}s[{index}].type")
    for key in ("x", "y"):
        if key in u and (not isinstance(u[key], (int, float)) or isinstance(u[key], bool)):
            raise ValidationError(f"{kind} at index {index}: '{key}' must be a number.")


def validate_unit_dict(u: Any, index: int) -> None:
    """Validate a single unit dict from the units list (add_units)."""
    if not isinstance(u, dict):
        raise ValidationError(f"Unit at index {index} must be a dict/object.")
    unknown = set(u) - _UNIT_KEYS
    if unknown:
        raise ValidationError(
            f"Unit at index {index}: unknown key(s) {', '.join(sorted(unknown))}."
        )
    _check_unit_fields(u, index, "Unit")


def validate_unit_update_dict(u: Any, index: int) -> None:
    """Validate a single update dict (update_units).

    Unknown keys are rejected here so a batch is refused before any unit
    is touched.
    """
    if not isinstance(u, dict):
        raise ValidationError(f"Update at index {index} must be a dict/object.")
    if "unit_id" not in u:
        raise ValidationError(f"Update at index {index} missing required key 'unit_id'.")
    if not isinstance(u["unit_id"], str) or not u["unit_id"].strip():
        raise ValidationError(f"Update at index {index}: 'unit_id' must be a non-empty string.")
    unknown = set(u) - _UNIT_KEYS - {"unit_id"}
    if unknown:
        raise ValidationError(
            f"Update at index {index}: unknown key(s) {', '.join(sorted(unknown))}."
        )
    if "label" in u and (not isinstance(u["label"], str) or not u["label"].strip()):
        raise ValidationError(f"Update at index {index}: 'label' must be a non-empty string.")
    _check_unit_fields(u, index, "Update")


def validate_relation_dict(r: Any, index: int) -> None:
    """Validate a single relation dict (source_id lies above target_id)."""
    if not isinstance(r, dict):
        raise ValidationError(f"Relation at index {index} must be a dict/object.")
    for key in ("source_id", "target_id"):
        if key not in r:
            raise ValidationError(f"Relation at index {index} missing required key '{key}'.")
        if not isinstance(r[key], str) or not r[key].strip():
            raise ValidationError(f"Relation at index {index}: '{key}' must be a non-empty string.")
    if r["source_id"] == r["target_id"]:
        raise ValidationError(
            f"Relation at index {index}: 'source_id' and 'target_id' must be different "
            "(a unit cannot lie above itself)."
        )
