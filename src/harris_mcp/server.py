"""
Harris Matrix MCP Server — edit, lay out and validate stratigraphic matrices
via Model Context Protocol.

Exposes 5 tools that let an LLM agent build a Harris matrix, arrange it
with the phase-aware layout engine and check it for stratigraphic
consistency, then save it as a JSON document.

Tools:
  1. matrix   — lifecycle: create, save, load, import_json, get_json, list
  2. edit     — content:  units, relations, phases, objects, undo/redo
  3. layout   — positioning: auto (apply), preview (coordinates only)
  4. validate — consistency: run (full report), summary (counts)
  5. inspect  — read-only: units, relations, phases, objects, search, info,
               node_size, unit_objects, check_label, phase_ranges
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from harris_mcp.document import DocumentError, MatrixDocument
from harris_mcp.layout_engine import LayoutEngineConfig, compute_layout
from harris_mcp.models import Unit, node_size
from harris_mcp.stratigraphy import validate_stratigraphy
from harris_mcp.validation import (
    ValidationError,
    validate_action,
    validate_color,
    validate_gap,
    validate_id_list,
    validate_index,
    validate_list,
    validate_non_empty_string,
    validate_relation_dict,
    validate_string,
    validate_unit_dict,
    validate_unit_update_dict,
    _EDIT_ACTIONS,
    _INSPECT_ACTIONS,
    _LAYOUT_ACTIONS,
    _MATRIX_ACTIONS,
    _VALIDATE_ACTIONS,
)

# ---------------------------------------------------------------------------
# Logging — suppress routine FastMCP INFO messages that VS Code shows
# as warnings (they go to stderr which VS Code labels [warning]).
# ---------------------------------------------------------------------------
logging.getLogger("mcp.server").setLevel(logging.WARNING)
logger = logging.getLogger("harris-matrix-mcp")

# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------
mcp = FastMCP(
    "harris-matrix-mcp",
    instructions=(
        "MCP server for building and checking archaeological Harris matrices.\n\n"
        "=== ONLY 5 TOOLS — use the 'action' parameter to pick the operation ===\n\n"
        "1. matrix(action, ...) — lifecycle: create, save, load, import_json,\n"
        "   get_json, list.\n"
        "2. edit(action, ...) — content: add_units, update_units, delete_units,\n"
        "   add_relations, delete_relations, add_phase, update_phase,\n"
        "   delete_phase, reorder_phases, assign_phase, add_object,\n"
        "   update_object, delete_object, add_units_to_object,\n"
        "   remove_unit_from_object, undo, redo.\n"
        "3. layout(action, ...) — auto (apply coordinates), preview.\n"
        "4. validate(action, ...) — run, summary.\n"
        "5. inspect(action, ...) — units, relations, phases, objects, search,\n"
        "   info, node_size, unit_objects, check_label, phase_ranges.\n\n"
        "=== RULES ===\n"
        "- A relation source_id -> target_id means the source lies ABOVE\n"
        "  (is younger than) the target.\n"
        "- Phases are ordered youngest first. Add them before assigning units.\n"
        "- Run validate(action='run') after structural edits; fix errors first.\n"
        "- Run layout(action='auto') to arrange units by phase.\n"
        "- Every edit can be reverted with edit(action='undo').\n"
    ),
)

# In-memory matrix registry: name -> MatrixDocument
# Guarded by _matrices_lock for thread-safety.
_matrices: dict[str, MatrixDocument] = {}
_matrices_lock = threading.Lock()


# ===================================================================
# RESOURCES
# ===================================================================

@mcp.resource("harris://guide/agent")
def agent_guide() -> str:
    """Workflow notes for agents building a Harris matrix."""
    return (
        "# Harris matrix workflow\n\n"
        "1. matrix(action='create', name='site')\n"
        "2. edit(action='add_phase', matrix_name='site', name='Modern') — repeat,\n"
        "   youngest phase first.\n"
        "3. edit(action='add_units', matrix_name='site', units=[{label, type,\n"
        "   phase_id, description}]) — types: layer, deposit, fill, structure,\n"
        "   interface. Empty labels get 'SU 001'-style names.\n"
        "4. edit(action='add_relations', relations=[{source_id, target_id}]) —\n"
        "   source lies above target.\n"
        "5. edit(action='add_object', name='Wall 1') and add_units_to_object to\n"
        "   keep units of one feature in the same layout column.\n"
        "6. validate(action='run') — errors: duplicate_label, cycle,\n"
        "   phase_direction. Warnings: phase_skip, isolated, no_phase.\n"
        "   Info: dangling_leaf, dangling_root, redundant_edge.\n"
        "7. layout(action='auto') then matrix(action='save', file_path=...).\n"
    )


def _get_matrix(name: str) -> MatrixDocument:
    name = validate_non_empty_string(name, "matrix_name")
    doc = _matrices.get(name)
    if doc is None:
        raise ValidationError(f"matrix '{name}' not found.")
    return doc


def _unit_info(u: Unit) -> dict[str, Any]:
    return {
        "id": u.id,
        "label": u.label,
        "description": u.description,
        "type": u.type.value,
        "phase_id": u.phase_id,
        "x": u.x,
        "y": u.y,
    }


# ===================================================================
# TOOL 1: matrix — lifecycle
# ===================================================================

@mcp.tool()
def matrix(
    action: str,
    name: str = "",
    file_path: str = "",
    json_content: str = "",
) -> str:
    """Matrix lifecycle management.

    Actions:
      create      — Create a new empty matrix. Params: name.
      save        — Save matrix to a JSON file. Params: name, file_path.
      load        — Load a JSON file from disk. Params: name, file_path.
      import_json — Import a JSON document string. Params: name, json_content.
      get_json    — Get the JSON document of a matrix. Params: name.
      list        — List all in-memory matrices. No params needed.

    Returns:
        Result string or JSON depending on action.
    """
    try:
        action = validate_action(action, "matrix", _MATRIX_ACTIONS)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "list":
        result = [
            {"name": n, "units": len(d.units), "relations": len(d.relations),
             "phases": len(d.phases), "objects": len(d.objects)}
            for n, d in _matrices.items()
        ]
        return json.dumps(result, indent=2)

    try:
        name = validate_non_empty_string(name, "name")
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "create":
        with _matrices_lock:
            _matrices[name] = MatrixDocument(name=name)
        return f"Matrix '{name}' created."

    elif action == "save":
        try:
            file_path = validate_non_empty_string(file_path, "file_path")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        doc = _matrices.get(name)
        if not doc:
            return f"Error: matrix '{name}' not found."
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(doc.to_json(), encoding="utf-8")
        return f"Matrix saved to {path.resolve()}"

    elif action == "load":
        try:
            file_path = validate_non_empty_string(file_path, "file_path")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        path = Path(file_path)
        if not path.exists():
            return f"Error: file '{file_path}' not found."
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return f"Error: cannot read '{file_path}': {exc}"
        return _import_json_impl(name, content)

    elif action == "import_json":
        try:
            validate_non_empty_string(json_content, "json_content")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        return _import_json_impl(name, json_content)

    elif action == "get_json":
        doc = _matrices.get(name)
        if not doc:
            return f"Error: matrix '{name}' not found."
        return doc.to_json()

    return f"Error: unknown matrix action '{action}'."


def _import_json_impl(name: str, content: str) -> str:
    try:
        doc = MatrixDocument.from_json(content, name=name)
    except DocumentError as exc:
        return f"Error: {exc.message}"
    with _matrices_lock:
        _matrices[name] = doc
    return (
        f"Imported '{name}' with {len(doc.units)} units, "
        f"{len(doc.relations)} relations and {len(doc.phases)} phases."
    )


# ===================================================================
# TOOL 2: edit — content
# ===================================================================

@mcp.tool()
def edit(
    action: str,
    matrix_name: str = "",
    # -- units / relations --
    units: list[dict[str, Any]] | None = None,
    updates: list[dict[str, Any]] | None = None,
    relations: list[dict[str, str]] | None = None,
    unit_ids: list[str] | None = None,
    relation_ids: list[str] | None = None,
    # -- phases / objects --
    phase_id: str = "",
    object_id: str = "",
    name: str = "",
    color: str = "",
    from_index: int = 0,
    to_index: int = 0,
) -> str:
    """Add, update, or delete matrix content.

    Actions:
      add_units        — Params: units (list of {label?, description?, type?,
                         phase_id?, x?, y?}). Returns new unit ids.
      update_units     — Params: updates (list of {unit_id, label?,
                         description?, type?, phase_id?, x?, y?}).
      delete_units     — Params: unit_ids (cascades relations/memberships).
      add_relations    — Params: relations (list of {source_id, target_id});
                         source lies above target.
      delete_relations — Params: relation_ids.
      add_phase        — Params: name?, color?. Appended as the oldest phase.
      update_phase     — Params: phase_id, name?, color?.
      delete_phase     — Params: phase_id (its units become unphased).
      reorder_phases   — Params: from_index, to_index.
      assign_phase     — Params: unit_ids, phase_id ('' to clear).
      add_object       — Params: name?, color?.
      update_object    — Params: object_id, name?, color?.
      delete_object    — Params: object_id.
      add_units_to_object     — Params: object_id, unit_ids.
      remove_unit_from_object — Params: object_id, unit_ids (first id used).
      undo / redo      — Revert or reapply the last edit.

    Returns:
        JSON results or confirmation message.
    """
    try:
        action = validate_action(action, "edit", _EDIT_ACTIONS)
        doc = _get_matrix(matrix_name)
        if color:
            validate_color(color, "color")
    except ValidationError as exc:
        return f"Error: {exc.message}"

    try:
        with _matrices_lock:
            return _edit_impl(doc, action, units=units, updates=updates,
                              relations=relations, unit_ids=unit_ids,
                              relation_ids=relation_ids, phase_id=phase_id,
                              object_id=object_id, name=name, color=color,
                              from_index=from_index, to_index=to_index)
    except (ValidationError, DocumentError) as exc:
        return f"Error: {exc.message}"


def _edit_impl(
    doc: MatrixDocument,
    action: str,
    *,
    units: list[dict[str, Any]] | None,
    updates: list[dict[str, Any]] | None,
    relations: list[dict[str, str]] | None,
    unit_ids: list[str] | None,
    relation_ids: list[str] | None,
    phase_id: str,
    object_id: str,
    name: str,
    color: str,
    from_index: int,
    to_index: int,
) -> str:
    if action == "add_units":
        items = validate_list(units or [], "units")
        for i, u in enumerate(items):
            validate_unit_dict(u, i)
        doc.push_undo()
        ids: list[str] = []
        for u in items:
            unit = doc.add_unit(
                label=u.get("label", ""),
                description=u.get("description", ""),
                type=u.get("type", "layer"),
                phase_id=u.get("phase_id", ""),
                x=u.get("x", 0),
                y=u.get("y", 0),
                record=False,
            )
            ids.append(unit.id)
        return json.dumps(ids)

    elif action == "update_units":
        items = validate_list(updates or [], "updates")
        for i, u in enumerate(items):
            validate_unit_update_dict(u, i)
        for u in items:
            doc.get_unit(u["unit_id"])
        doc.push_undo()
        for u in items:
            fields = {k: v for k, v in u.items() if k != "unit_id"}
            doc.update_unit(u["unit_id"], record=False, **fields)
        return f"Updated {len(items)} unit(s)."

    elif action == "delete_units":
        ids = validate_id_list(unit_ids, "unit_ids")
        count = doc.delete_units(ids)
        return f"Deleted {count} unit(s)."

    elif action == "add_relations":
        items = validate_list(relations or [], "relations")
        for i, r in enumerate(items):
            validate_relation_dict(r, i)
        created: list[str] = []
        skipped: list[str] = []
        for r in items:
            try:
                # The first accepted relation records the batch's undo step.
                rel = doc.add_relation(r["source_id"], r["target_id"], record=not created)
            except DocumentError as exc:
                logger.warning("Skipping relation %s -> %s: %s",
                               r["source_id"], r["target_id"], exc.message)
                skipped.append(exc.message)
                continue
            created.append(rel.id)
        return json.dumps({"relation_ids": created, "skipped": skipped})

    elif action == "delete_relations":
        ids = validate_id_list(relation_ids, "relation_ids")
        count = doc.delete_relations(ids)
        return f"Deleted {count} relation(s)."

    elif action == "add_phase":
        phase = doc.add_phase(name=name, color=color)
        return json.dumps({"phase_id": phase.id, "name": phase.name, "color": phase.color})

    elif action == "update_phase":
        pid = validate_non_empty_string(phase_id, "phase_id")
        phase = doc.update_phase(pid, name=name, color=color)
        return json.dumps({"phase_id": phase.id, "name": phase.name, "color": phase.color})

    elif action == "delete_phase":
        pid = validate_non_empty_string(phase_id, "phase_id")
        doc.delete_phase(pid)
        return f"Phase '{pid}' deleted."

    elif action == "reorder_phases":
        validate_index(from_index, "from_index")
        validate_index(to_index, "to_index")
        doc.reorder_phase(from_index, to_index)
        return json.dumps([p.id for p in doc.phases])

    elif action == "assign_phase":
        ids = validate_id_list(unit_ids, "unit_ids")
        validate_string(phase_id, "phase_id")
        count = doc.assign_phase(ids, phase_id)
        return f"Assigned {count} unit(s) to phase '{phase_id}'."

    elif action == "add_object":
        obj = doc.add_object(name=name, color=color)
        return json.dumps({"object_id": obj.id, "name": obj.name, "color": obj.color})

    elif action == "update_object":
        oid = validate_non_empty_string(object_id, "object_id")
        obj = doc.update_object(oid, name=name, color=color)
        return json.dumps({"object_id": obj.id, "name": obj.name, "color": obj.color})

    elif action == "delete_object":
        oid = validate_non_empty_string(object_id, "object_id")
        doc.delete_object(oid)
        return f"Object '{oid}' deleted."

    elif action == "add_units_to_object":
        oid = validate_non_empty_string(object_id, "object_id")
        ids = validate_id_list(unit_ids, "unit_ids")
        obj = doc.add_units_to_object(oid, ids)
        return json.dumps({"object_id": obj.id, "unit_ids": list(obj.node_ids)})

    elif action == "remove_unit_from_object":
        oid = validate_non_empty_string(object_id, "object_id")
        ids = validate_id_list(unit_ids, "unit_ids")
        obj = doc.remove_unit_from_object(oid, ids[0])
        return json.dumps({"object_id": obj.id, "unit_ids": list(obj.node_ids)})

    elif action == "undo":
        return "Undone." if doc.undo() else "Nothing to undo."

    elif action == "redo":
        return "Redone." if doc.redo() else "Nothing to redo."

    return f"Error: unknown edit action '{action}'."


# ===================================================================
# TOOL 3: layout — positioning
# ===================================================================

@mcp.tool()
def layout(
    action: str,
    matrix_name: str = "",
    horizontal_gap: float = 20,
    vertical_gap: float = 50,
    phase_gap: float = 70,
) -> str:
    """Phase-aware automatic layout.

    Actions:
      auto    — Lay out all units by phase and apply the coordinates
                (undoable). Params: horizontal_gap, vertical_gap, phase_gap.
      preview — Same computation, returns coordinates without applying.

    Returns:
        JSON mapping of unit id -> {x, y}.
    """
    try:
        action = validate_action(action, "layout", _LAYOUT_ACTIONS)
        doc = _get_matrix(matrix_name)
        cfg = LayoutEngineConfig(
            horizontal_gap=validate_gap(horizontal_gap, "horizontal_gap"),
            vertical_gap=validate_gap(vertical_gap, "vertical_gap"),
            phase_gap=validate_gap(phase_gap, "phase_gap"),
        )
    except ValidationError as exc:
        return f"Error: {exc.message}"

    with _matrices_lock:
        positions = compute_layout(doc.snapshot(), cfg)
        if action == "auto":
            doc.apply_positions(positions)

    return json.dumps({uid: {"x": x, "y": y} for uid, (x, y) in positions.items()})


# ===================================================================
# TOOL 4: validate — stratigraphic consistency
# ===================================================================

@mcp.tool()
def validate(action: str, matrix_name: str = "") -> str:
    """Check the matrix for stratigraphic consistency.

    Actions:
      run     — Full report: issues ordered error > warning > info, each
                with type, severity, message, nodeIds, edgeId?, description.
      summary — Only the per-severity counts.

    Returns:
        JSON report.
    """
    try:
        action = validate_action(action, "validate", _VALIDATE_ACTIONS)
        doc = _get_matrix(matrix_name)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    report = validate_stratigraphy(doc.snapshot())
    if action == "summary":
        return json.dumps(report.counts)
    return json.dumps(report.to_dict(), indent=2, ensure_ascii=False)


# ===================================================================
# TOOL 5: inspect — read-only queries
# ===================================================================

@mcp.tool()
def inspect(
    action: str,
    matrix_name: str = "",
    term: str = "",
    label: str = "",
    unit_id: str = "",
) -> str:
    """Read-only inspection of matrices.

    Actions:
      units        — List units with type, phase and position.
      relations    — List relations (source lies above target).
      phases       — List phases, youngest first.
      objects      — List objects with their unit ids.
      search       — Units whose label or description contains term.
      info         — Summary counts and undo/redo availability.
      node_size    — Box size used for a label. Params: label.
      unit_objects — Objects a unit belongs to. Params: unit_id.
      check_label  — Whether a label is already taken (ignoring case and
                     surrounding spaces). Params: label, unit_id? (excluded).
      phase_ranges — Vertical extent {top, bottom} of each phase's units.

    Returns:
        JSON data.
    """
    try:
        action = validate_action(action, "inspect", _INSPECT_ACTIONS)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "node_size":
        try:
            validate_string(label, "label")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        w, h = node_size(label)
        return json.dumps({"width": w, "height": h})

    try:
        doc = _get_matrix(matrix_name)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "units":
        return json.dumps([_unit_info(u) for u in doc.units], indent=2)

    elif action == "relations":
        return json.dumps(
            [{"id": r.id, "source_id": r.source_id, "target_id": r.target_id}
             for r in doc.relations],
            indent=2,
        )

    elif action == "phases":
        return json.dumps(
            [{"index": i, "id": p.id, "name": p.name, "color": p.color}
             for i, p in enumerate(doc.phases)],
            indent=2,
        )

    elif action == "objects":
        return json.dumps(
            [{"id": o.id, "name": o.name, "color": o.color, "unit_ids": list(o.node_ids)}
             for o in doc.objects],
            indent=2,
        )

    elif action == "search":
        try:
            validate_non_empty_string(term, "term")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        return json.dumps([_unit_info(u) for u in doc.search(term)], indent=2)

    elif action == "info":
        return json.dumps({
            "name": doc.name,
            "units": len(doc.units),
            "relations": len(doc.relations),
            "phases": len(doc.phases),
            "objects": len(doc.objects),
            "can_undo": doc.can_undo,
            "can_redo": doc.can_redo,
        }, indent=2)

    elif action == "unit_objects":
        try:
            uid = validate_non_empty_string(unit_id, "unit_id")
            doc.get_unit(uid)
        except (ValidationError, DocumentError) as exc:
            return f"Error: {exc.message}"
        return json.dumps(
            [{"id": o.id, "name": o.name, "color": o.color}
             for o in doc.objects_for_unit(uid)],
            indent=2,
        )

    elif action == "check_label":
        try:
            text = validate_non_empty_string(label, "label")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        duplicate = doc.is_label_duplicate(text, exclude_id=unit_id or None)
        return json.dumps({"label": text, "duplicate": duplicate})

    elif action == "phase_ranges":
        return json.dumps(
            {pid: {"top": top, "bottom": bottom}
             for pid, (top, bottom) in doc.phase_y_ranges().items()},
            indent=2,
        )

    return f"Error: unknown inspect action '{action}'."


# ===================================================================
# Entry point
# ===================================================================

def main() -> None:
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
