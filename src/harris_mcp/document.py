"""
Editable Harris matrix document with undo/redo history and JSON persistence.

A MatrixDocument is the mutable editing layer around the immutable graph
model. Every structural edit records a memento of the whole document so it
can be undone; the layout engine and the validator only ever see the
GraphSnapshot returned by :meth:`MatrixDocument.snapshot`.
"""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

from harris_mcp.models import (
    GraphSnapshot,
    NODE_HEIGHT,
    Phase,
    Relation,
    StratObject,
    Unit,
    UnitType,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"
MAX_HISTORY = 50

PHASE_COLORS = (
    "#ef4444", "#f97316", "#eab308", "#22c55e",
    "#14b8a6", "#3b82f6", "#8b5cf6", "#ec4899",
)
OBJECT_COLORS = (
    "#8b5cf6", "#06b6d4", "#10b981", "#f59e0b",
    "#ef4444", "#ec4899", "#6366f1", "#84cc16",
)


class DocumentError(Exception):
    """Raised when an edit or an import cannot be applied."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class _Memento:
    """Immutable value copy of the document state."""
    units: tuple[Unit, ...]
    relations: tuple[Relation, ...]
    phases: tuple[Phase, ...]
    objects: tuple[StratObject, ...]
    next_id: int


class MatrixDocument:
    """A single Harris matrix being edited."""

    def __init__(self, name: str = "matrix") -> None:
        self.name = name
        self.units: list[Unit] = []
        self.relations: list[Relation] = []
        self.phases: list[Phase] = []
        self.objects: list[StratObject] = []
        self.next_id = 1
        self._undo: list[_Memento] = []
        self._redo: list[_Memento] = []

    # ----- snapshots & history -----

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            units=tuple(self.units),
            relations=tuple(self.relations),
            phases=tuple(self.phases),
            objects=tuple(self.objects),
        )

    def _memento(self) -> _Memento:
        return _Memento(
            units=tuple(self.units),
            relations=tuple(self.relations),
            phases=tuple(self.phases),
            objects=tuple(self.objects),
            next_id=self.next_id,
        )

    def _restore(self, m: _Memento) -> None:
        self.units = list(m.units)
        self.relations = list(m.relations)
        self.phases = list(m.phases)
        self.objects = list(m.objects)
        self.next_id = m.next_id

    def push_undo(self) -> None:
        """Record the current state before a mutation; clears redo."""
        self._undo = self._undo[-(MAX_HISTORY - 1):] + [self._memento()]
        self._redo = []

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(self._memento())
        self._restore(self._undo.pop())
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self._memento())
        self._restore(self._redo.pop())
        return True

    # ----- lookups -----

    def _unit_pos(self, unit_id: str) -> int:
        for i, u in enumerate(self.units):
            if u.id == unit_id:
                return i
        raise DocumentError(f"Unit '{unit_id}' not found.")

    def _phase_pos(self, phase_id: str) -> int:
        for i, p in enumerate(self.phases):
            if p.id == phase_id:
                return i
        raise DocumentError(f"Phase '{phase_id}' not found.")

    def _object_pos(self, object_id: str) -> int:
        for i, o in enumerate(self.objects):
            if o.id == object_id:
                return i
        raise DocumentError(f"Object '{object_id}' not found.")

    def get_unit(self, unit_id: str) -> Unit:
        return self.units[self._unit_pos(unit_id)]

    # ----- labels & search -----

    def is_label_duplicate(self, label: str, exclude_id: Optional[str] = None) -> bool:
        normalized = label.lower().strip()
        return any(
            u.id != exclude_id and u.label.lower().strip() == normalized
            for u in self.units
        )

    def generate_unique_label(self) -> str:
        """Next free 'SU 001'-style label, starting at the id counter."""
        existing = {u.label.lower().strip() for u in self.units}
        counter = self.next_id
        while True:
            label = f"SU {counter:03d}"
            counter += 1
            if label.lower() not in existing:
                break
        if counter > self.next_id + 1:
            self.next_id = counter - 1
        return label

    def search(self, term: str) -> list[Unit]:
        needle = term.strip().lower()
        if not needle:
            return []
        return [
            u for u in self.units
            if needle in u.label.lower() or needle in u.description.lower()
        ]

    # ----- units -----

    def add_unit(
        self,
        label: str = "",
        description: str = "",
        type: UnitType | str = UnitType.LAYER,
        phase_id: str = "",
        x: float = 0,
        y: float = 0,
        geometry: Any = None,
        record: bool = True,
    ) -> Unit:
        if record:
            self.push_undo()
        label = label.strip() or self.generate_unique_label()
        unit = Unit(
            id=str(self.next_id),
            label=label,
            description=description,
            type=UnitType.parse(type),
            phase_id=phase_id,
            x=x,
            y=y,
            geometry=geometry,
        )
        self.next_id += 1
        self.units.append(unit)
        return unit

    def update_unit(self, unit_id: str, record: bool = True, **fields: Any) -> Unit:
        pos = self._unit_pos(unit_id)
        allowed = {"label", "description", "type", "phase_id", "x", "y", "geometry"}
        unknown = set(fields) - allowed
        if unknown:
            raise DocumentError(f"Unknown unit field(s): {', '.join(sorted(unknown))}.")
        if "type" in fields:
            fields["type"] = UnitType.parse(fields["type"])
        if record:
            self.push_undo()
        unit = replace(self.units[pos], **fields)
        self.units[pos] = unit
        return unit

    def delete_units(self, unit_ids: list[str]) -> int:
        doomed = set(unit_ids) & {u.id for u in self.units}
        if not doomed:
            return 0
        self.push_undo()
        self.units = [u for u in self.units if u.id not in doomed]
        self.relations = [
            r for r in self.relations
            if r.source_id not in doomed and r.target_id not in doomed
        ]
        self.objects = [
            replace(o, node_ids=tuple(i for i in o.node_ids if i not in doomed))
            for o in self.objects
        ]
        return len(doomed)

    def apply_positions(self, positions: dict[str, tuple[float, float]]) -> int:
        """Write laid-out coordinates back onto units (recorded for undo)."""
        self.push_undo()
        count = 0
        for i, u in enumerate(self.units):
            if u.id in positions:
                x, y = positions[u.id]
                self.units[i] = replace(u, x=x, y=y)
                count += 1
        return count

    # ----- relations -----

    def add_relation(self, source_id: str, target_id: str, record: bool = True) -> Relation:
        """Add 'source lies above target'. Rejects self loops and duplicates."""
        if source_id == target_id:
            raise DocumentError("A unit cannot lie above itself.")
        self._unit_pos(source_id)
        self._unit_pos(target_id)
        for r in self.relations:
            if {r.source_id, r.target_id} == {source_id, target_id}:
                raise DocumentError(
                    f"A relation between '{source_id}' and '{target_id}' already exists."
                )
        if record:
            self.push_undo()
        rel = Relation(id=f"e{source_id}-{target_id}", source_id=source_id, target_id=target_id)
        self.relations.append(rel)
        return rel

    def delete_relations(self, relation_ids: list[str]) -> int:
        doomed = set(relation_ids) & {r.id for r in self.relations}
        if not doomed:
            return 0
        self.push_undo()
        self.relations = [r for r in self.relations if r.id not in doomed]
        return len(doomed)

    # ----- phases -----

    def add_phase(self, name: str = "", color: str = "") -> Phase:
        self.push_undo()
        existing = {p.id for p in self.phases}
        n = len(self.phases) + 1
        while str(n) in existing:
            n += 1
        phase = Phase(
            id=str(n),
            name=name or f"Phase {n}",
            color=color or PHASE_COLORS[len(self.phases) % len(PHASE_COLORS)],
        )
        self.phases.append(phase)
        return phase

    def update_phase(self, phase_id: str, name: str = "", color: str = "") -> Phase:
        pos = self._phase_pos(phase_id)
        self.push_undo()
        phase = self.phases[pos]
        phase = replace(phase, name=name or phase.name, color=color or phase.color)
        self.phases[pos] = phase
        return phase

    def delete_phase(self, phase_id: str) -> None:
        """Remove a phase; its units become unphased."""
        pos = self._phase_pos(phase_id)
        self.push_undo()
        del self.phases[pos]
        self.units = [
            replace(u, phase_id="") if u.phase_id == phase_id else u
            for u in self.units
        ]

    def reorder_phase(self, from_index: int, to_index: int) -> None:
        n = len(self.phases)
        if not (0 <= from_index < n and 0 <= to_index < n):
            raise DocumentError(f"Phase index out of range (0..{n - 1}).")
        if from_index == to_index:
            return
        self.push_undo()
        moved = self.phases.pop(from_index)
        self.phases.insert(to_index, moved)

    def assign_phase(self, unit_ids: list[str], phase_id: str) -> int:
        if phase_id:
            self._phase_pos(phase_id)
        targets = set(unit_ids)
        for uid in targets:
            self._unit_pos(uid)
        self.push_undo()
        self.units = [
            replace(u, phase_id=phase_id) if u.id in targets else u
            for u in self.units
        ]
        return len(targets)

    def phase_y_ranges(self) -> dict[str, tuple[float, float]]:
        """Vertical extent (min y, max y + height) of each phase's units."""
        ranges: dict[str, tuple[float, float]] = {}
        for u in self.units:
            if not u.phase_id:
                continue
            lo, hi = ranges.get(u.phase_id, (float("inf"), float("-inf")))
            ranges[u.phase_id] = (min(lo, u.y), max(hi, u.y + NODE_HEIGHT))
        return ranges

    # ----- objects -----

    def add_object(self, name: str = "", color: str = "") -> StratObject:
        self.push_undo()
        existing = {o.id for o in self.objects}
        n = len(self.objects) + 1
        while f"o{n}" in existing:
            n += 1
        obj = StratObject(
            id=f"o{n}",
            name=name or f"Object {len(self.objects) + 1}",
            color=color or OBJECT_COLORS[len(self.objects) % len(OBJECT_COLORS)],
        )
        self.objects.append(obj)
        return obj

    def update_object(self, object_id: str, name: str = "", color: str = "") -> StratObject:
        pos = self._object_pos(object_id)
        self.push_undo()
        obj = self.objects[pos]
        obj = replace(obj, name=name or obj.name, color=color or obj.color)
        self.objects[pos] = obj
        return obj

    def delete_object(self, object_id: str) -> None:
        pos = self._object_pos(object_id)
        self.push_undo()
        del self.objects[pos]

    def add_units_to_object(self, object_id: str, unit_ids: list[str]) -> StratObject:
        pos = self._object_pos(object_id)
        for uid in unit_ids:
            self._unit_pos(uid)
        self.push_undo()
        obj = self.objects[pos]
        merged = list(obj.node_ids)
        for uid in unit_ids:
            if uid not in merged:
                merged.append(uid)
        obj = replace(obj, node_ids=tuple(merged))
        self.objects[pos] = obj
        return obj

    def remove_unit_from_object(self, object_id: str, unit_id: str) -> StratObject:
        pos = self._object_pos(object_id)
        self.push_undo()
        obj = self.objects[pos]
        obj = replace(obj, node_ids=tuple(i for i in obj.node_ids if i != unit_id))
        self.objects[pos] = obj
        return obj

    def objects_for_unit(self, unit_id: str) -> list[StratObject]:
        return [o for o in self.objects if unit_id in o.node_ids]

    # ----- persistence -----

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": FORMAT_VERSION,
            "exportDate": datetime.datetime.now(datetime.timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%S.000Z"
            ),
            "nodes": [_unit_to_dict(u) for u in self.units],
            "edges": [
                {"id": r.id, "source": r.source_id, "target": r.target_id}
                for r in self.relations
            ],
            "phases": [{"id": p.id, "name": p.name, "color": p.color} for p in self.phases],
            "objects": [
                {"id": o.id, "name": o.name, "color": o.color, "nodeIds": list(o.node_ids)}
                for o in self.objects
            ],
            "nextId": self.next_id,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any, name: str = "matrix") -> "MatrixDocument":
        if not isinstance(data, dict):
            raise DocumentError("Invalid file format: top level must be an object.")
        if not isinstance(data.get("nodes"), list) or not isinstance(data.get("edges"), list):
            raise DocumentError("Invalid file format: 'nodes' and 'edges' lists are required.")

        doc = cls(name=name)
        try:
            doc.units = [_unit_from_dict(n) for n in data["nodes"]]
            doc.relations = [
                Relation(
                    id=str(e.get("id") or f"e{e['source']}-{e['target']}"),
                    source_id=str(e["source"]),
                    target_id=str(e["target"]),
                )
                for e in data["edges"]
            ]
            doc.phases = [
                Phase(id=str(p["id"]), name=str(p.get("name", "")),
                      color=str(p.get("color", PHASE_COLORS[0])))
                for p in data.get("phases") or []
            ]
            doc.objects = [
                StratObject(
                    id=str(o["id"]),
                    name=str(o.get("name", "")),
                    color=str(o.get("color", OBJECT_COLORS[0])),
                    node_ids=tuple(str(i) for i in o.get("nodeIds") or []),
                )
                for o in data.get("objects") or []
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise DocumentError(f"Invalid file format: {exc}") from exc

        numeric = [int(u.id) for u in doc.units if u.id.isdecimal() and u.id.isascii()]
        doc.next_id = max(numeric, default=0) + 1

        known = {u.id for u in doc.units}
        dangling = sum(
            1 for r in doc.relations
            if r.source_id not in known or r.target_id not in known
        )
        if dangling:
            logger.warning("Document '%s' has %d relation(s) to unknown units", name, dangling)
        return doc

    @classmethod
    def from_json(cls, text: str, name: str = "matrix") -> "MatrixDocument":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DocumentError(f"Invalid JSON: {exc.msg} (line {exc.lineno})") from exc
        return cls.from_dict(data, name=name)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _unit_to_dict(u: Unit) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": u.id,
        "label": u.label,
        "description": u.description,
        "type": u.type.value,
        "phase": u.phase_id,
        "x": u.x,
        "y": u.y,
    }
    if u.geometry is not None:
        data["geometry"] = u.geometry
    return data


def _unit_from_dict(n: dict[str, Any]) -> Unit:
    return Unit(
        id=str(n["id"]),
        label=str(n.get("label", "")),
        description=str(n.get("description") or ""),
        type=UnitType.parse(n.get("type")),
        phase_id=str(n.get("phase") or ""),
        x=float(n.get("x") or 0),
        y=float(n.get("y") or 0),
        geometry=n.get("geometry"),
    )
