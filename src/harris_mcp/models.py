"""
Core graph model for Harris matrix documents.

Provides typed value objects for stratigraphic units, relations, phases
and objects, plus an id-indexed read-only snapshot that the layout engine
and the stratigraphy validator consume.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UnitType(Enum):
    """Kind of stratigraphic unit."""
    LAYER = "layer"
    DEPOSIT = "deposit"
    FILL = "fill"
    STRUCTURE = "structure"
    INTERFACE = "interface"

    @classmethod
    def parse(cls, value: Any) -> "UnitType":
        """Coerce a string (or UnitType) into a UnitType, defaulting to LAYER."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.LAYER


# ---------------------------------------------------------------------------
# Node size contract (shared with any renderer doing hit-testing)
# ---------------------------------------------------------------------------

NODE_HEIGHT = 28
MIN_NODE_WIDTH = 50

_SU_PREFIX = re.compile(r"^SU\s*", re.IGNORECASE)


def display_label(label: str) -> str:
    """Strip the leading 'SU' prefix used on the canvas."""
    return _SU_PREFIX.sub("", label, count=1)


def node_width(label: str) -> float:
    """Width of a unit box: max(50, len(label without 'SU') * 9 + 30)."""
    return max(MIN_NODE_WIDTH, len(display_label(label)) * 9 + 30)


def node_size(label: str) -> tuple[float, float]:
    return node_width(label), NODE_HEIGHT


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Unit:
    """A stratigraphic unit (SU)."""
    id: str
    label: str
    description: str = ""
    type: UnitType = UnitType.LAYER
    phase_id: str = ""
    x: float = 0
    y: float = 0
    # Opaque polygon carried through untouched (e.g. GeoJSON geometry)
    geometry: Optional[Any] = None

    @property
    def width(self) -> float:
        return node_width(self.label)

    @property
    def height(self) -> float:
        return NODE_HEIGHT


@dataclass(frozen=True)
class Relation:
    """Directed 'lies above' relation: source is younger, target is older."""
    id: str
    source_id: str
    target_id: str


@dataclass(frozen=True)
class Phase:
    id: str
    name: str
    color: str = "#3b82f6"


@dataclass(frozen=True)
class StratObject:
    """Non-stratigraphic grouping of units (e.g. one wall across several SUs)."""
    id: str
    name: str
    color: str = "#8b5cf6"
    node_ids: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable, id-indexed view of a Harris matrix.

    Relations and object memberships that reference unknown unit ids are
    kept in the raw tuples but skipped by every accessor.
    """
    units: tuple[Unit, ...] = ()
    relations: tuple[Relation, ...] = ()
    phases: tuple[Phase, ...] = ()
    objects: tuple[StratObject, ...] = ()

    _unit_index: dict[str, Unit] = field(init=False, repr=False, compare=False)
    _phase_index: dict[str, int] = field(init=False, repr=False, compare=False)
    _successors: dict[str, list[str]] = field(init=False, repr=False, compare=False)
    _predecessors: dict[str, list[str]] = field(init=False, repr=False, compare=False)
    _first_object: dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Accept any iterable for convenience; store tuples
        for name in ("units", "relations", "phases", "objects"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

        unit_index = {u.id: u for u in self.units}
        phase_index: dict[str, int] = {}
        for i, p in enumerate(self.phases):
            phase_index.setdefault(p.id, i)

        successors: dict[str, list[str]] = {uid: [] for uid in unit_index}
        predecessors: dict[str, list[str]] = {uid: [] for uid in unit_index}
        for rel in self.valid_relations_from(self.relations, unit_index):
            successors[rel.source_id].append(rel.target_id)
            predecessors[rel.target_id].append(rel.source_id)

        first_object: dict[str, str] = {}
        for obj in self.objects:
            for uid in obj.node_ids:
                if uid in unit_index:
                    first_object.setdefault(uid, obj.id)

        object.__setattr__(self, "_unit_index", unit_index)
        object.__setattr__(self, "_phase_index", phase_index)
        object.__setattr__(self, "_successors", successors)
        object.__setattr__(self, "_predecessors", predecessors)
        object.__setattr__(self, "_first_object", first_object)

    @staticmethod
    def valid_relations_from(
        relations: Iterable[Relation],
        unit_index: dict[str, Unit],
    ) -> list[Relation]:
        return [
            r for r in relations
            if r.source_id in unit_index and r.target_id in unit_index
        ]

    # ----- lookups -----

    def unit(self, unit_id: str) -> Optional[Unit]:
        return self._unit_index.get(unit_id)

    def has_unit(self, unit_id: str) -> bool:
        return unit_id in self._unit_index

    def label_of(self, unit_id: str) -> str:
        u = self._unit_index.get(unit_id)
        return u.label if u else unit_id

    @property
    def valid_relations(self) -> list[Relation]:
        """Relations whose endpoints both exist, in insertion order."""
        return self.valid_relations_from(self.relations, self._unit_index)

    def phase(self, phase_id: str) -> Optional[Phase]:
        idx = self._phase_index.get(phase_id)
        return self.phases[idx] if idx is not None else None

    def phase_index(self, phase_id: str) -> int:
        """Index of a phase in the youngest-to-oldest order, or -1."""
        if not phase_id:
            return -1
        return self._phase_index.get(phase_id, -1)

    def unit_phase_index(self, unit_id: str) -> int:
        u = self._unit_index.get(unit_id)
        return self.phase_index(u.phase_id) if u else -1

    def is_phased(self, unit_id: str) -> bool:
        return self.unit_phase_index(unit_id) >= 0

    def first_object_id(self, unit_id: str) -> Optional[str]:
        """First object (in object insertion order) that lists the unit."""
        return self._first_object.get(unit_id)

    def object_by_id(self, object_id: str) -> Optional[StratObject]:
        for obj in self.objects:
            if obj.id == object_id:
                return obj
        return None

    # ----- adjacency -----

    def successors(self, unit_id: str) -> list[str]:
        """Direct older neighbours (targets of outgoing relations)."""
        return self._successors.get(unit_id, [])

    def predecessors(self, unit_id: str) -> list[str]:
        """Direct younger neighbours (sources of incoming relations)."""
        return self._predecessors.get(unit_id, [])

    def neighbors(self, unit_id: str) -> list[str]:
        return self.successors(unit_id) + self.predecessors(unit_id)

    def degree(self, unit_id: str) -> int:
        return len(self.successors(unit_id)) + len(self.predecessors(unit_id))

    def reachable_from(self, unit_id: str) -> set[str]:
        """All units reachable from *unit_id* via one or more relations."""
        visited: set[str] = set()
        stack = list(self.successors(unit_id))
        while stack:
            cur = stack.pop()
            if cur in visited:
                continue
            visited.add(cur)
            stack.extend(self.successors(cur))
        return visited
