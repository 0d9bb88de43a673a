"""
Stratigraphic consistency checks for Harris matrices.

Runs independent rules over a GraphSnapshot and returns a severity-ranked
issue list:

- duplicate_label   (error)   labels equal ignoring case and whitespace
- cycle             (error)   relations must form a DAG
- phase_direction   (error)   an older phase may not lie above a younger one
- phase_skip        (warning) relation jumps phases with no unit in between
- isolated          (warning) unit with no relations at all
- no_phase          (warning) empty or dangling phase id
- dangling_leaf/root (info)   open ends outside the oldest/youngest phase
- redundant_edge    (info)    relation already implied by a longer path

The snapshot is never modified.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from harris_mcp.models import GraphSnapshot, Phase, Relation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER[self]


_SEVERITY_ORDER = {Severity.ERROR: 0, Severity.WARNING: 1, Severity.INFO: 2}


class IssueType(Enum):
    DUPLICATE_LABEL = "duplicate_label"
    CYCLE = "cycle"
    PHASE_DIRECTION = "phase_direction"
    PHASE_SKIP = "phase_skip"
    ISOLATED = "isolated"
    NO_PHASE = "no_phase"
    DANGLING_LEAF = "dangling_leaf"
    DANGLING_ROOT = "dangling_root"
    REDUNDANT_EDGE = "redundant_edge"


@dataclass(frozen=True)
class Issue:
    """A single finding of the validator."""
    type: IssueType
    severity: Severity
    message: str
    node_ids: tuple[str, ...]
    description: str
    edge_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "nodeIds": list(self.node_ids),
            "description": self.description,
        }
        if self.edge_id is not None:
            data["edgeId"] = self.edge_id
        return data


@dataclass(frozen=True)
class ValidationReport:
    issues: tuple[Issue, ...] = ()
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        """True when there are no errors (warnings and info are allowed)."""
        return self.counts.get(Severity.ERROR.value, 0) == 0

    def by_type(self, issue_type: IssueType | str) -> list[Issue]:
        wanted = IssueType(issue_type) if isinstance(issue_type, str) else issue_type
        return [i for i in self.issues if i.type == wanted]

    def to_dict(self) -> dict[str, Any]:
        return {
            "issues": [i.to_dict() for i in self.issues],
            "counts": dict(self.counts),
        }


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------

def normalize_label(label: str) -> str:
    """Lower-case and drop all whitespace ('SU 001' == 'su001')."""
    return "".join(label.lower().split())


def check_duplicate_labels(snapshot: GraphSnapshot) -> list[Issue]:
    groups: dict[str, list[str]] = {}
    for unit in snapshot.units:
        groups.setdefault(normalize_label(unit.label), []).append(unit.id)

    issues: list[Issue] = []
    for unit_ids in groups.values():
        if len(unit_ids) < 2:
            continue
        first = snapshot.label_of(unit_ids[0])
        issues.append(Issue(
            type=IssueType.DUPLICATE_LABEL,
            severity=Severity.ERROR,
            message=f'Duplicate label "{first}" used by {len(unit_ids)} units',
            node_ids=tuple(unit_ids),
            description="Each unit must have a unique label. Rename the "
                        "duplicates to avoid confusion.",
        ))
    return issues


def find_cycles(snapshot: GraphSnapshot) -> list[list[str]]:
    """Find one closed path per DFS back edge.

    Iterative white/gray/black DFS over units in insertion order. Each
    returned path starts and ends with the gray unit the back edge hits.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = {u.id: WHITE for u in snapshot.units}
    parent: dict[str, Optional[str]] = {u.id: None for u in snapshot.units}
    cycles: list[list[str]] = []

    for unit in snapshot.units:
        start = unit.id
        if color[start] != WHITE:
            continue
        # Each frame is (node, index of next neighbor to visit).
        color[start] = GRAY
        stack: list[tuple[str, int]] = [(start, 0)]
        while stack:
            u, idx = stack[-1]
            neighbors = snapshot.successors(u)
            if idx < len(neighbors):
                stack[-1] = (u, idx + 1)
                v = neighbors[idx]
                if color[v] == GRAY:
                    path = [v]
                    cur: Optional[str] = u
                    while cur is not None and cur != v:
                        path.append(cur)
                        cur = parent[cur]
                    path.append(v)
                    path.reverse()
                    cycles.append(path)
                elif color[v] == WHITE:
                    parent[v] = u
                    color[v] = GRAY
                    stack.append((v, 0))
            else:
                color[u] = BLACK
                stack.pop()

    return cycles


def check_cycles(snapshot: GraphSnapshot) -> list[Issue]:
    issues: list[Issue] = []
    for path in find_cycles(snapshot):
        labels = " → ".join(snapshot.label_of(uid) for uid in path)
        issues.append(Issue(
            type=IssueType.CYCLE,
            severity=Severity.ERROR,
            message=f"Cycle: {labels}",
            node_ids=tuple(path[:-1]),
            description="A Harris Matrix must be a DAG. Cycles represent "
                        "logical contradictions in the stratigraphy.",
        ))
    return issues


def _phased_endpoints(
    snapshot: GraphSnapshot, rel: Relation,
) -> Optional[tuple[int, int]]:
    src_idx = snapshot.unit_phase_index(rel.source_id)
    tgt_idx = snapshot.unit_phase_index(rel.target_id)
    if src_idx < 0 or tgt_idx < 0:
        return None
    return src_idx, tgt_idx


def check_phase_direction(snapshot: GraphSnapshot) -> list[Issue]:
    issues: list[Issue] = []
    for rel in snapshot.valid_relations:
        idx = _phased_endpoints(snapshot, rel)
        if idx is None:
            continue
        src_idx, tgt_idx = idx
        # Source lies above (younger) so its phase index must not be larger.
        if src_idx <= tgt_idx:
            continue
        src_phase = snapshot.phases[src_idx]
        tgt_phase = snapshot.phases[tgt_idx]
        issues.append(Issue(
            type=IssueType.PHASE_DIRECTION,
            severity=Severity.ERROR,
            message=(
                f"{snapshot.label_of(rel.source_id)} ({src_phase.name}) → "
                f"{snapshot.label_of(rel.target_id)} ({tgt_phase.name}): "
                "older phase above younger"
            ),
            node_ids=(rel.source_id, rel.target_id),
            edge_id=rel.id,
            description="A unit from an older phase cannot lie above a unit "
                        "from a younger phase.",
        ))
    return issues


def _has_intermediate_path(
    snapshot: GraphSnapshot,
    source_id: str,
    target_id: str,
    skipped: set[str],
) -> bool:
    """BFS from source (never entering target) for a unit in a skipped phase."""
    visited = {source_id}
    queue = deque([source_id])
    while queue:
        cur = queue.popleft()
        for nxt in snapshot.successors(cur):
            if nxt == target_id or nxt in visited:
                continue
            visited.add(nxt)
            unit = snapshot.unit(nxt)
            if unit is not None and unit.phase_id in skipped:
                return True
            queue.append(nxt)
    return False


def check_phase_skips(snapshot: GraphSnapshot) -> list[Issue]:
    issues: list[Issue] = []
    for rel in snapshot.valid_relations:
        idx = _phased_endpoints(snapshot, rel)
        if idx is None:
            continue
        src_idx, tgt_idx = idx
        skipped: list[Phase] = list(snapshot.phases[src_idx + 1:tgt_idx])
        if not skipped:
            continue
        if _has_intermediate_path(
            snapshot, rel.source_id, rel.target_id, {p.id for p in skipped},
        ):
            continue
        names = ", ".join(p.name for p in skipped)
        issues.append(Issue(
            type=IssueType.PHASE_SKIP,
            severity=Severity.WARNING,
            message=(
                f"{snapshot.label_of(rel.source_id)} → "
                f"{snapshot.label_of(rel.target_id)} skips {names}"
            ),
            node_ids=(rel.source_id, rel.target_id),
            edge_id=rel.id,
            description="Relation crosses phases without intermediate units. "
                        "May indicate missing stratigraphy or incorrect phasing.",
        ))
    return issues


def check_isolated(snapshot: GraphSnapshot) -> list[Issue]:
    return [
        Issue(
            type=IssueType.ISOLATED,
            severity=Severity.WARNING,
            message=f"{unit.label} has no stratigraphic relations",
            node_ids=(unit.id,),
            description="Every unit should be connected to at least one other unit.",
        )
        for unit in snapshot.units
        if snapshot.degree(unit.id) == 0
    ]


def check_no_phase(snapshot: GraphSnapshot) -> list[Issue]:
    return [
        Issue(
            type=IssueType.NO_PHASE,
            severity=Severity.WARNING,
            message=f"{unit.label} has no phase assigned",
            node_ids=(unit.id,),
            description="Consider assigning a phase based on its stratigraphic "
                        "relationships.",
        )
        for unit in snapshot.units
        if snapshot.phase_index(unit.phase_id) < 0
    ]


def check_dangling(snapshot: GraphSnapshot) -> list[Issue]:
    if not snapshot.phases:
        return []
    youngest = snapshot.phases[0].id
    oldest = snapshot.phases[-1].id

    issues: list[Issue] = []
    for unit in snapshot.units:
        phase = snapshot.phase(unit.phase_id) if unit.phase_id else None
        if phase is None:
            continue
        if not snapshot.successors(unit.id) and phase.id != oldest:
            issues.append(Issue(
                type=IssueType.DANGLING_LEAF,
                severity=Severity.INFO,
                message=f"{unit.label} ({phase.name}) has no units below",
                node_ids=(unit.id,),
                description="Not in the oldest phase but has no underlying relations.",
            ))
        if not snapshot.predecessors(unit.id) and phase.id != youngest:
            issues.append(Issue(
                type=IssueType.DANGLING_ROOT,
                severity=Severity.INFO,
                message=f"{unit.label} ({phase.name}) has no units above",
                node_ids=(unit.id,),
                description="Not in the youngest phase but has no overlying relations.",
            ))
    return issues


def check_redundant_edges(snapshot: GraphSnapshot) -> list[Issue]:
    reachable_cache: dict[str, set[str]] = {}

    def _reachable(unit_id: str) -> set[str]:
        if unit_id not in reachable_cache:
            reachable_cache[unit_id] = snapshot.reachable_from(unit_id)
        return reachable_cache[unit_id]

    issues: list[Issue] = []
    for rel in snapshot.valid_relations:
        siblings = [w for w in snapshot.successors(rel.source_id) if w != rel.target_id]
        for w in siblings:
            if rel.target_id not in _reachable(w):
                continue
            issues.append(Issue(
                type=IssueType.REDUNDANT_EDGE,
                severity=Severity.INFO,
                message=(
                    f"{snapshot.label_of(rel.source_id)} → "
                    f"{snapshot.label_of(rel.target_id)} is redundant "
                    "(transitively implied)"
                ),
                node_ids=(rel.source_id, rel.target_id),
                edge_id=rel.id,
                description="Already implied through other paths. Removing "
                            "simplifies the matrix.",
            ))
            break
    return issues


# Evaluation order; output is re-sorted by severity afterwards.
CHECKS = (
    check_duplicate_labels,
    check_cycles,
    check_phase_direction,
    check_phase_skips,
    check_isolated,
    check_no_phase,
    check_dangling,
    check_redundant_edges,
)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def validate_stratigraphy(snapshot: GraphSnapshot) -> ValidationReport:
    """Run every check and return issues ordered error > warning > info."""
    found: list[Issue] = []
    for check in CHECKS:
        found.extend(check(snapshot))

    # sorted() is stable, so evaluation order survives inside a severity.
    issues = tuple(sorted(found, key=lambda i: i.severity.rank))
    counts = {s.value: 0 for s in Severity}
    for issue in issues:
        counts[issue.severity.value] += 1

    logger.debug(
        "Validated %d units: %d errors, %d warnings, %d info",
        len(snapshot.units), counts["error"], counts["warning"], counts["info"],
    )
    return ValidationReport(issues=issues, counts=counts)
