"""
Phase-aware layered layout engine for Harris matrices.

Positions stratigraphic units so that relations read top-to-bottom:
- Phases are stacked vertically, youngest first, unphased units last
- Longest-path ranks inside each phase (Kahn's algorithm)
- Units grouped into columns (one per object, one per loose unit)
- Median-heuristic column ordering, alternating top-down and bottom-up
- Columns touched by long multi-phase relations moved to the outer flanks

All functions are pure: they read a GraphSnapshot and return new values.
Identical input and configuration always give identical coordinates.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

from harris_mcp.models import NODE_HEIGHT, GraphSnapshot

logger = logging.getLogger(__name__)

# Pseudo-phase that collects units with an empty or dangling phase id
UNPHASED = "__none__"

# Median sentinel multiplier for columns without connections
_FALLBACK_SPREAD = 1000


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class LayoutEngineConfig:
    """Configuration for the Harris matrix layout engine."""
    # Spacing
    horizontal_gap: float = 20     # Between units (and loose columns) in a row
    vertical_gap: float = 50       # Between rank rows inside a phase
    phase_gap: float = 70          # Extra space between consecutive phases
    object_gap_factor: float = 3   # Column gap multiplier next to object columns

    # Dimensions
    node_height: float = NODE_HEIGHT

    # Placement
    anchor_x: float = 400          # Horizontal center of every phase band
    min_x: float = 50              # Left edge is never placed before this
    start_y: float = 50

    # Algorithm tuning
    median_iterations: int = 4     # Full top-down + bottom-up sweeps
    long_edge_span: int = 2        # Phase distance that makes a relation "long"

    @property
    def object_gap(self) -> float:
        return self.horizontal_gap * self.object_gap_factor


# ---------------------------------------------------------------------------
# Internal structures
# ---------------------------------------------------------------------------

@dataclass
class Column:
    """A layout column: all units of one object in a phase, or one loose unit."""
    kind: str                      # "object" or "loose"
    key: str                       # object id or unit id
    nodes_by_rank: dict[int, list[str]] = field(default_factory=dict)
    width: float = 0

    @property
    def is_object(self) -> bool:
        return self.kind == "object"

    @property
    def unit_ids(self) -> list[str]:
        ids: list[str] = []
        for rank in sorted(self.nodes_by_rank):
            ids.extend(self.nodes_by_rank[rank])
        return ids


@dataclass
class PhaseColumns:
    """Columns of one phase band plus its deepest rank."""
    phase_id: str
    columns: list[Column]
    max_rank: int = 0


Positions = dict[str, tuple[float, float]]


# ---------------------------------------------------------------------------
# Topological ranker
# ---------------------------------------------------------------------------

def phase_groups(snapshot: GraphSnapshot) -> dict[str, list[str]]:
    """Group unit ids by phase, in phase order, unphased units last.

    Every real phase gets an entry (possibly empty) so phase indices line
    up with the phase sequence; the unphased group only exists when it has
    members.
    """
    groups: dict[str, list[str]] = {p.id: [] for p in snapshot.phases}
    unphased: list[str] = []
    for unit in snapshot.units:
        if snapshot.phase_index(unit.phase_id) >= 0:
            groups[unit.phase_id].append(unit.id)
        else:
            unphased.append(unit.id)
    if unphased:
        groups[UNPHASED] = unphased
    return groups


def rank_units(snapshot: GraphSnapshot, unit_ids: list[str]) -> dict[str, int]:
    """Longest-path depth of each unit using only relations inside *unit_ids*.

    Units on a cycle never reach in-degree zero; they keep whatever rank
    was propagated to them before the queue stalled.
    """
    members = set(unit_ids)
    in_degree: dict[str, int] = {uid: 0 for uid in unit_ids}
    adj: dict[str, list[str]] = {uid: [] for uid in unit_ids}
    for rel in snapshot.valid_relations:
        if rel.source_id in members and rel.target_id in members:
            adj[rel.source_id].append(rel.target_id)
            in_degree[rel.target_id] += 1

    ranks: dict[str, int] = {uid: 0 for uid in unit_ids}
    queue = deque(uid for uid in unit_ids if in_degree[uid] == 0)
    while queue:
        current = queue.popleft()
        for target in adj[current]:
            ranks[target] = max(ranks[target], ranks[current] + 1)
            in_degree[target] -= 1
            if in_degree[target] == 0:
                queue.append(target)
    return ranks


def assign_phase_ranks(snapshot: GraphSnapshot) -> dict[str, dict[str, int]]:
    """Per-phase ranks for every non-empty phase (and the unphased group)."""
    return {
        group_id: rank_units(snapshot, unit_ids)
        for group_id, unit_ids in phase_groups(snapshot).items()
        if unit_ids
    }


# ---------------------------------------------------------------------------
# Column builder
# ---------------------------------------------------------------------------

def _label_key(snapshot: GraphSnapshot, unit_id: str) -> tuple[str, str]:
    return snapshot.label_of(unit_id), unit_id


def _row_width(snapshot: GraphSnapshot, unit_ids: list[str], gap: float) -> float:
    widths = [snapshot.unit(uid).width for uid in unit_ids if snapshot.has_unit(uid)]
    if not widths:
        return 0
    return sum(widths) + gap * (len(widths) - 1)


def _min_object_label(snapshot: GraphSnapshot, object_id: str) -> str:
    obj = snapshot.object_by_id(object_id)
    labels = sorted(
        snapshot.label_of(uid) for uid in (obj.node_ids if obj else ())
        if snapshot.has_unit(uid)
    )
    return labels[0] if labels else ""


def build_phase_columns(
    snapshot: GraphSnapshot,
    phase_id: str,
    ranks: dict[str, int],
    cfg: LayoutEngineConfig,
) -> PhaseColumns:
    """Partition the units of one phase into object and loose columns."""
    max_rank = max(ranks.values(), default=0)

    object_ids: list[str] = []
    members: dict[str, list[str]] = {}
    loose: list[str] = []
    for uid in ranks:
        obj_id = snapshot.first_object_id(uid)
        if obj_id is None:
            loose.append(uid)
            continue
        if obj_id not in members:
            object_ids.append(obj_id)
            members[obj_id] = []
        members[obj_id].append(uid)

    object_ids.sort(key=lambda oid: (_min_object_label(snapshot, oid), oid))
    loose.sort(key=lambda uid: _label_key(snapshot, uid))

    columns: list[Column] = []
    for obj_id in object_ids:
        nodes_by_rank: dict[int, list[str]] = {}
        for uid in members[obj_id]:
            nodes_by_rank.setdefault(ranks[uid], []).append(uid)
        for rank_nodes in nodes_by_rank.values():
            rank_nodes.sort(key=lambda uid: _label_key(snapshot, uid))
        width = max(
            (_row_width(snapshot, nodes_by_rank.get(r, []), cfg.horizontal_gap)
             for r in range(max_rank + 1)),
            default=0,
        )
        columns.append(Column(kind="object", key=obj_id,
                              nodes_by_rank=nodes_by_rank, width=width))

    for uid in loose:
        columns.append(Column(
            kind="loose", key=uid,
            nodes_by_rank={ranks[uid]: [uid]},
            width=snapshot.unit(uid).width,
        ))

    return PhaseColumns(phase_id=phase_id, columns=columns, max_rank=max_rank)


# ---------------------------------------------------------------------------
# Position compiler
# ---------------------------------------------------------------------------

def _column_gap(left: Column, right: Column, cfg: LayoutEngineConfig) -> float:
    if left.is_object or right.is_object:
        return cfg.object_gap
    return cfg.horizontal_gap


def compute_positions(
    snapshot: GraphSnapshot,
    group_ids: list[str],
    phase_columns: dict[str, PhaseColumns],
    column_orders: dict[str, list[Column]],
    cfg: LayoutEngineConfig,
) -> Positions:
    """Turn a column ordering into absolute top-left coordinates.

    Phase bands are stacked in *group_ids* order; each band is centered on
    ``cfg.anchor_x`` but never starts left of ``cfg.min_x``.
    """
    positions: Positions = {}
    current_y = cfg.start_y
    row_step = cfg.node_height + cfg.vertical_gap

    for phase_idx, group_id in enumerate(group_ids):
        data = phase_columns.get(group_id)
        if data is None:
            continue
        if phase_idx > 0:
            current_y += cfg.phase_gap

        cols = column_orders.get(group_id) or []
        if not cols:
            continue

        total_width = sum(c.width for c in cols)
        total_width += sum(_column_gap(a, b, cfg) for a, b in zip(cols, cols[1:]))
        x = max(cfg.min_x, cfg.anchor_x - total_width / 2)

        col_x_starts: list[float] = []
        for i, col in enumerate(cols):
            col_x_starts.append(x)
            x += col.width
            if i < len(cols) - 1:
                x += _column_gap(col, cols[i + 1], cfg)

        band_y = current_y
        for rank in range(data.max_rank + 1):
            rank_y = band_y + rank * row_step
            for col, col_x in zip(cols, col_x_starts):
                rank_nodes = [uid for uid in col.nodes_by_rank.get(rank, [])
                              if snapshot.has_unit(uid)]
                row_width = _row_width(snapshot, rank_nodes, cfg.horizontal_gap)
                node_x = col_x + (col.width - row_width) / 2
                for uid in rank_nodes:
                    positions[uid] = (node_x, rank_y)
                    node_x += snapshot.unit(uid).width + cfg.horizontal_gap
            current_y = rank_y + cfg.node_height

    return positions


def _center_x(snapshot: GraphSnapshot, positions: Positions, unit_id: str) -> float:
    return positions[unit_id][0] + snapshot.unit(unit_id).width / 2


# ---------------------------------------------------------------------------
# Crossing reducer (median heuristic)
# ---------------------------------------------------------------------------

def _median(values: list[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def sort_columns_by_median(
    snapshot: GraphSnapshot,
    columns: list[Column],
    positions: Positions,
    direction: str,
) -> list[Column]:
    """Reorder columns by the median center-x of their connected units.

    direction='down' looks at parents (sources of incoming relations),
    direction='up' at children (targets of outgoing relations). Columns
    with no positioned connection keep a sentinel of index * 1000 and sort
    after every connected column.
    """
    keyed: list[tuple[bool, float, Column]] = []
    for col_idx, col in enumerate(columns):
        connected: list[float] = []
        for uid in col.unit_ids:
            if direction == "down":
                others = snapshot.predecessors(uid)
            else:
                others = snapshot.successors(uid)
            for other in others:
                if other in positions:
                    connected.append(_center_x(snapshot, positions, other))

        if connected:
            keyed.append((False, _median(connected), col))
        else:
            keyed.append((True, float(col_idx * _FALLBACK_SPREAD), col))

    keyed.sort(key=lambda item: (item[0], item[1]))
    return [col for _, _, col in keyed]


# ---------------------------------------------------------------------------
# Long-edge outer placer
# ---------------------------------------------------------------------------

def find_long_edge_units(snapshot: GraphSnapshot, min_span: int = 2) -> set[str]:
    """Endpoints of relations spanning at least *min_span* phases."""
    marked: set[str] = set()
    for rel in snapshot.valid_relations:
        src_idx = snapshot.unit_phase_index(rel.source_id)
        tgt_idx = snapshot.unit_phase_index(rel.target_id)
        if src_idx < 0 or tgt_idx < 0:
            continue
        if abs(tgt_idx - src_idx) >= min_span:
            marked.add(rel.source_id)
            marked.add(rel.target_id)
    return marked


def move_long_edges_to_outer(
    snapshot: GraphSnapshot,
    columns: list[Column],
    positions: Positions,
    long_edge_units: set[str],
) -> list[Column]:
    """Push columns holding long-relation endpoints to the band's flanks."""
    if len(columns) <= 2:
        return columns

    min_x = float("inf")
    max_x = float("-inf")
    for col in columns:
        for uid in col.unit_ids:
            if uid in positions:
                x = positions[uid][0]
                min_x = min(min_x, x)
                max_x = max(max_x, x + snapshot.unit(uid).width)
    center_x = (min_x + max_x) / 2

    left: list[tuple[float, Column]] = []
    right: list[tuple[float, Column]] = []
    normal: list[Column] = []
    for col in columns:
        unit_ids = col.unit_ids
        if not any(uid in long_edge_units for uid in unit_ids):
            normal.append(col)
            continue

        xs: list[float] = []
        for uid in unit_ids:
            for other in snapshot.neighbors(uid):
                if other in positions:
                    xs.append(_center_x(snapshot, positions, other))
        avg_x = sum(xs) / len(xs) if xs else center_x

        if avg_x < center_x:
            left.append((avg_x, col))
        else:
            right.append((avg_x, col))

    if not left and not right:
        return columns

    left.sort(key=lambda item: item[0])
    right.sort(key=lambda item: -item[0])
    return [c for _, c in left] + normal + [c for _, c in right]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def compute_layout(
    snapshot: GraphSnapshot,
    config: LayoutEngineConfig | None = None,
) -> Positions:
    """Lay out a Harris matrix and return unit id -> (x, y).

    Steps:
    1. Rank units inside each phase (longest path)
    2. Build object/loose columns per phase
    3. Median sweeps: top-down by parents, bottom-up by children
    4. Move long-relation columns to the outer flanks
    5. Final coordinate pass

    Args:
        snapshot: Immutable graph to lay out (never modified).
        config: Gaps and tuning; defaults to LayoutEngineConfig().

    Returns:
        Mapping of unit id to top-left (x, y).
    """
    cfg = config or LayoutEngineConfig()

    # --- Step 1: Ranks ---
    groups = phase_groups(snapshot)
    group_ids = list(groups.keys())
    phase_ranks = assign_phase_ranks(snapshot)

    # --- Step 2: Columns ---
    phase_columns: dict[str, PhaseColumns] = {
        gid: build_phase_columns(snapshot, gid, ranks, cfg)
        for gid, ranks in phase_ranks.items()
    }
    column_orders: dict[str, list[Column]] = {
        gid: list(data.columns) for gid, data in phase_columns.items()
    }

    def _positions() -> Positions:
        return compute_positions(snapshot, group_ids, phase_columns, column_orders, cfg)

    # --- Step 3: Crossing reduction ---
    active = [gid for gid in group_ids if gid in phase_columns]
    for _ in range(cfg.median_iterations):
        positions = _positions()
        for gid in active:
            column_orders[gid] = sort_columns_by_median(
                snapshot, column_orders[gid], positions, "down",
            )
            positions = _positions()
        for gid in reversed(active):
            column_orders[gid] = sort_columns_by_median(
                snapshot, column_orders[gid], positions, "up",
            )
            positions = _positions()

    # --- Step 4: Long edges to the flanks ---
    long_edge_units = find_long_edge_units(snapshot, cfg.long_edge_span)
    positions = _positions()
    for gid in active:
        column_orders[gid] = move_long_edges_to_outer(
            snapshot, column_orders[gid], positions, long_edge_units,
        )

    # --- Step 5: Final coordinates ---
    result = _positions()
    logger.debug(
        "Laid out %d units in %d phase bands (%d long-relation units)",
        len(result), len(active), len(long_edge_units),
    )
    return result
