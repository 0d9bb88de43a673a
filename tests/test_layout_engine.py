"""Tests for the phase-aware Harris matrix layout engine."""

from harris_mcp.layout_engine import (
    UNPHASED,
    LayoutEngineConfig,
    assign_phase_ranks,
    build_phase_columns,
    compute_layout,
    find_long_edge_units,
    move_long_edges_to_outer,
    phase_groups,
    rank_units,
    sort_columns_by_median,
)
from harris_mcp.models import GraphSnapshot, Phase, Relation, StratObject, Unit


def _unit(uid: str, phase: str = "", label: str = "") -> Unit:
    return Unit(id=uid, label=label or f"SU {uid}", phase_id=phase)


def _rel(src: str, tgt: str) -> Relation:
    return Relation(id=f"e{src}-{tgt}", source_id=src, target_id=tgt)


def _phases(*ids: str) -> list[Phase]:
    return [Phase(id=p, name=f"Phase {p}") for p in ids]


# ===================================================================
# Ranker
# ===================================================================

class TestRanker:
    def test_chain_ranks(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p1"), _unit("C", "p1")],
            relations=[_rel("A", "B"), _rel("B", "C")],
            phases=_phases("p1"),
        )
        assert assign_phase_ranks(snap) == {"p1": {"A": 0, "B": 1, "C": 2}}

    def test_longest_path_wins(self) -> None:
        """A->B->C plus A->C: C sits below B, not next to it."""
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p1"), _unit("C", "p1")],
            relations=[_rel("A", "C"), _rel("A", "B"), _rel("B", "C")],
            phases=_phases("p1"),
        )
        ranks = assign_phase_ranks(snap)["p1"]
        assert ranks == {"A": 0, "B": 1, "C": 2}

    def test_cross_phase_relations_are_ignored(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p2")],
            relations=[_rel("A", "B")],
            phases=_phases("p1", "p2"),
        )
        assert assign_phase_ranks(snap) == {"p1": {"A": 0}, "p2": {"B": 0}}

    def test_cycle_stalls_without_error(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p1")],
            relations=[_rel("A", "B"), _rel("B", "A")],
            phases=_phases("p1"),
        )
        assert rank_units(snap, ["A", "B"]) == {"A": 0, "B": 0}

    def test_unphased_group_is_last(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("X"), _unit("A", "p1"), _unit("Y", "missing")],
            relations=[_rel("X", "Y")],
            phases=_phases("p1", "p2"),
        )
        groups = phase_groups(snap)
        assert list(groups) == ["p1", "p2", UNPHASED]
        assert groups[UNPHASED] == ["X", "Y"]
        ranks = assign_phase_ranks(snap)
        assert "p2" not in ranks
        assert ranks[UNPHASED] == {"X": 0, "Y": 1}


# ===================================================================
# Column builder
# ===================================================================

class TestColumnBuilder:
    def test_objects_and_loose_columns(self) -> None:
        snap = GraphSnapshot(
            units=[
                _unit("1", "p1", "SU 30"),
                _unit("2", "p1", "SU 10"),
                _unit("3", "p1", "SU 20"),
                _unit("4", "p1", "SU 05"),
            ],
            relations=[_rel("1", "3")],
            phases=_phases("p1"),
            objects=[StratObject(id="o1", name="Wall", node_ids=("1", "3"))],
        )
        ranks = assign_phase_ranks(snap)["p1"]
        data = build_phase_columns(snap, "p1", ranks, LayoutEngineConfig())

        assert data.max_rank == 1
        assert [c.kind for c in data.columns] == ["object", "loose", "loose"]
        wall = data.columns[0]
        assert wall.nodes_by_rank == {0: ["1"], 1: ["3"]}
        assert wall.width == 50
        # Loose columns sorted by label: "SU 05" before "SU 10"
        assert [c.key for c in data.columns[1:]] == ["4", "2"]

    def test_column_width_sums_one_rank(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("1", "p1", "SU 1"), _unit("2", "p1", "Wall")],
            phases=_phases("p1"),
            objects=[StratObject(id="o1", name="Wall", node_ids=("1", "2"))],
        )
        cfg = LayoutEngineConfig(horizontal_gap=20)
        data = build_phase_columns(snap, "p1", assign_phase_ranks(snap)["p1"], cfg)
        # 50 + 20 + 66, both units on rank 0
        assert data.columns[0].width == 136
        assert data.columns[0].nodes_by_rank == {0: ["1", "2"]}

    def test_first_object_wins(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("1", "p1"), _unit("2", "p1")],
            phases=_phases("p1"),
            objects=[
                StratObject(id="o1", name="A", node_ids=("1",)),
                StratObject(id="o2", name="B", node_ids=("1", "2")),
            ],
        )
        data = build_phase_columns(snap, "p1", assign_phase_ranks(snap)["p1"],
                                   LayoutEngineConfig())
        assert [c.key for c in data.columns] == ["o1", "o2"]
        assert data.columns[1].unit_ids == ["2"]


# ===================================================================
# Crossing reducer and outer placer
# ===================================================================

class TestMedianSort:
    def _setup(self) -> tuple[GraphSnapshot, list]:
        snap = GraphSnapshot(
            units=[_unit("P", "p1"), _unit("Q", "p1"),
                   _unit("A", "p2"), _unit("B", "p2"), _unit("C", "p2")],
            relations=[_rel("Q", "A"), _rel("P", "C")],
            phases=_phases("p1", "p2"),
        )
        ranks = assign_phase_ranks(snap)["p2"]
        columns = build_phase_columns(snap, "p2", ranks, LayoutEngineConfig()).columns
        return snap, columns

    def test_down_sorts_by_parent_median(self) -> None:
        snap, columns = self._setup()
        assert [c.key for c in columns] == ["A", "B", "C"]
        positions = {"P": (0.0, 50.0), "Q": (200.0, 50.0)}
        ordered = sort_columns_by_median(snap, columns, positions, "down")
        # C under P (25), A under Q (225), unconnected B last
        assert [c.key for c in ordered] == ["C", "A", "B"]

    def test_up_without_children_keeps_order(self) -> None:
        snap, columns = self._setup()
        positions = {"P": (0.0, 50.0), "Q": (200.0, 50.0)}
        ordered = sort_columns_by_median(snap, columns, positions, "up")
        assert [c.key for c in ordered] == ["A", "B", "C"]


class TestLongEdges:
    def _setup(self) -> tuple[GraphSnapshot, list]:
        snap = GraphSnapshot(
            units=[_unit("1", "p1"), _unit("2", "p1"), _unit("3", "p1"),
                   _unit("M", "p2"), _unit("Z", "p3")],
            relations=[_rel("2", "Z"), _rel("1", "M")],
            phases=_phases("p1", "p2", "p3"),
        )
        ranks = assign_phase_ranks(snap)["p1"]
        columns = build_phase_columns(snap, "p1", ranks, LayoutEngineConfig()).columns
        return snap, columns

    def test_find_long_edge_units(self) -> None:
        snap, _ = self._setup()
        assert find_long_edge_units(snap) == {"2", "Z"}

    def test_moves_left_when_neighbours_are_left(self) -> None:
        snap, columns = self._setup()
        positions = {"1": (0.0, 0.0), "2": (100.0, 0.0), "3": (200.0, 0.0),
                     "Z": (0.0, 300.0)}
        ordered = move_long_edges_to_outer(snap, columns, positions, {"2", "Z"})
        assert [c.key for c in ordered] == ["2", "1", "3"]

    def test_moves_right_when_neighbours_are_right(self) -> None:
        snap, columns = self._setup()
        positions = {"1": (0.0, 0.0), "2": (100.0, 0.0), "3": (200.0, 0.0),
                     "Z": (300.0, 300.0)}
        ordered = move_long_edges_to_outer(snap, columns, positions, {"2", "Z"})
        assert [c.key for c in ordered] == ["1", "3", "2"]

    def test_two_columns_untouched(self) -> None:
        snap, columns = self._setup()
        ordered = move_long_edges_to_outer(snap, columns[:2], {}, {"2", "Z"})
        assert [c.key for c in ordered] == ["1", "2"]


# ===================================================================
# Full layout
# ===================================================================

def _site() -> GraphSnapshot:
    return GraphSnapshot(
        units=[
            _unit("1", "p1"), _unit("2", "p1"), _unit("3", "p1"),
            _unit("4", "p2"), _unit("5", "p2"), _unit("6", "p2"),
            _unit("7", "p3"), _unit("8", "p3"), _unit("9"),
        ],
        relations=[
            _rel("1", "2"), _rel("1", "4"), _rel("2", "5"), _rel("3", "6"),
            _rel("4", "7"), _rel("5", "7"), _rel("6", "8"), _rel("3", "8"),
            _rel("4", "5"), _rel("1", "ghost"),
        ],
        phases=_phases("p1", "p2", "p3"),
        objects=[StratObject(id="o1", name="Wall", node_ids=("4", "5"))],
    )


class TestComputeLayout:
    def test_exact_positions_for_two_loose_units(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1", "SU 1"), _unit("B", "p1", "SU 2")],
            relations=[_rel("A", "B")],
            phases=_phases("p1"),
        )
        positions = compute_layout(snap)
        # total width 50 + 20 + 50 centered on 400 -> starts at 340
        assert positions == {"A": (340, 50), "B": (410, 128)}

    def test_object_column_stacks_vertically(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1", "SU 1"), _unit("B", "p1", "SU 2")],
            relations=[_rel("A", "B")],
            phases=_phases("p1"),
            objects=[StratObject(id="o1", name="Wall", node_ids=("A", "B"))],
        )
        positions = compute_layout(snap)
        assert positions == {"A": (375, 50), "B": (375, 128)}

    def test_object_column_gets_wider_gap(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p1"), _unit("C", "p1")],
            phases=_phases("p1"),
            objects=[StratObject(id="o1", name="Wall", node_ids=("A",))],
        )
        positions = compute_layout(snap)
        # [o1 | B | C]: 50 + 60 + 50 + 20 + 50 = 230 -> starts at 400 - 115
        assert positions == {"A": (285, 50), "B": (395, 50), "C": (465, 50)}
        assert positions["B"][0] - (positions["A"][0] + 50) == 3 * 20
        assert positions["C"][0] - (positions["B"][0] + 50) == 20

    def test_phases_stack_with_phase_gap(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p2"), _unit("C")],
            relations=[_rel("A", "B")],
            phases=_phases("p1", "p2"),
        )
        positions = compute_layout(snap)
        assert positions["A"] == (375, 50)
        assert positions["B"] == (375, 148)   # 50 + 28 + 70
        assert positions["C"] == (375, 246)   # unphased band last

    def test_custom_gaps(self) -> None:
        snap = GraphSnapshot(
            units=[_unit("A", "p1"), _unit("B", "p1"), _unit("C", "p2")],
            relations=[_rel("A", "B"), _rel("B", "C")],
            phases=_phases("p1", "p2"),
            objects=[StratObject(id="o1", name="Wall", node_ids=("A", "B"))],
        )
        cfg = LayoutEngineConfig(vertical_gap=10, phase_gap=100)
        positions = compute_layout(snap, cfg)
        assert positions["B"][1] == 50 + 38
        assert positions["C"][1] == 50 + 38 + 28 + 100

    def test_every_unit_is_placed(self) -> None:
        snap = _site()
        positions = compute_layout(snap)
        assert set(positions) == {u.id for u in snap.units}

    def test_rank_monotonicity(self) -> None:
        snap = _site()
        positions = compute_layout(snap)
        ranks = assign_phase_ranks(snap)
        for rel in snap.valid_relations:
            src = snap.unit(rel.source_id)
            tgt = snap.unit(rel.target_id)
            if src.phase_id != tgt.phase_id:
                continue
            group = ranks[src.phase_id or "__none__"]
            assert group[tgt.id] >= group[src.id] + 1
            assert positions[tgt.id][1] > positions[src.id][1]

    def test_younger_phases_above_older(self) -> None:
        snap = _site()
        positions = compute_layout(snap)
        bottom_p1 = max(positions[u][1] for u in ("1", "2", "3"))
        top_p2 = min(positions[u][1] for u in ("4", "5", "6"))
        assert bottom_p1 < top_p2

    def test_no_overlaps_within_a_row(self) -> None:
        snap = _site()
        positions = compute_layout(snap)
        rows: dict[float, list[tuple[float, float]]] = {}
        for uid, (x, y) in positions.items():
            rows.setdefault(y, []).append((x, x + snap.unit(uid).width))
        for spans in rows.values():
            spans.sort()
            for (_, right), (left, _) in zip(spans, spans[1:]):
                assert right <= left

    def test_deterministic(self) -> None:
        first = compute_layout(_site())
        second = compute_layout(_site())
        assert first == second

    def test_empty_graph(self) -> None:
        assert compute_layout(GraphSnapshot()) == {}

    def test_input_is_not_modified(self) -> None:
        snap = _site()
        before = [(u.id, u.x, u.y) for u in snap.units]
        compute_layout(snap)
        assert [(u.id, u.x, u.y) for u in snap.units] == before
