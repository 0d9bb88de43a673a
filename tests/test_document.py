"""Tests for the editable matrix document: edits, history and persistence."""

import json

import pytest

from harris_mcp.document import MAX_HISTORY, DocumentError, MatrixDocument
from harris_mcp.models import UnitType


def _doc_with_units(*labels: str) -> MatrixDocument:
    doc = MatrixDocument("test")
    for label in labels:
        doc.add_unit(label=label, record=False)
    return doc


# ===================================================================
# Units & labels
# ===================================================================

class TestUnits:
    def test_ids_and_default_labels(self) -> None:
        doc = MatrixDocument()
        a = doc.add_unit()
        b = doc.add_unit(label="Wall", type="structure")
        assert (a.id, a.label) == ("1", "SU 001")
        assert (b.id, b.label, b.type) == ("2", "Wall", UnitType.STRUCTURE)
        assert doc.next_id == 3

    def test_generated_label_skips_taken(self) -> None:
        doc = _doc_with_units("SU 001", "SU 003", "SU 004")
        # next_id is 4, so SU 004 is taken and SU 005 is free
        label = doc.generate_unique_label()
        assert label == "SU 005"
        assert doc.add_unit().label == "SU 005"

    def test_duplicate_label_check(self) -> None:
        doc = _doc_with_units("SU 001")
        assert doc.is_label_duplicate(" su 001 ")
        assert not doc.is_label_duplicate("SU 001", exclude_id="1")
        assert not doc.is_label_duplicate("SU 002")

    def test_update_unit(self) -> None:
        doc = _doc_with_units("SU 001")
        unit = doc.update_unit("1", description="Topsoil", type="deposit")
        assert unit.description == "Topsoil"
        assert unit.type is UnitType.DEPOSIT
        assert doc.get_unit("1") == unit

    def test_update_unknown_field(self) -> None:
        doc = _doc_with_units("SU 001")
        with pytest.raises(DocumentError, match="Unknown unit field"):
            doc.update_unit("1", colour="red")

    def test_update_missing_unit(self) -> None:
        with pytest.raises(DocumentError, match="not found"):
            MatrixDocument().update_unit("9", label="x")

    def test_search(self) -> None:
        doc = _doc_with_units("SU 001", "Wall")
        doc.update_unit("1", description="Wall foundation cut", record=False)
        assert [u.id for u in doc.search("wall")] == ["1", "2"]
        assert doc.search("   ") == []

    def test_delete_cascades(self) -> None:
        doc = _doc_with_units("A", "B", "C")
        doc.add_relation("1", "2")
        doc.add_relation("2", "3")
        obj = doc.add_object()
        doc.add_units_to_object(obj.id, ["1", "2"])
        assert doc.delete_units(["2", "missing"]) == 1
        assert [u.id for u in doc.units] == ["1", "3"]
        assert doc.relations == []
        assert doc.objects[0].node_ids == ("1",)

    def test_delete_nothing_records_nothing(self) -> None:
        doc = _doc_with_units("A")
        assert doc.delete_units(["missing"]) == 0
        assert not doc.can_undo

    def test_apply_positions(self) -> None:
        doc = _doc_with_units("A", "B")
        assert doc.apply_positions({"1": (10, 20), "ghost": (0, 0)}) == 1
        assert (doc.get_unit("1").x, doc.get_unit("1").y) == (10, 20)
        assert doc.can_undo


# ===================================================================
# Relations
# ===================================================================

class TestRelations:
    def test_add_relation(self) -> None:
        doc = _doc_with_units("A", "B")
        rel = doc.add_relation("1", "2")
        assert (rel.id, rel.source_id, rel.target_id) == ("e1-2", "1", "2")

    def test_self_loop_rejected(self) -> None:
        doc = _doc_with_units("A")
        with pytest.raises(DocumentError, match="itself"):
            doc.add_relation("1", "1")

    def test_duplicate_in_either_direction_rejected(self) -> None:
        doc = _doc_with_units("A", "B")
        doc.add_relation("1", "2")
        with pytest.raises(DocumentError, match="already exists"):
            doc.add_relation("1", "2")
        with pytest.raises(DocumentError, match="already exists"):
            doc.add_relation("2", "1")

    def test_unknown_unit_rejected(self) -> None:
        doc = _doc_with_units("A")
        with pytest.raises(DocumentError, match="not found"):
            doc.add_relation("1", "7")

    def test_delete_relations(self) -> None:
        doc = _doc_with_units("A", "B", "C")
        doc.add_relation("1", "2")
        doc.add_relation("2", "3")
        assert doc.delete_relations(["e1-2", "nope"]) == 1
        assert [r.id for r in doc.relations] == ["e2-3"]


# ===================================================================
# Phases & objects
# ===================================================================

class TestPhases:
    def test_add_phase_defaults(self) -> None:
        doc = MatrixDocument()
        p1 = doc.add_phase()
        p2 = doc.add_phase(name="Roman", color="#000000")
        assert (p1.id, p1.name) == ("1", "Phase 1")
        assert (p2.id, p2.name, p2.color) == ("2", "Roman", "#000000")

    def test_phase_id_skips_existing(self) -> None:
        doc = MatrixDocument()
        doc.add_phase()
        doc.add_phase()
        doc.delete_phase("1")
        assert doc.add_phase().id == "3"

    def test_delete_phase_unassigns_units(self) -> None:
        doc = _doc_with_units("A", "B")
        phase = doc.add_phase()
        doc.assign_phase(["1"], phase.id)
        assert doc.get_unit("1").phase_id == phase.id
        doc.delete_phase(phase.id)
        assert doc.get_unit("1").phase_id == ""
        assert doc.phases == []

    def test_assign_unknown_phase(self) -> None:
        doc = _doc_with_units("A")
        with pytest.raises(DocumentError, match="Phase 'x' not found"):
            doc.assign_phase(["1"], "x")

    def test_reorder_phase(self) -> None:
        doc = MatrixDocument()
        for _ in range(3):
            doc.add_phase()
        doc.reorder_phase(2, 0)
        assert [p.id for p in doc.phases] == ["3", "1", "2"]
        with pytest.raises(DocumentError, match="out of range"):
            doc.reorder_phase(0, 3)

    def test_update_phase_keeps_unset_fields(self) -> None:
        doc = MatrixDocument()
        phase = doc.add_phase(color="#111111")
        updated = doc.update_phase(phase.id, name="Medieval")
        assert (updated.name, updated.color) == ("Medieval", "#111111")

    def test_phase_y_ranges(self) -> None:
        doc = MatrixDocument()
        phase = doc.add_phase()
        doc.add_unit(label="A", phase_id=phase.id, y=50, record=False)
        doc.add_unit(label="B", phase_id=phase.id, y=128, record=False)
        doc.add_unit(label="C", y=500, record=False)
        assert doc.phase_y_ranges() == {phase.id: (50, 156)}


class TestObjects:
    def test_add_object_defaults(self) -> None:
        doc = MatrixDocument()
        obj = doc.add_object()
        assert (obj.id, obj.name, obj.node_ids) == ("o1", "Object 1", ())

    def test_membership_is_deduplicated(self) -> None:
        doc = _doc_with_units("A", "B")
        obj = doc.add_object()
        doc.add_units_to_object(obj.id, ["1", "2"])
        obj = doc.add_units_to_object(obj.id, ["2", "1"])
        assert obj.node_ids == ("1", "2")
        assert doc.objects_for_unit("2") == [obj]

    def test_remove_unit_and_delete(self) -> None:
        doc = _doc_with_units("A", "B")
        obj = doc.add_object(name="Wall")
        doc.add_units_to_object(obj.id, ["1", "2"])
        assert doc.remove_unit_from_object(obj.id, "1").node_ids == ("2",)
        doc.delete_object(obj.id)
        assert doc.objects == []
        with pytest.raises(DocumentError, match="Object 'o1' not found"):
            doc.delete_object(obj.id)


# ===================================================================
# Undo / redo
# ===================================================================

class TestHistory:
    def test_undo_redo(self) -> None:
        doc = MatrixDocument()
        doc.add_unit(label="A")
        doc.add_unit(label="B")
        assert doc.undo()
        assert [u.label for u in doc.units] == ["A"]
        assert doc.next_id == 2
        assert doc.redo()
        assert [u.label for u in doc.units] == ["A", "B"]
        assert not doc.redo()

    def test_new_edit_clears_redo(self) -> None:
        doc = MatrixDocument()
        doc.add_unit(label="A")
        doc.undo()
        assert doc.can_redo
        doc.add_unit(label="B")
        assert not doc.can_redo

    def test_nothing_to_undo(self) -> None:
        assert not MatrixDocument().undo()

    def test_history_is_capped(self) -> None:
        doc = MatrixDocument()
        for i in range(MAX_HISTORY + 10):
            doc.add_unit(label=f"U{i}")
        undone = 0
        while doc.undo():
            undone += 1
        assert undone == MAX_HISTORY
        assert len(doc.units) == 10


# ===================================================================
# Persistence
# ===================================================================

class TestPersistence:
    def test_json_round_trip(self) -> None:
        doc = _doc_with_units("A", "B")
        phase = doc.add_phase(name="Modern")
        doc.assign_phase(["1"], phase.id)
        doc.add_relation("1", "2")
        obj = doc.add_object(name="Wall")
        doc.add_units_to_object(obj.id, ["2"])
        doc.update_unit("2", geometry={"type": "Polygon", "coordinates": []})

        data = json.loads(doc.to_json())
        assert data["version"] == "1.0"
        assert data["nextId"] == 3
        assert data["edges"] == [{"id": "e1-2", "source": "1", "target": "2"}]
        assert data["objects"][0]["nodeIds"] == ["2"]
        assert data["nodes"][0]["phase"] == phase.id
        assert "exportDate" in data

        loaded = MatrixDocument.from_dict(data, name="copy")
        assert loaded.name == "copy"
        assert loaded.snapshot().units == doc.snapshot().units
        assert loaded.relations == doc.relations
        assert loaded.phases == doc.phases
        assert loaded.objects == doc.objects
        assert not loaded.can_undo

    def test_next_id_from_numeric_ids(self) -> None:
        text = json.dumps({
            "nodes": [{"id": "7", "label": "A"}, {"id": "abc", "label": "B"}],
            "edges": [],
        })
        doc = MatrixDocument.from_json(text)
        assert doc.next_id == 8
        assert doc.add_unit().id == "8"

    def test_next_id_ignores_non_ascii_digits(self) -> None:
        doc = MatrixDocument.from_dict({
            "nodes": [{"id": "²", "label": "A"}, {"id": "4", "label": "B"}],
            "edges": [],
        })
        assert doc.next_id == 5

    def test_non_numeric_coordinate(self) -> None:
        with pytest.raises(DocumentError, match="Invalid file format"):
            MatrixDocument.from_dict({
                "nodes": [{"id": "1", "label": "SU 1", "x": "abc"}],
                "edges": [],
            })

    def test_missing_optional_sections(self) -> None:
        doc = MatrixDocument.from_dict({"nodes": [{"id": 1, "label": "A"}], "edges": []})
        assert doc.units[0].id == "1"
        assert doc.units[0].type is UnitType.LAYER
        assert doc.phases == [] and doc.objects == []

    def test_dangling_relations_are_kept(self) -> None:
        doc = MatrixDocument.from_dict({
            "nodes": [{"id": "1", "label": "A"}],
            "edges": [{"source": "1", "target": "9"}],
        })
        assert doc.relations[0].id == "e1-9"
        assert doc.snapshot().valid_relations == []

    @pytest.mark.parametrize("payload", [
        [],
        {"nodes": []},
        {"nodes": "x", "edges": []},
    ])
    def test_invalid_structure(self, payload) -> None:
        with pytest.raises(DocumentError, match="Invalid file format"):
            MatrixDocument.from_dict(payload)

    def test_invalid_entries(self) -> None:
        with pytest.raises(DocumentError, match="Invalid file format"):
            MatrixDocument.from_dict({"nodes": [{"label": "no id"}], "edges": []})

    def test_invalid_json(self) -> None:
        with pytest.raises(DocumentError, match="Invalid JSON"):
            MatrixDocument.from_json("{not json")
