import unittest

from services import interaction
from services.layout_editor import LayoutEditor


class _NullStore:
    def save_immediate(self, truckload_id, direction, placements):
        pass


def _units():
    return {
        1: {
            "id": 1,
            "kind": "skid",
            "width": 4,
            "length": 4,
            "quantity": 1,
            "customer_id": 7,
            "customer_name": "Acme",
            "stop_id": 70,
            "assignment_type": "delivery",
            "sequence_number": 2,
        },
        2: {
            "id": 2,
            "kind": "vinyl",
            "width": 4,
            "length": 8,
            "quantity": 2,
            "customer_id": 8,
            "customer_name": "Birch",
            "stop_id": 80,
            "assignment_type": "transfer",
            "sequence_number": 1,
        },
        3: {
            "id": 3,
            "kind": "skid",
            "width": 4,
            "length": 4,
            "quantity": 1,
            "customer_id": 9,
            "customer_name": "Cedar",
            "stop_id": 90,
            "assignment_type": "pickup",
            "sequence_number": 3,
        },
    }


class InteractionTests(unittest.TestCase):
    def setUp(self):
        self.editor = LayoutEditor(1, _units(), store=_NullStore(), grid_width=8, grid_length=53)

    def test_pointer_to_cell_floors(self):
        self.assertEqual(interaction.pointer_to_cell(50, 30, 24), (2, 1))
        self.assertEqual(interaction.pointer_to_cell(23.9, 0, 24), (0, 0))
        with self.assertRaises(ValueError):
            interaction.pointer_to_cell(1, 1, 0)

    def test_preview_without_selection(self):
        self.assertEqual(interaction.preview_placement(self.editor, 0, 0), {"armed": False})

    def test_preview_reports_stack_and_collision(self):
        self.editor.select_unit(1)
        self.editor.place_at(0, 0)
        self.editor.select_unit(2)

        stacking = interaction.preview_placement(self.editor, 0, 0)
        blocked = interaction.preview_placement(self.editor, 2, 2)
        clamped = interaction.preview_placement(self.editor, 9, 60)

        self.assertTrue(stacking["stacks"])
        self.assertTrue(stacking["valid"])
        self.assertTrue(blocked["collides"])
        self.assertFalse(blocked["valid"])
        self.assertEqual(blocked["blocked_by"][0]["unit_id"], 1)
        self.assertEqual((clamped["x"], clamped["y"]), (4, 45))
        self.assertEqual(self.editor.layout("outgoing")[0]["unit_id"], 1)

    def test_available_units_panel_groups_by_stop(self):
        self.editor.select_unit(1)
        self.editor.place_at(0, 0)
        self.editor.select_unit(2)
        self.editor.toggle_unit_rotation(2)

        outgoing = interaction.available_units_panel(self.editor, "outgoing")
        incoming = interaction.available_units_panel(self.editor, "incoming")

        self.assertEqual([stop["stop_id"] for stop in outgoing], [80, 70])
        used = outgoing[1]["units"][0]
        self.assertTrue(used["is_used"])
        self.assertEqual(used["remaining"], 0)
        armed = outgoing[0]["units"][0]
        self.assertTrue(armed["is_armed"])
        self.assertTrue(armed["is_rotated"])
        self.assertEqual([stop["stop_id"] for stop in incoming], [80, 90])
        self.assertFalse(incoming[1]["units"][0]["is_used"])

    def test_stack_inspector_lists_only_real_stacks(self):
        self.editor.select_unit(2)
        self.editor.place_at(0, 0)
        self.editor.select_unit(1)
        self.editor.place_at(0, 0)
        self.editor.select_unit(2)
        self.editor.place_at(4, 20)

        rows = interaction.stack_inspector(self.editor, "outgoing")

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["label"], "Skid & Vinyl")
        self.assertEqual([m["unit_id"] for m in rows[0]["members"]], [1, 2])
        self.assertEqual(rows[0]["height"], 2)


if __name__ == "__main__":
    unittest.main()
