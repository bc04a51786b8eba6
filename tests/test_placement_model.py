import unittest

from services import placement


UNIT = {"id": 7, "kind": "vinyl", "customer_id": 3, "customer_name": "Lakeside Floors"}


class PlacementModelTests(unittest.TestCase):
    def test_make_placement_records_owner_and_rotation_flag(self):
        record = placement.make_placement(UNIT, 2, 5, 4, 8, rotation=270)

        self.assertEqual(record["unit_id"], 7)
        self.assertEqual(record["kind"], "vinyl")
        self.assertEqual(record["customer_name"], "Lakeside Floors")
        self.assertEqual(record["rotation"], 90)
        self.assertIsNone(record["stack_id"])
        self.assertIsNone(record["stack_position"])

    def test_touching_edges_do_not_overlap(self):
        a = placement.make_placement(UNIT, 0, 0, 4, 4)
        b = placement.make_placement(UNIT, 4, 0, 4, 4)
        c = placement.make_placement(UNIT, 3, 3, 4, 4)

        self.assertEqual(placement.footprint(a), (0, 0, 4, 4))
        self.assertFalse(placement.footprints_overlap(a, b))
        self.assertTrue(placement.footprints_overlap(a, c))

    def test_same_instance_needs_matching_stack_position(self):
        bottom = placement.make_placement(UNIT, 0, 0, 4, 4, stack_id=1, stack_position=1)
        top = placement.make_placement(UNIT, 0, 0, 4, 4, stack_id=1, stack_position=2)

        self.assertTrue(placement.is_same_origin(bottom, top))
        self.assertFalse(placement.is_same_instance(bottom, top))
        self.assertTrue(placement.is_same_instance(top, dict(top)))

    def test_fits_grid(self):
        inside = placement.make_placement(UNIT, 4, 49, 4, 4)
        outside = placement.make_placement(UNIT, 5, 0, 4, 4)

        self.assertTrue(placement.fits_grid(inside, 8, 53))
        self.assertFalse(placement.fits_grid(outside, 8, 53))

    def test_toggle_rotation(self):
        self.assertEqual(placement.toggle_rotation(0), 90)
        self.assertEqual(placement.toggle_rotation(90), 0)
        self.assertFalse(placement.rotation_is_rotated(180))
        self.assertTrue(placement.rotation_is_rotated(270))

    def test_normalize_placement_accepts_legacy_keys(self):
        record = placement.normalize_placement(
            {
                "x": "1",
                "y": 2,
                "width": 4,
                "length": 4,
                "skidId": 11,
                "type": "Skid",
                "customerId": 5,
                "customerName": "North Yard",
                "rotation": 45,
                "stackId": 3,
                "stackPosition": 2,
            }
        )

        self.assertEqual(record["unit_id"], 11)
        self.assertEqual(record["kind"], "skid")
        self.assertEqual(record["customer_id"], 5)
        self.assertEqual(record["rotation"], 0)
        self.assertEqual(record["stack_id"], 3)
        self.assertEqual(record["stack_position"], 2)

    def test_normalize_placement_rejects_unusable_rows(self):
        base = {
            "x": 0,
            "y": 0,
            "width": 4,
            "length": 4,
            "unit_id": 1,
            "kind": "skid",
            "customer_id": 1,
            "customer_name": "A",
        }
        self.assertIsNotNone(placement.normalize_placement(base))
        self.assertIsNone(placement.normalize_placement({**base, "x": -1}))
        self.assertIsNone(placement.normalize_placement({**base, "width": 0}))
        self.assertIsNone(placement.normalize_placement({**base, "kind": "crate"}))
        self.assertIsNone(placement.normalize_placement({**base, "customer_name": " "}))
        self.assertIsNone(placement.normalize_placement("not a row"))

    def test_stack_position_is_dropped_without_stack_id(self):
        record = placement.normalize_placement(
            {
                "x": 0,
                "y": 0,
                "width": 4,
                "length": 4,
                "unit_id": 1,
                "kind": "skid",
                "customer_id": 1,
                "customer_name": "A",
                "stack_position": 4,
            }
        )
        self.assertIsNone(record["stack_id"])
        self.assertIsNone(record["stack_position"])

    def test_to_document_omits_missing_stack_keys(self):
        free = placement.make_placement(UNIT, 0, 0, 4, 4)
        stacked = placement.make_placement(UNIT, 0, 0, 4, 4, stack_id=2, stack_position=1)

        self.assertNotIn("stack_id", placement.to_document(free))
        self.assertEqual(placement.to_document(stacked)["stack_id"], 2)


if __name__ == "__main__":
    unittest.main()
