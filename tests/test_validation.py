import unittest

from services.layout_errors import LayoutValidationError
from services.validation import (
    validate_layout_document,
    validate_non_negative_int,
    validate_positive_int,
    validate_required,
)


def _item(unit_id, x, y, **overrides):
    item = {
        "x": x,
        "y": y,
        "width": 4,
        "length": 4,
        "unit_id": unit_id,
        "kind": "skid",
        "customer_id": 9,
        "customer_name": "Acme",
        "rotation": 0,
    }
    item.update(overrides)
    return item


class FieldValidatorTests(unittest.TestCase):
    def test_field_helpers_collect_messages(self):
        errors = {}
        validate_required("", "load_number", errors)
        validate_positive_int("0", "quantity", errors)
        validate_positive_int(True, "width", errors)
        validate_non_negative_int("-1", "x", errors)
        validate_non_negative_int(0, "y", errors)

        self.assertEqual(errors["load_number"], "Load Number is required.")
        self.assertIn("positive", errors["quantity"])
        self.assertIn("width", errors)
        self.assertIn("x", errors)
        self.assertNotIn("y", errors)


class LayoutDocumentValidationTests(unittest.TestCase):
    def test_valid_document_is_normalized(self):
        placements = validate_layout_document(
            [
                _item(1, 0, 0, stack_id=3, stack_position=5),
                _item(2, 0, 0, stack_id=3, stack_position=2),
                _item(3, 4, 0),
            ],
            8,
            53,
        )

        self.assertEqual([p["stack_position"] for p in placements], [2, 1, None])

    def test_rejects_non_list(self):
        with self.assertRaises(LayoutValidationError) as ctx:
            validate_layout_document({"x": 1}, 8, 53)
        self.assertIn("placements", ctx.exception.errors)

    def test_rejects_overlap_between_origins(self):
        with self.assertRaises(LayoutValidationError) as ctx:
            validate_layout_document([_item(1, 0, 0), _item(2, 2, 2)], 8, 53)
        self.assertIn("placements.1", ctx.exception.errors)

    def test_rejects_shared_origin_without_shared_stack(self):
        with self.assertRaises(LayoutValidationError):
            validate_layout_document([_item(1, 0, 0), _item(2, 0, 0)], 8, 53)
        with self.assertRaises(LayoutValidationError):
            validate_layout_document(
                [
                    _item(1, 0, 0, stack_id=1, stack_position=1),
                    _item(2, 0, 0, stack_id=2, stack_position=1),
                ],
                8,
                53,
            )

    def test_rejects_stack_members_on_different_cells(self):
        with self.assertRaises(LayoutValidationError) as ctx:
            validate_layout_document(
                [
                    _item(1, 0, 0, stack_id=1, stack_position=1),
                    _item(2, 4, 0, stack_id=1, stack_position=2),
                ],
                8,
                53,
            )
        self.assertIn("placements.1.stack_id", ctx.exception.errors)

    def test_rejects_bad_fields(self):
        with self.assertRaises(LayoutValidationError) as ctx:
            validate_layout_document(
                [
                    _item(1, 0, 0, rotation=45),
                    _item(2, 4, 0, width=0),
                    _item(3, 0, 8, stack_id=4),
                    _item(4, 0, 16, kind="crate"),
                ],
                8,
                53,
            )
        errors = ctx.exception.errors
        self.assertIn("placements.0.rotation", errors)
        self.assertIn("placements.1.width", errors)
        self.assertIn("placements.2.stack_position", errors)
        self.assertIn("placements.3.kind", errors)

    def test_rejects_placement_outside_grid(self):
        with self.assertRaises(LayoutValidationError) as ctx:
            validate_layout_document([_item(1, 6, 0)], 8, 53)
        self.assertIn("placements.0", ctx.exception.errors)


if __name__ == "__main__":
    unittest.main()
