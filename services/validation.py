from services.layout_errors import LayoutValidationError
from services.placement import (
    KINDS,
    ROTATION_DEGREES,
    fits_grid,
    footprints_overlap,
    normalize_placement,
)
from services.stack_resolver import normalize_stack_positions


def _label(field_name, label=None):
    return label or field_name.replace("_", " ").title()


def validate_required(value, field_name, errors, label=None):
    if not value:
        errors[field_name] = f"{_label(field_name, label)} is required."


def validate_positive_int(value, field_name, errors, label=None):
    if value is None or value == "":
        errors[field_name] = f"{_label(field_name, label)} is required."
        return
    if isinstance(value, bool) or not str(value).isdigit() or int(value) <= 0:
        errors[field_name] = f"{_label(field_name, label)} must be a positive number."


def validate_non_negative_int(value, field_name, errors, label=None):
    if value is None or value == "":
        errors[field_name] = f"{_label(field_name, label)} is required."
        return
    if isinstance(value, bool) or not str(value).isdigit():
        errors[field_name] = f"{_label(field_name, label)} must be zero or a positive number."


def validate_choice(value, field_name, choices, errors, label=None):
    if value not in choices:
        allowed = ", ".join(str(choice) for choice in choices)
        errors[field_name] = f"{_label(field_name, label)} must be one of: {allowed}."


def _validate_layout_item(item, index, errors):
    prefix = f"placements.{index}"
    if not isinstance(item, dict):
        errors[prefix] = f"Placement {index} must be an object."
        return

    kind = str(item.get("kind") or item.get("type") or "").strip().lower()
    validate_choice(kind, f"{prefix}.kind", KINDS, errors, label="Kind")
    validate_non_negative_int(item.get("x"), f"{prefix}.x", errors, label="X")
    validate_non_negative_int(item.get("y"), f"{prefix}.y", errors, label="Y")
    validate_positive_int(item.get("width"), f"{prefix}.width", errors, label="Width")
    validate_positive_int(item.get("length"), f"{prefix}.length", errors, label="Length")
    validate_positive_int(item.get("unit_id"), f"{prefix}.unit_id", errors, label="Unit ID")
    validate_positive_int(
        item.get("customer_id"),
        f"{prefix}.customer_id",
        errors,
        label="Customer ID",
    )
    customer_name = item.get("customer_name")
    if not isinstance(customer_name, str) or not customer_name.strip():
        errors[f"{prefix}.customer_name"] = "Customer Name is required."

    rotation = item.get("rotation", 0)
    validate_choice(rotation, f"{prefix}.rotation", ROTATION_DEGREES, errors, label="Rotation")

    if item.get("stack_id") is not None:
        validate_positive_int(item.get("stack_id"), f"{prefix}.stack_id", errors, label="Stack ID")
        validate_positive_int(
            item.get("stack_position"),
            f"{prefix}.stack_position",
            errors,
            label="Stack position",
        )


def validate_layout_document(items, grid_width, grid_length):
    """Validate a flat placement list and return it normalized.

    Stack positions are densified the same way the editor numbers them. Raises
    ``LayoutValidationError`` with a field -> message map.
    """
    if not isinstance(items, list):
        raise LayoutValidationError(
            "Layout must be a list of placements.",
            {"placements": "Layout must be a list of placements."},
        )

    errors = {}
    for index, item in enumerate(items):
        _validate_layout_item(item, index, errors)
    if errors:
        raise LayoutValidationError("Invalid layout placements.", errors)

    placements = [normalize_placement(item) for item in items]
    for index, placement in enumerate(placements):
        if not fits_grid(placement, grid_width, grid_length):
            errors[f"placements.{index}"] = (
                f"Placement {index} does not fit the {grid_width}x{grid_length} grid."
            )

    origins = {}
    stack_origins = {}
    for index, placement in enumerate(placements):
        origin = (placement["x"], placement["y"])
        stack_id = placement["stack_id"]
        if stack_id is not None:
            first_origin = stack_origins.setdefault(stack_id, origin)
            if first_origin != origin:
                errors[f"placements.{index}.stack_id"] = (
                    f"Stack {stack_id} has items with different positions."
                )
        sharing = origins.setdefault(origin, stack_id)
        if sharing != stack_id or (stack_id is None and sharing is None and _count_at(placements, origin) > 1):
            errors[f"placements.{index}.stack_id"] = (
                f"Placements at ({origin[0]}, {origin[1]}) must share one stack."
            )

    for index, placement in enumerate(placements):
        for other_index in range(index + 1, len(placements)):
            other = placements[other_index]
            if (placement["x"], placement["y"]) == (other["x"], other["y"]):
                continue
            if footprints_overlap(placement, other):
                errors[f"placements.{other_index}"] = (
                    f"Placement {other_index} overlaps placement {index}."
                )

    if errors:
        raise LayoutValidationError("Invalid layout placements.", errors)
    return normalize_stack_positions(placements)


def _count_at(placements, origin):
    return sum(1 for p in placements if (p["x"], p["y"]) == origin)
