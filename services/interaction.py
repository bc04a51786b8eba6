from services import catalog, stack_resolver
from services.placement import footprints_overlap, is_same_origin, to_document


def pointer_to_cell(px, py, cell_size):
    cell_size = int(cell_size or 0)
    if cell_size <= 0:
        raise ValueError("Cell size must be a positive number of pixels.")
    return int(float(px) // cell_size), int(float(py) // cell_size)


def preview_placement(editor, x, y, direction=None):
    """Describe what a drop at cell ``(x, y)`` would do, without changing state."""
    selection = editor.selection
    if selection is None:
        return {"armed": False}

    width, length = selection["width"], selection["length"]
    fits = width <= editor.grid_width and length <= editor.grid_length
    cell_x = max(0, min(int(x), editor.grid_width - width))
    cell_y = max(0, min(int(y), editor.grid_length - length))
    candidate = {"x": cell_x, "y": cell_y, "width": width, "length": length}

    layout = editor.layout(direction or selection["direction"])
    stacks_onto = any(is_same_origin(candidate, p) for p in layout)
    blocked_by = [
        to_document(p)
        for p in layout
        if not is_same_origin(candidate, p) and footprints_overlap(candidate, p)
    ]
    return {
        "armed": True,
        "unit_id": selection["unit_id"],
        "x": cell_x,
        "y": cell_y,
        "width": width,
        "length": length,
        "rotation": selection["rotation"],
        "fits": fits,
        "stacks": fits and stacks_onto and not blocked_by,
        "collides": bool(blocked_by),
        "blocked_by": blocked_by,
        "valid": fits and not blocked_by,
    }


def available_units_panel(editor, direction=None):
    direction = catalog.normalize_direction(direction or editor.active_direction)
    selection = editor.selection or {}
    units = editor.units()
    layout = editor.layout(direction)
    placed = {}
    for placement in layout:
        placed[placement["unit_id"]] = placed.get(placement["unit_id"], 0) + 1

    stops = {}
    for unit in units.values():
        if direction not in catalog.directions_for_assignment(unit.get("assignment_type")):
            continue
        stop = stops.setdefault(
            unit.get("stop_id"),
            {
                "stop_id": unit.get("stop_id"),
                "sequence_number": unit.get("sequence_number"),
                "assignment_type": unit.get("assignment_type"),
                "customer_id": unit.get("customer_id"),
                "customer_name": unit.get("customer_name"),
                "units": [],
            },
        )
        placed_count = placed.get(unit["id"], 0)
        stop["units"].append(
            {
                **unit,
                "placed_count": placed_count,
                "remaining": max(unit["quantity"] - placed_count, 0),
                "is_used": placed_count >= unit["quantity"],
                "is_armed": selection.get("unit_id") == unit["id"],
                "is_rotated": editor.is_rotated(unit["id"]),
            }
        )

    ordered = sorted(
        stops.values(),
        key=lambda stop: (stop["sequence_number"] or 0, stop["stop_id"] or 0),
    )
    for stop in ordered:
        stop["units"].sort(key=lambda unit: (unit.get("kind") or "", unit["id"]))
    return ordered


def stack_inspector(editor, direction=None):
    rows = []
    for stack in stack_resolver.displayed_stacks(editor.stacks(direction)):
        rows.append(
            {
                "stack_id": stack["stack_id"],
                "x": stack["x"],
                "y": stack["y"],
                "label": stack_resolver.stack_kind_label(stack),
                "height": len(stack["members"]),
                "members": [
                    {
                        "unit_id": member["unit_id"],
                        "kind": member["kind"],
                        "customer_name": member["customer_name"],
                        "width": member["width"],
                        "length": member["length"],
                        "stack_position": member["stack_position"],
                    }
                    for member in stack["members"]
                ],
            }
        )
    return rows
