"""Placement records for the trailer layout grid.

A placement is a plain dict:

    {x, y, width, length, unit_id, kind, customer_id, customer_name,
     rotation, stack_id, stack_position}

``(x, y)`` is the top-left cell of the footprint and ``width`` x ``length`` is
the footprint after rotation has been applied. ``stack_id`` and
``stack_position`` are ``None`` for a placement that was never stacked.
"""

KIND_SKID = "skid"
KIND_VINYL = "vinyl"
KINDS = (KIND_SKID, KIND_VINYL)

ROTATION_NATIVE = 0
ROTATION_ROTATED = 90
ROTATION_DEGREES = (0, 90, 180, 270)

PLACEMENT_FIELDS = (
    "x",
    "y",
    "width",
    "length",
    "unit_id",
    "kind",
    "customer_id",
    "customer_name",
    "rotation",
    "stack_id",
    "stack_position",
)

_FIELD_ALIASES = {
    "x": ("x", "x_position"),
    "y": ("y", "y_position"),
    "width": ("width",),
    "length": ("length",),
    "unit_id": ("unit_id", "item_id", "skidId", "skid_id"),
    "kind": ("kind", "type", "item_type"),
    "customer_id": ("customer_id", "customerId"),
    "customer_name": ("customer_name", "customerName"),
    "rotation": ("rotation",),
    "stack_id": ("stack_id", "stackId"),
    "stack_position": ("stack_position", "stackPosition"),
}


def _coerce_int(value, default=None):
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _first_present(raw, keys):
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def normalize_kind(value):
    kind = str(value or "").strip().lower()
    return kind if kind in KINDS else None


def rotation_is_rotated(rotation):
    return _coerce_int(rotation, 0) % 180 == 90


def toggle_rotation(rotation):
    return ROTATION_NATIVE if rotation_is_rotated(rotation) else ROTATION_ROTATED


def make_placement(unit, x, y, width, length, rotation=0, stack_id=None, stack_position=None):
    return {
        "x": int(x),
        "y": int(y),
        "width": int(width),
        "length": int(length),
        "unit_id": unit["id"],
        "kind": unit.get("kind") or KIND_SKID,
        "customer_id": unit.get("customer_id"),
        "customer_name": unit.get("customer_name") or "",
        "rotation": ROTATION_ROTATED if rotation_is_rotated(rotation) else ROTATION_NATIVE,
        "stack_id": stack_id,
        "stack_position": stack_position,
    }


def copy_placement(placement, **changes):
    copied = {field: placement.get(field) for field in PLACEMENT_FIELDS}
    copied.update(changes)
    return copied


def footprint(placement):
    x0 = placement["x"]
    y0 = placement["y"]
    return (x0, y0, x0 + placement["width"], y0 + placement["length"])


def footprints_overlap(a, b):
    ax0, ay0, ax1, ay1 = footprint(a)
    bx0, by0, bx1, by1 = footprint(b)
    horizontal = not (ax0 >= bx1 or ax1 <= bx0)
    vertical = not (ay0 >= by1 or ay1 <= by0)
    return horizontal and vertical


def is_same_origin(a, b):
    return a["x"] == b["x"] and a["y"] == b["y"]


def is_same_instance(a, b):
    # Same unit, same floor cell, same level in the stack.
    return (
        a.get("unit_id") == b.get("unit_id")
        and is_same_origin(a, b)
        and a.get("stack_position") == b.get("stack_position")
    )


def fits_grid(placement, grid_width, grid_length):
    x0, y0, x1, y1 = footprint(placement)
    return x0 >= 0 and y0 >= 0 and x1 <= grid_width and y1 <= grid_length


def normalize_placement(raw):
    if not isinstance(raw, dict):
        return None

    values = {field: _first_present(raw, keys) for field, keys in _FIELD_ALIASES.items()}

    x = _coerce_int(values["x"])
    y = _coerce_int(values["y"])
    width = _coerce_int(values["width"])
    length = _coerce_int(values["length"])
    unit_id = _coerce_int(values["unit_id"])
    kind = normalize_kind(values["kind"] or KIND_SKID)
    customer_id = _coerce_int(values["customer_id"])
    customer_name = str(values["customer_name"] or "").strip()

    if x is None or y is None or x < 0 or y < 0:
        return None
    if not width or not length or width <= 0 or length <= 0:
        return None
    if not unit_id or unit_id <= 0 or not kind:
        return None
    if not customer_id or customer_id <= 0 or not customer_name:
        return None

    rotation = _coerce_int(values["rotation"], 0)
    if rotation not in ROTATION_DEGREES:
        rotation = ROTATION_NATIVE

    stack_id = _coerce_int(values["stack_id"])
    if stack_id is not None and stack_id <= 0:
        stack_id = None
    stack_position = _coerce_int(values["stack_position"])
    if stack_position is not None and stack_position <= 0:
        stack_position = None
    if stack_id is None:
        stack_position = None

    return {
        "x": x,
        "y": y,
        "width": width,
        "length": length,
        "unit_id": unit_id,
        "kind": kind,
        "customer_id": customer_id,
        "customer_name": customer_name,
        "rotation": rotation,
        "stack_id": stack_id,
        "stack_position": stack_position,
    }


def to_document(placement):
    document = {field: placement.get(field) for field in PLACEMENT_FIELDS}
    if document["stack_id"] is None:
        document.pop("stack_id")
        document.pop("stack_position")
    return document
