import db

DIRECTION_OUTGOING = "outgoing"
DIRECTION_INCOMING = "incoming"
DIRECTIONS = (DIRECTION_OUTGOING, DIRECTION_INCOMING)
ASSIGNMENT_PICKUP = "pickup"
ASSIGNMENT_DELIVERY = "delivery"
ASSIGNMENT_TRANSFER = "transfer"
ASSIGNMENT_TYPES = (ASSIGNMENT_PICKUP, ASSIGNMENT_DELIVERY, ASSIGNMENT_TRANSFER)

_DIRECTION_ALIASES = {
    "outgoing": DIRECTION_OUTGOING,
    "delivery": DIRECTION_OUTGOING,
    "incoming": DIRECTION_INCOMING,
    "pickup": DIRECTION_INCOMING,
}
_ASSIGNMENT_DIRECTIONS = {
    ASSIGNMENT_DELIVERY: (DIRECTION_OUTGOING,),
    ASSIGNMENT_PICKUP: (DIRECTION_INCOMING,),
    # Transfer freight rides the truck in and out, so it can go on either deck plan.
    ASSIGNMENT_TRANSFER: (DIRECTION_OUTGOING, DIRECTION_INCOMING),
}


def normalize_direction(value, default=None):
    key = str(value or "").strip().lower()
    if key in _DIRECTION_ALIASES:
        return _DIRECTION_ALIASES[key]
    if default is not None:
        return default
    raise ValueError(f"Unknown layout direction: {value!r}")


def normalize_assignment_type(value):
    key = str(value or "").strip().lower()
    return key if key in ASSIGNMENT_TYPES else None


def directions_for_assignment(assignment_type):
    return _ASSIGNMENT_DIRECTIONS.get(normalize_assignment_type(assignment_type), ())


def _unit_from_row(row):
    width = int(row.get("width") or 0)
    length = int(row.get("length") or 0)
    return {
        "id": row["id"],
        "kind": row.get("kind"),
        "width": width,
        "length": length,
        "quantity": max(int(row.get("quantity") or 0), 0),
        "footage": width * length,
        "customer_id": row.get("customer_id"),
        "customer_name": row.get("customer_name") or "",
        "stop_id": row.get("stop_id"),
        "assignment_type": row.get("assignment_type"),
        "sequence_number": row.get("sequence_number"),
    }


def list_stops(truckload_id):
    stops = []
    by_id = {}
    for row in db.list_truckload_stops(truckload_id):
        stop = {
            "id": row["id"],
            "sequence_number": row.get("sequence_number"),
            "assignment_type": normalize_assignment_type(row.get("assignment_type")),
            "customer_id": row.get("customer_id"),
            "customer_name": row.get("customer_name") or "",
            "customer_address": row.get("customer_address") or "",
            "is_transfer_order": bool(row.get("is_transfer_order")),
            "units": [],
        }
        stop["directions"] = list(directions_for_assignment(stop["assignment_type"]))
        stops.append(stop)
        by_id[stop["id"]] = stop

    for row in db.list_freight_units_for_truckload(truckload_id):
        stop = by_id.get(row.get("stop_id"))
        if stop is not None:
            stop["units"].append(_unit_from_row(row))
    return stops


def stops_for_direction(stops, direction):
    direction = normalize_direction(direction)
    return [stop for stop in stops or [] if direction in (stop.get("directions") or [])]


def build_unit_index(stops, direction=None):
    selected = stops_for_direction(stops, direction) if direction else (stops or [])
    index = {}
    for stop in selected:
        for unit in stop.get("units") or []:
            index[unit["id"]] = unit
    return index
