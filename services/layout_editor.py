import logging
import math
import threading

from services import stack_resolver
from services.catalog import (
    DIRECTION_INCOMING,
    DIRECTION_OUTGOING,
    DIRECTIONS,
    normalize_direction,
)
from services.layout_errors import (
    CapacityExceededError,
    InvalidPlacementError,
    UnknownUnitError,
)
from services.layout_settings import get_grid_dimensions
from services.placement import (
    ROTATION_NATIVE,
    ROTATION_ROTATED,
    copy_placement,
    is_same_instance,
    is_same_origin,
    make_placement,
    normalize_kind,
    rotation_is_rotated,
    to_document,
    toggle_rotation,
)

logger = logging.getLogger(__name__)

MOVE_UP = "up"
MOVE_DOWN = "down"
SOURCE_CATALOG = "catalog"
SOURCE_ROTATE = "rotate"
SOURCE_MOVE = "move"


class EditorState:
    """Everything one editing session owns for a truckload."""

    def __init__(self, truckload_id, units=None):
        self.truckload_id = truckload_id
        self.units = dict(units or {})
        self.layouts = {direction: [] for direction in DIRECTIONS}
        self.stacks = {direction: [] for direction in DIRECTIONS}
        self.next_stack_ids = {direction: 1 for direction in DIRECTIONS}
        self.rotation_memory = {}
        self.selection = None
        self.preview = None
        self.picked_up = None
        self.active_direction = DIRECTION_OUTGOING


def _snap(value):
    try:
        return int(math.floor(float(value)))
    except (TypeError, ValueError):
        raise InvalidPlacementError(f"Cell coordinate {value!r} is not a number.")


def _clamp(value, low, high):
    return max(low, min(value, high))


def _stack_document(stack):
    return {
        "stack_id": stack["stack_id"],
        "x": stack["x"],
        "y": stack["y"],
        "members": [to_document(member) for member in stack["members"]],
    }


class LayoutEditor:
    def __init__(self, truckload_id, units, store=None, grid_width=None, grid_length=None):
        if store is None:
            from services.layout_store import build_layout_store

            store = build_layout_store()
        if grid_width is None or grid_length is None:
            grid = get_grid_dimensions()
            grid_width = grid_width or grid["grid_width"]
            grid_length = grid_length or grid["grid_length"]
        self.state = EditorState(truckload_id, units)
        self.store = store
        self.grid_width = int(grid_width)
        self.grid_length = int(grid_length)
        self._lock = threading.RLock()

    @property
    def truckload_id(self):
        return self.state.truckload_id

    # Internal helpers. Callers hold the lock.

    def _direction(self, direction=None, fallback=None):
        if direction is None or direction == "":
            return fallback or self.state.active_direction
        return normalize_direction(direction)

    def _unit(self, unit_id):
        try:
            key = int(unit_id)
        except (TypeError, ValueError):
            raise UnknownUnitError(unit_id)
        unit = self.state.units.get(key)
        if unit is None:
            raise UnknownUnitError(unit_id)
        return unit

    def _placed_count(self, unit_id, direction):
        return sum(1 for p in self.state.layouts[direction] if p["unit_id"] == unit_id)

    def _take_stack_id(self, direction, layout):
        stack_id = max(
            self.state.next_stack_ids[direction],
            stack_resolver.next_stack_id(layout),
        )
        self.state.next_stack_ids[direction] = stack_id + 1
        return stack_id

    def _find_instance(self, layout, placement):
        probe = {
            "unit_id": placement.get("unit_id"),
            "x": placement.get("x"),
            "y": placement.get("y"),
            "stack_position": placement.get("stack_position"),
        }
        if probe["stack_position"] is not None:
            for existing in layout:
                if is_same_instance(existing, probe):
                    return existing
            return None
        # Without a level, the topmost copy of the unit at that cell is the one meant.
        matches = [
            existing
            for existing in layout
            if existing["unit_id"] == probe["unit_id"] and is_same_origin(existing, probe)
        ]
        if not matches:
            return None
        return max(matches, key=lambda p: p["stack_position"] or 0)

    def _commit(self, direction, layout):
        # Stacks are always derived from the flat list, never patched.
        stacks = stack_resolver.rebuild_stacks(layout)
        self.state.layouts[direction] = layout
        self.state.stacks[direction] = stacks

    def _save(self, direction):
        self.store.save_immediate(
            self.state.truckload_id,
            direction,
            [copy_placement(p) for p in self.state.layouts[direction]],
        )

    def _land(self, layout, candidate, direction, reuse_stack_id=None):
        """Return ``layout`` with ``candidate`` added on top of whatever sits at its origin."""
        occupants = [p for p in layout if is_same_origin(p, candidate)]
        if not occupants:
            stack_id = reuse_stack_id
            in_use = {p["stack_id"] for p in layout}
            if stack_id is None or stack_id in in_use:
                stack_id = self._take_stack_id(direction, layout)
            landed = copy_placement(candidate, stack_id=stack_id, stack_position=1)
            return layout + [landed], landed

        stack_id = next(
            (p["stack_id"] for p in occupants if p["stack_id"] is not None),
            None,
        )
        if stack_id is None:
            stack_id = self._take_stack_id(direction, layout)
        top = max(
            (p["stack_position"] or 0 for p in occupants if p["stack_id"] == stack_id),
            default=0,
        )

        updated = []
        for existing in layout:
            if is_same_origin(existing, candidate) and existing["stack_id"] != stack_id:
                top += 1
                existing = copy_placement(existing, stack_id=stack_id, stack_position=top)
            updated.append(existing)
        landed = copy_placement(candidate, stack_id=stack_id, stack_position=top + 1)
        updated.append(landed)
        return stack_resolver.normalize_stack_positions(updated), landed

    def _selection_for_unit(self, unit, direction):
        rotated = bool(self.state.rotation_memory.get(unit["id"], False))
        width, length = unit["width"], unit["length"]
        if rotated:
            width, length = length, width
        return {
            "unit_id": unit["id"],
            "kind": unit.get("kind"),
            "direction": direction,
            "width": width,
            "length": length,
            "rotation": ROTATION_ROTATED if rotated else ROTATION_NATIVE,
            "source": SOURCE_CATALOG,
        }

    def _pick_up(self, placement, direction, rotate):
        restored = self._restore_picked_up()
        if restored:
            self._save(restored[0])
        layout = self.state.layouts[direction]
        target = self._find_instance(layout, placement)
        if target is None:
            logger.debug(
                "No placement of unit %s at (%s, %s) in %s layout of truckload %s.",
                placement.get("unit_id"),
                placement.get("x"),
                placement.get("y"),
                direction,
                self.state.truckload_id,
            )
            return None
        unit = self._unit(target["unit_id"])

        remaining = [p for p in layout if p is not target]
        self._commit(direction, stack_resolver.normalize_stack_positions(remaining))

        rotated_before = self.state.rotation_memory.get(unit["id"])
        width, length, rotation = target["width"], target["length"], target["rotation"]
        if rotate:
            width, length = length, width
            rotation = toggle_rotation(rotation)
            self.state.rotation_memory[unit["id"]] = not self.state.rotation_memory.get(
                unit["id"], rotation_is_rotated(target["rotation"])
            )

        self.state.picked_up = {
            "direction": direction,
            "placement": copy_placement(target),
            "rotation_memory": rotated_before,
        }
        self.state.selection = {
            "unit_id": unit["id"],
            "kind": target["kind"],
            "direction": direction,
            "width": width,
            "length": length,
            "rotation": rotation,
            "source": SOURCE_ROTATE if rotate else SOURCE_MOVE,
        }
        self.state.preview = None
        return dict(self.state.selection)

    def _restore_picked_up(self):
        picked = self.state.picked_up
        if picked is None:
            return None
        self.state.picked_up = None
        direction = picked["direction"]
        original = picked["placement"]
        unit_id = original["unit_id"]
        if picked["rotation_memory"] is None:
            self.state.rotation_memory.pop(unit_id, None)
        else:
            self.state.rotation_memory[unit_id] = picked["rotation_memory"]

        layout, landed = self._land(
            list(self.state.layouts[direction]),
            original,
            direction,
            reuse_stack_id=original["stack_id"],
        )
        self._commit(direction, layout)
        if self.state.selection and self.state.selection.get("source") != SOURCE_CATALOG:
            self.state.selection = None
        return direction, landed

    # Operations

    def select_unit(self, unit_id, kind=None, is_pickup_side=False):
        with self._lock:
            unit = self._unit(unit_id)
            if kind is not None and normalize_kind(kind) != unit.get("kind"):
                raise UnknownUnitError(unit_id)
            direction = DIRECTION_INCOMING if is_pickup_side else DIRECTION_OUTGOING
            if self._placed_count(unit["id"], direction) >= unit["quantity"]:
                return None

            restored = self._restore_picked_up()
            self.state.selection = self._selection_for_unit(unit, direction)
            self.state.active_direction = direction
            self.state.preview = None
            if restored:
                self._save(restored[0])
            return dict(self.state.selection)

    def toggle_unit_rotation(self, unit_id):
        with self._lock:
            unit = self._unit(unit_id)
            rotated = not self.state.rotation_memory.get(unit["id"], False)
            self.state.rotation_memory[unit["id"]] = rotated
            selection = self.state.selection
            if selection and selection["unit_id"] == unit["id"]:
                selection["width"], selection["length"] = selection["length"], selection["width"]
                selection["rotation"] = toggle_rotation(selection["rotation"])
            return rotated

    def set_preview(self, x, y):
        with self._lock:
            self.state.preview = {"x": _snap(x), "y": _snap(y)}
            return dict(self.state.preview)

    def clear_preview(self):
        with self._lock:
            self.state.preview = None

    def place_at(self, x, y, direction=None):
        """Drop the armed unit at cell ``(x, y)``.

        Returns the new placement, or ``None`` when the drop is rejected as an
        invalid placement. Raises ``CapacityExceededError`` when the unit has
        no quantity left in the target layout. The immediate save runs after
        the in-memory layout is committed; its ``PersistenceError`` is not
        rolled back.
        """
        with self._lock:
            selection = self.state.selection
            if selection is None:
                logger.debug("Ignoring place at (%s, %s): no unit selected.", x, y)
                return None
            direction = self._direction(direction, selection["direction"])
            unit = self._unit(selection["unit_id"])
            placed = self._placed_count(unit["id"], direction)
            if placed >= unit["quantity"]:
                logger.warning(
                    "Unit %s is fully placed in %s layout of truckload %s.",
                    unit["id"],
                    direction,
                    self.state.truckload_id,
                )
                raise CapacityExceededError(unit["id"], unit["quantity"], placed)

            try:
                layout, landed = self._try_place(selection, unit, x, y, direction)
            except InvalidPlacementError as exc:
                logger.debug("Rejected placement of unit %s: %s", unit["id"], exc)
                return None

            self._commit(direction, layout)
            self.state.selection = None
            self.state.preview = None
            self.state.picked_up = None
            self.state.active_direction = direction
            self._save(direction)
            return copy_placement(landed)

    def _try_place(self, selection, unit, x, y, direction):
        width, length = selection["width"], selection["length"]
        if width > self.grid_width or length > self.grid_length:
            raise InvalidPlacementError(
                f"{width}x{length} footprint is larger than the "
                f"{self.grid_width}x{self.grid_length} grid."
            )
        cell_x = _clamp(_snap(x), 0, self.grid_width - width)
        cell_y = _clamp(_snap(y), 0, self.grid_length - length)
        candidate = make_placement(
            unit,
            cell_x,
            cell_y,
            width,
            length,
            rotation=selection["rotation"],
        )
        candidate["kind"] = selection.get("kind") or candidate["kind"]

        layout = list(self.state.layouts[direction])
        # Same-origin neighbours are skipped, so this only trips on true overlap.
        if stack_resolver.has_collision(candidate, layout):
            raise InvalidPlacementError(
                f"({cell_x}, {cell_y}) overlaps a placement at another origin."
            )

        picked = self.state.picked_up
        reuse = None
        if picked and picked["direction"] == direction and picked["placement"]["unit_id"] == unit["id"]:
            reuse = picked["placement"]["stack_id"]
        return self._land(layout, candidate, direction, reuse_stack_id=reuse)

    def rotate(self, placement, direction=None):
        with self._lock:
            return self._pick_up(placement, self._direction(direction), rotate=True)

    def move(self, placement, direction=None):
        with self._lock:
            return self._pick_up(placement, self._direction(direction), rotate=False)

    def cancel_selection(self):
        with self._lock:
            restored = self._restore_picked_up()
            self.state.selection = None
            self.state.preview = None
            if restored is None:
                return None
            direction, landed = restored
            self._save(direction)
            return copy_placement(landed)

    def remove(self, placement, whole_stack=False, direction=None):
        with self._lock:
            direction = self._direction(direction)
            layout = self.state.layouts[direction]
            target = self._find_instance(layout, placement)
            if target is None:
                return []
            if whole_stack and target["stack_id"] is not None:
                removed = [p for p in layout if p["stack_id"] == target["stack_id"]]
            else:
                removed = [target]
            remaining = [p for p in layout if not any(p is r for r in removed)]
            self._commit(direction, stack_resolver.normalize_stack_positions(remaining))
            self._save(direction)
            return [copy_placement(p) for p in removed]

    def reorder_within_stack(self, stack_id, unit_id, move, direction=None, stack_position=None):
        move = str(move or "").strip().lower()
        if move not in (MOVE_UP, MOVE_DOWN):
            raise ValueError(f"Unknown stack move: {move!r}")
        with self._lock:
            direction = self._direction(direction)
            layout = self.state.layouts[direction]
            members = [p for p in layout if p["stack_id"] == stack_id]
            matches = [
                p
                for p in members
                if p["unit_id"] == unit_id
                and (stack_position is None or p["stack_position"] == stack_position)
            ]
            if not matches:
                return None
            target = max(matches, key=lambda p: p["stack_position"])
            neighbor_position = target["stack_position"] + (1 if move == MOVE_UP else -1)
            if neighbor_position < 1 or neighbor_position > len(members):
                return None

            swapped = []
            for existing in layout:
                if existing is target:
                    existing = copy_placement(existing, stack_position=neighbor_position)
                elif existing["stack_id"] == stack_id and existing["stack_position"] == neighbor_position:
                    existing = copy_placement(existing, stack_position=target["stack_position"])
                swapped.append(existing)
            self._commit(direction, swapped)
            self._save(direction)
            for stack in self.state.stacks[direction]:
                if stack["stack_id"] == stack_id:
                    return _stack_document(stack)
            return None

    def clear_direction(self, direction):
        with self._lock:
            direction = self._direction(direction)
            picked = self.state.picked_up
            restored = None
            if picked and picked["direction"] != direction:
                restored = self._restore_picked_up()
            self.state.picked_up = None
            self.state.selection = None
            self.state.preview = None
            self._commit(direction, [])
            self._save(direction)
            if restored:
                self._save(restored[0])

    def reload(self, direction=None):
        with self._lock:
            directions = [self._direction(direction)] if direction else list(DIRECTIONS)
            for current in directions:
                loaded = self.store.load(self.state.truckload_id, current)
                self._commit(current, loaded["placements"])
                self.state.next_stack_ids[current] = max(
                    self.state.next_stack_ids[current],
                    loaded["next_stack_id"],
                )
                picked = self.state.picked_up
                if picked and picked["direction"] == current:
                    # The stored layout still holds the picked-up unit.
                    self.state.picked_up = None
                    self.state.selection = None

    def activate(self, direction):
        with self._lock:
            direction = self._direction(direction)
            self.reload(direction)
            self.state.active_direction = direction
            return direction

    def save(self, direction=None):
        with self._lock:
            direction = self._direction(direction)
            self.store.save_debounced(
                self.state.truckload_id,
                direction,
                [copy_placement(p) for p in self.state.layouts[direction]],
            )

    def replace_units(self, units):
        with self._lock:
            self.state.units = dict(units or {})
            selection = self.state.selection
            if selection and selection["unit_id"] not in self.state.units:
                self.state.selection = None

    # Read accessors

    def layout(self, direction=None):
        with self._lock:
            direction = self._direction(direction)
            return [copy_placement(p) for p in self.state.layouts[direction]]

    def stacks(self, direction=None):
        with self._lock:
            direction = self._direction(direction)
            return [
                {**stack, "members": [copy_placement(m) for m in stack["members"]]}
                for stack in self.state.stacks[direction]
            ]

    def unit(self, unit_id):
        with self._lock:
            return dict(self._unit(unit_id))

    def units(self):
        with self._lock:
            return {unit_id: dict(unit) for unit_id, unit in self.state.units.items()}

    def placed_count(self, unit_id, direction=None):
        with self._lock:
            return self._placed_count(int(unit_id), self._direction(direction))

    def remaining_quantity(self, unit_id, direction=None):
        with self._lock:
            unit = self._unit(unit_id)
            placed = self._placed_count(unit["id"], self._direction(direction))
            return max(unit["quantity"] - placed, 0)

    def is_fully_placed(self, unit_id, direction=None):
        return self.remaining_quantity(unit_id, direction) == 0

    def is_rotated(self, unit_id):
        with self._lock:
            return bool(self.state.rotation_memory.get(int(unit_id), False))

    @property
    def selection(self):
        with self._lock:
            return dict(self.state.selection) if self.state.selection else None

    @property
    def preview(self):
        with self._lock:
            return dict(self.state.preview) if self.state.preview else None

    @property
    def active_direction(self):
        return self.state.active_direction

    def snapshot(self):
        with self._lock:
            return {
                "truckload_id": self.state.truckload_id,
                "grid": {
                    "grid_width": self.grid_width,
                    "grid_length": self.grid_length,
                },
                "active_direction": self.state.active_direction,
                "layouts": {
                    direction: [to_document(p) for p in self.state.layouts[direction]]
                    for direction in DIRECTIONS
                },
                "stacks": {
                    direction: [_stack_document(s) for s in self.state.stacks[direction]]
                    for direction in DIRECTIONS
                },
                "next_stack_ids": dict(self.state.next_stack_ids),
                "rotation_memory": {
                    str(unit_id): bool(rotated)
                    for unit_id, rotated in sorted(self.state.rotation_memory.items())
                },
                "selection": dict(self.state.selection) if self.state.selection else None,
                "preview": dict(self.state.preview) if self.state.preview else None,
                "picked_up": (
                    {
                        "direction": self.state.picked_up["direction"],
                        "placement": to_document(self.state.picked_up["placement"]),
                    }
                    if self.state.picked_up
                    else None
                ),
            }
