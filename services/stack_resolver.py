from services.layout_errors import StackIntegrityError
from services.placement import (
    KIND_SKID,
    KIND_VINYL,
    copy_placement,
    footprints_overlap,
    is_same_origin,
)


def _position_sort_key(placement):
    # Members without a position were appended last and belong on top.
    position = placement.get("stack_position")
    return float("inf") if position is None else position


def _group_by_stack(placements):
    groups = {}
    for placement in placements or []:
        stack_id = placement.get("stack_id")
        if stack_id is None:
            continue
        groups.setdefault(stack_id, []).append(placement)
    return groups


def has_collision(candidate, existing):
    for other in existing or []:
        if is_same_origin(candidate, other):
            continue
        if footprints_overlap(candidate, other):
            return True
    return False


def check_stack_integrity(stacks):
    origins = {}
    for stack in stacks or []:
        stack_id = stack.get("stack_id")
        members = stack.get("members") or []
        if not members:
            raise StackIntegrityError(f"Stack {stack_id} has no members.")
        positions = [member.get("stack_position") for member in members]
        expected = list(range(len(members), 0, -1))
        if positions != expected:
            raise StackIntegrityError(
                f"Stack {stack_id} positions {positions} are not a dense run {expected}."
            )
        for member in members:
            if member.get("x") != stack.get("x") or member.get("y") != stack.get("y"):
                raise StackIntegrityError(
                    f"Stack {stack_id} has members away from its origin "
                    f"({stack.get('x')}, {stack.get('y')})."
                )
        origin = (stack.get("x"), stack.get("y"))
        if origin in origins:
            raise StackIntegrityError(
                f"Stacks {origins[origin]} and {stack_id} share origin {origin}."
            )
        origins[origin] = stack_id


def rebuild_stacks(placements):
    groups = _group_by_stack(placements)
    stacks = []
    for stack_id in sorted(groups):
        members = sorted(groups[stack_id], key=_position_sort_key, reverse=True)
        members = [copy_placement(member) for member in members]
        bottom = members[-1]
        stacks.append(
            {
                "stack_id": stack_id,
                "x": bottom["x"],
                "y": bottom["y"],
                "members": members,
            }
        )
    check_stack_integrity(stacks)
    return stacks


def find_stack_at(x, y, placements):
    for stack in rebuild_stacks(placements):
        if stack["x"] == x and stack["y"] == y:
            return stack
    return None


def renumber_stack(members):
    """Reassign dense positions to ``members`` ordered top to bottom."""
    total = len(members or [])
    return [
        copy_placement(member, stack_position=total - index)
        for index, member in enumerate(members or [])
    ]


def normalize_stack_positions(placements):
    """Densify every stack in ``placements`` and pin members to the bottom origin.

    Relative order inside each stack is preserved and the returned list keeps
    the input order.
    """
    normalized = [copy_placement(placement) for placement in placements or []]
    for members in _group_by_stack(normalized).values():
        ordered = sorted(members, key=_position_sort_key, reverse=True)
        bottom = ordered[-1]
        total = len(ordered)
        for index, member in enumerate(ordered):
            member["stack_position"] = total - index
            member["x"] = bottom["x"]
            member["y"] = bottom["y"]
    return normalized


def next_stack_id(placements):
    stack_ids = [p.get("stack_id") for p in placements or [] if p.get("stack_id") is not None]
    return max(stack_ids) + 1 if stack_ids else 1


def displayed_stacks(stacks):
    return [stack for stack in stacks or [] if len(stack.get("members") or []) > 1]


def stack_kind_label(stack):
    kinds = {member.get("kind") for member in stack.get("members") or []}
    if KIND_SKID in kinds and KIND_VINYL in kinds:
        return "Skid & Vinyl"
    if KIND_SKID in kinds:
        return "Skid"
    return "Vinyl"
