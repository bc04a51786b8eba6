from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from services import catalog, stack_resolver
from services.placement import KIND_SKID, KIND_VINYL

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SHEET_TITLES = {
    catalog.DIRECTION_OUTGOING: "Outgoing",
    catalog.DIRECTION_INCOMING: "Incoming",
}


def count_text(units):
    skids = sum(int(u.get("quantity") or 0) for u in units if u.get("kind") == KIND_SKID)
    vinyls = sum(int(u.get("quantity") or 0) for u in units if u.get("kind") == KIND_VINYL)
    parts = []
    if skids:
        parts.append(f"{skids} Skid{'s' if skids != 1 else ''}")
    if vinyls:
        parts.append(f"{vinyls} Vinyl")
    return " | ".join(parts)


def dimension_text(units):
    counts = {}
    for unit in units:
        key = f"{unit.get('width')}x{unit.get('length')}"
        counts[key] = counts.get(key, 0) + int(unit.get("quantity") or 0)
    return " | ".join(f"{count} {size}" for size, count in counts.items() if count)


def total_footage(units):
    return sum(
        int(u.get("width") or 0) * int(u.get("length") or 0) * int(u.get("quantity") or 0)
        for u in units
    )


def _stop_rows(stops, placements, direction):
    placed = {}
    for placement in placements:
        placed[placement["unit_id"]] = placed.get(placement["unit_id"], 0) + 1

    rows = []
    # Last stop loads first, so the sheet reads bottom of the trailer to top.
    for stop in sorted(
        catalog.stops_for_direction(stops, direction),
        key=lambda stop: stop.get("sequence_number") or 0,
        reverse=True,
    ):
        units = stop.get("units") or []
        total = sum(int(u.get("quantity") or 0) for u in units)
        placed_count = sum(min(placed.get(u["id"], 0), int(u.get("quantity") or 0)) for u in units)
        rows.append(
            [
                stop.get("sequence_number"),
                stop.get("customer_name") or "",
                (stop.get("assignment_type") or "").title(),
                count_text(units),
                dimension_text(units),
                total_footage(units),
                f"{placed_count}/{total}",
            ]
        )
    return rows


def _stack_rows(placements):
    rows = []
    for stack in stack_resolver.rebuild_stacks(placements):
        members = " / ".join(
            f"#{member['unit_id']} {member['kind']} {member['width']}x{member['length']}"
            for member in stack["members"]
        )
        rows.append(
            [
                stack["stack_id"],
                f"({stack['x']}, {stack['y']})",
                stack_resolver.stack_kind_label(stack),
                len(stack["members"]),
                members,
            ]
        )
    return rows


def build_cell_map(placements, grid_width, grid_length):
    """Grid rows (y) of cells (x), each holding the stack id of its occupant or ``None``."""
    cells = [[None for _ in range(grid_width)] for _ in range(grid_length)]
    for placement in placements:
        label = placement["stack_id"] if placement["stack_id"] is not None else "*"
        for y in range(placement["y"], min(placement["y"] + placement["length"], grid_length)):
            for x in range(placement["x"], min(placement["x"] + placement["width"], grid_width)):
                cells[y][x] = label
    return cells


def _style_header(sheet, row_idx, width, header_fill, header_font, border):
    for col_idx in range(1, width + 1):
        cell = sheet.cell(row=row_idx, column=col_idx)
        cell.fill = header_fill
        cell.font = header_font
        cell.border = border
        cell.alignment = Alignment(horizontal="center", vertical="center")


def _write_direction_sheet(sheet, truckload, stops, placements, direction, grid_width, grid_length):
    header_fill = PatternFill(fill_type="solid", fgColor="FFE5E7EB")
    header_font = Font(bold=True, color="FF1F2937")
    title_font = Font(bold=True, size=14, color="FF111827")
    occupied_fill = PatternFill(fill_type="solid", fgColor="FFFDE68A")
    thin_side = Side(style="thin", color="FFCBD5E1")
    all_border = Border(left=thin_side, right=thin_side, top=thin_side, bottom=thin_side)

    sheet.append([f"Load {truckload.get('load_number') or truckload.get('id') or ''}"])
    sheet.cell(row=1, column=1).font = title_font
    sheet.append(["Driver", truckload.get("driver_name") or ""])
    sheet.append(["Trailer", truckload.get("trailer_number") or ""])
    sheet.append(["Direction", SHEET_TITLES[direction]])
    sheet.append([])

    stop_headers = ["Stop", "Customer", "Assignment", "Units", "Sizes", "Footage", "Placed"]
    sheet.append(stop_headers)
    _style_header(sheet, sheet.max_row, len(stop_headers), header_fill, header_font, all_border)
    for row in _stop_rows(stops, placements, direction):
        sheet.append(row)
    sheet.append([])

    stack_headers = ["Stack", "Origin", "Type", "Height", "Members (top to bottom)"]
    sheet.append(stack_headers)
    _style_header(sheet, sheet.max_row, len(stack_headers), header_fill, header_font, all_border)
    for row in _stack_rows(placements):
        sheet.append(row)
    sheet.append([])

    sheet.append(["Cell map"])
    sheet.cell(row=sheet.max_row, column=1).font = header_font
    map_start = sheet.max_row + 1
    for y, row in enumerate(build_cell_map(placements, grid_width, grid_length)):
        sheet.append([y] + ["" if value is None else value for value in row])
        for x, value in enumerate(row):
            cell = sheet.cell(row=map_start + y, column=x + 2)
            cell.border = all_border
            cell.alignment = Alignment(horizontal="center")
            if value is not None:
                cell.fill = occupied_fill

    sheet.column_dimensions["A"].width = 10
    sheet.column_dimensions["B"].width = 28
    for col_idx in range(3, max(grid_width, len(stop_headers)) + 2):
        sheet.column_dimensions[get_column_letter(col_idx)].width = 16 if col_idx <= 7 else 6


def build_loading_sheet_workbook(truckload, stops, layouts, grid_width, grid_length):
    workbook = Workbook()
    workbook.remove(workbook.active)
    for direction in catalog.DIRECTIONS:
        sheet = workbook.create_sheet(SHEET_TITLES[direction])
        _write_direction_sheet(
            sheet,
            truckload or {},
            stops or [],
            list((layouts or {}).get(direction) or []),
            direction,
            int(grid_width),
            int(grid_length),
        )
    return workbook
