import io
import logging
import os
import re
import threading
from datetime import date

from flask import Flask, Response, jsonify, request

import db
from services import catalog, interaction, layout_settings
from services.catalog_importer import CatalogImporter
from services.layout_editor import LayoutEditor
from services.layout_errors import (
    CapacityExceededError,
    InvalidPlacementError,
    LayoutValidationError,
    PersistenceError,
    StackIntegrityError,
    UnknownUnitError,
)
from services.layout_store import (
    SqliteLayoutBackend,
    build_layout_store,
    deserialize_layout,
    reconcile_layout,
    serialize_layout,
)
from services.loading_sheet import XLSX_MIMETYPE, build_loading_sheet_workbook
from services.validation import (
    validate_layout_document,
    validate_positive_int,
    validate_required,
)

logger = logging.getLogger(__name__)


def _is_local_dev_mode():
    env_hint = (os.environ.get("APP_ENV") or os.environ.get("FLASK_ENV") or "").strip().lower()
    if env_hint in {"dev", "development", "local"}:
        return True
    return os.environ.get("FLASK_DEBUG", "").strip() == "1"


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return bool(default)
    normalized = str(raw).strip().lower()
    if normalized in {"1", "true", "yes", "on", "y"}:
        return True
    if normalized in {"0", "false", "no", "off", "n"}:
        return False
    return bool(default)


app = Flask(__name__)
_configured_secret = (os.environ.get("FLASK_SECRET_KEY") or "").strip()
if not _configured_secret and not _is_local_dev_mode():
    raise RuntimeError(
        "FLASK_SECRET_KEY must be set for non-development environments."
    )
if not _configured_secret:
    _configured_secret = "dev-session-key"
    logger.warning("Using development session secret key.")
app.secret_key = _configured_secret
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=_env_bool(
        "SESSION_COOKIE_SECURE",
        default=not _is_local_dev_mode(),
    ),
)
_raw_web_concurrency = (os.environ.get("WEB_CONCURRENCY") or "").strip()
try:
    _configured_web_concurrency = int(_raw_web_concurrency) if _raw_web_concurrency else 1
except ValueError:
    _configured_web_concurrency = 1
if _configured_web_concurrency > 1:
    logger.warning(
        "WEB_CONCURRENCY=%s detected. Layout editors are process-local; "
        "set WEB_CONCURRENCY=1 to keep a single active editor per truckload.",
        _configured_web_concurrency,
    )

db.init_db()

_EDITOR_LOCK = threading.Lock()
_EDITORS = {}
_LAYOUT_STORE = None
_SQLITE_BACKEND = SqliteLayoutBackend()


def _get_layout_store():
    global _LAYOUT_STORE
    with _EDITOR_LOCK:
        if _LAYOUT_STORE is None:
            _LAYOUT_STORE = build_layout_store()
        return _LAYOUT_STORE


def _load_unit_index(truckload_id):
    return catalog.build_unit_index(catalog.list_stops(truckload_id))


def _get_editor(truckload_id):
    editor = _get_existing_editor(truckload_id)
    if editor is not None:
        return editor
    # The store read can be a remote call, so it runs without the registry lock.
    editor = LayoutEditor(truckload_id, _load_unit_index(truckload_id), store=_get_layout_store())
    editor.reload()
    with _EDITOR_LOCK:
        return _EDITORS.setdefault(truckload_id, editor)


def _get_existing_editor(truckload_id):
    with _EDITOR_LOCK:
        return _EDITORS.get(truckload_id)


def _reset_editors():
    global _LAYOUT_STORE
    with _EDITOR_LOCK:
        _EDITORS.clear()
        _LAYOUT_STORE = None


def _coerce_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on", "y"}


def _coerce_int(value, field_name, required=True):
    if value is None or value == "":
        if required:
            raise ValueError(f"{field_name} is required.")
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a whole number.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} must be a whole number.")


def _request_direction(data=None, default=catalog.DIRECTION_OUTGOING):
    raw = request.args.get("direction") or (data or {}).get("direction")
    if not raw:
        return default
    return catalog.normalize_direction(raw)


def _placement_ref(data):
    source = data.get("placement") if isinstance(data.get("placement"), dict) else data
    return {
        "unit_id": _coerce_int(source.get("unit_id"), "unit_id"),
        "x": _coerce_int(source.get("x"), "x"),
        "y": _coerce_int(source.get("y"), "y"),
        "stack_position": _coerce_int(source.get("stack_position"), "stack_position", required=False),
    }


def _truckload_missing(truckload_id):
    if db.get_truckload(truckload_id):
        return None
    return jsonify({"error": "Truckload not found"}), 404


def _editor_payload(editor, direction=None):
    direction = direction or editor.active_direction
    payload = editor.snapshot()
    payload.update(
        {
            "direction": direction,
            "cell_size_px": layout_settings.get_cell_size_px(),
            "available_units": interaction.available_units_panel(editor, direction),
            "stack_panel": interaction.stack_inspector(editor, direction),
        }
    )
    return payload


def _editor_call(truckload_id, operation):
    missing = _truckload_missing(truckload_id)
    if missing:
        return missing
    try:
        editor = _get_editor(truckload_id)
    except PersistenceError as exc:
        logger.warning("Layout load failed for truckload_id=%s: %s", truckload_id, exc)
        return jsonify({"error": str(exc)}), 502
    try:
        body, status = operation(editor)
    except CapacityExceededError as exc:
        warning = exc.as_warning()
        payload = _editor_payload(editor)
        payload.update({"ok": False, "placed": False, "warning": warning, "warnings": [warning]})
        return jsonify(payload), 409
    except UnknownUnitError as exc:
        return jsonify({"error": str(exc)}), 404
    except (ValueError, InvalidPlacementError) as exc:
        return jsonify({"error": str(exc)}), 400
    except PersistenceError as exc:
        logger.warning("Layout save failed for truckload_id=%s: %s", truckload_id, exc)
        payload = _editor_payload(editor)
        payload.update({"ok": False, "save_error": str(exc)})
        return jsonify(payload), 502
    except StackIntegrityError as exc:
        logger.exception("Stack integrity failure for truckload_id=%s", truckload_id)
        return jsonify({"error": f"Layout stacks are inconsistent: {exc}"}), 500
    return jsonify(body), status


@app.route("/api/truckloads", methods=["GET"])
def api_truckloads():
    return jsonify({"truckloads": db.list_truckloads()})


@app.route("/api/truckloads", methods=["POST"])
def api_create_truckload():
    data = request.get_json(silent=True) or {}
    errors = {}
    validate_required((data.get("load_number") or "").strip(), "load_number", errors)
    if errors:
        return jsonify({"error": "Invalid truckload.", "errors": errors}), 400
    truckload_id = db.add_truckload(
        data["load_number"].strip(),
        driver_name=data.get("driver_name"),
        trailer_number=data.get("trailer_number"),
        description=data.get("description"),
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
    )
    return jsonify({"truckload": db.get_truckload(truckload_id)}), 201


@app.route("/api/settings/trailer-grid", methods=["GET"])
def api_trailer_grid():
    return jsonify(layout_settings.get_grid_dimensions())


@app.route("/api/settings/trailer-grid", methods=["PUT", "POST"])
def api_update_trailer_grid():
    data = request.get_json(silent=True) or {}
    errors = {}
    validate_positive_int(data.get("grid_width"), "grid_width", errors)
    validate_positive_int(data.get("grid_length"), "grid_length", errors)
    if errors:
        return jsonify({"error": "Invalid trailer grid.", "errors": errors}), 400
    grid = layout_settings.save_grid_dimensions(data["grid_width"], data["grid_length"])
    # Open editors keep the grid they were built with; rebuild them on next use.
    _get_layout_store().flush()
    _reset_editors()
    return jsonify(grid)


@app.route("/api/truckloads/<int:truckload_id>/stops")
def api_truckload_stops(truckload_id):
    missing = _truckload_missing(truckload_id)
    if missing:
        return missing
    return jsonify({"truckload_id": truckload_id, "stops": catalog.list_stops(truckload_id)})


@app.route("/api/truckloads/<int:truckload_id>/catalog/upload", methods=["POST"])
def api_catalog_upload(truckload_id):
    missing = _truckload_missing(truckload_id)
    if missing:
        return missing
    file = request.files.get("file")
    if not file or not getattr(file, "filename", ""):
        return jsonify({"error": "Please choose a CSV or XLSX file to upload."}), 400

    importer = CatalogImporter()
    try:
        parsed = importer.parse(file.stream, file.filename)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    replace = not _coerce_bool(request.form.get("append"))
    counts = importer.import_rows(truckload_id, parsed, replace=replace)

    editor = _get_existing_editor(truckload_id)
    if editor is not None:
        editor.replace_units(_load_unit_index(truckload_id))

    return jsonify(
        {
            "filename": file.filename,
            "total_rows": parsed["total_rows"],
            "accepted_rows": parsed["accepted_rows"],
            "acceptance_rate": round(parsed["acceptance_rate"], 2),
            "stops": counts["stops"],
            "units": counts["units"],
            "rejected_rows": parsed["rejected_rows"],
        }
    )


@app.route("/api/truckloads/<int:truckload_id>/layout", methods=["GET"])
def api_get_layout(truckload_id):
    try:
        direction = _request_direction()
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    try:
        rows = _SQLITE_BACKEND.fetch(truckload_id, direction)
        loaded = reconcile_layout(deserialize_layout({"placements": rows}))
    except PersistenceError as exc:
        logger.exception("Failed to read layout for truckload_id=%s", truckload_id)
        return jsonify({"error": str(exc)}), 500
    document = serialize_layout(loaded["placements"])
    document.update({"truckload_id": truckload_id, "direction": direction})
    return jsonify(document)


@app.route("/api/truckloads/<int:truckload_id>/layout", methods=["PUT", "POST"])
def api_put_layout(truckload_id):
    data = request.get_json(silent=True)
    if data is None:
        return jsonify({"error": "Request body must be JSON."}), 400
    try:
        direction = _request_direction(data if isinstance(data, dict) else None)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    items = data.get("placements", data.get("layout")) if isinstance(data, dict) else data
    grid = layout_settings.get_grid_dimensions()
    try:
        placements = validate_layout_document(items, grid["grid_width"], grid["grid_length"])
    except LayoutValidationError as exc:
        return jsonify({"error": str(exc), "errors": exc.errors}), 400

    try:
        _SQLITE_BACKEND.store(truckload_id, direction, serialize_layout(placements)["placements"])
    except PersistenceError as exc:
        logger.exception("Failed to save layout for truckload_id=%s", truckload_id)
        return jsonify({"error": str(exc)}), 500

    editor = _get_existing_editor(truckload_id)
    reload_error = None
    if editor is not None and isinstance(editor.store.backend, SqliteLayoutBackend):
        try:
            editor.reload(direction)
        except PersistenceError as exc:
            logger.warning("Layout reload after save failed for truckload_id=%s: %s", truckload_id, exc)
            reload_error = str(exc)
    return jsonify(
        {
            "success": True,
            "direction": direction,
            "count": len(placements),
            "reload_error": reload_error,
        }
    )


@app.route("/api/truckloads/<int:truckload_id>/editor")
def api_editor_state(truckload_id):
    def operation(editor):
        direction = editor.activate(_request_direction(default=editor.active_direction))
        return _editor_payload(editor, direction), 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/preview")
def api_editor_preview(truckload_id):
    def operation(editor):
        direction = _request_direction(default=None)
        if request.args.get("px") is not None or request.args.get("py") is not None:
            x, y = interaction.pointer_to_cell(
                request.args.get("px", 0),
                request.args.get("py", 0),
                layout_settings.get_cell_size_px(),
            )
        else:
            x = _coerce_int(request.args.get("x"), "x")
            y = _coerce_int(request.args.get("y"), "y")
        editor.set_preview(x, y)
        return interaction.preview_placement(editor, x, y, direction), 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/select", methods=["POST"])
def api_editor_select(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        direction = _request_direction(data)
        is_pickup_side = _coerce_bool(data.get("is_pickup_side")) or direction == catalog.DIRECTION_INCOMING
        selection = editor.select_unit(
            _coerce_int(data.get("unit_id"), "unit_id"),
            kind=data.get("kind"),
            is_pickup_side=is_pickup_side,
        )
        payload = _editor_payload(editor, editor.active_direction)
        payload.update({"ok": selection is not None, "selected": selection})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/rotate-unit", methods=["POST"])
def api_editor_rotate_unit(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        rotated = editor.toggle_unit_rotation(_coerce_int(data.get("unit_id"), "unit_id"))
        payload = _editor_payload(editor)
        payload.update({"ok": True, "rotated": rotated})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/place", methods=["POST"])
def api_editor_place(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        direction = _request_direction(data, default=None)
        if data.get("px") is not None or data.get("py") is not None:
            x, y = interaction.pointer_to_cell(
                data.get("px", 0),
                data.get("py", 0),
                layout_settings.get_cell_size_px(),
            )
        else:
            x = _coerce_int(data.get("x"), "x")
            y = _coerce_int(data.get("y"), "y")

        if data.get("unit_id") is not None:
            unit_id = _coerce_int(data.get("unit_id"), "unit_id")
            target = direction or catalog.DIRECTION_OUTGOING
            selection = editor.select_unit(
                unit_id,
                kind=data.get("kind"),
                is_pickup_side=target == catalog.DIRECTION_INCOMING,
            )
            if selection is None:
                unit = editor.unit(unit_id)
                raise CapacityExceededError(
                    unit_id,
                    unit["quantity"],
                    editor.placed_count(unit_id, target),
                )

        placement = editor.place_at(x, y, direction)
        payload = _editor_payload(editor)
        payload.update(
            {
                "ok": placement is not None,
                "placed": placement is not None,
                "placement": placement,
            }
        )
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/rotate", methods=["POST"])
def api_editor_rotate(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        selection = editor.rotate(_placement_ref(data), _request_direction(data, default=None))
        payload = _editor_payload(editor)
        payload.update({"ok": selection is not None, "selected": selection})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/move", methods=["POST"])
def api_editor_move(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        selection = editor.move(_placement_ref(data), _request_direction(data, default=None))
        payload = _editor_payload(editor)
        payload.update({"ok": selection is not None, "selected": selection})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/cancel", methods=["POST"])
def api_editor_cancel(truckload_id):
    def operation(editor):
        restored = editor.cancel_selection()
        payload = _editor_payload(editor)
        payload.update({"ok": True, "restored": restored})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/remove", methods=["POST"])
def api_editor_remove(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        removed = editor.remove(
            _placement_ref(data),
            whole_stack=_coerce_bool(data.get("whole_stack")),
            direction=_request_direction(data, default=None),
        )
        payload = _editor_payload(editor)
        payload.update({"ok": bool(removed), "removed": removed})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/reorder", methods=["POST"])
def api_editor_reorder(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        stack = editor.reorder_within_stack(
            _coerce_int(data.get("stack_id"), "stack_id"),
            _coerce_int(data.get("unit_id"), "unit_id"),
            data.get("move"),
            direction=_request_direction(data, default=None),
            stack_position=_coerce_int(data.get("stack_position"), "stack_position", required=False),
        )
        payload = _editor_payload(editor)
        payload.update({"ok": stack is not None, "stack": stack})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/clear", methods=["POST"])
def api_editor_clear(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        direction = _request_direction(data)
        editor.clear_direction(direction)
        payload = _editor_payload(editor, direction)
        payload.update({"ok": True})
        return payload, 200

    return _editor_call(truckload_id, operation)


@app.route("/api/truckloads/<int:truckload_id>/editor/save", methods=["POST"])
def api_editor_save(truckload_id):
    data = request.get_json(silent=True) or {}

    def operation(editor):
        direction = _request_direction(data, default=editor.active_direction)
        editor.save(direction)
        last_error = editor.store.last_error
        return {
            "ok": True,
            "queued": True,
            "direction": direction,
            "last_error": str(last_error) if last_error else None,
        }, 202

    return _editor_call(truckload_id, operation)


@app.route("/truckloads/<int:truckload_id>/loading-sheet.xlsx")
def truckload_loading_sheet_export(truckload_id):
    truckload = db.get_truckload(truckload_id)
    if not truckload:
        return jsonify({"error": "Truckload not found"}), 404

    try:
        editor = _get_editor(truckload_id)
    except PersistenceError as exc:
        logger.warning("Layout load failed for truckload_id=%s: %s", truckload_id, exc)
        return jsonify({"error": str(exc)}), 502
    try:
        workbook = build_loading_sheet_workbook(
            truckload,
            catalog.list_stops(truckload_id),
            {direction: editor.layout(direction) for direction in catalog.DIRECTIONS},
            editor.grid_width,
            editor.grid_length,
        )
    except StackIntegrityError:
        logger.exception("Failed to build loading sheet for truckload_id=%s", truckload_id)
        return jsonify({"error": "Layout stacks are inconsistent."}), 500

    output = io.BytesIO()
    workbook.save(output)
    output.seek(0)
    raw_load_number = str(truckload.get("load_number") or f"truckload_{truckload_id}").strip()
    safe_load_number = re.sub(r"[^A-Za-z0-9_-]+", "_", raw_load_number).strip("_") or f"truckload_{truckload_id}"
    filename = f"loading_sheet_{safe_load_number}_{date.today().isoformat()}.xlsx"

    return Response(
        output.getvalue(),
        mimetype=XLSX_MIMETYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


if __name__ == "__main__":
    app.run(debug=_is_local_dev_mode())
