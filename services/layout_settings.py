import json
import os
import time

import db

TRAILER_GRID_SETTING_KEY = "trailer_grid"
DEFAULT_GRID_WIDTH = 8
DEFAULT_GRID_LENGTH = 53
DEFAULT_CELL_SIZE_PX = 24
DEFAULT_SAVE_DEBOUNCE_MS = 250
DEFAULT_STORE_TIMEOUT_MS = 5000
_GRID_CACHE = {
    "grid": {
        "grid_width": DEFAULT_GRID_WIDTH,
        "grid_length": DEFAULT_GRID_LENGTH,
    },
    "expires_at": 0.0,
}


def _env(name, default=None):
    value = os.environ.get(name)
    text = str(value).strip() if value is not None else ""
    return text or default


def _coerce_positive_int(value, default):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return int(default)
    return parsed if parsed > 0 else int(default)


def _default_grid():
    return {
        "grid_width": _coerce_positive_int(_env("LAYOUT_GRID_WIDTH"), DEFAULT_GRID_WIDTH),
        "grid_length": _coerce_positive_int(_env("LAYOUT_GRID_LENGTH"), DEFAULT_GRID_LENGTH),
    }


def _normalize_grid(raw_value, defaults):
    if not isinstance(raw_value, dict):
        return dict(defaults)
    return {
        "grid_width": _coerce_positive_int(raw_value.get("grid_width"), defaults["grid_width"]),
        "grid_length": _coerce_positive_int(raw_value.get("grid_length"), defaults["grid_length"]),
    }


def invalidate_grid_cache():
    _GRID_CACHE["expires_at"] = 0.0


def get_grid_dimensions(force_refresh=False):
    now = time.time()
    if force_refresh:
        invalidate_grid_cache()
    if _GRID_CACHE["expires_at"] > now:
        return dict(_GRID_CACHE["grid"])

    grid = _default_grid()
    setting = db.get_planning_setting(TRAILER_GRID_SETTING_KEY) or {}
    raw_text = (setting.get("value_text") or "").strip()
    if raw_text:
        try:
            parsed = json.loads(raw_text)
        except json.JSONDecodeError:
            parsed = None
        grid = _normalize_grid(parsed, grid)

    _GRID_CACHE["grid"] = dict(grid)
    _GRID_CACHE["expires_at"] = now + 30.0
    return dict(grid)


def get_cell_size_px():
    return _coerce_positive_int(_env("LAYOUT_CELL_SIZE_PX"), DEFAULT_CELL_SIZE_PX)


def get_save_debounce_seconds():
    raw = _env("LAYOUT_SAVE_DEBOUNCE_MS")
    try:
        delay_ms = float(raw) if raw is not None else float(DEFAULT_SAVE_DEBOUNCE_MS)
    except ValueError:
        delay_ms = float(DEFAULT_SAVE_DEBOUNCE_MS)
    return max(delay_ms, 0.0) / 1000.0


def get_layout_store_url():
    return (_env("LAYOUT_STORE_URL") or "").rstrip("/")


def get_layout_store_timeout_ms():
    return _coerce_positive_int(_env("LAYOUT_STORE_TIMEOUT_MS"), DEFAULT_STORE_TIMEOUT_MS)


def save_grid_dimensions(grid_width, grid_length):
    grid = _normalize_grid(
        {"grid_width": grid_width, "grid_length": grid_length},
        {"grid_width": 0, "grid_length": 0},
    )
    if grid["grid_width"] <= 0 or grid["grid_length"] <= 0:
        raise ValueError("Grid width and length must be positive numbers.")
    db.upsert_planning_setting(TRAILER_GRID_SETTING_KEY, json.dumps(grid))
    invalidate_grid_cache()
    return grid
