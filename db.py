import os
import sqlite3
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parent
DEFAULT_DB_PATH = str(ROOT / "data" / "db" / "app.db")
DB_PATH = Path(os.environ.get("APP_DB_PATH", DEFAULT_DB_PATH))
DB_PATH.parent.mkdir(parents=True, exist_ok=True)

LAYOUT_ITEM_COLUMNS = [
    "item_type",
    "item_id",
    "x_position",
    "y_position",
    "width",
    "length",
    "rotation",
    "customer_id",
    "customer_name",
    "stack_id",
    "stack_position",
]


def get_connection():
    timeout_sec_raw = os.environ.get("SQLITE_BUSY_TIMEOUT_SEC", "30")
    try:
        timeout_sec = max(float(timeout_sec_raw), 1.0)
    except (TypeError, ValueError):
        timeout_sec = 30.0
    timeout_ms = int(timeout_sec * 1000)

    connection = sqlite3.connect(DB_PATH, timeout=timeout_sec)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode=WAL")
    connection.execute("PRAGMA synchronous=NORMAL")
    connection.execute("PRAGMA foreign_keys=ON")
    connection.execute(f"PRAGMA busy_timeout={timeout_ms}")
    return connection


def _now():
    return datetime.utcnow().isoformat(timespec="seconds")


def _get_columns(connection, table_name):
    rows = connection.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {row["name"] for row in rows}


def _ensure_column(connection, table_name, column_name, ddl):
    columns = _get_columns(connection, table_name)
    if column_name not in columns:
        connection.execute(f"ALTER TABLE {table_name} ADD COLUMN {ddl}")


def init_db():
    with get_connection() as connection:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS truckloads (
                id INTEGER PRIMARY KEY,
                load_number TEXT,
                driver_name TEXT,
                trailer_number TEXT,
                description TEXT,
                start_date TEXT,
                end_date TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS truckload_stops (
                id INTEGER PRIMARY KEY,
                truckload_id INTEGER NOT NULL,
                sequence_number INTEGER NOT NULL DEFAULT 1,
                assignment_type TEXT NOT NULL,
                customer_id INTEGER NOT NULL,
                customer_name TEXT NOT NULL,
                customer_address TEXT,
                is_transfer_order INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (truckload_id) REFERENCES truckloads(id) ON DELETE CASCADE
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS freight_units (
                id INTEGER PRIMARY KEY,
                stop_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                width INTEGER NOT NULL,
                length INTEGER NOT NULL,
                quantity INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                FOREIGN KEY (stop_id) REFERENCES truckload_stops(id) ON DELETE CASCADE
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS trailer_layouts (
                id INTEGER PRIMARY KEY,
                truckload_id INTEGER NOT NULL,
                layout_type TEXT NOT NULL DEFAULT 'outgoing',
                created_at TEXT NOT NULL,
                updated_at TEXT,
                updated_by TEXT
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS trailer_layout_items (
                id INTEGER PRIMARY KEY,
                trailer_layout_id INTEGER NOT NULL,
                item_type TEXT NOT NULL,
                item_id INTEGER NOT NULL,
                x_position INTEGER NOT NULL,
                y_position INTEGER NOT NULL,
                width INTEGER NOT NULL,
                length INTEGER NOT NULL,
                rotation INTEGER DEFAULT 0,
                customer_id INTEGER,
                customer_name TEXT,
                stack_id INTEGER,
                stack_position INTEGER,
                FOREIGN KEY (trailer_layout_id) REFERENCES trailer_layouts(id) ON DELETE CASCADE
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS planning_settings (
                key TEXT PRIMARY KEY,
                value_text TEXT,
                updated_at TEXT DEFAULT (datetime('now'))
            )
            """
        )

        # Older databases predate per-direction layouts and stacking.
        _ensure_column(
            connection,
            "trailer_layouts",
            "layout_type",
            "layout_type TEXT NOT NULL DEFAULT 'outgoing'",
        )
        _ensure_column(connection, "trailer_layouts", "updated_by", "updated_by TEXT")
        _ensure_column(connection, "trailer_layout_items", "stack_id", "stack_id INTEGER")
        _ensure_column(
            connection,
            "trailer_layout_items",
            "stack_position",
            "stack_position INTEGER",
        )

        connection.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_trailer_layouts_truckload_type "
            "ON trailer_layouts(truckload_id, layout_type)"
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_trailer_layout_items_layout_id "
            "ON trailer_layout_items(trailer_layout_id)"
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_truckload_stops_truckload_id "
            "ON truckload_stops(truckload_id)"
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_freight_units_stop_id ON freight_units(stop_id)"
        )
        connection.commit()


def add_truckload(
    load_number,
    driver_name=None,
    trailer_number=None,
    description=None,
    start_date=None,
    end_date=None,
):
    with get_connection() as connection:
        cursor = connection.execute(
            """
            INSERT INTO truckloads (
                load_number,
                driver_name,
                trailer_number,
                description,
                start_date,
                end_date,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                load_number,
                driver_name,
                trailer_number,
                description,
                start_date,
                end_date,
                _now(),
            ),
        )
        connection.commit()
        return cursor.lastrowid


def get_truckload(truckload_id):
    with get_connection() as connection:
        row = connection.execute(
            "SELECT * FROM truckloads WHERE id = ?",
            (truckload_id,),
        ).fetchone()
        return dict(row) if row else None


def list_truckloads():
    with get_connection() as connection:
        rows = connection.execute(
            "SELECT * FROM truckloads ORDER BY created_at DESC, id DESC"
        ).fetchall()
        return [dict(row) for row in rows]


def add_truckload_stop(
    truckload_id,
    sequence_number,
    assignment_type,
    customer_id,
    customer_name,
    customer_address=None,
    is_transfer_order=False,
    connection=None,
):
    params = (
        truckload_id,
        int(sequence_number),
        assignment_type,
        int(customer_id),
        customer_name,
        customer_address,
        1 if is_transfer_order else 0,
        _now(),
    )
    sql = """
        INSERT INTO truckload_stops (
            truckload_id,
            sequence_number,
            assignment_type,
            customer_id,
            customer_name,
            customer_address,
            is_transfer_order,
            created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """
    if connection is not None:
        return connection.execute(sql, params).lastrowid
    with get_connection() as own_connection:
        stop_id = own_connection.execute(sql, params).lastrowid
        own_connection.commit()
        return stop_id


def add_freight_unit(stop_id, kind, width, length, quantity=1, connection=None):
    params = (stop_id, kind, int(width), int(length), int(quantity), _now())
    sql = """
        INSERT INTO freight_units (stop_id, kind, width, length, quantity, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """
    if connection is not None:
        return connection.execute(sql, params).lastrowid
    with get_connection() as own_connection:
        unit_id = own_connection.execute(sql, params).lastrowid
        own_connection.commit()
        return unit_id


def list_truckload_stops(truckload_id):
    with get_connection() as connection:
        rows = connection.execute(
            """
            SELECT *
            FROM truckload_stops
            WHERE truckload_id = ?
            ORDER BY sequence_number ASC, id ASC
            """,
            (truckload_id,),
        ).fetchall()
        return [dict(row) for row in rows]


def list_freight_units_for_truckload(truckload_id):
    with get_connection() as connection:
        rows = connection.execute(
            """
            SELECT
                fu.id,
                fu.stop_id,
                fu.kind,
                fu.width,
                fu.length,
                fu.quantity,
                ts.assignment_type,
                ts.sequence_number,
                ts.customer_id,
                ts.customer_name,
                ts.is_transfer_order
            FROM freight_units fu
            JOIN truckload_stops ts ON ts.id = fu.stop_id
            WHERE ts.truckload_id = ?
            ORDER BY ts.sequence_number ASC, fu.kind ASC, fu.id ASC
            """,
            (truckload_id,),
        ).fetchall()
        return [dict(row) for row in rows]


def clear_truckload_catalog(truckload_id, connection=None):
    sql = "DELETE FROM truckload_stops WHERE truckload_id = ?"
    if connection is not None:
        connection.execute(sql, (truckload_id,))
        return
    with get_connection() as own_connection:
        own_connection.execute(sql, (truckload_id,))
        own_connection.commit()


def get_trailer_layout(truckload_id, layout_type):
    with get_connection() as connection:
        row = connection.execute(
            """
            SELECT id, truckload_id, layout_type, created_at, updated_at, updated_by
            FROM trailer_layouts
            WHERE truckload_id = ? AND layout_type = ?
            LIMIT 1
            """,
            (truckload_id, layout_type),
        ).fetchone()
        return dict(row) if row else None


def get_trailer_layout_items(truckload_id, layout_type):
    with get_connection() as connection:
        rows = connection.execute(
            """
            SELECT tli.*
            FROM trailer_layouts tl
            JOIN trailer_layout_items tli ON tl.id = tli.trailer_layout_id
            WHERE tl.truckload_id = ? AND tl.layout_type = ?
            ORDER BY
                CASE WHEN tli.stack_id IS NULL THEN 2 ELSE 1 END,
                tli.stack_id,
                tli.stack_position DESC,
                tli.id ASC
            """,
            (truckload_id, layout_type),
        ).fetchall()
        return [dict(row) for row in rows]


def replace_trailer_layout_items(truckload_id, layout_type, items, updated_by=None):
    now = _now()
    with get_connection() as connection:
        row = connection.execute(
            "SELECT id FROM trailer_layouts WHERE truckload_id = ? AND layout_type = ?",
            (truckload_id, layout_type),
        ).fetchone()
        if row:
            layout_id = row["id"]
            connection.execute(
                "UPDATE trailer_layouts SET updated_at = ?, updated_by = ? WHERE id = ?",
                (now, updated_by, layout_id),
            )
        else:
            layout_id = connection.execute(
                """
                INSERT INTO trailer_layouts (
                    truckload_id,
                    layout_type,
                    created_at,
                    updated_at,
                    updated_by
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (truckload_id, layout_type, now, now, updated_by),
            ).lastrowid

        connection.execute(
            "DELETE FROM trailer_layout_items WHERE trailer_layout_id = ?",
            (layout_id,),
        )
        to_insert = [
            (layout_id,) + tuple(item.get(column) for column in LAYOUT_ITEM_COLUMNS)
            for item in items or []
        ]
        if to_insert:
            placeholders = ", ".join("?" for _ in range(len(LAYOUT_ITEM_COLUMNS) + 1))
            connection.executemany(
                f"""
                INSERT INTO trailer_layout_items (
                    trailer_layout_id,
                    {", ".join(LAYOUT_ITEM_COLUMNS)}
                )
                VALUES ({placeholders})
                """,
                to_insert,
            )
        connection.commit()
        return layout_id


def get_planning_setting(key):
    key = (key or "").strip()
    if not key:
        return None
    with get_connection() as connection:
        row = connection.execute(
            "SELECT key, value_text, updated_at FROM planning_settings WHERE key = ?",
            (key,),
        ).fetchone()
        return dict(row) if row else None


def upsert_planning_setting(key, value_text):
    key = (key or "").strip()
    if not key:
        raise ValueError("Setting key is required.")
    value_text = None if value_text is None else str(value_text)
    with get_connection() as connection:
        connection.execute(
            """
            INSERT INTO planning_settings (key, value_text, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value_text = excluded.value_text,
                updated_at = excluded.updated_at
            """,
            (key, value_text),
        )
        connection.commit()
