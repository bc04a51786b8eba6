import math
from pathlib import Path

import pandas as pd

import db
from services.catalog import (
    ASSIGNMENT_DELIVERY,
    ASSIGNMENT_PICKUP,
    ASSIGNMENT_TRANSFER,
)
from services.placement import KIND_SKID, KIND_VINYL

REQUIRED_COLUMNS = [
    "stop",
    "assignment",
    "customer_id",
    "customer",
    "kind",
    "width",
    "length",
    "quantity",
]

OPTIONAL_COLUMNS = [
    "address",
    "transfer",
]

COLUMN_ALIASES = {
    "stop #": "stop",
    "stop_number": "stop",
    "sequence": "stop",
    "sequence_number": "stop",
    "type": "assignment",
    "assignment_type": "assignment",
    "direction": "assignment",
    "customerid": "customer_id",
    "custid": "customer_id",
    "cust_id": "customer_id",
    "custnum": "customer_id",
    "customer id": "customer_id",
    "customer_name": "customer",
    "customer name": "customer",
    "custname": "customer",
    "item_type": "kind",
    "unit": "kind",
    "unit_type": "kind",
    "w": "width",
    "l": "length",
    "qty": "quantity",
    "count": "quantity",
    "customer_address": "address",
    "is_transfer_order": "transfer",
}

ASSIGNMENT_ALIASES = {
    "delivery": ASSIGNMENT_DELIVERY,
    "deliver": ASSIGNMENT_DELIVERY,
    "drop": ASSIGNMENT_DELIVERY,
    "outgoing": ASSIGNMENT_DELIVERY,
    "pickup": ASSIGNMENT_PICKUP,
    "pick up": ASSIGNMENT_PICKUP,
    "pick-up": ASSIGNMENT_PICKUP,
    "incoming": ASSIGNMENT_PICKUP,
    "transfer": ASSIGNMENT_TRANSFER,
}

KIND_ALIASES = {
    "skid": KIND_SKID,
    "skids": KIND_SKID,
    "pallet": KIND_SKID,
    "vinyl": KIND_VINYL,
    "vinyls": KIND_VINYL,
    "roll": KIND_VINYL,
    "vinyl roll": KIND_VINYL,
}

_TRUTHY = {"1", "true", "yes", "y", "x"}


class CatalogImporter:
    def parse(self, file_stream, filename=""):
        suffix = Path(filename or "").suffix.lower()
        if suffix in {".xlsx", ".xlsm"}:
            df = pd.read_excel(file_stream, dtype=str, keep_default_na=False, engine="openpyxl")
        else:
            df = pd.read_csv(file_stream, dtype=str, keep_default_na=False)
        column_map = self._normalize_columns(df.columns)

        available = set(column_map.values())
        missing = [col for col in REQUIRED_COLUMNS if col not in available]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        df = df.rename(columns=column_map)
        allowed_columns = set(REQUIRED_COLUMNS + OPTIONAL_COLUMNS)
        df = df[[col for col in df.columns if col in allowed_columns]]

        stops = {}
        rejected_rows = []
        for index, row in enumerate(df.to_dict(orient="records"), start=2):
            parsed, reason = self.parse_row(row)
            if parsed is None:
                rejected_rows.append(
                    {
                        "row": index,
                        "stop": self._clean_value(row.get("stop")),
                        "customer": self._clean_value(row.get("customer")),
                        "kind": self._clean_value(row.get("kind")),
                        "reason": reason,
                    }
                )
                continue
            key = (
                parsed["sequence_number"],
                parsed["assignment_type"],
                parsed["customer_id"],
            )
            stop = stops.setdefault(
                key,
                {
                    "sequence_number": parsed["sequence_number"],
                    "assignment_type": parsed["assignment_type"],
                    "customer_id": parsed["customer_id"],
                    "customer_name": parsed["customer_name"],
                    "customer_address": parsed["customer_address"],
                    "is_transfer_order": parsed["is_transfer_order"],
                    "units": [],
                },
            )
            stop["units"].append(parsed["unit"])

        ordered = sorted(stops.values(), key=lambda stop: stop["sequence_number"])
        total_rows = len(df)
        accepted = total_rows - len(rejected_rows)
        return {
            "stops": ordered,
            "rejected_rows": rejected_rows,
            "total_rows": total_rows,
            "accepted_rows": accepted,
            "acceptance_rate": (accepted / total_rows * 100) if total_rows else 0,
        }

    def parse_row(self, row):
        sequence_number = self._to_int(row.get("stop"))
        if sequence_number <= 0:
            return None, "Stop number must be a positive number."

        assignment_raw = self._clean_value(row.get("assignment")).lower()
        assignment_type = ASSIGNMENT_ALIASES.get(assignment_raw)
        if not assignment_type:
            return None, f"Unknown assignment type {assignment_raw!r}."

        customer_id = self._to_int(row.get("customer_id"))
        customer_name = self._clean_value(row.get("customer"))
        if customer_id <= 0 or not customer_name:
            return None, "Missing customer id or name."

        kind_raw = self._clean_value(row.get("kind")).lower()
        kind = KIND_ALIASES.get(kind_raw)
        if not kind:
            return None, f"Unknown unit kind {kind_raw!r}."

        width = self._to_int(row.get("width"))
        length = self._to_int(row.get("length"))
        if width <= 0 or length <= 0:
            return None, "Width and length must be positive."

        quantity = self._to_int(row.get("quantity"))
        if quantity <= 0:
            return None, "Quantity must be positive."

        transfer = self._clean_value(row.get("transfer")).lower() in _TRUTHY
        return (
            {
                "sequence_number": sequence_number,
                "assignment_type": assignment_type,
                "customer_id": customer_id,
                "customer_name": customer_name,
                "customer_address": self._clean_value(row.get("address")) or None,
                "is_transfer_order": transfer or assignment_type == ASSIGNMENT_TRANSFER,
                "unit": {
                    "kind": kind,
                    "width": width,
                    "length": length,
                    "quantity": quantity,
                },
            },
            "",
        )

    def import_rows(self, truckload_id, parsed, replace=True):
        stop_count = 0
        unit_count = 0
        with db.get_connection() as connection:
            if replace:
                db.clear_truckload_catalog(truckload_id, connection=connection)
            for stop in parsed.get("stops") or []:
                stop_id = db.add_truckload_stop(
                    truckload_id,
                    stop["sequence_number"],
                    stop["assignment_type"],
                    stop["customer_id"],
                    stop["customer_name"],
                    customer_address=stop.get("customer_address"),
                    is_transfer_order=stop.get("is_transfer_order"),
                    connection=connection,
                )
                stop_count += 1
                for unit in stop.get("units") or []:
                    db.add_freight_unit(
                        stop_id,
                        unit["kind"],
                        unit["width"],
                        unit["length"],
                        quantity=unit["quantity"],
                        connection=connection,
                    )
                    unit_count += 1
            connection.commit()
        return {"stops": stop_count, "units": unit_count}

    def _normalize_columns(self, columns):
        mapping = {}
        for col in columns:
            normalized = str(col).strip().lower()
            normalized = COLUMN_ALIASES.get(normalized, normalized)
            mapping[col] = normalized
        return mapping

    def _clean_value(self, value):
        if value is None:
            return ""
        if isinstance(value, float) and math.isnan(value):
            return ""
        return str(value).strip()

    def _to_int(self, value):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0
