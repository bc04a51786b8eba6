import io
import os
import unittest
from unittest.mock import patch

import db

os.environ.setdefault("FLASK_SECRET_KEY", "test-secret")

import app as app_module
from services.layout_errors import PersistenceError


def _seed_truckload(load_number):
    truckload_id = db.add_truckload(load_number, driver_name="Pat", trailer_number="T-53")
    delivery_stop = db.add_truckload_stop(truckload_id, 1, "delivery", 301, "Maple Cabinets")
    pickup_stop = db.add_truckload_stop(truckload_id, 2, "pickup", 302, "River Supply")
    skid_id = db.add_freight_unit(delivery_stop, "skid", 4, 4, quantity=2)
    vinyl_id = db.add_freight_unit(delivery_stop, "vinyl", 4, 8, quantity=1)
    pickup_id = db.add_freight_unit(pickup_stop, "skid", 4, 4, quantity=1)
    return truckload_id, skid_id, vinyl_id, pickup_id


class LayoutApiTests(unittest.TestCase):
    def setUp(self):
        app_module._reset_editors()
        self.client = app_module.app.test_client()

    def tearDown(self):
        app_module._reset_editors()

    def _post(self, path, payload):
        return self.client.post(path, json=payload)

    def test_unknown_truckload_is_404(self):
        response = self.client.get("/api/truckloads/999999/editor")
        self.assertEqual(response.status_code, 404)

    def test_layout_get_is_empty_when_absent(self):
        truckload_id, *_ = _seed_truckload("API-EMPTY")

        response = self.client.get(f"/api/truckloads/{truckload_id}/layout?direction=pickup")

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["placements"], [])
        self.assertEqual(payload["direction"], "incoming")

    def test_layout_put_validates_and_replaces(self):
        truckload_id, skid_id, vinyl_id, _ = _seed_truckload("API-PUT")
        base = {"width": 4, "length": 4, "kind": "skid", "customer_id": 301, "customer_name": "Maple Cabinets"}

        bad = self.client.put(
            f"/api/truckloads/{truckload_id}/layout?direction=outgoing",
            json={"placements": [dict(base, unit_id=skid_id, x=0, y=0), dict(base, unit_id=vinyl_id, x=2, y=2)]},
        )
        self.assertEqual(bad.status_code, 400)
        self.assertIn("placements.1", bad.get_json()["errors"])

        good = self.client.put(
            f"/api/truckloads/{truckload_id}/layout?direction=outgoing",
            json={
                "placements": [
                    dict(base, unit_id=skid_id, x=0, y=0, stack_id=4, stack_position=1),
                    dict(base, unit_id=vinyl_id, x=0, y=0, stack_id=4, stack_position=3, kind="vinyl"),
                ]
            },
        )
        self.assertEqual(good.status_code, 200)

        fetched = self.client.get(f"/api/truckloads/{truckload_id}/layout").get_json()
        positions = sorted(p["stack_position"] for p in fetched["placements"])
        self.assertEqual(positions, [1, 2])

    def test_select_place_stack_and_exhaust(self):
        truckload_id, skid_id, _, _ = _seed_truckload("API-STACK")
        base = f"/api/truckloads/{truckload_id}/editor"

        state = self.client.get(f"{base}?direction=outgoing").get_json()
        self.assertEqual(state["grid"], {"grid_width": 8, "grid_length": 53})
        self.assertEqual(len(state["available_units"]), 1)

        selected = self._post(f"{base}/select", {"unit_id": skid_id}).get_json()
        self.assertTrue(selected["ok"])
        first = self._post(f"{base}/place", {"x": 0, "y": 0}).get_json()
        self.assertTrue(first["placed"])
        second = self._post(f"{base}/place", {"unit_id": skid_id, "x": 0, "y": 0}).get_json()
        self.assertEqual(second["placement"]["stack_position"], 2)
        self.assertEqual(len(second["stack_panel"]), 1)

        third = self._post(f"{base}/place", {"unit_id": skid_id, "x": 0, "y": 0})
        self.assertEqual(third.status_code, 409)
        warning = third.get_json()["warning"]
        self.assertEqual(warning["code"], "CAPACITY_EXCEEDED")
        self.assertEqual(warning["severity"], "warning")

        stored = db.get_trailer_layout_items(truckload_id, "outgoing")
        self.assertEqual(len(stored), 2)

        removed = self._post(
            f"{base}/remove",
            {"unit_id": skid_id, "x": 0, "y": 0, "stack_position": 2},
        ).get_json()
        self.assertTrue(removed["ok"])
        self.assertEqual(len(db.get_trailer_layout_items(truckload_id, "outgoing")), 1)

    def test_edits_by_unit_and_cell_without_stack_position(self):
        truckload_id, skid_id, vinyl_id, _ = _seed_truckload("API-BYCELL")
        base = f"/api/truckloads/{truckload_id}/editor"
        self._post(f"{base}/place", {"unit_id": skid_id, "x": 0, "y": 0})
        self._post(f"{base}/place", {"unit_id": vinyl_id, "x": 4, "y": 0})

        removed = self._post(f"{base}/remove", {"unit_id": skid_id, "x": 0, "y": 0}).get_json()
        self.assertTrue(removed["ok"])
        self.assertEqual(len(removed["removed"]), 1)

        rotated = self._post(f"{base}/rotate", {"unit_id": vinyl_id, "x": 4, "y": 0}).get_json()
        self.assertTrue(rotated["ok"])
        self.assertEqual((rotated["selected"]["width"], rotated["selected"]["length"]), (8, 4))
        self._post(f"{base}/cancel", {})

        moved = self._post(f"{base}/move", {"unit_id": vinyl_id, "x": 4, "y": 0}).get_json()
        self.assertTrue(moved["ok"])
        placed = self._post(f"{base}/place", {"x": 0, "y": 20}).get_json()
        self.assertEqual((placed["placement"]["x"], placed["placement"]["y"]), (0, 20))
        self.assertEqual(len(db.get_trailer_layout_items(truckload_id, "outgoing")), 1)

    def test_invalid_placement_is_silent(self):
        truckload_id, skid_id, vinyl_id, _ = _seed_truckload("API-COLLIDE")
        base = f"/api/truckloads/{truckload_id}/editor"
        self._post(f"{base}/place", {"unit_id": skid_id, "x": 0, "y": 0})

        response = self._post(f"{base}/place", {"unit_id": vinyl_id, "x": 2, "y": 2})

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertFalse(payload["ok"])
        self.assertFalse(payload["placed"])

    def test_preview_from_pixels(self):
        truckload_id, skid_id, _, _ = _seed_truckload("API-PREVIEW")
        base = f"/api/truckloads/{truckload_id}/editor"
        self._post(f"{base}/select", {"unit_id": skid_id})

        preview = self.client.get(f"{base}/preview?px=50&py=30").get_json()

        self.assertTrue(preview["armed"])
        self.assertEqual((preview["x"], preview["y"]), (2, 1))
        self.assertTrue(preview["valid"])

    def test_unknown_unit_is_404_and_bad_direction_is_400(self):
        truckload_id, *_ = _seed_truckload("API-ERRORS")
        base = f"/api/truckloads/{truckload_id}/editor"

        self.assertEqual(self._post(f"{base}/select", {"unit_id": 987654}).status_code, 404)
        self.assertEqual(self._post(f"{base}/clear", {"direction": "sideways"}).status_code, 400)

    def test_rotate_move_and_cancel(self):
        truckload_id, _, vinyl_id, _ = _seed_truckload("API-ROTATE")
        base = f"/api/truckloads/{truckload_id}/editor"
        placed = self._post(f"{base}/place", {"unit_id": vinyl_id, "x": 0, "y": 0}).get_json()["placement"]

        rotated = self._post(f"{base}/rotate", {"placement": placed}).get_json()
        self.assertEqual((rotated["selected"]["width"], rotated["selected"]["length"]), (8, 4))
        self.assertEqual(rotated["rotation_memory"], {str(vinyl_id): True})

        cancelled = self._post(f"{base}/cancel", {}).get_json()
        self.assertEqual(cancelled["restored"]["width"], 4)
        self.assertEqual(cancelled["rotation_memory"], {})

        self._post(f"{base}/move", {"placement": cancelled["restored"]})
        moved = self._post(f"{base}/place", {"x": 4, "y": 10}).get_json()
        self.assertEqual((moved["placement"]["x"], moved["placement"]["y"]), (4, 10))

    def test_reorder_and_clear_one_direction(self):
        truckload_id, skid_id, vinyl_id, pickup_id = _seed_truckload("API-REORDER")
        base = f"/api/truckloads/{truckload_id}/editor"
        self._post(f"{base}/place", {"unit_id": skid_id, "x": 0, "y": 0})
        top = self._post(f"{base}/place", {"unit_id": vinyl_id, "x": 0, "y": 0}).get_json()["placement"]
        self._post(f"{base}/place", {"unit_id": pickup_id, "x": 0, "y": 0, "direction": "incoming"})

        reordered = self._post(
            f"{base}/reorder",
            {"stack_id": top["stack_id"], "unit_id": skid_id, "move": "up", "direction": "outgoing"},
        ).get_json()
        self.assertEqual([m["unit_id"] for m in reordered["stack"]["members"]], [skid_id, vinyl_id])

        cleared = self._post(f"{base}/clear", {"direction": "outgoing"}).get_json()
        self.assertEqual(cleared["layouts"]["outgoing"], [])
        self.assertEqual(len(cleared["layouts"]["incoming"]), 1)
        self.assertEqual(db.get_trailer_layout_items(truckload_id, "outgoing"), [])
        self.assertEqual(len(db.get_trailer_layout_items(truckload_id, "incoming")), 1)

    def test_persistence_failure_is_502_without_rollback(self):
        truckload_id, skid_id, _, _ = _seed_truckload("API-502")
        base = f"/api/truckloads/{truckload_id}/editor"
        self.client.get(base)

        with patch(
            "services.layout_store.SqliteLayoutBackend.store",
            side_effect=PersistenceError("disk full"),
        ):
            response = self._post(f"{base}/place", {"unit_id": skid_id, "x": 0, "y": 0})

        self.assertEqual(response.status_code, 502)
        payload = response.get_json()
        self.assertIn("disk full", payload["save_error"])
        self.assertEqual(len(payload["layouts"]["outgoing"]), 1)

    def test_trailer_grid_setting_round_trip(self):
        bad = self.client.put("/api/settings/trailer-grid", json={"grid_width": 0, "grid_length": 53})
        self.assertEqual(bad.status_code, 400)
        self.assertIn("grid_width", bad.get_json()["errors"])

        try:
            updated = self.client.put("/api/settings/trailer-grid", json={"grid_width": 10, "grid_length": 48})
            self.assertEqual(updated.get_json(), {"grid_width": 10, "grid_length": 48})
            self.assertEqual(self.client.get("/api/settings/trailer-grid").get_json()["grid_width"], 10)
        finally:
            self.client.put("/api/settings/trailer-grid", json={"grid_width": 8, "grid_length": 53})

    def test_editor_load_runs_outside_registry_lock(self):
        truckload_id, *_ = _seed_truckload("API-LOCK")
        lock_held = []

        with patch(
            "app.LayoutEditor.reload",
            side_effect=lambda *args, **kwargs: lock_held.append(app_module._EDITOR_LOCK.locked()),
        ):
            response = self.client.get(f"/api/truckloads/{truckload_id}/editor")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(lock_held)
        self.assertFalse(any(lock_held))

    def test_layout_put_survives_editor_reload_failure(self):
        truckload_id, skid_id, _, _ = _seed_truckload("API-RELOAD")
        self.client.get(f"/api/truckloads/{truckload_id}/editor")
        placement = {
            "unit_id": skid_id,
            "x": 0,
            "y": 0,
            "width": 4,
            "length": 4,
            "kind": "skid",
            "customer_id": 301,
            "customer_name": "Maple Cabinets",
        }

        with patch(
            "services.layout_store.SqliteLayoutBackend.fetch",
            side_effect=PersistenceError("read timed out"),
        ):
            response = self.client.put(
                f"/api/truckloads/{truckload_id}/layout?direction=outgoing",
                json={"placements": [placement]},
            )

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertTrue(payload["success"])
        self.assertIn("read timed out", payload["reload_error"])
        self.assertEqual(len(db.get_trailer_layout_items(truckload_id, "outgoing")), 1)

    def test_manual_save_is_queued(self):
        truckload_id, *_ = _seed_truckload("API-SAVE")

        response = self._post(f"/api/truckloads/{truckload_id}/editor/save", {"direction": "outgoing"})

        self.assertEqual(response.status_code, 202)
        self.assertTrue(response.get_json()["queued"])
        app_module._get_layout_store().flush()

    def test_catalog_upload_refreshes_stops(self):
        truckload_id = db.add_truckload("API-UPLOAD")
        csv_body = (
            "stop,assignment,customer_id,customer,kind,width,length,quantity\n"
            "1,delivery,401,Upload Co,skid,4,4,2\n"
            "2,delivery,402,Bad Row,skid,0,4,1\n"
        )

        response = self.client.post(
            f"/api/truckloads/{truckload_id}/catalog/upload",
            data={"file": (io.BytesIO(csv_body.encode("utf-8")), "catalog.csv")},
            content_type="multipart/form-data",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["units"], 1)
        self.assertEqual(len(payload["rejected_rows"]), 1)
        stops = self.client.get(f"/api/truckloads/{truckload_id}/stops").get_json()["stops"]
        self.assertEqual(stops[0]["units"][0]["quantity"], 2)

    def test_loading_sheet_export(self):
        truckload_id, skid_id, _, _ = _seed_truckload("API-SHEET")
        self._post(f"/api/truckloads/{truckload_id}/editor/place", {"unit_id": skid_id, "x": 0, "y": 0})

        response = self.client.get(f"/truckloads/{truckload_id}/loading-sheet.xlsx")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, app_module.XLSX_MIMETYPE)
        self.assertIn("loading_sheet_API-SHEET", response.headers["Content-Disposition"])
        self.assertTrue(response.data.startswith(b"PK"))


if __name__ == "__main__":
    unittest.main()
