"""
Integration tests for the Fleet Ledger JSON API and CLI.
"""

import pytest

from models import FuelBaseline, Trip, TripCorrection, db
from tests.conftest import day, submit


def _payload(vehicle, start, hours, start_km, end_km, **extra):
    end = start.replace(hour=start.hour + hours)
    data = {
        "vehicle_id": vehicle.id,
        "start_time": start.isoformat(),
        "end_time": end.isoformat(),
        "start_km": start_km,
        "end_km": end_km,
        "route_from": "Nairobi",
        "route_to": "Nakuru",
        "gross_weight": 1000,
    }
    data.update(extra)
    return data


# ╔═══════════════════════════════════════════════════════════════════════════╗
# ║  1. SUBMIT                                                              ║
# ╚═══════════════════════════════════════════════════════════════════════════╝


class TestSubmitRoute:
    def test_create_trip(self, client, vehicle):
        r = client.post("/api/trips", json=_payload(vehicle, day(1), 8, 1000, 1200))
        assert r.status_code == 201
        body = r.get_json()
        assert body["status"] == "accepted"
        assert body["trip"]["end_km"] == 1200
        assert Trip.query.count() == 1

    def test_create_with_warning(self, client, vehicle):
        submit(vehicle, day(1), 8, 1000, 1200)
        r = client.post("/api/trips", json=_payload(vehicle, day(2), 8, 1300, 1400))
        assert r.status_code == 201
        body = r.get_json()
        assert body["status"] == "accepted_with_warnings"
        assert body["warnings"][0]["code"] == "LargeOdometerGap"

    def test_rejected_trip_conflict(self, client, vehicle):
        submit(vehicle, day(1), 8, 1000, 1200)
        r = client.post("/api/trips", json=_payload(vehicle, day(2), 8, 1150, 1300))
        assert r.status_code == 409
        body = r.get_json()
        assert body["status"] == "rejected"
        assert body["reason"] == "NegativeOdometerGap"
        assert "trip" not in body

    def test_missing_required_fields(self, client, vehicle):
        r = client.post("/api/trips", json={"vehicle_id": vehicle.id})
        assert r.status_code == 400
        assert "start_time is required." in r.get_json()["errors"]

    def test_bad_values(self, client, vehicle):
        data = _payload(vehicle, day(1), 8, 1000, 1200)
        data["start_time"] = "yesterday"
        data["end_km"] = "lots"
        data["refueling"] = "yes"
        r = client.post("/api/trips", json=data)
        assert r.status_code == 400
        errors = r.get_json()["errors"]
        assert "Invalid start_time date/time format." in errors
        assert "end_km must be a whole number." in errors
        assert "refueling must be true or false." in errors

    def test_unknown_field(self, client, vehicle):
        r = client.post("/api/trips", json=_payload(vehicle, day(1), 8, 1000, 1200, colour="red"))
        assert r.status_code == 400

    def test_offset_timestamps(self, client, vehicle):
        first = _payload(vehicle, day(2), 8, 1000, 1400, refueling=True, fuel_quantity=40)
        second = _payload(vehicle, day(3), 8, 1400, 1800, refueling=True, fuel_quantity=50)
        for data in (first, second):
            data["start_time"] += "+00:00"
            data["end_time"] += "+00:00"
            assert client.post("/api/trips", json=data).status_code == 201

        earlier = _payload(vehicle, day(1), 8, 800, 1000)
        earlier["start_time"] = "2026-04-06T11:00:00+03:00"
        earlier["end_time"] = "2026-04-06T19:00:00+03:00"
        r = client.post("/api/trips", json=earlier)
        assert r.status_code == 201
        assert r.get_json()["trip"]["start_time"] == "2026-04-06T08:00:00"
        assert Trip.query.filter_by(end_km=1800).one().mileage == 8.0

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/trips"),
        ("patch", "/api/trips/1"),
        ("post", "/api/trips/1/cascade-preview"),
    ])
    def test_non_object_body(self, client, vehicle, method, path):
        submit(vehicle, day(1), 8, 1000, 1200)
        r = getattr(client, method)(path, json=[1, 2])
        assert r.status_code == 400
        assert r.get_json()["errors"] == ["Request body must be a JSON object."]

    def test_unknown_vehicle(self, client):
        data = {
            "vehicle_id": 999, "start_time": "2026-04-06T08:00:00",
            "end_time": "2026-04-06T16:00:00", "start_km": 0, "end_km": 10,
        }
        r = client.post("/api/trips", json=data)
        assert r.status_code == 404
        assert r.get_json()["status"] == "not_found"


# ╔═══════════════════════════════════════════════════════════════════════════╗
# ║  2. READ / UPDATE / DELETE                                              ║
# ╚═══════════════════════════════════════════════════════════════════════════╝


class TestTripRoutes:
    def test_detail_includes_quality(self, client, vehicle):
        result = submit(vehicle, day(1), 8, 1000, 1400, refueling=True, fuel_quantity=40.0)
        r = client.get(f"/api/trips/{result.trip_id}")
        assert r.status_code == 200
        body = r.get_json()
        assert body["mileage"] == 10.0
        assert body["anomaly"] is None
        assert body["quality"]["overall"] == body["quality_score"]

    def test_detail_not_found(self, client):
        assert client.get("/api/trips/999").status_code == 404

    def test_update_cascades_and_logs(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        b = submit(vehicle, day(2), 8, 1200, 1400)
        r = client.patch(
            f"/api/trips/{a.trip_id}", json={"end_km": 1210, "reason": "Odometer misread"}
        )
        assert r.status_code == 200
        assert b.trip_id in r.get_json()["touched_trip_ids"]
        assert db.session.get(Trip, b.trip_id).start_km == 1210

        r = client.get(f"/api/trips/{b.trip_id}/corrections")
        corrections = r.get_json()
        assert corrections[0]["field_name"] == "odometer_cascade"
        assert corrections[0]["reason"] == "Odometer misread"

    def test_update_empty_body(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        r = client.patch(f"/api/trips/{a.trip_id}", json={})
        assert r.status_code == 400

    def test_update_vehicle_refused(self, client, vehicle, other_vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        r = client.patch(f"/api/trips/{a.trip_id}", json={"vehicle_id": other_vehicle.id})
        assert r.status_code == 400

    def test_update_rejected(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        r = client.patch(f"/api/trips/{a.trip_id}", json={"end_km": 900})
        assert r.status_code == 409
        assert r.get_json()["reason"] == "InvalidOdometerOrder"

    def test_delete_soft(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1400, refueling=True, fuel_quantity=40.0)
        submit(vehicle, day(2), 8, 1400, 1600)
        r = client.delete(f"/api/trips/{a.trip_id}")
        assert r.status_code == 200
        body = r.get_json()
        assert body["status"] == "soft_deleted"
        assert body["trip"]["deleted"] is True

        assert client.delete(f"/api/trips/{a.trip_id}").status_code == 404

    def test_delete_hard(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        r = client.delete(f"/api/trips/{a.trip_id}")
        assert r.status_code == 200
        assert r.get_json()["trip"] is None
        assert Trip.query.count() == 0

    def test_cascade_preview(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        b = submit(vehicle, day(2), 8, 1200, 1400)
        r = client.post(f"/api/trips/{a.trip_id}/cascade-preview", json={"end_km": 1250})
        assert r.status_code == 200
        assert r.get_json() == [{
            "trip_id": b.trip_id,
            "current_start_km": 1200,
            "new_start_km": 1250,
            "current_end_km": 1400,
            "new_end_km": 1450,
        }]
        assert TripCorrection.query.count() == 0

    def test_cascade_preview_bad_value(self, client, vehicle):
        a = submit(vehicle, day(1), 8, 1000, 1200)
        r = client.post(f"/api/trips/{a.trip_id}/cascade-preview", json={})
        assert r.status_code == 400


# ╔═══════════════════════════════════════════════════════════════════════════╗
# ║  3. VEHICLE REPORTS                                                     ║
# ╚═══════════════════════════════════════════════════════════════════════════╝


class TestVehicleRoutes:
    def _five_refuels(self, vehicle):
        km = 1000
        for n in range(1, 6):
            submit(vehicle, day(n), 8, km, km + 400, refueling=True,
                   fuel_quantity=50.0, gross_weight=20000.0)
            km += 400

    def test_baselines_recompute_and_list(self, client, vehicle):
        self._five_refuels(vehicle)
        r = client.post(f"/api/vehicles/{vehicle.id}/baselines/recompute")
        assert r.status_code == 200
        assert r.get_json()[0]["average_mileage"] == 8.0

        r = client.get(f"/api/vehicles/{vehicle.id}/baselines")
        rows = r.get_json()
        assert len(rows) == 1
        assert rows[0]["season"] == "summer"
        assert rows[0]["load_category"] == "heavy"
        assert rows[0]["confidence"] == 0.25

    def test_continuity(self, client, vehicle):
        submit(vehicle, day(1), 8, 1000, 1200)
        submit(vehicle, day(2), 8, 1200, 1400)
        r = client.get(f"/api/vehicles/{vehicle.id}/continuity")
        body = r.get_json()
        assert body["continuity_score"] == 100
        assert body["perfect"] == 1

    def test_continuity_bad_dates(self, client, vehicle):
        r = client.get(f"/api/vehicles/{vehicle.id}/continuity?date_from=soon")
        assert r.status_code == 400

    def test_chain(self, client, vehicle):
        self._five_refuels(vehicle)
        r = client.get(f"/api/vehicles/{vehicle.id}/chain")
        checks = r.get_json()
        assert len(checks) == 5
        assert all(c["chain_valid"] for c in checks)

    def test_rebuild(self, client, vehicle):
        submit(vehicle, day(1), 8, 1000, 1200)
        r = client.post(f"/api/vehicles/{vehicle.id}/rebuild")
        assert r.status_code == 200
        assert r.get_json()["status"] == "accepted"

    @pytest.mark.parametrize("path", ["baselines", "continuity", "chain"])
    def test_unknown_vehicle(self, client, path):
        assert client.get(f"/api/vehicles/999/{path}").status_code == 404


# ╔═══════════════════════════════════════════════════════════════════════════╗
# ║  4. CLI                                                                 ║
# ╚═══════════════════════════════════════════════════════════════════════════╝


class TestCli:
    def test_recompute_all(self, app, vehicle):
        km = 1000
        for n in range(1, 6):
            submit(vehicle, day(n), 8, km, km + 400, refueling=True, fuel_quantity=50.0)
            km += 400
        result = app.test_cli_runner().invoke(args=["recompute-baselines"])
        assert result.exit_code == 0
        assert "Recomputed 1 baseline buckets." in result.output
        assert FuelBaseline.query.count() == 1

    def test_recompute_one_vehicle(self, app, vehicle):
        result = app.test_cli_runner().invoke(
            args=["recompute-baselines", "--vehicle-id", str(vehicle.id)]
        )
        assert result.exit_code == 0
        assert "Recomputed 0 baseline buckets." in result.output
