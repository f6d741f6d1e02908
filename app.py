"""
Fleet Ledger – Trip Integrity & Mileage Reconciliation
=======================================================
Main Flask application – configuration, JSON API over the trip ledger, and
the scheduled baseline job.

The ledger keeps each vehicle's trips physically consistent (odometer never
runs backward, no overlapping trips), maintains tank-to-tank mileage along the
refueling chain, flags mileage anomalies against per-vehicle baselines and
scores every trip's data quality.

How to run
----------
1.  pip install -e .
2.  python app.py                 # dev server on http://127.0.0.1:5000
3.  flask --app app recompute-baselines   # from cron / a scheduler
"""

import os
from datetime import datetime

import click
from dotenv import load_dotenv
from flask import Flask, abort, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

import ledger
from baselines import detect_anomaly, recompute_all_baselines, recompute_baselines
from mileage import audit_chain, preview_cascade
from models import FuelBaseline, Trip, TripCorrection, Vehicle, db
from quality import score_trip
from settings import DEFAULTS, parse_threshold
from validation import analyze_continuity

# ── App & config ─────────────────────────────────────────────────────────────

load_dotenv()  # load .env file if present

app = Flask(__name__)

basedir = os.path.abspath(os.path.dirname(__file__))
database_url = os.environ.get(
    "DATABASE_URL", "sqlite:///" + os.path.join(basedir, "ledger.db")
)
# Heroku / PythonAnywhere may provide postgres:// but SQLAlchemy 2.x needs postgresql://
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)
app.config["SQLALCHEMY_DATABASE_URI"] = database_url
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "fleet-ledger-dev-secret-key")
app.config["RATELIMIT_ENABLED"] = os.environ.get("RATELIMIT_ENABLED", "1") == "1"

# ── Engine thresholds (override any of them through the environment) ───────
for key, default in DEFAULTS.items():
    raw = os.environ.get(key)
    app.config[key] = parse_threshold(key, raw) if raw is not None else default

db.init_app(app)
limiter = Limiter(app=app, key_func=get_remote_address, default_limits=[])

WRITE_LIMIT = os.environ.get("WRITE_RATE_LIMIT", "120/minute")

# ── Create DB tables ─────────────────────────────────────────────────────────

with app.app_context():
    db.create_all()


# ── Request parsing helpers ──────────────────────────────────────────────────

DATETIME_FIELDS = ("start_time", "end_time")
INT_FIELDS = ("vehicle_id", "driver_id", "start_km", "end_km")
FLOAT_FIELDS = ("fuel_quantity", "gross_weight")
TEXT_FIELDS = ("route_from", "route_to", "remarks")


def parse_trip_fields(payload, required=()):
    """
    Convert a JSON body into typed trip fields.

    Returns ``(fields, errors)``; *errors* is a list of human-readable
    messages, empty when the payload is usable.
    """
    errors = []
    fields = {}

    for name in required:
        if payload.get(name) in (None, ""):
            errors.append(f"{name} is required.")

    for name, raw in payload.items():
        if name in DATETIME_FIELDS:
            try:
                fields[name] = datetime.fromisoformat(raw)
            except (TypeError, ValueError):
                errors.append(f"Invalid {name} date/time format.")
        elif name in INT_FIELDS:
            if raw is None and name == "driver_id":
                fields[name] = None
                continue
            try:
                fields[name] = int(raw)
                if name.endswith("_km") and fields[name] < 0:
                    errors.append("Odometer reading cannot be negative.")
            except (TypeError, ValueError):
                errors.append(f"{name} must be a whole number.")
        elif name in FLOAT_FIELDS:
            if raw is None:
                fields[name] = None
                continue
            try:
                fields[name] = float(raw)
                if fields[name] < 0:
                    errors.append(f"{name} cannot be negative.")
            except (TypeError, ValueError):
                errors.append(f"{name} must be a number.")
        elif name == "refueling":
            if not isinstance(raw, bool):
                errors.append("refueling must be true or false.")
            fields[name] = bool(raw)
        elif name in TEXT_FIELDS:
            fields[name] = (raw or "").strip() or None
        else:
            errors.append(f"Unknown field: {name}.")

    return fields, errors


def result_response(result, created=False):
    status = 409 if result.status == ledger.REJECTED else (201 if created else 200)
    body = result.to_dict()
    if result.trip_id is not None and result.ok:
        trip = db.session.get(Trip, result.trip_id)
        body["trip"] = trip.to_dict() if trip is not None else None
    return jsonify(body), status


def bad_request(errors):
    return jsonify({"status": "invalid", "errors": errors}), 400


@app.errorhandler(404)
def not_found(e):
    return jsonify({"status": "not_found", "error": str(e.description)}), 404


# ╔═══════════════════════════════════════════════════════════════════════════╗
# ║  TRIPS                                                                  ║
# ╚═══════════════════════════════════════════════════════════════════════════╝


@app.route("/api/trips", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
def trip_submit():
    """Insert a trip through the validator, chain and scorer."""
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return bad_request(["Request body must be a JSON object."])
    fields, errors = parse_trip_fields(
        payload, required=("vehicle_id", "start_time", "end_time", "start_km", "end_km")
    )
    if errors:
        return bad_request(errors)

    try:
        result = ledger.submit_trip(fields)
    except LookupError as e:
        abort(404, description=str(e))
    except ValueError as e:
        return bad_request([str(e)])

    if result.ok:
        app.logger.info("Trip %s %s", result.trip_id, result.status)
    return result_response(result, created=result.ok)


@app.route("/api/trips/<int:trip_id>", methods=["GET"])
def trip_detail(trip_id):
    trip = db.get_or_404(Trip, trip_id)
    body = trip.to_dict()
    anomaly = detect_anomaly(trip)
    body["anomaly"] = anomaly.to_dict() if anomaly is not None else None
    body["quality"] = score_trip(trip, anomaly=anomaly).to_dict()
    return jsonify(body)


@app.route("/api/trips/<int:trip_id>", methods=["PATCH"])
@limiter.limit(WRITE_LIMIT)
def trip_update(trip_id):
    """Update a trip; an end_km change cascades to every later trip."""
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return bad_request(["Request body must be a JSON object."])
    payload = dict(payload)
    reason = payload.pop("reason", None)
    fields, errors = parse_trip_fields(payload)
    if not fields and not errors:
        errors.append("No fields to update.")
    if errors:
        return bad_request(errors)

    try:
        result = ledger.update_trip(trip_id, fields, reason=reason)
    except LookupError as e:
        abort(404, description=str(e))
    except ValueError as e:
        return bad_request([str(e)])
    return result_response(result)


@app.route("/api/trips/<int:trip_id>", methods=["DELETE"])
@limiter.limit(WRITE_LIMIT)
def trip_delete(trip_id):
    try:
        result = ledger.delete_trip(trip_id)
    except LookupError as e:
        abort(404, description=str(e))
    return result_response(result)


@app.route("/api/trips/<int:trip_id>/corrections")
def trip_corrections(trip_id):
    db.get_or_404(Trip, trip_id)
    corrections = (
        TripCorrection.query.filter_by(trip_id=trip_id)
        .order_by(TripCorrection.id)
        .all()
    )
    return jsonify([c.to_dict() for c in corrections])


@app.route("/api/trips/<int:trip_id>/cascade-preview", methods=["POST"])
def trip_cascade_preview(trip_id):
    """Which later trips would shift if end_km were changed (read-only)."""
    trip = db.get_or_404(Trip, trip_id)
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return bad_request(["Request body must be a JSON object."])
    try:
        new_end_km = int(payload.get("end_km"))
    except (TypeError, ValueError):
        return bad_request(["end_km must be a whole number."])
    limit = request.args.get("limit", 10, type=int)
    return jsonify(preview_cascade(trip, new_end_km, limit=limit))


# ╔═══════════════════════════════════════════════════════════════════════════╗
# ║  VEHICLES                                                               ║
# ╚═══════════════════════════════════════════════════════════════════════════╝


@app.route("/api/vehicles/<int:vehicle_id>/baselines")
def vehicle_baselines(vehicle_id):
    db.get_or_404(Vehicle, vehicle_id)
    rows = (
        FuelBaseline.query.filter_by(vehicle_id=vehicle_id)
        .order_by(FuelBaseline.season, FuelBaseline.load_category)
        .all()
    )
    return jsonify([r.to_dict() for r in rows])


@app.route("/api/vehicles/<int:vehicle_id>/baselines/recompute", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
def vehicle_baselines_recompute(vehicle_id):
    db.get_or_404(Vehicle, vehicle_id)
    rows = recompute_baselines(vehicle_id)
    db.session.commit()
    return jsonify([r.to_dict() for r in rows])


@app.route("/api/vehicles/<int:vehicle_id>/continuity")
def vehicle_continuity(vehicle_id):
    db.get_or_404(Vehicle, vehicle_id)
    date_from = request.args.get("date_from", "")
    date_to = request.args.get("date_to", "")
    try:
        dt_from = datetime.fromisoformat(date_from) if date_from else None
        dt_to = datetime.fromisoformat(date_to + "T23:59:59") if date_to else None
    except ValueError:
        return bad_request(["Invalid date range."])
    return jsonify(analyze_continuity(vehicle_id, dt_from, dt_to).to_dict())


@app.route("/api/vehicles/<int:vehicle_id>/chain")
def vehicle_chain(vehicle_id):
    db.get_or_404(Vehicle, vehicle_id)
    return jsonify([c.to_dict() for c in audit_chain(vehicle_id)])


@app.route("/api/vehicles/<int:vehicle_id>/rebuild", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
def vehicle_rebuild(vehicle_id):
    try:
        result = ledger.rebuild_vehicle(vehicle_id)
    except LookupError as e:
        abort(404, description=str(e))
    return result_response(result)


# ── Scheduled job ────────────────────────────────────────────────────────────


@app.cli.command("recompute-baselines")
@click.option("--vehicle-id", type=int, default=None, help="Only this vehicle.")
def recompute_baselines_command(vehicle_id):
    """Rebuild the mileage baselines (all vehicles by default)."""
    if vehicle_id is None:
        total = recompute_all_baselines()
    else:
        total = len(recompute_baselines(vehicle_id))
        db.session.commit()
    app.logger.info("Recomputed %d baseline buckets", total)
    click.echo(f"Recomputed {total} baseline buckets.")


# ── Run ──────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_DEBUG", "1") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
