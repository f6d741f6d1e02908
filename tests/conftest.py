"""
Shared pytest fixtures for the Fleet Ledger tests.
Uses an in-memory SQLite database so tests never touch production data.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATELIMIT_ENABLED"] = "0"

import pytest
from datetime import datetime, timedelta

import ledger
from app import app as flask_app, limiter
from models import db as _db, Driver, Vehicle

DAY1 = datetime(2026, 4, 6)  # a Monday in the summer band


@pytest.fixture(scope="session")
def app():
    """Create the Flask application with a test config."""
    flask_app.config.update({"TESTING": True})
    limiter.enabled = False
    with flask_app.app_context():
        yield flask_app


@pytest.fixture(autouse=True)
def clean_db(app):
    """Recreate every table so each test starts from an empty ledger."""
    _db.drop_all()
    _db.create_all()
    yield
    _db.session.rollback()
    _db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Helper: Vehicles & drivers ──────────────────────────────────────────────


@pytest.fixture()
def vehicle(app):
    v = Vehicle(
        registration_number="KAA 001A",
        odometer=1000,
        tank_capacity=80,
        max_daily_distance=800,
        min_mileage=2.0,
        max_mileage=15.0,
    )
    _db.session.add(v)
    _db.session.commit()
    return v


@pytest.fixture()
def other_vehicle(app):
    v = Vehicle(registration_number="KBB 002B", odometer=5000, tank_capacity=300)
    _db.session.add(v)
    _db.session.commit()
    return v


@pytest.fixture()
def driver(app):
    d = Driver(full_name="Test Driver")
    _db.session.add(d)
    _db.session.commit()
    return d


@pytest.fixture()
def other_driver(app):
    d = Driver(full_name="Second Driver")
    _db.session.add(d)
    _db.session.commit()
    return d


# ── Helper: Trips ────────────────────────────────────────────────────────────


def trip_data(vehicle, start, hours, start_km, end_km, **extra):
    """Field dict for a trip starting at *start* and lasting *hours*."""
    data = {
        "vehicle_id": vehicle.id,
        "start_time": start,
        "end_time": start + timedelta(hours=hours),
        "start_km": start_km,
        "end_km": end_km,
        "route_from": "Nairobi",
        "route_to": "Nakuru",
        "gross_weight": 1000.0,
    }
    data.update(extra)
    return data


def submit(vehicle, start, hours, start_km, end_km, **extra):
    """Submit a trip and fail the test unless it was accepted."""
    result = ledger.submit_trip(trip_data(vehicle, start, hours, start_km, end_km, **extra))
    assert result.ok, result.errors
    return result


def day(n, hour=8):
    """Start of trip day *n* (1-based) at *hour*."""
    return DAY1 + timedelta(days=n - 1, hours=hour)
