"""
Fleet Ledger – Trip Integrity & Mileage Reconciliation
SQLAlchemy models for Vehicle, Driver, Trip, FuelBaseline, TripCorrection and AuditLog.
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


# ---------------------------------------------------------------------------
# Vehicle  (capacity profile is maintained elsewhere – read-only here)
# ---------------------------------------------------------------------------
class Vehicle(db.Model):
    __tablename__ = "vehicles"

    id = db.Column(db.Integer, primary_key=True)
    registration_number = db.Column(db.String(20), unique=True, nullable=False)
    odometer = db.Column(db.Integer, nullable=False, default=0)

    # Capacity profile
    tank_capacity = db.Column(db.Float, nullable=True)  # litres
    max_daily_distance = db.Column(db.Integer, nullable=True)  # km per day
    min_mileage = db.Column(db.Float, nullable=True)  # km/L
    max_mileage = db.Column(db.Float, nullable=True)  # km/L

    # Relationships
    trips = db.relationship("Trip", backref="vehicle", lazy=True)
    baselines = db.relationship(
        "FuelBaseline", backref="vehicle", lazy=True, cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Vehicle {self.registration_number}>"


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------
class Driver(db.Model):
    __tablename__ = "drivers"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(120), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="active"
    )  # active | inactive

    trips = db.relationship("Trip", backref="driver", lazy=True)

    def __repr__(self):
        return f"<Driver {self.full_name}>"


# ---------------------------------------------------------------------------
# Trip
# ---------------------------------------------------------------------------
class Trip(db.Model):
    __tablename__ = "trips"

    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id"), nullable=False)
    driver_id = db.Column(db.Integer, db.ForeignKey("drivers.id"), nullable=True)

    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)

    start_km = db.Column(db.Integer, nullable=False)
    end_km = db.Column(db.Integer, nullable=False)

    refueling = db.Column(db.Boolean, nullable=False, default=False)
    fuel_quantity = db.Column(db.Float, nullable=True)  # litres, refueling trips only
    gross_weight = db.Column(db.Float, nullable=True)  # kg

    route_from = db.Column(db.String(200), nullable=True)
    route_to = db.Column(db.String(200), nullable=True)
    remarks = db.Column(db.Text, nullable=True)

    # Derived by the engine
    mileage = db.Column(db.Float, nullable=True)  # km/L, tank-to-tank
    chained_from_id = db.Column(db.Integer, db.ForeignKey("trips.id"), nullable=True)
    quality_score = db.Column(db.Float, nullable=True)
    quality_flags = db.Column(db.JSON, nullable=False, default=list)

    deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime, nullable=True)
    deletion_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    chained_from = db.relationship("Trip", remote_side=[id], lazy=True)
    corrections = db.relationship(
        "TripCorrection",
        backref="trip",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="TripCorrection.id",
    )

    @property
    def distance(self):
        return self.end_km - self.start_km

    @property
    def duration_hours(self):
        return (self.end_time - self.start_time).total_seconds() / 3600

    def to_dict(self):
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "driver_id": self.driver_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "start_km": self.start_km,
            "end_km": self.end_km,
            "refueling": self.refueling,
            "fuel_quantity": self.fuel_quantity,
            "gross_weight": self.gross_weight,
            "route_from": self.route_from,
            "route_to": self.route_to,
            "mileage": self.mileage,
            "chained_from_id": self.chained_from_id,
            "quality_score": self.quality_score,
            "quality_flags": list(self.quality_flags or []),
            "deleted": self.deleted,
        }

    def __repr__(self):
        return f"<Trip {self.id} for Vehicle {self.vehicle_id}>"


# ---------------------------------------------------------------------------
# FuelBaseline  (one row per vehicle / season / load bucket)
# ---------------------------------------------------------------------------
class FuelBaseline(db.Model):
    __tablename__ = "fuel_baselines"
    __table_args__ = (
        db.UniqueConstraint("vehicle_id", "season", "load_category", name="uq_baseline_bucket"),
    )

    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id"), nullable=False)
    season = db.Column(db.String(20), nullable=False)  # summer | monsoon | winter
    load_category = db.Column(db.String(20), nullable=False)  # light | medium | heavy
    average_mileage = db.Column(db.Float, nullable=False)
    sample_count = db.Column(db.Integer, nullable=False)
    confidence = db.Column(db.Float, nullable=False)
    computed_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self):
        return {
            "vehicle_id": self.vehicle_id,
            "season": self.season,
            "load_category": self.load_category,
            "average_mileage": self.average_mileage,
            "sample_count": self.sample_count,
            "confidence": self.confidence,
            "computed_at": self.computed_at.isoformat(),
        }

    def __repr__(self):
        return f"<FuelBaseline {self.vehicle_id} {self.season}/{self.load_category}>"


# ---------------------------------------------------------------------------
# TripCorrection  (audit of odometer edits and their cascade)
# ---------------------------------------------------------------------------
class TripCorrection(db.Model):
    __tablename__ = "trip_corrections"

    id = db.Column(db.Integer, primary_key=True)
    trip_id = db.Column(
        db.Integer, db.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False
    )
    field_name = db.Column(db.String(50), nullable=False)  # end_km | odometer_cascade
    old_value = db.Column(db.String(100), nullable=True)
    new_value = db.Column(db.String(100), nullable=True)
    cascade = db.Column(db.Boolean, nullable=False, default=False)
    reason = db.Column(db.Text, nullable=True)
    corrected_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self):
        return {
            "trip_id": self.trip_id,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "cascade": self.cascade,
            "reason": self.reason,
            "corrected_at": self.corrected_at.isoformat(),
        }

    def __repr__(self):
        return f"<TripCorrection {self.id} – {self.field_name} on Trip {self.trip_id}>"


# ---------------------------------------------------------------------------
# AuditLog  (write outcomes and validation warnings)
# ---------------------------------------------------------------------------
class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(80), nullable=False, default="system")
    action = db.Column(
        db.String(20), nullable=False
    )  # create | edit | delete | soft_delete | warning | rebuild
    entity_type = db.Column(db.String(50), nullable=False)  # Trip | Vehicle
    entity_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.Text, nullable=True)
    timestamp = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<AuditLog {self.id} – {self.action} {self.entity_type} #{self.entity_id}>"


# ---------------------------------------------------------------------------
# Helper: Conflict Detection
# ---------------------------------------------------------------------------
def find_overlapping_trip(start_dt, end_dt, vehicle_id=None, driver_id=None, exclude_trip_id=None):
    """
    Return an active Trip of *vehicle_id* (or *driver_id*) whose interval
    overlaps [start_dt, end_dt).

    Two half-open intervals [A_start, A_end) and [B_start, B_end) overlap when:
        A_start < B_end  AND  B_start < A_end

    so back-to-back trips (one ends exactly when the next starts) never clash.

    Parameters
    ----------
    start_dt : datetime
        Candidate trip start.
    end_dt : datetime
        Candidate trip end.
    vehicle_id : int | None
        Restrict the search to this vehicle.
    driver_id : int | None
        Restrict the search to this driver.
    exclude_trip_id : int | None
        If provided, ignore this trip (useful when editing an existing one).

    Returns
    -------
    Trip | None
        The first conflicting trip found, or None if there is no conflict.
    """
    if vehicle_id is None and driver_id is None:
        raise ValueError("vehicle_id or driver_id is required")

    query = Trip.query.filter(
        ~Trip.deleted,
        Trip.start_time < end_dt,
        Trip.end_time > start_dt,
    )
    if vehicle_id is not None:
        query = query.filter(Trip.vehicle_id == vehicle_id)
    if driver_id is not None:
        query = query.filter(Trip.driver_id == driver_id)
    if exclude_trip_id is not None:
        query = query.filter(Trip.id != exclude_trip_id)

    return query.order_by(Trip.start_time).first()


def active_trips(vehicle_id):
    """Active trips of a vehicle in ascending time order."""
    return Trip.query.filter(
        Trip.vehicle_id == vehicle_id,
        ~Trip.deleted,
    ).order_by(Trip.start_time, Trip.id)


def previous_trip(vehicle_id, before, exclude_trip_id=None):
    """Latest active trip of the vehicle ending at or before *before*."""
    query = active_trips(vehicle_id).filter(Trip.end_time <= before)
    if exclude_trip_id is not None:
        query = query.filter(Trip.id != exclude_trip_id)
    return query.order_by(None).order_by(Trip.end_time.desc(), Trip.id.desc()).first()


def next_trip(vehicle_id, after, exclude_trip_id=None):
    """Earliest active trip of the vehicle starting at or after *after*."""
    query = active_trips(vehicle_id).filter(Trip.start_time >= after)
    if exclude_trip_id is not None:
        query = query.filter(Trip.id != exclude_trip_id)
    return query.first()
