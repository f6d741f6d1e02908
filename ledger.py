"""
Trip write pipeline.

Every write runs validate -> mutate -> recompute chain -> score as a single
unit while holding the vehicle's lock. A rejection or a failure anywhere in
the unit rolls the session back, so no partial odometer shift or half
recomputed chain is ever committed.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from mileage import cascade_odometer_correction, recompute_chain
from models import AuditLog, Trip, Vehicle, db, next_trip
from quality import apply_quality
from validation import (
    CASCADE_FAILURE,
    TripCandidate,
    TripRejected,
    ValidationIssue,
    check_mileage_plausibility,
    check_successor_gap,
    validate_candidate,
)

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
ACCEPTED_WITH_WARNINGS = "accepted_with_warnings"
REJECTED = "rejected"
SOFT_DELETED = "soft_deleted"

TRIP_FIELDS = set(TripCandidate.__dataclass_fields__)
UPDATABLE_FIELDS = TRIP_FIELDS - {"vehicle_id"}
CHAIN_FIELDS = {"start_km", "end_km", "end_time", "refueling", "fuel_quantity"}


@dataclass
class WriteResult:
    status: str
    trip_id: Optional[int] = None
    warnings: List[ValidationIssue] = field(default_factory=list)
    errors: List[ValidationIssue] = field(default_factory=list)
    touched_trip_ids: List[int] = field(default_factory=list)

    @property
    def ok(self):
        return self.status != REJECTED

    @property
    def reason(self):
        return self.errors[0].code if self.errors else None

    @classmethod
    def accepted(cls, trip_id, warnings=(), touched=()):
        status = ACCEPTED_WITH_WARNINGS if warnings else ACCEPTED
        return cls(status, trip_id, list(warnings), [], sorted(touched))

    @classmethod
    def rejected(cls, errors, trip_id=None):
        return cls(REJECTED, trip_id, [], list(errors))

    def to_dict(self):
        data = asdict(self)
        data["reason"] = self.reason
        return data


# ── Per-vehicle serialisation ────────────────────────────────────────────────

_registry_lock = threading.Lock()
_vehicle_locks = {}


@contextmanager
def vehicle_lock(vehicle_id):
    """Serialise writes against one vehicle; other vehicles proceed in parallel."""
    with _registry_lock:
        lock = _vehicle_locks.setdefault(vehicle_id, threading.RLock())
    with lock:
        yield


def _run_unit(vehicle_id, operation, *args):
    with vehicle_lock(vehicle_id):
        try:
            # Row lock for multi-process deployments (no-op on SQLite)
            vehicle = (
                Vehicle.query.filter_by(id=vehicle_id).with_for_update().one()
            )
            result = operation(vehicle, *args)
            db.session.commit()
            return result
        except TripRejected as e:
            db.session.rollback()
            return WriteResult.rejected(e.issues)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Write for vehicle %s rolled back", vehicle_id)
            return WriteResult.rejected(
                [ValidationIssue(CASCADE_FAILURE, f"Write rolled back: {e.__class__.__name__}")]
            )
        except Exception:
            db.session.rollback()
            raise


# ── Audit-log helper ─────────────────────────────────────────────────────────


def log_action(action, entity_type, entity_id=None, details=None, actor="system"):
    """Record an audit-log entry inside the current unit (no commit)."""
    db.session.add(AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    ))


def _finish(vehicle, touched, warnings, actor):
    """Score every touched trip and record warnings for audit."""
    for trip in sorted(touched.values(), key=lambda t: (t.start_time, t.id)):
        if not trip.deleted:
            apply_quality(trip, vehicle)
    for trip_id, warning in warnings:
        log_action("warning", "Trip", trip_id, f"{warning.code}: {warning.message}", actor)
    db.session.flush()


def _add_successor(touched, trip):
    nxt = next_trip(trip.vehicle_id, trip.end_time, exclude_trip_id=trip.id)
    if nxt is not None:
        touched[nxt.id] = nxt


def _get_vehicle(vehicle_id):
    vehicle = db.session.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise LookupError(f"Vehicle {vehicle_id} not found")
    return vehicle


def _get_active_trip(trip_id):
    trip = db.session.get(Trip, trip_id)
    if trip is None or trip.deleted:
        raise LookupError(f"Trip {trip_id} not found")
    return trip


# ── submit_trip ──────────────────────────────────────────────────────────────


def submit_trip(data, actor="system"):
    """Insert a new trip. Returns a WriteResult."""
    unknown = set(data) - TRIP_FIELDS
    if unknown:
        raise ValueError(f"Unknown trip fields: {', '.join(sorted(unknown))}")
    candidate = TripCandidate(**data)
    _get_vehicle(candidate.vehicle_id)
    return _run_unit(candidate.vehicle_id, _submit, candidate, actor)


def _submit(vehicle, candidate, actor):
    issues = validate_candidate(candidate, vehicle)

    trip = Trip(**asdict(candidate))
    db.session.add(trip)
    db.session.flush()

    touched = {trip.id: trip}
    if trip.refueling:
        for node in recompute_chain(vehicle.id, since=trip.end_time, settle_after=trip.end_time):
            touched[node.id] = node
    _add_successor(touched, trip)

    mileage_issue = check_mileage_plausibility(trip, vehicle)
    if mileage_issue is not None:
        issues.append(mileage_issue)

    log_action("create", "Trip", trip.id,
               f"Trip {trip.start_km}-{trip.end_km} km, refueling={trip.refueling}", actor)
    _finish(vehicle, touched, [(trip.id, i) for i in issues], actor)
    return WriteResult.accepted(trip.id, issues, touched)


# ── update_trip ──────────────────────────────────────────────────────────────


def update_trip(trip_id, changes, reason=None, actor="system"):
    """
    Apply *changes* to an active trip.

    A change of ``end_km`` cascades to every later trip of the vehicle and
    is written to the correction log with *reason*.
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    trip = _get_active_trip(trip_id)
    return _run_unit(trip.vehicle_id, _update, trip_id, dict(changes), reason, actor)


def _update(vehicle, trip_id, changes, reason, actor):
    trip = _get_active_trip(trip_id)
    candidate = TripCandidate.from_trip(trip, **changes)
    issues = validate_candidate(
        candidate, vehicle, exclude_trip_id=trip.id, check_successor=False
    )

    old_end_km = trip.end_km
    old_end_time = trip.end_time
    for name in changes:
        setattr(trip, name, getattr(candidate, name))
    if not trip.refueling:
        trip.mileage = None
        trip.chained_from_id = None
    db.session.flush()

    touched = {trip.id: trip}
    shifted = []
    if trip.end_km != old_end_km:
        shifted = cascade_odometer_correction(trip, old_end_km, reason)
        touched.update((t.id, t) for t in shifted)

    successor_issue = check_successor_gap(TripCandidate.from_trip(trip), exclude_trip_id=trip.id)
    if successor_issue is not None:
        raise TripRejected([successor_issue])

    if CHAIN_FIELDS & set(changes):
        since = min(old_end_time, trip.end_time)
        settle_after = max(old_end_time, trip.end_time)
        for node in recompute_chain(vehicle.id, since=since, settle_after=settle_after):
            touched[node.id] = node
    _add_successor(touched, trip)

    mileage_issue = check_mileage_plausibility(trip, vehicle)
    if mileage_issue is not None:
        issues.append(mileage_issue)

    details = f"Changed {', '.join(sorted(changes))}"
    if shifted:
        details += f"; cascaded {trip.end_km - old_end_km:+d} km to {len(shifted)} later trips"
    log_action("edit", "Trip", trip.id, details, actor)
    _finish(vehicle, touched, [(trip.id, i) for i in issues], actor)
    return WriteResult.accepted(trip.id, issues, touched)


# ── delete_trip ──────────────────────────────────────────────────────────────


def has_chain_dependents(trip):
    """
    True when an active non-refueling trip of the vehicle starts at or after
    *trip* ends and before the next active refueling trip.
    """
    next_refuel = Trip.query.filter(
        Trip.vehicle_id == trip.vehicle_id,
        Trip.refueling,
        ~Trip.deleted,
        Trip.id != trip.id,
        Trip.end_time > trip.end_time,
    ).order_by(Trip.end_time, Trip.id).first()

    query = Trip.query.filter(
        Trip.vehicle_id == trip.vehicle_id,
        ~Trip.refueling,
        ~Trip.deleted,
        Trip.start_time >= trip.end_time,
    )
    if next_refuel is not None:
        query = query.filter(Trip.start_time < next_refuel.start_time)
    return bool(db.session.query(query.exists()).scalar())


def delete_trip(trip_id, actor="system"):
    """
    Delete a trip.

    A refueling trip with dependents is kept as a soft-deleted row (its
    stored mileage stays for display); anything else is removed.
    """
    trip = _get_active_trip(trip_id)
    return _run_unit(trip.vehicle_id, _delete, trip_id, actor)


def _delete(vehicle, trip_id, actor):
    trip = _get_active_trip(trip_id)
    end_time = trip.end_time
    was_refueling = trip.refueling
    successor = next_trip(trip.vehicle_id, end_time, exclude_trip_id=trip.id)
    touched = {}
    if successor is not None:
        touched[successor.id] = successor

    if was_refueling and has_chain_dependents(trip):
        trip.deleted = True
        trip.deleted_at = datetime.now(timezone.utc)
        trip.deletion_reason = "Soft deleted - has dependent non-refueling trips"
        db.session.flush()
        for node in recompute_chain(vehicle.id, since=end_time, settle_after=end_time):
            touched[node.id] = node
        log_action("soft_delete", "Trip", trip.id, trip.deletion_reason, actor)
        _finish(vehicle, touched, [], actor)
        return WriteResult(SOFT_DELETED, trip.id, touched_trip_ids=sorted(touched))

    for follower in Trip.query.filter_by(chained_from_id=trip.id).all():
        follower.chained_from_id = None
    db.session.delete(trip)
    db.session.flush()

    if was_refueling:
        for node in recompute_chain(vehicle.id, since=end_time, settle_after=end_time):
            touched[node.id] = node
    log_action("delete", "Trip", trip_id, "Trip removed", actor)
    _finish(vehicle, touched, [], actor)
    return WriteResult.accepted(trip_id, touched=touched)


# ── Full rebuild ─────────────────────────────────────────────────────────────


def rebuild_vehicle(vehicle_id, actor="system"):
    """Recompute the whole chain (no early exit) and rescore every active trip."""
    _get_vehicle(vehicle_id)
    return _run_unit(vehicle_id, _rebuild, actor)


def _rebuild(vehicle, actor):
    changed = recompute_chain(vehicle.id)
    touched = {
        t.id: t
        for t in Trip.query.filter(Trip.vehicle_id == vehicle.id, ~Trip.deleted).all()
    }
    log_action("rebuild", "Vehicle", vehicle.id,
               f"Chain rebuilt, {len(changed)} mileage values changed", actor)
    _finish(vehicle, touched, [], actor)
    return WriteResult.accepted(None, touched=touched)
