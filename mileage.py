"""
Mileage Chain Calculator.

Per vehicle, the active refueling trips form a singly-linked chain ordered by
end time. A node's tank-to-tank mileage depends only on itself and its
immediate predecessor, so every recompute is one ordered pass over the chain.
"""

import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from models import Trip, TripCorrection, active_trips, db
from settings import setting

logger = logging.getLogger(__name__)


def refuel_chain(vehicle_id):
    """Active refueling trips of a vehicle, ordered by end time."""
    return Trip.query.filter(
        Trip.vehicle_id == vehicle_id,
        Trip.refueling,
        ~Trip.deleted,
    ).order_by(Trip.end_time, Trip.id).all()


def tank_to_tank(trip, predecessor=None):
    """
    Mileage of a refueling trip.

    ``(trip.end_km - predecessor.end_km) / trip.fuel_quantity``, or the trip's
    own distance over its fuel when there is no predecessor. A missing or
    non-positive fuel quantity gives ``None`` instead of failing the write.
    """
    if trip.fuel_quantity is None or trip.fuel_quantity <= 0:
        return None
    if predecessor is None:
        distance = trip.end_km - trip.start_km
    else:
        distance = trip.end_km - predecessor.end_km
    return round(distance / trip.fuel_quantity, 2)


def recompute_chain(vehicle_id, since=None, settle_after=None):
    """
    Recompute the refueling chain of a vehicle in ascending end-time order.

    Parameters
    ----------
    vehicle_id : int
        Vehicle whose chain is recomputed.
    since : datetime | None
        Nodes ending before this point are only read (as predecessors).
    settle_after : datetime | None
        Once a node ending after this point comes out unchanged, the rest of
        the chain is left alone. ``None`` forces a full pass.

    Returns
    -------
    list[Trip]
        Nodes whose mileage or predecessor link changed.
    """
    changed = []
    prev = None
    for node in refuel_chain(vehicle_id):
        if since is not None and node.end_time < since:
            prev = node
            continue

        mileage = tank_to_tank(node, prev)
        link = prev.id if prev is not None else None
        if node.mileage == mileage and node.chained_from_id == link:
            if settle_after is not None and node.end_time > settle_after:
                break
        else:
            logger.debug("Trip %s mileage %s -> %s", node.id, node.mileage, mileage)
            node.mileage = mileage
            node.chained_from_id = link
            changed.append(node)
        prev = node

    db.session.flush()
    return changed


# ── Odometer correction cascade ─────────────────────────────────────────────


def later_trips(trip):
    """Active trips of the same vehicle starting at or after *trip* ends."""
    return active_trips(trip.vehicle_id).filter(
        Trip.start_time >= trip.end_time,
        Trip.id != trip.id,
    ).all()


def cascade_odometer_correction(trip, old_end_km, reason=None):
    """
    Propagate a change of ``trip.end_km`` to every later trip of the vehicle.

    *trip* already carries its new ``end_km``. Each later active trip has its
    start and end odometer shifted by the same delta, in ascending time order,
    and every shift is written to the correction log. Nothing is committed
    here: the caller owns the transaction, so a failure rolls back every shift.

    Returns the list of shifted trips.
    """
    delta = trip.end_km - old_end_km
    db.session.add(TripCorrection(
        trip_id=trip.id,
        field_name="end_km",
        old_value=str(old_end_km),
        new_value=str(trip.end_km),
        cascade=False,
        reason=reason,
    ))
    if delta == 0:
        return []

    shifted = []
    for later in later_trips(trip):
        old_range = f"{later.start_km}-{later.end_km}"
        later.start_km += delta
        later.end_km += delta
        db.session.add(TripCorrection(
            trip_id=later.id,
            field_name="odometer_cascade",
            old_value=old_range,
            new_value=f"{later.start_km}-{later.end_km}",
            cascade=True,
            reason=reason,
        ))
        shifted.append(later)

    db.session.flush()
    logger.info(
        "Cascaded %+d km from trip %s to %d later trips of vehicle %s",
        delta, trip.id, len(shifted), trip.vehicle_id,
    )
    return shifted


def preview_cascade(trip, new_end_km, limit=10):
    """Read-only view of the trips a correction to *new_end_km* would shift."""
    delta = new_end_km - trip.end_km
    return [
        {
            "trip_id": later.id,
            "current_start_km": later.start_km,
            "new_start_km": later.start_km + delta,
            "current_end_km": later.end_km,
            "new_end_km": later.end_km + delta,
        }
        for later in later_trips(trip)[:limit]
    ]


# ── Chain audit ──────────────────────────────────────────────────────────────


@dataclass
class ChainCheck:
    trip_id: int
    fuel_quantity: Optional[float]
    distance_km: int
    stored_mileage: Optional[float]
    expected_mileage: Optional[float]
    chain_valid: bool
    message: str

    def to_dict(self):
        return asdict(self)


def audit_chain(vehicle_id) -> List[ChainCheck]:
    """Compare each stored mileage in the chain against a fresh computation."""
    tolerance = setting("CHAIN_TOLERANCE")
    checks = []
    prev = None
    for node in refuel_chain(vehicle_id):
        expected = tank_to_tank(node, prev)
        distance = node.end_km - (prev.end_km if prev is not None else node.start_km)

        if expected is None:
            valid = node.mileage is None
            message = "No fuel quantity recorded"
        elif node.mileage is not None and abs(node.mileage - expected) < tolerance:
            valid = True
            message = "First refueling trip - no previous reference" if prev is None else "Chain valid"
        else:
            valid = False
            message = f"Mismatch: calculated={node.mileage}, expected={expected}"

        checks.append(ChainCheck(
            trip_id=node.id,
            fuel_quantity=node.fuel_quantity,
            distance_km=distance,
            stored_mileage=node.mileage,
            expected_mileage=expected,
            chain_valid=valid,
            message=message,
        ))
        prev = node
    return checks
