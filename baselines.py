"""
Baseline & Anomaly Engine.

Tracks a per-vehicle expectation of mileage, segmented by season and load,
and flags refueling trips that deviate from it.

Usage:
    recompute_baselines(vehicle.id)        # on demand or from the scheduler
    result = detect_anomaly(trip)
    if result and result.is_anomaly:
        print(f"Trip {trip.id} off baseline by {result.deviation_pct}%")
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from models import FuelBaseline, Trip, Vehicle, db
from settings import setting

logger = logging.getLogger(__name__)

_SEASON_BY_MONTH = {
    3: "summer", 4: "summer", 5: "summer", 6: "summer",
    7: "monsoon", 8: "monsoon", 9: "monsoon", 10: "monsoon",
    11: "winter", 12: "winter", 1: "winter", 2: "winter",
}


def season_for(moment):
    return _SEASON_BY_MONTH[moment.month]


def load_category(gross_weight):
    """Bucket a gross load weight (kg); an unknown weight counts as light."""
    weight = gross_weight or 0
    if weight < setting("LOAD_LIGHT_MAX_KG"):
        return "light"
    if weight < setting("LOAD_MEDIUM_MAX_KG"):
        return "medium"
    return "heavy"


def bucket_for(trip):
    return season_for(trip.start_time), load_category(trip.gross_weight)


def confidence_for(sample_count):
    return min(sample_count / setting("BASELINE_TARGET_SAMPLES"), 1.0)


def _mileage_samples(vehicle_id, exclude_trip_id=None):
    query = Trip.query.filter(
        Trip.vehicle_id == vehicle_id,
        Trip.refueling,
        ~Trip.deleted,
        Trip.mileage.isnot(None),
    )
    if exclude_trip_id is not None:
        query = query.filter(Trip.id != exclude_trip_id)
    return query.order_by(Trip.end_time).all()


def recompute_baselines(vehicle_id):
    """
    Rebuild the baseline table of one vehicle from its active refueling trips.

    Buckets below the minimum sample count get no row; rows left over from
    an earlier run for such buckets are removed.
    """
    buckets = defaultdict(list)
    for trip in _mileage_samples(vehicle_id):
        buckets[bucket_for(trip)].append(trip.mileage)

    existing = {
        (b.season, b.load_category): b
        for b in FuelBaseline.query.filter_by(vehicle_id=vehicle_id).all()
    }
    minimum = setting("BASELINE_MIN_SAMPLES")
    now = datetime.now(timezone.utc)
    kept = []

    for key, values in buckets.items():
        if len(values) < minimum:
            continue
        row = existing.pop(key, None)
        if row is None:
            row = FuelBaseline(vehicle_id=vehicle_id, season=key[0], load_category=key[1])
            db.session.add(row)
        row.average_mileage = round(sum(values) / len(values), 2)
        row.sample_count = len(values)
        row.confidence = confidence_for(len(values))
        row.computed_at = now
        kept.append(row)

    for stale in existing.values():
        db.session.delete(stale)

    logger.info("Vehicle %s: %d baseline buckets recomputed", vehicle_id, len(kept))
    return kept


def recompute_all_baselines():
    """Scheduled job: rebuild the baselines of every vehicle."""
    total = 0
    for (vehicle_id,) in db.session.query(Vehicle.id).order_by(Vehicle.id).all():
        total += len(recompute_baselines(vehicle_id))
    db.session.commit()
    return total


# ── Lookup & anomaly decision ────────────────────────────────────────────────


@dataclass
class BaselineLookup:
    value: float
    confidence: float
    sample_count: int
    source: str  # bucket | vehicle


def lookup_baseline(trip) -> Optional[BaselineLookup]:
    """
    Expected mileage for *trip*: its bucket's baseline when one exists,
    otherwise the vehicle's overall average over its other refueling trips.
    """
    season, load = bucket_for(trip)
    row = FuelBaseline.query.filter_by(
        vehicle_id=trip.vehicle_id, season=season, load_category=load
    ).first()
    if row is not None:
        return BaselineLookup(row.average_mileage, row.confidence, row.sample_count, "bucket")

    values = [t.mileage for t in _mileage_samples(trip.vehicle_id, exclude_trip_id=trip.id)]
    if not values:
        return None
    return BaselineLookup(
        round(sum(values) / len(values), 2),
        confidence_for(len(values)),
        len(values),
        "vehicle",
    )


@dataclass
class AnomalyResult:
    trip_id: int
    mileage: float
    baseline: float
    deviation: float  # signed, relative to the baseline
    is_anomaly: bool
    confidence: float
    source: str
    direction: str  # above_upper | below_lower | within_range
    severity: str  # low | medium | high

    @property
    def deviation_pct(self):
        return round(self.deviation * 100, 2)

    def to_dict(self):
        data = asdict(self)
        data["deviation_pct"] = self.deviation_pct
        return data


def detect_anomaly(trip) -> Optional[AnomalyResult]:
    """
    Compare a trip's mileage against its baseline.

    Confidence is reported next to the flag and never suppresses it: a
    bucket built from five samples flags a 25% deviation just as a full one
    would.
    """
    if trip.mileage is None:
        return None
    baseline = lookup_baseline(trip)
    if baseline is None or baseline.value <= 0:
        return None

    threshold = setting("ANOMALY_THRESHOLD")
    deviation = (trip.mileage - baseline.value) / baseline.value
    magnitude = abs(deviation)
    is_anomaly = magnitude > threshold

    if not is_anomaly:
        direction = "within_range"
    elif deviation > 0:
        direction = "above_upper"
    else:
        direction = "below_lower"

    if magnitude >= setting("HIGH_DEVIATION_THRESHOLD"):
        severity = "high"
    elif magnitude >= threshold:
        severity = "medium"
    else:
        severity = "low"

    return AnomalyResult(
        trip_id=trip.id,
        mileage=trip.mileage,
        baseline=baseline.value,
        deviation=deviation,
        is_anomaly=is_anomaly,
        confidence=baseline.confidence,
        source=baseline.source,
        direction=direction,
        severity=severity,
    )
