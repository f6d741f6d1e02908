"""
Quality Scorer.

Three sub-scores start at 100 and lose a fixed penalty per violation:

* completeness – descriptive and fuel fields are filled in
* consistency  – odometer, time and capacity readings agree with each other
* anomaly      – mileage is plausible and close to the vehicle's baseline

Overall score = 0.3 * completeness + 0.4 * consistency + 0.3 * anomaly.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import List

from baselines import detect_anomaly
from settings import setting
from validation import (
    HIGH_DAILY_DISTANCE,
    INVALID_DATE_ORDER,
    INVALID_ODOMETER_ORDER,
    LARGE_ODOMETER_GAP,
    LOW_OR_HIGH_MILEAGE,
    NEGATIVE_ODOMETER_GAP,
    TripCandidate,
    check_daily_distance,
    check_mileage_plausibility,
    check_predecessor_gap,
)

logger = logging.getLogger(__name__)

WEIGHTS = {"completeness": 0.3, "consistency": 0.4, "anomaly": 0.3}

COMPLETENESS_PENALTIES = {
    "MissingDriver": 20,
    "MissingRouteFrom": 10,
    "MissingRouteTo": 10,
    "MissingLoadWeight": 10,
    "MissingFuelQuantity": 25,
}

CONSISTENCY_PENALTIES = {
    INVALID_ODOMETER_ORDER: 25,
    INVALID_DATE_ORDER: 25,
    NEGATIVE_ODOMETER_GAP: 25,
    LARGE_ODOMETER_GAP: 10,
    "ShortDistance": 10,
    "LongDistance": 5,
    "LongDuration": 10,
    HIGH_DAILY_DISTANCE: 10,
    "FuelExceedsTankCapacity": 15,
}

ANOMALY_PENALTIES = {
    LOW_OR_HIGH_MILEAGE: 30,
    "MileageAnomaly": 25,
    "MileageUnavailable": 10,
}

SCORE_CLAMPED = "ScoreClamped"


@dataclass
class QualityReport:
    trip_id: int
    completeness: float = 100
    consistency: float = 100
    anomaly: float = 100
    overall: float = 100
    flags: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _completeness_flags(trip):
    flags = []
    if trip.driver_id is None:
        flags.append("MissingDriver")
    if not trip.route_from:
        flags.append("MissingRouteFrom")
    if not trip.route_to:
        flags.append("MissingRouteTo")
    if trip.gross_weight is None:
        flags.append("MissingLoadWeight")
    if trip.refueling and not trip.fuel_quantity:
        flags.append("MissingFuelQuantity")
    return flags


def _consistency_flags(trip, vehicle):
    flags = []
    if trip.end_km < trip.start_km:
        flags.append(INVALID_ODOMETER_ORDER)
    if trip.end_time < trip.start_time:
        flags.append(INVALID_DATE_ORDER)

    candidate = TripCandidate.from_trip(trip)
    gap = check_predecessor_gap(candidate, exclude_trip_id=trip.id)
    if gap is not None:
        flags.append(gap.code)

    distance = trip.end_km - trip.start_km
    if 0 <= distance < setting("MIN_TRIP_DISTANCE_KM"):
        flags.append("ShortDistance")
    elif distance > setting("MAX_TRIP_DISTANCE_KM"):
        flags.append("LongDistance")

    if trip.duration_hours > setting("MAX_TRIP_DURATION_HOURS"):
        flags.append("LongDuration")
    if distance >= 0 and check_daily_distance(candidate, vehicle) is not None:
        flags.append(HIGH_DAILY_DISTANCE)

    if (
        vehicle is not None
        and vehicle.tank_capacity
        and trip.refueling
        and trip.fuel_quantity
        and trip.fuel_quantity > vehicle.tank_capacity
    ):
        flags.append("FuelExceedsTankCapacity")
    return flags


def _anomaly_flags(trip, vehicle, anomaly):
    flags = []
    if not trip.refueling:
        return flags
    if trip.mileage is None:
        flags.append("MileageUnavailable")
        return flags
    if check_mileage_plausibility(trip, vehicle) is not None:
        flags.append(LOW_OR_HIGH_MILEAGE)
    if anomaly is not None and anomaly.is_anomaly:
        flags.append("MileageAnomaly")
    return flags


def score_trip(trip, vehicle=None, anomaly=None):
    """
    Score one trip.

    Sub-scores are reported as computed, without a floor, so a trip with
    many violations can show a negative sub-score. Only the weighted overall
    score is held to [0, 100]; when that bound bites the report carries the
    ``ScoreClamped`` flag.
    """
    if vehicle is None:
        vehicle = trip.vehicle
    if anomaly is None:
        anomaly = detect_anomaly(trip)

    report = QualityReport(trip_id=trip.id)
    for name, flags, penalties in (
        ("completeness", _completeness_flags(trip), COMPLETENESS_PENALTIES),
        ("consistency", _consistency_flags(trip, vehicle), CONSISTENCY_PENALTIES),
        ("anomaly", _anomaly_flags(trip, vehicle, anomaly), ANOMALY_PENALTIES),
    ):
        setattr(report, name, 100 - sum(penalties[f] for f in flags))
        report.flags.extend(flags)

    overall = sum(getattr(report, name) * weight for name, weight in WEIGHTS.items())
    clamped = min(max(overall, 0), 100)
    if clamped != overall:
        report.flags.append(SCORE_CLAMPED)
    report.overall = round(clamped, 1)
    return report


def apply_quality(trip, vehicle=None):
    """Score *trip* and store the result on it."""
    report = score_trip(trip, vehicle)
    trip.quality_score = report.overall
    trip.quality_flags = list(report.flags)
    logger.debug("Trip %s quality %.1f %s", trip.id, report.overall, report.flags)
    return report
