"""
Continuity & Overlap Validator.

Gatekeeper for every trip write: runs before anything is persisted and either
returns the list of (non-blocking) warnings or raises ``TripRejected``.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from models import Trip, active_trips, find_overlapping_trip, next_trip, previous_trip
from settings import setting

logger = logging.getLogger(__name__)

# Errors (write rejected)
NEGATIVE_ODOMETER_GAP = "NegativeOdometerGap"
TIME_OVERLAP = "TimeOverlap"
INVALID_DATE_ORDER = "InvalidDateOrder"
INVALID_ODOMETER_ORDER = "InvalidOdometerOrder"
MISSING_FUEL_FOR_REFUELING = "MissingFuelForRefueling"
NEGATIVE_VALUE = "NegativeValue"
CASCADE_FAILURE = "CascadeFailure"

# Warnings (write proceeds)
LARGE_ODOMETER_GAP = "LargeOdometerGap"
HIGH_DAILY_DISTANCE = "HighDailyDistance"
LOW_OR_HIGH_MILEAGE = "LowOrHighMileage"


@dataclass
class ValidationIssue:
    code: str
    message: str
    field: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class TripRejected(Exception):
    """Raised when a candidate write would make the ledger inconsistent."""

    def __init__(self, issues):
        self.issues = list(issues)
        super().__init__("; ".join(f"{i.code}: {i.message}" for i in self.issues))

    @property
    def codes(self):
        return [i.code for i in self.issues]


@dataclass
class TripCandidate:
    """The fields of a trip as they would be after the write."""

    vehicle_id: int
    start_time: datetime
    end_time: datetime
    start_km: int
    end_km: int
    driver_id: Optional[int] = None
    refueling: bool = False
    fuel_quantity: Optional[float] = None
    gross_weight: Optional[float] = None
    route_from: Optional[str] = None
    route_to: Optional[str] = None
    remarks: Optional[str] = None

    @classmethod
    def from_trip(cls, trip, **changes):
        values = {
            name: getattr(trip, name)
            for name in cls.__dataclass_fields__
        }
        values.update(changes)
        return cls(**values)

    def __post_init__(self):
        self.start_time = naive_utc(self.start_time)
        self.end_time = naive_utc(self.end_time)


def naive_utc(moment):
    """Trip times are stored as naive UTC; convert an aware datetime to that form."""
    if moment is not None and moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def validate_candidate(candidate, vehicle=None, exclude_trip_id=None, check_successor=True):
    """
    Validate a candidate trip write.

    Parameters
    ----------
    candidate : TripCandidate
        The trip as it would be persisted.
    vehicle : Vehicle | None
        Capacity profile used for the daily-distance warning.
    exclude_trip_id : int | None
        Id of the trip being updated, so it never conflicts with itself.
    check_successor : bool
        Also require the next active trip to start at or above the
        candidate's end odometer. Updates that shift later trips check this
        after the cascade instead.

    Returns
    -------
    list[ValidationIssue]
        Warnings; empty when the write is clean.

    Raises
    ------
    TripRejected
        With every error found.
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    if candidate.end_time < candidate.start_time:
        errors.append(ValidationIssue(
            INVALID_DATE_ORDER,
            f"Trip end ({candidate.end_time:%d-%m-%Y %H:%M}) is before its start "
            f"({candidate.start_time:%d-%m-%Y %H:%M}).",
            "end_time",
        ))

    if candidate.end_km < candidate.start_km:
        errors.append(ValidationIssue(
            INVALID_ODOMETER_ORDER,
            f"End odometer ({candidate.end_km}) cannot be less than start "
            f"odometer ({candidate.start_km}).",
            "end_km",
        ))

    if candidate.refueling and candidate.fuel_quantity is None:
        errors.append(ValidationIssue(
            MISSING_FUEL_FOR_REFUELING,
            "A refueling trip must record the fuel quantity.",
            "fuel_quantity",
        ))

    for name in ("start_km", "end_km", "fuel_quantity", "gross_weight"):
        value = getattr(candidate, name)
        if value is not None and value < 0:
            errors.append(ValidationIssue(NEGATIVE_VALUE, f"{name} cannot be negative.", name))

    # Interval checks only make sense on a well-ordered interval
    if candidate.end_time >= candidate.start_time:
        errors.extend(_overlap_errors(candidate, exclude_trip_id))

    gap_issue = check_predecessor_gap(candidate, exclude_trip_id)
    if gap_issue is not None:
        if gap_issue.code == NEGATIVE_ODOMETER_GAP:
            errors.append(gap_issue)
        else:
            warnings.append(gap_issue)

    if check_successor:
        successor_issue = check_successor_gap(candidate, exclude_trip_id)
        if successor_issue is not None:
            errors.append(successor_issue)

    daily = check_daily_distance(candidate, vehicle)
    if daily is not None:
        warnings.append(daily)

    if errors:
        logger.info("Rejected trip write for vehicle %s: %s",
                    candidate.vehicle_id, ", ".join(e.code for e in errors))
        raise TripRejected(errors)

    for w in warnings:
        logger.warning("Vehicle %s: %s", candidate.vehicle_id, w.message)
    return warnings


def _overlap_errors(candidate, exclude_trip_id):
    errors = []
    clash = find_overlapping_trip(
        candidate.start_time, candidate.end_time,
        vehicle_id=candidate.vehicle_id, exclude_trip_id=exclude_trip_id,
    )
    if clash is not None:
        errors.append(ValidationIssue(
            TIME_OVERLAP,
            f"Vehicle already has trip #{clash.id} from {clash.start_time:%d-%m-%Y %H:%M} "
            f"to {clash.end_time:%d-%m-%Y %H:%M}.",
            "start_time",
        ))
    if candidate.driver_id is not None:
        clash = find_overlapping_trip(
            candidate.start_time, candidate.end_time,
            driver_id=candidate.driver_id, exclude_trip_id=exclude_trip_id,
        )
        if clash is not None:
            errors.append(ValidationIssue(
                TIME_OVERLAP,
                f"Driver is already on trip #{clash.id} from {clash.start_time:%d-%m-%Y %H:%M} "
                f"to {clash.end_time:%d-%m-%Y %H:%M}.",
                "driver_id",
            ))
    return errors


def check_predecessor_gap(candidate, exclude_trip_id=None):
    """Odometer gap against the latest active trip ending before the candidate starts."""
    prev = previous_trip(candidate.vehicle_id, candidate.start_time, exclude_trip_id)
    if prev is None:
        return None

    gap = candidate.start_km - prev.end_km
    if gap < 0:
        return ValidationIssue(
            NEGATIVE_ODOMETER_GAP,
            f"Start odometer ({candidate.start_km}) is less than the end odometer "
            f"({prev.end_km}) of previous trip #{prev.id}.",
            "start_km",
        )
    if gap > setting("LARGE_ODOMETER_GAP_KM"):
        return ValidationIssue(
            LARGE_ODOMETER_GAP,
            f"Large odometer gap: {gap} km since previous trip #{prev.id} "
            f"ended at {prev.end_km} km. Check for missing trips.",
            "start_km",
        )
    return None


def check_successor_gap(candidate, exclude_trip_id=None):
    """The next active trip must not start below the candidate's end odometer."""
    nxt = next_trip(candidate.vehicle_id, candidate.end_time, exclude_trip_id)
    if nxt is None or nxt.start_km >= candidate.end_km:
        return None
    return ValidationIssue(
        NEGATIVE_ODOMETER_GAP,
        f"End odometer ({candidate.end_km}) is above the start odometer "
        f"({nxt.start_km}) of the following trip #{nxt.id}.",
        "end_km",
    )


def check_daily_distance(candidate, vehicle=None):
    limit = None
    if vehicle is not None:
        limit = vehicle.max_daily_distance
    if limit is None:
        limit = setting("DEFAULT_MAX_DAILY_DISTANCE_KM")

    distance = candidate.end_km - candidate.start_km
    hours = (candidate.end_time - candidate.start_time).total_seconds() / 3600
    days = max(1, math.ceil(hours / 24))
    per_day = distance / days
    if per_day > limit:
        return ValidationIssue(
            HIGH_DAILY_DISTANCE,
            f"Trip covers {per_day:.0f} km per day, above the {limit} km/day limit.",
            "end_km",
        )
    return None


def check_mileage_plausibility(trip, vehicle=None):
    """Warn when a computed mileage falls outside the vehicle's plausible band."""
    if trip.mileage is None:
        return None
    low, high = mileage_band(vehicle)
    if low <= trip.mileage <= high:
        return None
    return ValidationIssue(
        LOW_OR_HIGH_MILEAGE,
        f"Mileage {trip.mileage} km/L is outside the plausible range {low}–{high} km/L.",
        "mileage",
    )


def mileage_band(vehicle=None):
    low = vehicle.min_mileage if vehicle is not None else None
    high = vehicle.max_mileage if vehicle is not None else None
    if low is None:
        low = setting("DEFAULT_MIN_MILEAGE")
    if high is None:
        high = setting("DEFAULT_MAX_MILEAGE")
    return low, high


# ── Continuity report ────────────────────────────────────────────────────────


@dataclass
class ContinuityReport:
    vehicle_id: int
    total_trips: int = 0
    perfect: int = 0
    small_gaps: int = 0
    moderate_gaps: int = 0
    large_gaps: int = 0
    negative_gaps: int = 0
    total_gap_km: int = 0
    max_gap_km: int = 0
    continuity_score: Optional[int] = None
    recommendations: List[str] = field(default_factory=list)

    @property
    def average_gap_km(self):
        return self.total_gap_km / self.total_trips if self.total_trips else 0

    def to_dict(self):
        data = asdict(self)
        data["average_gap_km"] = round(self.average_gap_km, 2)
        return data


def analyze_continuity(vehicle_id, date_from=None, date_to=None):
    """Classify the odometer gaps between consecutive active trips of a vehicle."""
    query = active_trips(vehicle_id)
    if date_from is not None:
        query = query.filter(Trip.start_time >= date_from)
    if date_to is not None:
        query = query.filter(Trip.start_time <= date_to)
    trips = query.all()

    report = ContinuityReport(vehicle_id=vehicle_id, total_trips=len(trips))
    small = setting("SMALL_ODOMETER_GAP_KM")
    large = setting("LARGE_ODOMETER_GAP_KM")

    for prev, trip in zip(trips, trips[1:]):
        gap = trip.start_km - prev.end_km
        if gap < 0:
            report.negative_gaps += 1
        elif gap == 0:
            report.perfect += 1
        elif gap <= small:
            report.small_gaps += 1
        elif gap <= large:
            report.moderate_gaps += 1
        else:
            report.large_gaps += 1
        report.total_gap_km += abs(gap)
        report.max_gap_km = max(report.max_gap_km, abs(gap))

    if report.total_trips:
        if report.negative_gaps:
            report.continuity_score = 0
        elif report.large_gaps:
            report.continuity_score = max(50 - report.large_gaps * 10, 0)
        elif report.moderate_gaps:
            report.continuity_score = max(70 - report.moderate_gaps * 5, 0)
        elif report.small_gaps:
            report.continuity_score = max(90 - report.small_gaps * 2, 0)
        else:
            report.continuity_score = 100

    if report.negative_gaps:
        report.recommendations.append(
            f"CRITICAL: {report.negative_gaps} trips have negative odometer gaps. "
            "Immediate correction required."
        )
    if report.large_gaps:
        report.recommendations.append(
            f"WARNING: {report.large_gaps} trips have large gaps (>{large} km). "
            "Check for missing trips."
        )
    if report.moderate_gaps > 3:
        report.recommendations.append(
            "Multiple moderate gaps detected. Consider reviewing trip logging practices."
        )
    if report.continuity_score is not None and report.continuity_score >= 90:
        report.recommendations.append("Excellent odometer continuity maintained!")

    return report
