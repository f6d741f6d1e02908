"""
Engine thresholds.

Every value can be overridden through ``app.config`` (see app.py, which reads
them from the environment); the defaults below apply otherwise.
"""

from flask import current_app

DEFAULTS = {
    # Continuity
    "LARGE_ODOMETER_GAP_KM": 50,
    "SMALL_ODOMETER_GAP_KM": 10,
    # Plausibility bands
    "MIN_TRIP_DISTANCE_KM": 1,
    "MAX_TRIP_DISTANCE_KM": 2000,
    "MAX_TRIP_DURATION_HOURS": 48,
    "DEFAULT_MIN_MILEAGE": 0.5,
    "DEFAULT_MAX_MILEAGE": 20.0,
    "DEFAULT_MAX_DAILY_DISTANCE_KM": 800,
    # Baselines & anomalies
    "BASELINE_MIN_SAMPLES": 5,
    "BASELINE_TARGET_SAMPLES": 20,
    "ANOMALY_THRESHOLD": 0.15,
    "HIGH_DEVIATION_THRESHOLD": 0.25,
    "LOAD_LIGHT_MAX_KG": 5000,
    "LOAD_MEDIUM_MAX_KG": 15000,
    # Mileage chain audit
    "CHAIN_TOLERANCE": 0.5,
}


def setting(name):
    """Return the configured value for *name*, falling back to the default."""
    return current_app.config.get(name, DEFAULTS[name])


def parse_threshold(name, raw):
    """
    Convert an environment override for *name* to a number.

    Integer thresholds stay integers when the override is integral
    ("50" or "50.0"); anything else ("50.5") is kept as a float.
    """
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if isinstance(DEFAULTS[name], int) and value.is_integer():
        return int(value)
    return value
