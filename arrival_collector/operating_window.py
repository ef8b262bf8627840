"""
Daily operating window for background polling
"""
from datetime import datetime


def is_open(now: datetime, start_hour: int, end_hour: int) -> bool:
    """
    Whether polling is permitted at `now`

    end_hour 24 means "until midnight". When start_hour >= end_hour the
    window wraps past midnight, e.g. 22..6 is open from 22:00 to 05:59.
    """
    hour = now.hour
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def validate_hours(start_hour: int, end_hour: int) -> None:
    if not 0 <= start_hour <= 23:
        raise ValueError(f"start_hour must be between 0 and 23, got {start_hour}")
    if not 0 <= end_hour <= 24:
        raise ValueError(f"end_hour must be between 0 and 24, got {end_hour}")
