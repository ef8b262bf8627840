# arrival_collector/tests/fakes.py
from datetime import datetime, timedelta
import asyncio

from arrival_collector.tracking import StopPrediction, TrackingTarget


class FakeClock:
    """Settable clock; naive datetimes are stored unchanged by the stores"""
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakePredictionClient:
    """Returns canned predictions per (stop_id, sub_code) and records every call"""
    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def query(self, stop_id, stop_sub_code=None):
        self.calls.append((stop_id, stop_sub_code))
        response = self.responses.get((stop_id, stop_sub_code), [])
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return list(response)


async def never_fires(_seconds):
    await asyncio.Event().wait()


def make_target(target_id="t1", **overrides) -> TrackingTarget:
    fields = dict(
        id=target_id,
        owner_id="user-1",
        vehicle_id="200000115",
        vehicle_label="7800",
        stop_id="228000710",
        stop_label="Gangnam Stn.",
        stop_sub_code=None,
        active=True,
    )
    fields.update(overrides)
    return TrackingTarget(**fields)


def prediction(seconds, label="7800", vehicle_id="200000115", plate=None) -> StopPrediction:
    return StopPrediction(
        vehicle_label=label,
        predicted_seconds=seconds,
        vehicle_id=vehicle_id,
        vehicle_physical_id=plate,
    )
