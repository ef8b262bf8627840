"""
Tracking data types

Plain data carried between the scheduler components:
- Tracking targets read from the registry
- Predictions returned by the arrival service
- Per-target timer state owned by the timer manager
- Pending and confirmed arrivals
"""
import asyncio
from datetime import datetime
from typing import List, Dict, Any, Optional, NamedTuple, Tuple
from dataclasses import dataclass, field

# Phases of a tracked target, by last known prediction
WAITING = "waiting"          # > 10 minutes away, or no prediction
APPROACHING = "approaching"  # 3-10 minutes away
IMMINENT = "imminent"        # <= 3 minutes away

ArrivalKey = Tuple[str, str, str]  # (owner_id, vehicle_id, stop_id)


class StopKey(NamedTuple):
    """Grouping key for targets that share one prediction query"""
    stop_id: str
    stop_sub_code: Optional[str] = None


@dataclass(frozen=True)
class TrackingTarget:
    """A (vehicle, stop) pair a user wants arrival events for"""
    id: str
    owner_id: str
    vehicle_id: str
    vehicle_label: str
    stop_id: str
    stop_label: str
    stop_sub_code: Optional[str] = None
    active: bool = True

    @property
    def stop_key(self) -> StopKey:
        return StopKey(self.stop_id, self.stop_sub_code or None)

    @property
    def arrival_key(self) -> ArrivalKey:
        return (self.owner_id, self.vehicle_id, self.stop_id)

    @property
    def display_name(self) -> str:
        return f"{self.vehicle_label}@{self.stop_label}"


@dataclass
class StopPrediction:
    """Single reading of "vehicle X is N seconds from this stop" """
    vehicle_label: str
    predicted_seconds: int
    vehicle_id: Optional[str] = None
    vehicle_physical_id: Optional[str] = None  # licence plate
    stops_away: Optional[int] = None


@dataclass
class PendingArrival:
    """Bridges the "about to arrive" reading and the later confirmation"""
    owner_id: str
    vehicle_id: str
    stop_id: str
    predicted_seconds: int
    updated_at: datetime
    vehicle_physical_id: Optional[str] = None
    vehicle_label: Optional[str] = None
    stop_label: Optional[str] = None
    stop_sub_code: Optional[str] = None

    @property
    def key(self) -> ArrivalKey:
        return (self.owner_id, self.vehicle_id, self.stop_id)


@dataclass
class ArrivalLogEntry:
    """Confirmed arrival, written once per real arrival"""
    owner_id: str
    vehicle_id: str
    vehicle_label: str
    stop_id: str
    stop_label: str
    arrived_at: datetime
    day_of_week: int  # 0=Sunday ... 6=Saturday
    vehicle_physical_id: Optional[str] = None

    @classmethod
    def for_target(
        cls,
        target: TrackingTarget,
        arrived_at: datetime,
        vehicle_physical_id: Optional[str] = None,
    ) -> "ArrivalLogEntry":
        return cls(
            owner_id=target.owner_id,
            vehicle_id=target.vehicle_id,
            vehicle_label=target.vehicle_label,
            stop_id=target.stop_id,
            stop_label=target.stop_label,
            arrived_at=arrived_at,
            day_of_week=sunday_based_weekday(arrived_at),
            vehicle_physical_id=vehicle_physical_id,
        )


@dataclass
class SchedulerSettings:
    """Operator-controlled scheduler configuration"""
    enabled: bool = False
    interval_minutes: int = 15
    start_hour: int = 5
    end_hour: int = 24  # 24 = until midnight

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'interval_minutes': self.interval_minutes,
            'start_hour': self.start_hour,
            'end_hour': self.end_hour,
        }


@dataclass
class TimerState:
    """
    Scheduling state of one target

    Owned by the timer manager. `task` is the live delayed check, if any.
    """
    target: TrackingTarget
    next_check_at: datetime
    phase: str = WAITING
    last_predicted_seconds: Optional[int] = None
    last_vehicle_physical_id: Optional[str] = None
    task: Optional[asyncio.Task] = None
    delay_seconds: Optional[int] = None

    @property
    def has_live_task(self) -> bool:
        return self.task is not None and not self.task.done()

    def to_dict(self) -> Dict[str, Any]:
        """Convert state to dictionary for API responses"""
        return {
            'target_id': self.target.id,
            'vehicle_label': self.target.vehicle_label,
            'stop_label': self.target.stop_label,
            'phase': self.phase,
            'next_check_at': self.next_check_at.isoformat(),
            'last_predicted_seconds': self.last_predicted_seconds,
            'vehicle_physical_id': self.last_vehicle_physical_id,
            'live': self.has_live_task,
        }


@dataclass
class ScanResult:
    """Outcome of one orchestrator run"""
    started_at: datetime
    checked: int = 0
    timers_set: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    gate_closed: bool = False
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'checked': self.checked,
            'timers_set': self.timers_set,
            'errors': list(self.errors),
            'skipped': self.skipped,
            'gate_closed': self.gate_closed,
            'duration_ms': self.duration_ms,
        }


def sunday_based_weekday(ts: datetime) -> int:
    """Day of week with Sunday as 0, as stored in the arrival log"""
    return (ts.weekday() + 1) % 7
