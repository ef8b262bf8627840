"""
Arrival detection

Turns consecutive predictions for a target into arrival events. A vehicle is
considered arrived when it was imminent (<= 3 minutes) on one reading and on
the next reading has either disappeared or jumped back above the threshold
(the next vehicle on the route is now being predicted).
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import logging

from arrival_collector.tracking import ArrivalLogEntry, PendingArrival, TrackingTarget

logger = logging.getLogger(__name__)

# Detection outcomes
NO_CHANGE = "none"
PENDING = "pending"
LOGGED = "logged"
DUPLICATE = "duplicate"
FAILED = "failed"


def local_now() -> datetime:
    return datetime.now().astimezone()


class ArrivalDetector:
    """
    Detects vehicle arrivals at stops from arrival predictions
    """

    def __init__(
        self,
        log_store,
        pending_store,
        clock: Callable[[], datetime] = local_now,
        imminent_threshold: int = 180,
        duplicate_window_seconds: int = 180,
        pending_max_age_seconds: int = 480,
    ):
        """
        Args:
            log_store: ArrivalLogStore (insert / exists_since)
            pending_store: PendingArrivalStore (upsert / get / delete)
            clock: Returns the current time
            imminent_threshold: Seconds at or below which a vehicle is imminent
            duplicate_window_seconds: Window in which a second arrival is ignored
            pending_max_age_seconds: A pending arrival older than this is dropped
                without being confirmed
        """
        self.log_store = log_store
        self.pending_store = pending_store
        self.clock = clock
        self.imminent_threshold = imminent_threshold
        self.duplicate_window = timedelta(seconds=duplicate_window_seconds)
        self.pending_max_age = timedelta(seconds=pending_max_age_seconds)

    def is_imminent(self, predicted_seconds: Optional[int]) -> bool:
        return predicted_seconds is not None and predicted_seconds <= self.imminent_threshold

    def observe(
        self,
        target: TrackingTarget,
        previous_seconds: Optional[int],
        current_seconds: Optional[int],
        vehicle_physical_id: Optional[str] = None,
        carried_physical_id: Optional[str] = None,
    ) -> str:
        """
        Evaluate one new reading for a target

        Args:
            target: Tracked target
            previous_seconds: Prediction from the previous reading, if known
            current_seconds: Prediction from this reading (None = not listed)
            vehicle_physical_id: Vehicle seen on this reading
            carried_physical_id: Vehicle last seen while the target was imminent

        Returns:
            One of NO_CHANGE, PENDING, LOGGED, DUPLICATE, FAILED
        """
        if self.is_imminent(current_seconds):
            self.pending_store.upsert(PendingArrival(
                owner_id=target.owner_id,
                vehicle_id=target.vehicle_id,
                stop_id=target.stop_id,
                predicted_seconds=current_seconds,
                updated_at=self.clock(),
                vehicle_physical_id=vehicle_physical_id or carried_physical_id,
                vehicle_label=target.vehicle_label,
                stop_label=target.stop_label,
                stop_sub_code=target.stop_sub_code,
            ))
            logger.info(
                f"{target.display_name}: imminent ({current_seconds}s) "
                f"[{vehicle_physical_id or 'no plate'}]"
            )
            return PENDING

        # The pending record is the persisted form of "previous reading was
        # imminent"; it survives restarts where previous_seconds is unknown.
        pending = self.pending_store.get(target.arrival_key)
        if pending is not None and self.is_stale(pending):
            logger.info(
                f"{target.display_name}: dropping stale imminent reading from "
                f"{pending.updated_at.isoformat()}"
            )
            self.forget(target)
            pending = None

        if pending is None and not self.is_imminent(previous_seconds):
            return NO_CHANGE

        before = pending.predicted_seconds if pending else previous_seconds
        now_text = "no data" if current_seconds is None else f"{current_seconds}s"
        logger.info(f"{target.display_name}: left imminent state (was {before}s, now {now_text})")

        physical_id = (pending.vehicle_physical_id if pending else None) or carried_physical_id
        return self.confirm_arrival(target, physical_id)

    def is_stale(self, pending: PendingArrival) -> bool:
        """Whether a pending arrival is too old to be confirmed by a new reading"""
        updated_at = pending.updated_at
        now = self.clock()
        if updated_at.tzinfo is None and now.tzinfo is not None:
            # stored as naive UTC
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return now - updated_at > self.pending_max_age

    def confirm_arrival(self, target: TrackingTarget, vehicle_physical_id: Optional[str] = None) -> str:
        """Record an arrival unless one was already logged inside the duplicate window"""
        now = self.clock()

        try:
            if self.log_store.exists_since(
                target.owner_id, target.vehicle_id, target.stop_id, now - self.duplicate_window
            ):
                logger.info(f"{target.display_name}: arrival already logged recently, skipping")
                return DUPLICATE

            self.log_store.insert(ArrivalLogEntry.for_target(target, now, vehicle_physical_id))
        except Exception as e:
            # The occurrence is lost; there is no retry queue
            logger.error(f"{target.display_name}: failed to record arrival: {e}", exc_info=True)
            return FAILED
        finally:
            self.forget(target)

        logger.info(f"Arrival logged: {target.display_name} [{vehicle_physical_id or 'no plate'}]")
        return LOGGED

    def forget(self, target: TrackingTarget) -> None:
        """Drop any pending arrival for the target"""
        self.pending_store.delete(target.arrival_key)
