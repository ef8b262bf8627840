"""
Timer manager

Owns one delayed check per tracked target. The delay follows the target's
own last prediction, so a vehicle far away is re-checked once shortly before
it becomes imminent, and an imminent vehicle is re-checked every minute until
it has passed the stop.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import logging

from arrival_collector.arrival_detector import ArrivalDetector, local_now
from arrival_collector.prediction_client import find_vehicle_prediction
from arrival_collector.tracking import (
    APPROACHING,
    IMMINENT,
    WAITING,
    TimerState,
    TrackingTarget,
)

logger = logging.getLogger(__name__)


class TimerManager:
    """
    Schedules per-target prediction checks
    """

    def __init__(
        self,
        prediction_client,
        detector: ArrivalDetector,
        clock: Callable[[], datetime] = local_now,
        sleep: Callable[[float], Any] = asyncio.sleep,
        imminent_threshold: int = 180,
        approach_threshold: int = 600,
        min_delay_seconds: int = 60,
        fallback_retry_seconds: int = 300,
        rescan_seconds: int = 900,
    ):
        """
        Args:
            prediction_client: ArrivalPredictionClient (query)
            detector: ArrivalDetector fed with every reading
            clock: Returns the current time
            sleep: Coroutine function used to wait between checks
            fallback_retry_seconds: Delay before retrying a target whose check failed
            rescan_seconds: Expected wait for the next orchestrator scan when a
                target has no prediction (informational next_check_at only)
        """
        self.prediction_client = prediction_client
        self.detector = detector
        self.clock = clock
        self.sleep = sleep
        self.imminent_threshold = imminent_threshold
        self.approach_threshold = approach_threshold
        self.min_delay_seconds = min_delay_seconds
        self.fallback_retry_seconds = fallback_retry_seconds
        self.rescan_seconds = rescan_seconds
        self._timers: Dict[str, TimerState] = {}  # target_id -> TimerState

    def classify(self, predicted_seconds: int) -> Tuple[str, int]:
        """Phase and re-check delay (seconds) for a prediction"""
        if predicted_seconds <= self.imminent_threshold:
            return IMMINENT, self.min_delay_seconds

        delay = max(predicted_seconds - self.imminent_threshold, self.min_delay_seconds)
        if predicted_seconds <= self.approach_threshold:
            return APPROACHING, delay
        return WAITING, delay

    def arm(
        self,
        target: TrackingTarget,
        predicted_seconds: Optional[int],
        vehicle_physical_id: Optional[str] = None,
    ) -> TimerState:
        """
        Feed a fresh reading for a target and (re)arm its next check

        Any live check for the target is cancelled first. Must be called from
        the event loop.
        """
        self._cancel_task(target.id)
        state = self._advance(target, predicted_seconds, vehicle_physical_id)
        if state.delay_seconds is not None:
            state.task = asyncio.create_task(self._follow(target.id))
        return state

    def schedule_retry(self, target: TrackingTarget) -> TimerState:
        """Re-check a target after the fallback delay, keeping its last reading"""
        self._cancel_task(target.id)
        state = self._retry_state(target)
        state.task = asyncio.create_task(self._follow(target.id))
        return state

    def disarm(self, target_id: str, forget_pending: bool = True) -> Optional[TimerState]:
        """Stop tracking one target"""
        self._cancel_task(target_id)
        state = self._timers.pop(target_id, None)
        if state is not None:
            if forget_pending:
                self.detector.forget(state.target)
            logger.info(f"{state.target.display_name}: timer removed")
        return state

    def cancel_all(self, forget_pending: bool = False) -> int:
        """Cancel every live check and clear all timer state"""
        cancelled = 0
        for target_id, state in list(self._timers.items()):
            if self._cancel_task(target_id):
                cancelled += 1
            if forget_pending:
                self.detector.forget(state.target)
        self._timers.clear()
        logger.info(f"All timers cleared ({cancelled} live)")
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every live check and wait for the tasks to finish"""
        tasks = [s.task for s in self._timers.values() if s.has_live_task]
        self.cancel_all()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def refresh(self, target: TrackingTarget) -> TimerState:
        """Query the target's own stop and apply the reading, without spawning a task"""
        predictions = await asyncio.to_thread(
            self.prediction_client.query, target.stop_id, target.stop_sub_code
        )
        match = find_vehicle_prediction(target, predictions)
        if match is None:
            return self._advance(target, None, None)
        return self._advance(target, match.predicted_seconds, match.vehicle_physical_id)

    def get_state(self, target_id: str) -> Optional[TimerState]:
        return self._timers.get(target_id)

    def last_predicted_seconds(self, target_id: str) -> Optional[int]:
        state = self._timers.get(target_id)
        return state.last_predicted_seconds if state else None

    def tracked_ids(self) -> List[str]:
        return list(self._timers.keys())

    def active_timer_count(self) -> int:
        return sum(1 for s in self._timers.values() if s.has_live_task)

    def status_snapshot(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self._timers.values()]

    def _advance(
        self,
        target: TrackingTarget,
        predicted_seconds: Optional[int],
        vehicle_physical_id: Optional[str],
    ) -> TimerState:
        previous = self._timers.get(target.id)
        previous_seconds = previous.last_predicted_seconds if previous else None
        carried_id = previous.last_vehicle_physical_id if previous else None

        self.detector.observe(
            target, previous_seconds, predicted_seconds, vehicle_physical_id, carried_id
        )

        now = self.clock()
        if predicted_seconds is None:
            # No live check; the next orchestrator scan picks the target up again
            state = TimerState(
                target=target,
                next_check_at=now + timedelta(seconds=self.rescan_seconds),
                phase=WAITING,
                last_predicted_seconds=None,
                last_vehicle_physical_id=carried_id,
            )
            logger.info(f"{target.display_name}: no arrival data, waiting for next scan")
        else:
            phase, delay = self.classify(predicted_seconds)
            state = TimerState(
                target=target,
                next_check_at=now + timedelta(seconds=delay),
                phase=phase,
                last_predicted_seconds=predicted_seconds,
                last_vehicle_physical_id=vehicle_physical_id or carried_id,
                delay_seconds=delay,
            )
            plate = f" [{vehicle_physical_id}]" if vehicle_physical_id else ""
            logger.info(
                f"{target.display_name}: arriving in {predicted_seconds // 60}m{plate}, "
                f"next check in {delay}s ({phase})"
            )

        self._timers[target.id] = state
        return state

    def _retry_state(self, target: TrackingTarget) -> TimerState:
        previous = self._timers.get(target.id)
        delay = self.fallback_retry_seconds
        state = TimerState(
            target=target,
            next_check_at=self.clock() + timedelta(seconds=delay),
            phase=previous.phase if previous else WAITING,
            last_predicted_seconds=previous.last_predicted_seconds if previous else None,
            last_vehicle_physical_id=previous.last_vehicle_physical_id if previous else None,
            delay_seconds=delay,
        )
        self._timers[target.id] = state
        logger.info(f"{target.display_name}: retrying in {delay}s")
        return state

    def _cancel_task(self, target_id: str) -> bool:
        state = self._timers.get(target_id)
        if state is None or state.task is None:
            return False
        task, state.task = state.task, None
        if task.done():
            return False
        task.cancel()
        return True

    async def _follow(self, target_id: str) -> None:
        """Check loop for one target; ends when the target has no prediction"""
        task = asyncio.current_task()

        while True:
            state = self._timers.get(target_id)
            if state is None or state.task is not task or state.delay_seconds is None:
                return

            await self.sleep(state.delay_seconds)
            logger.debug(f"{state.target.display_name}: timer fired")

            try:
                state = await self.refresh(state.target)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{state.target.display_name}: check failed: {e}", exc_info=True)
                state = self._retry_state(state.target)

            if state.delay_seconds is not None:
                state.task = task
