"""
Collection orchestrator

Periodic driver of the arrival collector. Every run checks the operating
window, queries each tracked stop once and re-arms the timer of every active
target from the fresh predictions. Between runs the per-target timers follow
each vehicle on their own; the periodic run mainly recovers targets without a
live timer (e.g. after a restart or when a vehicle dropped out of the feed).
"""
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging

from arrival_collector.arrival_detector import local_now
from arrival_collector.operating_window import is_open
from arrival_collector.prediction_client import find_vehicle_prediction
from arrival_collector.timer_manager import TimerManager
from arrival_collector.tracking import ScanResult, StopKey, TrackingTarget

logger = logging.getLogger(__name__)

STOPPED = "stopped"
RUNNING = "running"


def group_by_stop(targets: List[TrackingTarget]) -> Dict[StopKey, List[TrackingTarget]]:
    """Group targets so each stop is queried once"""
    groups: Dict[StopKey, List[TrackingTarget]] = OrderedDict()
    for target in targets:
        groups.setdefault(target.stop_key, []).append(target)
    return groups


class CollectionOrchestrator:
    """
    Runs the periodic scan and owns the scheduler lifecycle
    """

    def __init__(
        self,
        settings_store,
        registry,
        prediction_client,
        timer_manager: TimerManager,
        clock: Callable[[], datetime] = local_now,
        sleep: Callable[[float], Any] = asyncio.sleep,
        default_interval_minutes: int = 15,
        call_counter=None,
        daily_api_call_limit: Optional[int] = None,
    ):
        """
        Args:
            settings_store: SchedulerSettingsStore, read at every run
            registry: TargetRegistry providing active targets
            prediction_client: ArrivalPredictionClient (query)
            timer_manager: TimerManager that owns per-target checks
            clock: Returns the current (local) time
            sleep: Coroutine function used to wait between runs
            default_interval_minutes: Interval used until settings have been read
            call_counter: Optional ApiCallCounter for status reporting
            daily_api_call_limit: Quota shown next to today's call count
        """
        self.settings_store = settings_store
        self.registry = registry
        self.prediction_client = prediction_client
        self.timer_manager = timer_manager
        self.clock = clock
        self.sleep = sleep
        self.interval_minutes = default_interval_minutes
        self.call_counter = call_counter
        self.daily_api_call_limit = daily_api_call_limit

        self.state = STOPPED
        self.last_result: Optional[ScanResult] = None
        self._in_flight = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.state == RUNNING

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> bool:
        """Start periodic runs (first run immediately). Returns False if already running."""
        if self.state == RUNNING:
            logger.info("Scheduler already running")
            return False

        self.state = RUNNING
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(f"Scheduler started - running every {self.interval_minutes} minutes")
        return True

    async def stop(self) -> bool:
        """Stop periodic runs and cancel every timer. Returns False if already stopped."""
        if self.state == STOPPED:
            return False

        self.state = STOPPED
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.timer_manager.shutdown()
        logger.info("Scheduler stopped")
        return True

    async def run_manually(self) -> ScanResult:
        logger.info("Manual scan requested")
        return await self.run_once()

    async def run_once(self) -> ScanResult:
        """One full scan; skipped if the previous scan is still running"""
        started_at = self.clock()
        if self._in_flight:
            logger.info("Previous scan still running, skipping")
            return ScanResult(started_at=started_at, skipped=True)

        self._in_flight = True
        result = ScanResult(started_at=started_at)
        try:
            await self._scan(result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scan error: {e}", exc_info=True)
            result.errors.append(f"Scan error: {e}")
        finally:
            self._in_flight = False
            result.duration_ms = int((self.clock() - started_at).total_seconds() * 1000)
            self.last_result = result

        logger.info(
            f"Scan complete in {result.duration_ms}ms: "
            f"{result.checked} checked, {result.timers_set} timers set"
        )
        if result.errors:
            logger.warning(f"Scan errors: {result.errors}")
        return result

    async def _run_loop(self) -> None:
        try:
            while self.state == RUNNING:
                await self.run_once()
                await self.sleep(self.interval_minutes * 60)
        except asyncio.CancelledError:
            logger.info("Scheduler loop cancelled")
            raise

    async def _scan(self, result: ScanResult) -> None:
        try:
            settings = self.settings_store.read()
        except Exception as e:
            logger.error(f"Could not read scheduler settings, treating window as closed: {e}")
            result.errors.append(f"Settings unavailable: {e}")
            self._close_window(result, forget_pending=False)
            return

        self.interval_minutes = settings.interval_minutes
        self.timer_manager.rescan_seconds = settings.interval_minutes * 60

        if not settings.enabled:
            logger.info("Collection disabled in settings, clearing timers")
            self._close_window(result)
            return

        if not is_open(self.clock(), settings.start_hour, settings.end_hour):
            logger.info(
                f"Outside operating hours ({settings.start_hour}:00-{settings.end_hour}:00), "
                f"clearing timers"
            )
            self._close_window(result)
            return

        try:
            targets = await asyncio.to_thread(self.registry.list_active_targets)
        except Exception as e:
            logger.error(f"Failed to fetch targets: {e}", exc_info=True)
            result.errors.append(f"Failed to fetch targets: {e}")
            return

        self._drop_inactive(targets)

        if not targets:
            logger.info("No active targets")
            return

        groups = group_by_stop(targets)
        logger.info(f"Scanning {len(targets)} active targets at {len(groups)} stops")

        responses = await asyncio.gather(
            *(
                asyncio.to_thread(self.prediction_client.query, key.stop_id, key.stop_sub_code)
                for key in groups
            ),
            return_exceptions=True,
        )

        for (stop_key, stop_targets), predictions in zip(groups.items(), responses):
            if isinstance(predictions, BaseException):
                if isinstance(predictions, asyncio.CancelledError):
                    raise predictions
                logger.warning(f"Stop {stop_key.stop_id}: {predictions}")
                result.errors.append(f"Stop {stop_key.stop_id}: {predictions}")
                continue

            result.checked += len(stop_targets)
            for target in stop_targets:
                self._arm_target(target, predictions, result)

    def _arm_target(self, target: TrackingTarget, predictions, result: ScanResult) -> None:
        try:
            match = find_vehicle_prediction(target, predictions)
            if match is None:
                self.timer_manager.arm(target, None)
            else:
                self.timer_manager.arm(target, match.predicted_seconds, match.vehicle_physical_id)
            result.timers_set += 1
        except Exception as e:
            logger.error(f"{target.display_name}: processing failed: {e}", exc_info=True)
            result.errors.append(f"Target {target.vehicle_label}: {e}")
            self.timer_manager.schedule_retry(target)

    def _drop_inactive(self, targets: List[TrackingTarget]) -> None:
        active_ids = {t.id for t in targets}
        for target_id in self.timer_manager.tracked_ids():
            if target_id not in active_ids:
                self.timer_manager.disarm(target_id)

    def _close_window(self, result: ScanResult, forget_pending: bool = True) -> None:
        self.timer_manager.cancel_all(forget_pending=forget_pending)
        result.gate_closed = True

    def api_calls_today(self) -> Optional[int]:
        if self.call_counter is None:
            return None
        try:
            return self.call_counter.count_for()
        except Exception as e:
            logger.warning(f"Failed to read API call count: {e}")
            return None

    def status(self) -> Dict[str, Any]:
        """Snapshot for the admin status display"""
        return {
            'state': self.state,
            'is_running': self.is_running,
            'in_flight': self.in_flight,
            'interval_minutes': self.interval_minutes,
            'last_scan': self.last_result.to_dict() if self.last_result else None,
            'active_timers': self.timer_manager.active_timer_count(),
            'tracked_targets': len(self.timer_manager.tracked_ids()),
            'timers': self.timer_manager.status_snapshot(),
            'api_calls_today': self.api_calls_today(),
            'daily_api_call_limit': self.daily_api_call_limit,
        }
