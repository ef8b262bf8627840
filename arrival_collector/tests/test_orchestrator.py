# arrival_collector/tests/test_orchestrator.py
import asyncio
import threading
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from arrival_collector.arrival_detector import ArrivalDetector
from arrival_collector.errors import PredictionServiceError, SettingsUnavailableError
from arrival_collector.orchestrator import (
    RUNNING,
    STOPPED,
    CollectionOrchestrator,
    group_by_stop,
)
from arrival_collector.prediction_client import find_vehicle_prediction
from arrival_collector.timer_manager import TimerManager
from arrival_collector.tracking import IMMINENT, SchedulerSettings, StopKey
from arrival_collector.tests.fakes import (
    FakePredictionClient,
    make_target,
    never_fires,
    prediction,
)

GANGNAM = "228000710"
YANGJAE = "228000720"


@pytest.fixture()
def targets(registry):
    created = [
        make_target("a"),
        make_target("b", vehicle_id="200000222", vehicle_label="1550"),
        make_target("c", stop_id=YANGJAE, stop_label="Yangjae Stn."),
    ]
    for target in created:
        registry.add_target(target)
    return created


@pytest.fixture()
def client():
    return FakePredictionClient({
        (GANGNAM, None): [prediction(400), prediction(90, label="1550", vehicle_id="200000222")],
        (YANGJAE, None): [prediction(1200)],
    })


@pytest.fixture()
def build(log_store, pending_store, registry, settings_store, clock):
    settings_store.save(SchedulerSettings(enabled=True))

    def _build(client, store=None):
        detector = ArrivalDetector(log_store, pending_store, clock=clock)
        manager = TimerManager(client, detector, clock=clock, sleep=never_fires)
        return CollectionOrchestrator(
            settings_store=store or settings_store,
            registry=registry,
            prediction_client=client,
            timer_manager=manager,
            clock=clock,
            sleep=never_fires,
        )
    return _build


def test_group_by_stop_keeps_order_and_sub_codes():
    a = make_target("a")
    b = make_target("b", stop_sub_code="23456")
    c = make_target("c")
    groups = group_by_stop([a, b, c])
    assert list(groups) == [StopKey(GANGNAM), StopKey(GANGNAM, "23456")]
    assert groups[StopKey(GANGNAM)] == [a, c]


def test_scan_queries_each_stop_once_and_arms_every_target(build, client, targets):
    async def scenario():
        orchestrator = build(client)
        result = await orchestrator.run_once()
        states = {t.id: orchestrator.timer_manager.get_state(t.id) for t in targets}
        live = orchestrator.timer_manager.active_timer_count()
        orchestrator.timer_manager.cancel_all()
        return result, states, live

    result, states, live = asyncio.run(scenario())

    assert sorted(client.calls) == [(GANGNAM, None), (YANGJAE, None)]
    assert result.checked == 3
    assert result.timers_set == 3
    assert result.errors == []
    assert states["a"].delay_seconds == 220
    assert states["b"].phase == IMMINENT
    assert states["c"].delay_seconds == 1020
    assert live == 3


def test_failed_stop_does_not_block_other_stops(build, targets):
    client = FakePredictionClient({
        (GANGNAM, None): PredictionServiceError(GANGNAM, "HTTP 500"),
        (YANGJAE, None): [prediction(1200)],
    })

    async def scenario():
        orchestrator = build(client)
        result = await orchestrator.run_once()
        tracked = orchestrator.timer_manager.tracked_ids()
        orchestrator.timer_manager.cancel_all()
        return result, tracked

    result, tracked = asyncio.run(scenario())

    assert result.checked == 1
    assert tracked == ["c"]
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Stop {GANGNAM}:")


def test_target_failure_schedules_retry(build, client, targets):
    def flaky(target, predictions):
        if target.id == "a":
            raise ValueError("bad reading")
        return find_vehicle_prediction(target, predictions)

    async def scenario():
        orchestrator = build(client)
        with patch("arrival_collector.orchestrator.find_vehicle_prediction", side_effect=flaky):
            result = await orchestrator.run_once()
        state = orchestrator.timer_manager.get_state("a")
        orchestrator.timer_manager.cancel_all()
        return result, state

    result, state = asyncio.run(scenario())

    assert result.timers_set == 2
    assert result.errors == ["Target 7800: bad reading"]
    assert state.delay_seconds == 300


def test_closed_window_cancels_timers_without_querying(build, client, targets, settings_store, clock):
    async def scenario():
        orchestrator = build(client)
        await orchestrator.run_once()
        settings_store.save(SchedulerSettings(enabled=True, start_hour=22, end_hour=6))
        clock.now = datetime(2025, 10, 8, 12, 0, 0)
        client.calls.clear()
        result = await orchestrator.run_once()
        return result, orchestrator.timer_manager.active_timer_count()

    result, live = asyncio.run(scenario())

    assert result.gate_closed
    assert client.calls == []
    assert live == 0


def test_unreadable_settings_close_the_window(build, client, targets):
    store = Mock()
    store.read.side_effect = SettingsUnavailableError("database locked")

    async def scenario():
        orchestrator = build(client, store=store)
        return await orchestrator.run_once()

    result = asyncio.run(scenario())

    assert result.gate_closed
    assert client.calls == []
    assert result.errors == ["Settings unavailable: database locked"]


def test_interval_follows_stored_settings(build, client, targets, settings_store):
    settings_store.save(SchedulerSettings(enabled=True, interval_minutes=7))

    async def scenario():
        orchestrator = build(client)
        await orchestrator.run_once()
        orchestrator.timer_manager.cancel_all()
        return orchestrator.interval_minutes

    assert asyncio.run(scenario()) == 7


def test_deactivated_target_is_disarmed(build, client, targets, registry):
    async def scenario():
        orchestrator = build(client)
        await orchestrator.run_once()
        registry.set_active("c", False)
        await orchestrator.run_once()
        tracked = orchestrator.timer_manager.tracked_ids()
        orchestrator.timer_manager.cancel_all()
        return tracked

    assert sorted(asyncio.run(scenario())) == ["a", "b"]


def test_no_active_targets(build, client):
    async def scenario():
        return await build(client).run_once()

    result = asyncio.run(scenario())

    assert result.checked == 0
    assert client.calls == []
    assert not result.gate_closed


def test_run_is_skipped_while_previous_is_in_flight(build, targets):
    release = threading.Event()

    def slow_stop():
        release.wait(timeout=5)
        return [prediction(400)]

    client = FakePredictionClient({
        (GANGNAM, None): slow_stop,
        (YANGJAE, None): [prediction(1200)],
    })

    async def scenario():
        orchestrator = build(client)
        first = asyncio.create_task(orchestrator.run_once())
        for _ in range(200):
            if orchestrator.in_flight and len(client.calls) == 2:
                break
            await asyncio.sleep(0.01)
        overlapping = await orchestrator.run_manually()
        calls_during_overlap = len(client.calls)
        release.set()
        completed = await first
        orchestrator.timer_manager.cancel_all()
        return overlapping, calls_during_overlap, completed, orchestrator.in_flight

    overlapping, calls_during_overlap, completed, in_flight_after = asyncio.run(scenario())

    assert overlapping.skipped
    assert overlapping.checked == 0
    assert calls_during_overlap == 2
    assert not completed.skipped
    assert completed.checked == 3
    assert in_flight_after is False


def test_start_and_stop_are_idempotent(build, client, targets):
    async def scenario():
        orchestrator = build(client)
        first = orchestrator.start()
        second = orchestrator.start()
        state_running = orchestrator.state
        for _ in range(20):
            if orchestrator.last_result is not None:
                break
            await asyncio.sleep(0.01)
        stopped = await orchestrator.stop()
        stopped_again = await orchestrator.stop()
        return (
            first, second, state_running, stopped, stopped_again,
            orchestrator.state, orchestrator.timer_manager.active_timer_count(),
        )

    first, second, state_running, stopped, stopped_again, state, live = asyncio.run(scenario())

    assert (first, second) == (True, False)
    assert state_running == RUNNING
    assert (stopped, stopped_again) == (True, False)
    assert state == STOPPED
    assert live == 0


def test_status_reports_lifecycle_and_timers(build, client, targets):
    async def scenario():
        orchestrator = build(client)
        await orchestrator.run_once()
        status = orchestrator.status()
        orchestrator.timer_manager.cancel_all()
        return status

    status = asyncio.run(scenario())

    assert status['state'] == STOPPED
    assert status['is_running'] is False
    assert status['in_flight'] is False
    assert status['active_timers'] == 3
    assert status['tracked_targets'] == 3
    assert status['last_scan']['checked'] == 3
    assert status['api_calls_today'] is None
    assert len(status['timers']) == 3


def test_disabled_collection_clears_timers_without_querying(build, client, targets, settings_store):
    async def scenario():
        orchestrator = build(client)
        await orchestrator.run_once()
        armed = orchestrator.timer_manager.active_timer_count()
        settings_store.save(SchedulerSettings(enabled=False, start_hour=0, end_hour=24))
        client.calls.clear()
        result = await orchestrator.run_manually()
        return armed, result, orchestrator.timer_manager.active_timer_count()

    armed, result, live = asyncio.run(scenario())

    assert armed == 3
    assert result.gate_closed
    assert client.calls == []
    assert live == 0


def test_imminent_reading_before_closing_is_not_confirmed_next_morning(
        build, registry, settings_store, log_store, pending_store, clock):
    target = make_target()
    registry.add_target(target)
    client = FakePredictionClient({(GANGNAM, None): [prediction(100, plate="GG-1")]})

    async def scenario():
        orchestrator = build(client)
        clock.now = datetime(2025, 10, 8, 23, 58)
        await orchestrator.run_once()
        pending_before_close = pending_store.get(target.arrival_key)

        clock.now = datetime(2025, 10, 9, 0, 5)
        closed = await orchestrator.run_once()

        clock.now = datetime(2025, 10, 9, 5, 0)
        client.responses[(GANGNAM, None)] = [prediction(1500, plate="GG-2")]
        await orchestrator.run_once()
        orchestrator.timer_manager.cancel_all()
        return pending_before_close, closed

    pending_before_close, closed = asyncio.run(scenario())

    assert pending_before_close is not None
    assert closed.gate_closed
    assert log_store.recent() == []
    assert pending_store.get(target.arrival_key) is None


def test_missing_vehicle_waits_for_stored_interval(build, targets, settings_store, clock):
    settings_store.save(SchedulerSettings(enabled=True, interval_minutes=7))
    client = FakePredictionClient()

    async def scenario():
        orchestrator = build(client)
        await orchestrator.run_once()
        return orchestrator.timer_manager.get_state("a")

    state = asyncio.run(scenario())

    assert state.last_predicted_seconds is None
    assert state.next_check_at == clock.now + timedelta(minutes=7)
