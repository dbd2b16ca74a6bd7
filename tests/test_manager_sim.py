"""Simulation tests for the scan lifecycle manager against a scripted radio."""
from __future__ import annotations

import asyncio
import csv
import json
import random
import tempfile
import unittest
from pathlib import Path
from typing import Any, List, Optional, Set

from thingshub.errors import SessionStartRejected
from thingshub.manager import ManagerState, ScanLifecycleManager
from thingshub.metrics import MetricsLogger
from thingshub.models import AdvertisementEvent, DeviceFilter, RadioPowerState, ScanConfiguration
from thingshub.sinks import CallbackSink

ADDR_A = "AA:BB:CC:DD:EE:01"
ADDR_B = "AA:BB:CC:DD:EE:02"
FILTER_A = DeviceFilter.by_address(ADDR_A)
FILTER_B = DeviceFilter.by_address(ADDR_B)


class FakeRadioAdapter:
    """Records every scan start/stop and tracks concurrently active handles."""

    def __init__(self, *, powered: bool = True, batching: bool = False) -> None:
        self.powered = powered
        self.batching = batching
        self.calls: List[tuple] = []
        self.active: Set[Any] = set()
        self.max_active = 0
        self.enable_calls = 0
        self.fail_next_start: Optional[Exception] = None

    def enable(self) -> None:
        self.enable_calls += 1

    def disable(self) -> None:  # pragma: no cover - unused by the manager
        self.powered = False

    def is_enabled(self) -> bool:
        return self.powered

    def is_batching_supported(self) -> bool:
        return self.batching

    async def start_scan(self, filters, config, handle) -> None:
        await asyncio.sleep(0)
        if self.fail_next_start is not None:
            exc, self.fail_next_start = self.fail_next_start, None
            raise exc
        self.calls.append(("start", frozenset(filters), config))
        self.active.add(handle)
        self.max_active = max(self.max_active, len(self.active))

    async def stop_scan(self, handle) -> None:
        await asyncio.sleep(0)
        self.calls.append(("stop", handle.filters, handle.config))
        self.active.discard(handle)

    @property
    def kinds(self) -> List[str]:
        return [call[0] for call in self.calls]

    @property
    def starts(self) -> List[tuple]:
        return [call for call in self.calls if call[0] == "start"]


class GatedRadioAdapter(FakeRadioAdapter):
    """Holds every ``start_scan`` call until ``gate`` is set."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def start_scan(self, filters, config, handle) -> None:
        self.entered.set()
        await self.gate.wait()
        await super().start_scan(filters, config, handle)


def _event(address: str = ADDR_A, rssi: int = -60) -> AdvertisementEvent:
    return AdvertisementEvent(address=address, name="Sensor", rssi=rssi, observed_at=100.0)


class ScanLifecycleManagerSimulationTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.adapter = FakeRadioAdapter()
        self.received: List[AdvertisementEvent] = []
        self.manager = ScanLifecycleManager(self.adapter, CallbackSink(self.received.append))

    async def asyncTearDown(self) -> None:
        await self.manager.close()

    async def test_request_with_radio_on_starts_one_session_before_forwarding(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.assertEqual(self.adapter.kinds, ["start"])
        self.assertEqual(self.adapter.starts[0][1], frozenset({FILTER_A}))
        self.assertEqual(self.received, [])
        self.assertIs(self.manager.state, ManagerState.SCANNING)
        self.assertTrue(self.manager.restart_timer.armed)

        event = _event()
        self.manager.session.on_scan_result(event)
        await self.manager.drain()
        self.assertEqual(len(self.received), 1)
        self.assertIs(self.received[0], event)

    async def test_end_to_end_radio_off_then_on_then_stop(self) -> None:
        self.adapter.powered = False
        self.manager.request_scan([ADDR_A, ADDR_B])
        await self.manager.drain()

        self.assertEqual(self.adapter.starts, [])
        self.assertEqual(self.adapter.enable_calls, 1)
        self.assertIs(self.manager.state, ManagerState.AWAITING_RADIO)

        self.adapter.powered = True
        self.manager.on_radio_state_changed(RadioPowerState.ON)
        await self.manager.drain()

        self.assertEqual(len(self.adapter.starts), 1)
        self.assertEqual(self.adapter.starts[0][1], frozenset({FILTER_A, FILTER_B}))

        event = _event(ADDR_A)
        self.manager.session.on_scan_result(event)
        await self.manager.drain()
        self.assertEqual(self.received, [event])

        self.manager.stop_scan()
        self.assertIs(self.manager.state, ManagerState.STOPPED)
        self.assertFalse(self.manager.restart_timer.armed)
        self.assertIsNone(self.manager.session)
        self.assertFalse(self.manager.scan_requested)

        await self.manager.drain()
        self.assertEqual(self.adapter.kinds, ["start", "stop"])
        self.assertEqual(self.adapter.active, set())

    async def test_radio_off_while_scanning_keeps_request_and_resumes(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.adapter.powered = False
        self.manager.on_radio_state_changed("off")
        await self.manager.drain()

        self.assertIs(self.manager.state, ManagerState.AWAITING_RADIO)
        self.assertTrue(self.manager.scan_requested)
        self.assertFalse(self.manager.restart_timer.armed)
        self.assertEqual(self.adapter.active, set())

        self.adapter.powered = True
        self.manager.on_radio_state_changed("on")
        await self.manager.drain()

        self.assertIs(self.manager.state, ManagerState.SCANNING)
        self.assertEqual(self.adapter.kinds, ["start", "stop", "start"])
        self.assertEqual(self.adapter.starts[1][1], frozenset({FILTER_A}))

    async def test_intermediate_radio_states_are_ignored(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.manager.on_radio_state_changed(RadioPowerState.TURNING_OFF)
        self.manager.on_radio_state_changed(RadioPowerState.TURNING_ON)
        await self.manager.drain()

        self.assertIs(self.manager.state, ManagerState.SCANNING)
        self.assertEqual(self.adapter.kinds, ["start"])

    async def test_second_request_replaces_session_with_new_filters(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()
        self.manager.request_scan({FILTER_B})
        await self.manager.drain()

        self.assertEqual(self.adapter.kinds, ["start", "stop", "start"])
        self.assertEqual(self.adapter.calls[1][1], frozenset({FILTER_A}))
        self.assertEqual(self.adapter.starts[1][1], frozenset({FILTER_B}))
        self.assertEqual(self.adapter.max_active, 1)
        self.assertEqual(self.manager.filters, frozenset({FILTER_B}))

    async def test_duplicate_radio_on_does_not_start_second_session(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.manager.on_radio_state_changed(RadioPowerState.ON)
        self.manager.on_radio_state_changed(RadioPowerState.ON)
        await self.manager.drain()

        self.assertEqual(len(self.adapter.starts), 1)
        self.assertEqual(self.adapter.max_active, 1)

    async def test_stop_scan_is_idempotent(self) -> None:
        self.manager.stop_scan()
        await self.manager.drain()
        self.assertEqual(self.adapter.calls, [])

        self.manager.request_scan({FILTER_A})
        await self.manager.drain()
        self.manager.stop_scan()
        self.manager.stop_scan()
        await self.manager.drain()

        self.assertEqual(self.adapter.kinds, ["start", "stop"])
        self.assertIs(self.manager.state, ManagerState.STOPPED)
        self.assertFalse(self.manager.restart_timer.armed)

    async def test_stop_before_queued_request_runs_starts_nothing(self) -> None:
        self.manager.request_scan({FILTER_A})
        self.manager.stop_scan()
        await self.manager.drain()

        self.assertEqual(self.adapter.calls, [])
        self.assertIs(self.manager.state, ManagerState.STOPPED)

    async def test_stale_session_events_are_dropped(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()
        old_session = self.manager.session

        self.manager.request_scan({FILTER_B})
        await self.manager.drain()
        new_session = self.manager.session
        self.assertNotEqual(old_session.generation, new_session.generation)

        old_session.on_scan_result(_event(ADDR_A))
        old_session.on_scan_failed(2)
        await self.manager.drain()
        self.assertEqual(self.received, [])

        fresh = _event(ADDR_B)
        new_session.on_scan_result(fresh)
        await self.manager.drain()
        self.assertEqual(self.received, [fresh])

    async def test_batched_results_are_flattened_without_dedup(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        batch = [_event(ADDR_A, -50), _event(ADDR_A, -50), _event(ADDR_A, -52)]
        self.manager.session.on_batch_scan_results(batch)
        await self.manager.drain()

        self.assertEqual(self.received, batch)

    async def test_batching_capability_selects_configuration(self) -> None:
        self.adapter.batching = True
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        config = self.adapter.starts[0][2]
        self.assertEqual(config, ScanConfiguration.for_batching(True))
        self.assertGreater(config.report_delay, 0)

    async def test_scan_failure_does_not_retry_immediately(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.manager.session.on_scan_failed(2)
        await self.manager.drain()

        self.assertEqual(self.adapter.kinds, ["start"])
        self.assertIs(self.manager.state, ManagerState.SCANNING)
        self.assertTrue(self.manager.restart_timer.armed)

    async def test_start_rejection_arms_retry_and_radio_on_still_resumes(self) -> None:
        self.adapter.fail_next_start = SessionStartRejected("too many filters")
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.assertIs(self.manager.state, ManagerState.AWAITING_RADIO)
        self.assertTrue(self.manager.scan_requested)
        self.assertIsNone(self.manager.session)
        self.assertTrue(self.manager.restart_timer.armed)

        self.manager.on_radio_state_changed(RadioPowerState.ON)
        await self.manager.drain()
        self.assertIs(self.manager.state, ManagerState.SCANNING)
        self.assertEqual(len(self.adapter.starts), 1)
        self.assertEqual(self.manager.session.generation, 2)

    async def test_stop_cancels_pending_retry(self) -> None:
        self.adapter.fail_next_start = SessionStartRejected("busy")
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()
        self.assertTrue(self.manager.restart_timer.armed)

        self.manager.stop_scan()
        await self.manager.drain()
        self.assertFalse(self.manager.restart_timer.armed)

        self.manager._on_restart_timer(1)
        await self.manager.drain()
        self.assertEqual(self.adapter.starts, [])
        self.assertIs(self.manager.state, ManagerState.STOPPED)

    async def test_stop_while_start_in_flight_releases_late_session(self) -> None:
        adapter = GatedRadioAdapter()
        manager = ScanLifecycleManager(adapter, CallbackSink(self.received.append))
        manager.request_scan({FILTER_A})
        await asyncio.wait_for(adapter.entered.wait(), 1.0)

        manager.stop_scan()
        adapter.gate.set()
        await manager.drain()

        self.assertIs(manager.state, ManagerState.STOPPED)
        self.assertFalse(manager.scan_requested)
        self.assertIsNone(manager.session)
        self.assertFalse(manager.restart_timer.armed)
        self.assertEqual(adapter.kinds, ["start", "stop"])
        self.assertEqual(adapter.active, set())

        manager.on_advertisement_observed(_event(), generation=1)
        await manager.drain()
        self.assertEqual(self.received, [])
        await manager.close()

    async def test_newer_request_supersedes_start_in_flight(self) -> None:
        adapter = GatedRadioAdapter()
        manager = ScanLifecycleManager(adapter, CallbackSink(self.received.append))
        manager.request_scan({FILTER_A})
        await asyncio.wait_for(adapter.entered.wait(), 1.0)

        manager.request_scan({FILTER_B})
        adapter.gate.set()
        await manager.drain()

        self.assertEqual(adapter.kinds, ["start", "stop", "start"])
        self.assertEqual(adapter.max_active, 1)
        self.assertIs(manager.state, ManagerState.SCANNING)
        self.assertEqual(manager.session.filters, frozenset({FILTER_B}))
        self.assertEqual(manager.session.generation, 2)
        await manager.close()
        self.assertEqual(adapter.active, set())

    async def test_failure_log_names_reported_generation(self) -> None:
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        with self.assertLogs("thingshub.manager", level="WARNING") as captured:
            self.manager.on_scan_failed("internal error")
            self.manager.session.on_scan_failed(2)
            await self.manager.drain()

        self.assertEqual(
            [record.getMessage() for record in captured.records],
            ["Scan failed: internal error", "Scan failed (generation 1): 2"],
        )

    async def test_restart_tick_while_not_scanning_is_noop(self) -> None:
        self.adapter.powered = False
        self.manager.request_scan({FILTER_A})
        await self.manager.drain()

        self.manager._on_restart_timer(1)
        await self.manager.drain()

        self.assertEqual(self.adapter.calls, [])
        self.assertIs(self.manager.state, ManagerState.AWAITING_RADIO)

    async def test_async_sink_is_forwarded(self) -> None:
        delivered: List[AdvertisementEvent] = []

        async def _deliver(event: AdvertisementEvent) -> None:
            await asyncio.sleep(0)
            delivered.append(event)

        manager = ScanLifecycleManager(self.adapter, CallbackSink(_deliver))
        manager.request_scan({FILTER_A})
        await manager.drain()
        manager.session.on_scan_result(_event())
        await manager.drain()
        await asyncio.sleep(0.01)
        await manager.close()

        self.assertEqual(len(delivered), 1)

    async def test_at_most_one_session_for_random_sequences(self) -> None:
        rng = random.Random(1234)
        for _ in range(200):
            action = rng.choice(["request_a", "request_b", "stop", "off", "on"])
            if action == "request_a":
                self.manager.request_scan({FILTER_A})
            elif action == "request_b":
                self.manager.request_scan({FILTER_A, FILTER_B})
            elif action == "stop":
                self.manager.stop_scan()
            elif action == "off":
                self.adapter.powered = False
                self.manager.on_radio_state_changed(RadioPowerState.OFF)
            else:
                self.adapter.powered = True
                self.manager.on_radio_state_changed(RadioPowerState.ON)
            if rng.random() < 0.5:
                await self.manager.drain()
                self.assertLessEqual(len(self.adapter.active), 1)
                if self.manager.state is ManagerState.SCANNING:
                    self.assertEqual(len(self.adapter.active), 1)

        self.manager.stop_scan()
        await self.manager.drain()
        self.assertEqual(self.adapter.max_active, 1)
        self.assertEqual(self.adapter.active, set())
        self.assertFalse(self.manager.restart_timer.armed)


class RestartTimerSimulationTest(unittest.IsolatedAsyncioTestCase):
    async def _wait_for(self, predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() >= deadline:
                self.fail("condition not reached in time")
            await asyncio.sleep(0.002)

    async def test_timer_tick_restarts_session_with_same_parameters(self) -> None:
        adapter = FakeRadioAdapter()
        manager = ScanLifecycleManager(adapter, CallbackSink(lambda _: None), restart_interval=0.2)
        manager.request_scan({FILTER_A, FILTER_B})
        await manager.drain()
        self.assertAlmostEqual(manager.restart_timer.remaining(), 0.2, delta=0.05)

        await self._wait_for(lambda: len(adapter.starts) >= 2)
        await manager.drain()

        self.assertEqual(adapter.kinds[:3], ["start", "stop", "start"])
        first, stop, second = adapter.calls[:3]
        self.assertEqual(first[1], second[1])
        self.assertEqual(first[2], second[2])
        self.assertEqual(stop[1], first[1])
        self.assertEqual(manager.generation, 2)
        self.assertIs(manager.state, ManagerState.SCANNING)
        self.assertTrue(manager.restart_timer.armed)
        self.assertGreater(manager.restart_timer.remaining(), 0.1)

        manager.stop_scan()
        self.assertFalse(manager.restart_timer.armed)
        await manager.close()
        self.assertEqual(adapter.active, set())

    async def test_rejected_start_is_retried_on_next_tick(self) -> None:
        adapter = FakeRadioAdapter()
        adapter.fail_next_start = SessionStartRejected("too many filters")
        manager = ScanLifecycleManager(adapter, CallbackSink(lambda _: None), restart_interval=0.2)
        manager.request_scan({FILTER_A})
        await manager.drain()

        self.assertIs(manager.state, ManagerState.AWAITING_RADIO)
        self.assertTrue(manager.scan_requested)
        self.assertIsNone(manager.session)
        self.assertTrue(manager.restart_timer.armed)
        self.assertEqual(adapter.starts, [])

        await self._wait_for(lambda: manager.state is ManagerState.SCANNING)
        await manager.drain()

        self.assertEqual(len(adapter.starts), 1)
        self.assertEqual(manager.session.generation, 2)
        self.assertTrue(manager.restart_timer.armed)
        await manager.close()
        self.assertEqual(adapter.active, set())

    async def test_default_interval_is_29_minutes(self) -> None:
        manager = ScanLifecycleManager(FakeRadioAdapter(), CallbackSink(lambda _: None))
        self.assertEqual(manager.restart_timer.interval, 29 * 60)
        await manager.close()


class ManagerMetricsTest(unittest.IsolatedAsyncioTestCase):
    async def test_lifecycle_rows_are_written(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp, "lifecycle.csv")
            adapter = FakeRadioAdapter()
            manager = ScanLifecycleManager(
                adapter,
                CallbackSink(lambda _: None),
                log=MetricsLogger(log_path, static_extra={"site": "lab"}),
            )
            manager.request_scan({FILTER_A})
            await manager.drain()
            await manager.close()

            with log_path.open("r", encoding="utf-8", newline="") as handle:
                rows = list(csv.DictReader(handle))

        events = [row["event"] for row in rows]
        self.assertIn("scan_requested", events)
        self.assertIn("session_start", events)
        self.assertIn("scan_stopped", events)
        start_row = next(row for row in rows if row["event"] == "session_start")
        self.assertEqual(start_row["status"], "ok")
        self.assertEqual(start_row["generation"], "1")
        self.assertIn('"site":"lab"', start_row["extra"])
        self.assertEqual(json.loads(start_row["extra"])["stimulus"], "request")
        state_rows = [row for row in rows if row["event"] == "state"]
        self.assertEqual([row["state"] for row in state_rows], ["scanning", "stopped"])


if __name__ == "__main__":
    unittest.main()
