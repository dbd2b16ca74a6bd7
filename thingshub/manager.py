"""Scan lifecycle manager keeping a best-effort continuous BLE scan alive."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import itertools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Set, Tuple, Union

from thingshub.errors import StartError, SessionRuntimeFailure
from thingshub.metrics import MetricsLogger
from thingshub.models import AdvertisementEvent, DeviceFilter, RadioPowerState, ScanConfiguration
from thingshub.session import ScanSession
from thingshub.timer import DEFAULT_RESTART_INTERVAL, RestartTimer

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., ScanSession]


class ManagerState(enum.Enum):
    STOPPED = "stopped"
    AWAITING_RADIO = "awaiting_radio"
    SCANNING = "scanning"


def _coerce_filters(filters: Iterable[Union[DeviceFilter, str]]) -> frozenset[DeviceFilter]:
    result = set()
    for item in filters:
        if isinstance(item, DeviceFilter):
            result.add(item)
        elif isinstance(item, str):
            result.add(DeviceFilter.by_address(item))
        else:
            raise TypeError(f"expected DeviceFilter or address string, got {type(item).__name__}")
    return frozenset(result)


class ScanLifecycleManager:
    """Single-owner state machine driving scan sessions on a radio adapter.

    Every stimulus (scan requests, radio power changes, advertisements, scan
    failures and restart ticks) is queued and handled one at a time by a
    worker task, so handlers never interleave.
    """

    def __init__(
        self,
        adapter: Any,
        sink: Any,
        *,
        restart_interval: float = DEFAULT_RESTART_INTERVAL,
        log: Union[MetricsLogger, str, Path, None] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.adapter = adapter
        self.sink = sink
        self.metadata = dict(metadata or {})

        if isinstance(log, MetricsLogger):
            self.metrics: Optional[MetricsLogger] = log
        elif log is None:
            self.metrics = None
        else:
            self.metrics = MetricsLogger(log, static_extra=self.metadata)

        self._session_factory: SessionFactory = session_factory or ScanSession
        self.restart_timer = RestartTimer(self._on_restart_timer, restart_interval)

        self._queue: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._forwards: Set[asyncio.Task[Any]] = set()
        self._generations = itertools.count(1)
        self._listening = False

        self._state = ManagerState.STOPPED
        self._scan_requested = False
        self._intent = 0
        self._retry_token: Optional[int] = None
        self._filters: frozenset[DeviceFilter] = frozenset()
        self._session: Optional[ScanSession] = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def scan_requested(self) -> bool:
        return self._scan_requested

    @property
    def filters(self) -> frozenset[DeviceFilter]:
        return self._filters

    @property
    def session(self) -> Optional[ScanSession]:
        return self._session

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> Dict[str, Any]:
        session = self._session
        return {
            "state": self._state.value,
            "scan_requested": self._scan_requested,
            "filters": sorted((f.to_dict() for f in self._filters), key=lambda f: (f["kind"], f["value"])),
            "generation": self._generation,
            "session_active": bool(session and session.active),
            "config": session.config.to_dict() if session else None,
            "restart_in": self.restart_timer.remaining(),
        }

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> "ScanLifecycleManager":
        self._ensure_worker()
        if not self._listening:
            add_listener = getattr(self.adapter, "add_state_listener", None)
            if callable(add_listener):
                add_listener(self.on_radio_state_changed)
                self._listening = True
        return self

    async def close(self) -> None:
        self.stop_scan()
        await self.drain()
        if self._listening:
            remove_listener = getattr(self.adapter, "remove_state_listener", None)
            if callable(remove_listener):
                remove_listener(self.on_radio_state_changed)
            self._listening = False
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "ScanLifecycleManager":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def drain(self) -> None:
        """Wait until every queued stimulus has been handled."""
        self._ensure_worker()
        await self._queue.join()

    # ------------------------------------------------------------------
    # Inbound contract
    # ------------------------------------------------------------------
    def request_scan(self, filters: Iterable[Union[DeviceFilter, str]]) -> None:
        requested = _coerce_filters(filters)
        self._intent += 1
        self._scan_requested = True
        self._post("request", (requested, self._intent))

    def stop_scan(self) -> None:
        self._intent += 1
        was_requested = self._scan_requested
        self._scan_requested = False
        self._retry_token = None
        self.restart_timer.cancel()
        session, self._session = self._session, None
        if session is not None and session.deactivate():
            self._post("release", session)
        if was_requested or session is not None:
            self._post("stopped", None)
        self._set_state(ManagerState.STOPPED)

    def on_radio_state_changed(self, state: Union[RadioPowerState, str]) -> None:
        self._post("radio", RadioPowerState.parse(state))

    def on_advertisement_observed(self, event: AdvertisementEvent, *, generation: Optional[int] = None) -> None:
        self._post("advertisement", (event, generation))

    def on_scan_failed(self, reason: Any, *, generation: Optional[int] = None) -> None:
        self._post("failure", (reason, generation))

    def _on_restart_timer(self, token: int) -> None:
        self._post("restart", token)

    # ------------------------------------------------------------------
    # Queue plumbing
    # ------------------------------------------------------------------
    def _post(self, kind: str, payload: Any) -> None:
        self._queue.put_nowait((kind, payload))
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._worker = loop.create_task(self._run(), name="thingshub-scan-manager")

    async def _run(self) -> None:
        while True:
            kind, payload = await self._queue.get()
            try:
                with self._metrics_scope(kind):
                    await self._dispatch(kind, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scan manager handler %r failed", kind)
            finally:
                self._queue.task_done()

    async def _dispatch(self, kind: str, payload: Any) -> None:
        if kind == "request":
            await self._handle_request(*payload)
        elif kind == "release":
            await self._release(payload)
        elif kind == "stopped":
            await self._log("scan_stopped", status="ok")
        elif kind == "radio":
            await self._handle_radio(payload)
        elif kind == "advertisement":
            self._handle_advertisement(*payload)
        elif kind == "failure":
            await self._handle_failure(*payload)
        elif kind == "restart":
            await self._handle_restart(payload)
        else:  # pragma: no cover - internal misuse
            logger.error("Unknown scan manager stimulus %r", kind)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_request(self, filters: frozenset[DeviceFilter], intent: int) -> None:
        if intent != self._intent or not self._scan_requested:
            logger.debug("Dropping superseded scan request")
            return
        await self._log("scan_requested", status="ok", extra={"filters": [f.value for f in filters]})
        if self._session is not None:
            await self._stop_session()
        self._filters = filters
        await self._ensure_session()

    async def _handle_radio(self, state: RadioPowerState) -> None:
        await self._log("radio_state", status=state.value)
        if state is RadioPowerState.ON:
            if self._scan_requested and self._state is not ManagerState.SCANNING:
                await self._ensure_session()
        elif state is RadioPowerState.OFF:
            if self._session is not None:
                await self._stop_session()
            self.restart_timer.cancel()
            self._retry_token = None
            if self._scan_requested:
                self._set_state(ManagerState.AWAITING_RADIO)
        else:
            logger.debug("Ignoring intermediate radio state %s", state.value)

    def _handle_advertisement(self, event: AdvertisementEvent, generation: Optional[int]) -> None:
        session = self._session
        if session is None or not session.active:
            logger.debug("Dropping advertisement from %s: no active session", event.address)
            return
        if generation is not None and generation != session.generation:
            logger.debug("Dropping stale advertisement from generation %d", generation)
            return
        logger.debug("Forwarding advertisement from %s (rssi=%s)", event.address, event.rssi)
        self._forward(event)

    async def _handle_failure(self, reason: Any, generation: Optional[int]) -> None:
        session = self._session
        if generation is not None and (session is None or generation != session.generation):
            logger.debug("Ignoring failure from stale generation %d", generation)
            return
        failure = reason if isinstance(reason, SessionRuntimeFailure) else SessionRuntimeFailure(reason)
        if generation is None:
            logger.warning("Scan failed: %s", failure)
        else:
            logger.warning("Scan failed (generation %d): %s", generation, failure)
        await self._log(
            "scan_failed",
            status="error",
            message=str(failure),
            generation=generation,
            extra={"code": failure.code},
        )

    async def _handle_restart(self, token: int) -> None:
        if self._state is ManagerState.AWAITING_RADIO and token == self._retry_token:
            self._retry_token = None
            logger.info("Retrying rejected scan start (generation %d)", token)
            await self._log("session_retry", status="pending")
            await self._ensure_session()
            return
        session = self._session
        if self._state is not ManagerState.SCANNING or session is None or token != session.generation:
            logger.debug("Ignoring restart tick %d", token)
            return
        logger.info("Periodic restart of scan session %d", token)
        config = session.config
        await self._stop_session()
        await self._log("session_restart", status="pending")
        await self._ensure_session(config=config)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------
    async def _ensure_session(self, *, config: Optional[ScanConfiguration] = None) -> None:
        if not self._scan_requested:
            return
        if self._session is not None and self._session.active:
            return
        if not self.adapter.is_enabled():
            self._set_state(ManagerState.AWAITING_RADIO)
            self._retry_token = None
            self.restart_timer.cancel()
            await self._enable_radio()
            return
        await self._start_session(config)

    async def _start_session(self, config: Optional[ScanConfiguration]) -> None:
        if config is None:
            config = ScanConfiguration.for_batching(bool(self.adapter.is_batching_supported()))
        intent = self._intent
        generation = next(self._generations)
        self._generation = generation
        self._retry_token = None
        session = self._session_factory(
            self.adapter,
            self._filters,
            config,
            generation=generation,
            listener=self,
        )
        try:
            await session.start()
        except StartError as exc:
            logger.warning("Scan session %d failed to start: %s", generation, exc)
            await self._log("session_start", status="error", message=str(exc), extra={"error": type(exc).__name__})
            if intent != self._intent or not self._scan_requested:
                return
            self._set_state(ManagerState.AWAITING_RADIO)
            if self.adapter.is_enabled():
                # The radio stays on, so no power event will follow; retry on the next tick.
                self._retry_token = generation
                self.restart_timer.arm(generation)
            return

        if intent != self._intent or not self._scan_requested:
            logger.info("Scan session %d superseded while starting; stopping it", generation)
            await session.stop()
            await self._log("session_stop", status="superseded", generation=generation)
            return

        self._session = session
        self._set_state(ManagerState.SCANNING)
        self.restart_timer.arm(generation)
        await self._log("session_start", status="ok", extra={"filters": len(self._filters), **config.to_dict()})

    async def _stop_session(self) -> None:
        self.restart_timer.cancel()
        session, self._session = self._session, None
        if session is None:
            return
        await session.stop()
        await self._log("session_stop", status="ok", generation=session.generation)

    async def _release(self, session: ScanSession) -> None:
        await session.release()
        await self._log("session_stop", status="ok", generation=session.generation)

    async def _enable_radio(self) -> None:
        try:
            outcome = self.adapter.enable()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Radio enable request failed: %s", exc)
            await self._log("radio_enable", status="error", message=str(exc))
        else:
            await self._log("radio_enable", status="pending")

    def _forward(self, event: AdvertisementEvent) -> None:
        try:
            outcome = self.sink.publish(event)
        except Exception:
            logger.exception("Event sink raised while publishing %s", event.address)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._forwards.add(task)
            task.add_done_callback(self._forward_done)

    def _forward_done(self, task: "asyncio.Future[Any]") -> None:
        self._forwards.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Event sink failed", exc_info=task.exception())

    def _metrics_scope(self, stimulus: str) -> "contextlib.AbstractContextManager[None]":
        if not self.metrics:
            return contextlib.nullcontext()
        return self.metrics.scope(stimulus=stimulus)

    def _set_state(self, state: ManagerState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info("Scan manager %s -> %s", previous.value, state.value)
        if self.metrics:
            try:
                self.metrics.log("state", status=previous.value, state=state.value, generation=self._generation)
            except Exception:  # pragma: no cover - I/O failure safeguard
                logger.debug("Metrics logging failed for state change", exc_info=True)

    async def _log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        message: Optional[str] = None,
        generation: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.metrics:
            return
        try:
            await self.metrics.log_async(
                event,
                status=status,
                state=self._state.value,
                generation=self._generation if generation is None else generation,
                message=message,
                extra=extra,
            )
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = ["ManagerState", "ScanLifecycleManager"]
