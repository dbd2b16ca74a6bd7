"""A single scan request against a :class:`~thingshub.radio.RadioAdapter`."""
from __future__ import annotations

import enum
import logging
from typing import Any, Iterable, Optional, Protocol

from thingshub.errors import RadioUnavailable, SessionRuntimeFailure, SessionStartRejected, StartError
from thingshub.models import AdvertisementEvent, DeviceFilter, ScanConfiguration

logger = logging.getLogger(__name__)


class SessionListener(Protocol):
	"""Receiver of session callbacks; implemented by the lifecycle manager."""

	def on_advertisement_observed(self, event: AdvertisementEvent, *, generation: Optional[int] = None) -> None:
		...

	def on_scan_failed(self, reason: Any, *, generation: Optional[int] = None) -> None:
		...


class SessionState(enum.Enum):
	INACTIVE = "inactive"
	ACTIVE = "active"


class ScanSession:
	"""Stateful handle for one scan with a frozen filter set and configuration.

	The session is also the callback handle given to the adapter: results and
	failures come back through :meth:`on_scan_result`,
	:meth:`on_batch_scan_results` and :meth:`on_scan_failed` and are relayed
	to the listener tagged with this session's generation.
	"""

	def __init__(
		self,
		adapter: Any,
		filters: Iterable[DeviceFilter],
		config: ScanConfiguration,
		*,
		generation: int,
		listener: SessionListener,
	) -> None:
		self.adapter = adapter
		self.filters: frozenset[DeviceFilter] = frozenset(filters)
		self.config = config
		self.generation = generation
		self._listener = listener
		self._state = SessionState.INACTIVE

	def __repr__(self) -> str:
		return f"<ScanSession gen={self.generation} state={self._state.value} filters={len(self.filters)}>"

	@property
	def state(self) -> SessionState:
		return self._state

	@property
	def active(self) -> bool:
		return self._state is SessionState.ACTIVE

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def start(self) -> "ScanSession":
		if self.active:
			return self
		if not self.adapter.is_enabled():
			raise RadioUnavailable("radio is not enabled")

		try:
			await self.adapter.start_scan(self.filters, self.config, self)
		except StartError:
			raise
		except Exception as exc:
			raise SessionStartRejected(str(exc) or type(exc).__name__) from exc

		self._state = SessionState.ACTIVE
		logger.debug("Scan session %d active with %d filter(s)", self.generation, len(self.filters))
		return self

	async def stop(self) -> None:
		if self.deactivate():
			await self.release()

	def deactivate(self) -> bool:
		"""Mark the session inactive; return whether it was active.

		The radio side is released separately by :meth:`release`.
		"""
		was_active = self.active
		self._state = SessionState.INACTIVE
		return was_active

	async def release(self) -> None:
		try:
			await self.adapter.stop_scan(self)
		except Exception as exc:
			logger.warning("Stopping scan session %d encountered error: %s", self.generation, exc)
		else:
			logger.debug("Scan session %d stopped", self.generation)

	# ------------------------------------------------------------------
	# Adapter callbacks
	# ------------------------------------------------------------------
	def on_scan_result(self, event: AdvertisementEvent) -> None:
		self._listener.on_advertisement_observed(event, generation=self.generation)

	def on_batch_scan_results(self, events: Iterable[AdvertisementEvent]) -> None:
		for event in events:
			self._listener.on_advertisement_observed(event, generation=self.generation)

	def on_scan_failed(self, reason: Any) -> None:
		if not isinstance(reason, SessionRuntimeFailure):
			code = reason if isinstance(reason, int) else None
			reason = SessionRuntimeFailure(reason, code=code)
		self._listener.on_scan_failed(reason, generation=self.generation)


__all__ = ["ScanSession", "SessionListener", "SessionState"]
