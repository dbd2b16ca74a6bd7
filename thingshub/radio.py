"""Radio adapter contract and its bleak implementation."""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from thingshub.errors import RadioUnavailable, SessionStartRejected
from thingshub.models import AdvertisementEvent, DeviceFilter, RadioPowerState, ScanConfiguration, ScanMode, matches_any

logger = logging.getLogger(__name__)

StateListener = Callable[[RadioPowerState], None]

_POWER_ERROR_HINTS = (
	"turned off",
	"powered off",
	"not powered",
	"not available",
	"no bluetooth adapter",
	"adapter not found",
)


class RadioAdapter(Protocol):
	"""Platform capability consumed by the scan lifecycle manager."""

	def enable(self) -> Any:
		...

	def disable(self) -> Any:
		...

	def is_enabled(self) -> bool:
		...

	def is_batching_supported(self) -> bool:
		...

	async def start_scan(self, filters: Iterable[DeviceFilter], config: ScanConfiguration, handle: Any) -> None:
		...

	async def stop_scan(self, handle: Any) -> None:
		...


def _is_power_error(exc: BaseException) -> bool:
	text = str(exc).lower()
	return any(hint in text for hint in _POWER_ERROR_HINTS)


class BleakRadioAdapter:
	"""Radio adapter backed by :class:`bleak.BleakScanner`.

	bleak cannot switch adapter power, so :meth:`enable` and :meth:`disable`
	only record the request. Power transitions are reported through
	:meth:`set_power_state`, either by an external monitor or when a scan
	start fails because the radio is off.
	"""

	def __init__(
		self,
		*,
		adapter: Optional[str] = None,
		scanning_mode: Optional[str] = None,
		max_filters: Optional[int] = None,
		powered: bool = True,
	) -> None:
		if max_filters is not None and max_filters <= 0:
			raise ValueError("max_filters must be positive when provided")
		self.adapter = adapter
		self.scanning_mode = scanning_mode
		self.max_filters = max_filters
		self._power = RadioPowerState.ON if powered else RadioPowerState.OFF
		self._listeners: List[StateListener] = []
		self._scanners: Dict[Any, BleakScanner] = {}
		self.enable_requested = False

	# ------------------------------------------------------------------
	# Power state
	# ------------------------------------------------------------------
	@property
	def power_state(self) -> RadioPowerState:
		return self._power

	def add_state_listener(self, listener: StateListener) -> None:
		if listener not in self._listeners:
			self._listeners.append(listener)

	def remove_state_listener(self, listener: StateListener) -> None:
		if listener in self._listeners:
			self._listeners.remove(listener)

	def set_power_state(self, state: RadioPowerState | str) -> None:
		state = RadioPowerState.parse(state)
		if state is self._power:
			return
		logger.info("Radio power state %s -> %s", self._power.value, state.value)
		self._power = state
		if state is RadioPowerState.ON:
			self.enable_requested = False
		for listener in list(self._listeners):
			try:
				listener(state)
			except Exception:  # pragma: no cover - listener failure
				logger.exception("Radio state listener raised")

	def enable(self) -> None:
		if self._power is RadioPowerState.ON:
			return
		self.enable_requested = True
		logger.warning("bleak cannot power on the radio; waiting for it to be enabled externally")

	def disable(self) -> None:
		logger.warning("bleak cannot power off the radio; request ignored")

	def is_enabled(self) -> bool:
		return self._power is RadioPowerState.ON

	def is_batching_supported(self) -> bool:
		return False

	# ------------------------------------------------------------------
	# Scanning
	# ------------------------------------------------------------------
	def scanner_kwargs(self, filters: Iterable[DeviceFilter], config: ScanConfiguration) -> Dict[str, Any]:
		filters = tuple(filters)
		kwargs: Dict[str, Any] = {}
		if self.scanning_mode:
			kwargs["scanning_mode"] = self.scanning_mode
		else:
			kwargs["scanning_mode"] = "passive" if config.scan_mode is ScanMode.LOW_POWER else "active"
		# Only hand UUIDs to the platform when every filter is a UUID filter;
		# otherwise address/name matches would be suppressed.
		if filters and all(item.service_uuid for item in filters):
			kwargs["service_uuids"] = sorted(item.service_uuid for item in filters if item.service_uuid)
		if self.adapter:
			kwargs["adapter"] = self.adapter
		return kwargs

	async def start_scan(self, filters: Iterable[DeviceFilter], config: ScanConfiguration, handle: Any) -> None:
		filters = frozenset(filters)
		if not self.is_enabled():
			raise RadioUnavailable("radio is off")
		if self.max_filters is not None and len(filters) > self.max_filters:
			raise SessionStartRejected(f"{len(filters)} filters exceed adapter limit of {self.max_filters}")
		if handle in self._scanners:
			raise SessionStartRejected("scan handle is already active")

		scanner = BleakScanner(
			detection_callback=functools.partial(self._on_detection, filters, handle),
			**self.scanner_kwargs(filters, config),
		)
		try:
			await scanner.start()
		except BleakError as exc:
			if _is_power_error(exc):
				self.set_power_state(RadioPowerState.OFF)
				raise RadioUnavailable(str(exc)) from exc
			raise SessionStartRejected(str(exc)) from exc
		self._scanners[handle] = scanner
		logger.debug("bleak scanner started (%s)", ", ".join(f.value for f in filters) or "unfiltered")

	async def stop_scan(self, handle: Any) -> None:
		scanner = self._scanners.pop(handle, None)
		if scanner is None:
			return
		await scanner.stop()

	def _on_detection(
		self,
		filters: frozenset[DeviceFilter],
		handle: Any,
		device: BLEDevice,
		advertisement: AdvertisementData,
	) -> None:
		try:
			event = AdvertisementEvent.from_bleak(device, advertisement)
			if matches_any(filters, event):
				handle.on_scan_result(event)
		except Exception:  # pragma: no cover - diagnostic path
			logger.exception("Detection callback failed for %s", getattr(device, "address", "?"))


__all__ = ["BleakRadioAdapter", "RadioAdapter", "StateListener"]
