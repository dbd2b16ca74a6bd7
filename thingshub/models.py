"""Value types shared by the scan lifecycle components."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

BATCH_REPORT_DELAY = 1.0


class RadioPowerState(enum.Enum):
	OFF = "off"
	TURNING_ON = "turning_on"
	ON = "on"
	TURNING_OFF = "turning_off"

	@classmethod
	def parse(cls, value: "str | RadioPowerState") -> "RadioPowerState":
		if isinstance(value, cls):
			return value
		try:
			return cls(str(value).strip().lower())
		except ValueError as exc:
			raise ValueError(f"unknown radio state: {value!r}") from exc


class ScanMode(enum.Enum):
	LOW_POWER = "low_power"
	BALANCED = "balanced"
	LOW_LATENCY = "low_latency"


class MatchMode(enum.Enum):
	AGGRESSIVE = "aggressive"
	STICKY = "sticky"


class MatchCount(enum.Enum):
	ONE = "one"
	FEW = "few"
	MAX = "max"


class CallbackType(enum.Enum):
	ALL_MATCHES = "all_matches"
	FIRST_MATCH = "first_match"
	MATCH_LOST = "match_lost"


@dataclass(frozen=True, slots=True)
class DeviceFilter:
	"""Criterion selecting the advertisements of one target device.

	Exactly one of ``address``, ``service_uuid`` or ``name`` must be given.
	"""

	address: Optional[str] = None
	service_uuid: Optional[str] = None
	name: Optional[str] = None

	def __post_init__(self) -> None:
		if self.address is not None:
			object.__setattr__(self, "address", self.address.strip().upper() or None)
		if self.service_uuid is not None:
			object.__setattr__(self, "service_uuid", self.service_uuid.strip().lower() or None)
		given = [value for value in (self.address, self.service_uuid, self.name) if value]
		if len(given) != 1:
			raise ValueError("DeviceFilter needs exactly one of address, service_uuid or name")

	@classmethod
	def by_address(cls, address: str) -> "DeviceFilter":
		return cls(address=address)

	@classmethod
	def by_service_uuid(cls, uuid: str) -> "DeviceFilter":
		return cls(service_uuid=uuid)

	@classmethod
	def by_name(cls, name: str) -> "DeviceFilter":
		return cls(name=name)

	@property
	def kind(self) -> str:
		if self.address:
			return "address"
		if self.service_uuid:
			return "service_uuid"
		return "name"

	@property
	def value(self) -> str:
		return self.address or self.service_uuid or self.name or ""

	def matches(self, event: "AdvertisementEvent") -> bool:
		if self.address:
			return event.address.upper() == self.address
		if self.service_uuid:
			return self.service_uuid in (uuid.lower() for uuid in event.uuids)
		return event.name == self.name

	def to_dict(self) -> Dict[str, str]:
		return {"kind": self.kind, "value": self.value}


def matches_any(filters: Iterable[DeviceFilter], event: "AdvertisementEvent") -> bool:
	"""True when ``event`` passes at least one filter; no filters passes everything."""
	filters = tuple(filters)
	if not filters:
		return True
	return any(item.matches(event) for item in filters)


@dataclass(frozen=True, slots=True)
class ScanConfiguration:
	"""Scan parameters frozen for the lifetime of one session."""

	scan_mode: ScanMode = ScanMode.LOW_LATENCY
	report_delay: float = 0.0
	match_mode: MatchMode = MatchMode.AGGRESSIVE
	match_count: MatchCount = MatchCount.MAX
	callback_type: CallbackType = CallbackType.ALL_MATCHES

	@classmethod
	def for_batching(cls, supported: bool) -> "ScanConfiguration":
		if supported:
			return cls(
				scan_mode=ScanMode.LOW_LATENCY,
				report_delay=BATCH_REPORT_DELAY,
				match_mode=MatchMode.AGGRESSIVE,
				match_count=MatchCount.ONE,
			)
		return cls(scan_mode=ScanMode.LOW_LATENCY, match_mode=MatchMode.AGGRESSIVE)

	@property
	def batched(self) -> bool:
		return self.report_delay > 0

	def to_dict(self) -> Dict[str, Any]:
		return {
			"scan_mode": self.scan_mode.value,
			"report_delay": self.report_delay,
			"match_mode": self.match_mode.value,
			"match_count": self.match_count.value,
			"callback_type": self.callback_type.value,
		}


@dataclass(slots=True)
class AdvertisementEvent:
	"""A single observed BLE advertisement."""

	address: str
	name: Optional[str] = None
	rssi: Optional[int] = None
	uuids: tuple[str, ...] = ()
	manufacturer_data: Dict[int, bytes] = field(default_factory=dict)
	service_data: Dict[str, bytes] = field(default_factory=dict)
	tx_power: Optional[int] = None
	observed_at: float = field(default_factory=time.time)
	extra: Dict[str, Any] = field(default_factory=dict)

	@classmethod
	def from_bleak(
		cls,
		device: BLEDevice,
		advertisement: AdvertisementData | None = None,
		*,
		observed_at: Optional[float] = None,
	) -> "AdvertisementEvent":
		uuids: Iterable[str] = ()
		manufacturer_data: Dict[int, bytes] = {}
		service_data: Dict[str, bytes] = {}
		tx_power: Optional[int] = None
		rssi: Optional[int] = None
		name = device.name or None
		extra: Dict[str, Any] = {}

		if advertisement is not None:
			uuids = advertisement.service_uuids or ()
			manufacturer_data = {
				key: bytes(value)
				for key, value in (advertisement.manufacturer_data or {}).items()
			}
			service_data = {
				key: bytes(value)
				for key, value in (advertisement.service_data or {}).items()
			}
			tx_power = advertisement.tx_power
			rssi = advertisement.rssi
			name = getattr(advertisement, "local_name", None) or name
			if advertisement.platform_data:
				extra["platform_data"] = advertisement.platform_data

		if rssi is None:
			rssi = getattr(device, "rssi", None)

		details = getattr(device, "details", None)
		if details is not None:
			extra["details"] = details

		return cls(
			address=device.address,
			name=name,
			rssi=rssi,
			uuids=tuple(str(uuid) for uuid in uuids),
			manufacturer_data=manufacturer_data,
			service_data=service_data,
			tx_power=tx_power,
			observed_at=observed_at if observed_at is not None else time.time(),
			extra=extra,
		)

	def to_dict(self) -> Dict[str, Any]:
		payload: Dict[str, Any] = {
			"address": self.address,
			"name": self.name,
			"rssi": self.rssi,
			"uuids": list(self.uuids),
			"tx_power": self.tx_power,
			"observed_at": self.observed_at,
		}
		if self.manufacturer_data:
			payload["manufacturer_data"] = {
				str(key): value.hex() for key, value in self.manufacturer_data.items()
			}
		if self.service_data:
			payload["service_data"] = {
				key: value.hex() for key, value in self.service_data.items()
			}
		return payload


__all__ = [
	"AdvertisementEvent",
	"CallbackType",
	"DeviceFilter",
	"MatchCount",
	"MatchMode",
	"RadioPowerState",
	"ScanConfiguration",
	"ScanMode",
	"matches_any",
]
