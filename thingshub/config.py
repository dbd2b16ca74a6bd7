"""Runtime settings for the scan manager, read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Optional, Tuple

from thingshub.models import DeviceFilter
from thingshub.timer import DEFAULT_RESTART_INTERVAL

ENV_PREFIX = "THINGSHUB_"


def _optional(env: Mapping[str, str], key: str) -> Optional[str]:
	value = env.get(ENV_PREFIX + key, "").strip()
	return value or None


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
	if not value:
		return ()
	return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True, slots=True)
class ManagerSettings:
	"""Settings shared by the CLI and the HTTP API.

	``devices`` lists the addresses scanned when a caller supplies no filters
	of its own. Leaving it empty means such a scan matches every advertisement.
	"""

	restart_interval: float = DEFAULT_RESTART_INTERVAL
	adapter: Optional[str] = None
	scanning_mode: Optional[str] = None
	max_filters: Optional[int] = None
	metrics_path: Optional[str] = None
	devices: Tuple[str, ...] = ()

	def __post_init__(self) -> None:
		if self.restart_interval <= 0:
			raise ValueError("restart_interval must be positive")
		if self.max_filters is not None and self.max_filters <= 0:
			raise ValueError("max_filters must be positive when provided")
		if self.scanning_mode not in (None, "active", "passive"):
			raise ValueError("scanning_mode must be 'active' or 'passive'")
		self.device_filters()

	@classmethod
	def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ManagerSettings":
		env = os.environ if env is None else env
		interval = _optional(env, "RESTART_INTERVAL")
		max_filters = _optional(env, "MAX_FILTERS")
		try:
			return cls(
				restart_interval=float(interval) if interval else DEFAULT_RESTART_INTERVAL,
				adapter=_optional(env, "ADAPTER"),
				scanning_mode=_optional(env, "SCANNING_MODE"),
				max_filters=int(max_filters) if max_filters else None,
				metrics_path=_optional(env, "METRICS_LOG"),
				devices=_split_list(_optional(env, "DEVICES")),
			)
		except (TypeError, ValueError) as exc:
			raise ValueError(f"invalid {ENV_PREFIX}* setting: {exc}") from exc

	def device_filters(self) -> List[DeviceFilter]:
		return [DeviceFilter.by_address(address) for address in self.devices]

	def override(self, **values: Any) -> "ManagerSettings":
		"""Return a copy with every non-``None`` value applied."""
		return replace(self, **{key: value for key, value in values.items() if value is not None})


__all__ = ["ManagerSettings", "ENV_PREFIX"]
