"""Exception hierarchy for the scan lifecycle."""
from __future__ import annotations

from typing import Optional


class ThingsHubError(Exception):
	"""Base class for all errors raised by :mod:`thingshub`."""


class StartError(ThingsHubError):
	"""A scan session could not be started."""


class RadioUnavailable(StartError):
	"""The radio is missing, powered off or otherwise unusable."""


class SessionStartRejected(StartError):
	"""The platform declined the filter/configuration combination."""


class SessionRuntimeFailure(ThingsHubError):
	"""An active scan reported a failure after it was started."""

	def __init__(self, reason: object, *, code: Optional[int] = None) -> None:
		super().__init__(str(reason))
		self.reason = reason
		self.code = code


__all__ = [
	"ThingsHubError",
	"StartError",
	"RadioUnavailable",
	"SessionStartRejected",
	"SessionRuntimeFailure",
]
