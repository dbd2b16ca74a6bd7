"""ThingsHub: continuous BLE advertisement scanning for a fixed set of sensors."""
from thingshub.errors import RadioUnavailable, SessionRuntimeFailure, SessionStartRejected, StartError, ThingsHubError
from thingshub.manager import ManagerState, ScanLifecycleManager
from thingshub.models import AdvertisementEvent, DeviceFilter, RadioPowerState, ScanConfiguration
from thingshub.session import ScanSession
from thingshub.sinks import BroadcastSink, CallbackSink

__version__ = "0.1.0"

__all__ = [
	"AdvertisementEvent",
	"BroadcastSink",
	"CallbackSink",
	"DeviceFilter",
	"ManagerState",
	"RadioPowerState",
	"RadioUnavailable",
	"ScanConfiguration",
	"ScanLifecycleManager",
	"ScanSession",
	"SessionRuntimeFailure",
	"SessionStartRejected",
	"StartError",
	"ThingsHubError",
]
