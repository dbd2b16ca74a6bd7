"""ThingsHub command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Callable, List, Optional

from rich.console import Console

from thingshub.config import ManagerSettings
from thingshub.manager import ScanLifecycleManager
from thingshub.models import AdvertisementEvent, DeviceFilter
from thingshub.radio import BleakRadioAdapter
from thingshub.sinks import CallbackSink


def _build_filters(args: argparse.Namespace) -> List[DeviceFilter]:
	filters: List[DeviceFilter] = []
	filters.extend(DeviceFilter.by_address(value) for value in args.address or ())
	filters.extend(DeviceFilter.by_service_uuid(value) for value in args.service_uuid or ())
	filters.extend(DeviceFilter.by_name(value) for value in args.name or ())
	return filters


def _event_printer(as_json: bool, console: Console) -> Callable[[AdvertisementEvent], None]:
	if as_json:
		def _print_json(event: AdvertisementEvent) -> None:
			sys.stdout.write(json.dumps(event.to_dict()) + "\n")
			sys.stdout.flush()

		return _print_json

	def _print_row(event: AdvertisementEvent) -> None:
		console.print(
			f"[bold]{event.address}[/bold]\t{event.name or ''}\t"
			f"rssi={event.rssi if event.rssi is not None else '?'}\t"
			f"uuids={','.join(event.uuids)}"
		)

	return _print_row


async def _cmd_watch(args: argparse.Namespace) -> int:
	settings = ManagerSettings.from_env().override(
		restart_interval=args.restart_interval,
		adapter=args.adapter,
		scanning_mode=args.scanning_mode,
		max_filters=args.max_filters,
		metrics_path=args.log,
	)
	filters = _build_filters(args) or settings.device_filters()
	console = Console(stderr=args.json)
	adapter = BleakRadioAdapter(
		adapter=settings.adapter,
		scanning_mode=settings.scanning_mode,
		max_filters=settings.max_filters,
	)
	manager = ScanLifecycleManager(
		adapter,
		CallbackSink(_event_printer(args.json, console)),
		restart_interval=settings.restart_interval,
		log=settings.metrics_path,
	)

	stop_event = asyncio.Event()

	def _signal_handler(*_: Any) -> None:
		stop_event.set()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	async with manager:
		manager.request_scan(filters)
		console.print(
			f"Watching {len(filters) or 'all'} filter(s); restarting every {settings.restart_interval:.0f}s"
		)
		with contextlib.suppress(asyncio.TimeoutError):
			await asyncio.wait_for(stop_event.wait(), timeout=args.runtime)
	return 0


def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	uvicorn.run("thingshub.api:app", host=args.host, port=args.port, reload=args.reload)
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="ThingsHub BLE scan utilities")
	parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
	sub = parser.add_subparsers(dest="command", required=True)

	watch = sub.add_parser("watch", help="Scan continuously and print matching advertisements")
	watch.add_argument("--address", action="append", help="Filter by device address")
	watch.add_argument("--service-uuid", action="append", help="Filter by service UUID", dest="service_uuid")
	watch.add_argument("--name", action="append", help="Filter by advertised name")
	watch.add_argument("--restart-interval", type=float, help="Seconds between forced scan restarts")
	watch.add_argument("--runtime", type=float, help="Optional watch duration seconds")
	watch.add_argument("--adapter", help="BLE adapter identifier")
	watch.add_argument("--scanning-mode", choices=("active", "passive"), help="Override scanning mode")
	watch.add_argument("--max-filters", type=int, help="Reject scans with more filters than this")
	watch.add_argument("--log", help="Path to lifecycle CSV log")
	watch.add_argument("--json", action="store_true", help="Output JSON lines")
	watch.set_defaults(handler=_cmd_watch)

	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.add_argument("--reload", action="store_true", help="Reload on code changes")
	serve.set_defaults(handler=_cmd_serve)

	return parser


def _configure_logging(verbosity: int) -> None:
	level = logging.WARNING
	if verbosity == 1:
		level = logging.INFO
	elif verbosity >= 2:
		level = logging.DEBUG
	logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	_configure_logging(args.verbose)
	try:
		outcome = args.handler(args)
		if asyncio.iscoroutine(outcome):
			return asyncio.run(outcome)
		return outcome
	except ValueError as exc:
		parser.error(str(exc))
	return 2


if __name__ == "__main__":
	sys.exit(main())
