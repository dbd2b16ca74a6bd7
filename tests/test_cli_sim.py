"""CLI tests with the radio adapter replaced by a scripted fake."""
from __future__ import annotations

import asyncio
import contextlib
import io
import json
import os
import unittest
from typing import Any, List
from unittest.mock import patch

from thingshub import cli
from thingshub.models import AdvertisementEvent, DeviceFilter


class _EmittingRadio:
    instances: List["_EmittingRadio"] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.starts: List[Any] = []
        self.stops: List[Any] = []
        _EmittingRadio.instances.append(self)

    def enable(self) -> None:  # pragma: no cover - radio reports on
        pass

    def is_enabled(self) -> bool:
        return True

    def is_batching_supported(self) -> bool:
        return False

    async def start_scan(self, filters, config, handle) -> None:
        self.starts.append(frozenset(filters))
        event = AdvertisementEvent(address="AA:BB:CC:DD:EE:01", name="Thermo", rssi=-51, observed_at=1.0)
        asyncio.get_running_loop().call_soon(handle.on_scan_result, event)

    async def stop_scan(self, handle) -> None:
        self.stops.append(handle)


class CliTest(unittest.TestCase):
    def setUp(self) -> None:
        _EmittingRadio.instances.clear()

    def test_watch_prints_forwarded_events_as_json(self) -> None:
        out = io.StringIO()
        with patch("thingshub.cli.BleakRadioAdapter", _EmittingRadio), contextlib.redirect_stdout(out):
            code = cli.main(
                ["watch", "--address", "aa:bb:cc:dd:ee:01", "--runtime", "0.1", "--json", "--adapter", "hci0"]
            )

        self.assertEqual(code, 0)
        lines = [json.loads(line) for line in out.getvalue().splitlines() if line.strip()]
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0]["address"], "AA:BB:CC:DD:EE:01")
        self.assertEqual(lines[0]["rssi"], -51)

        radio = _EmittingRadio.instances[-1]
        self.assertEqual(radio.kwargs["adapter"], "hci0")
        self.assertEqual(len(radio.starts), 1)
        self.assertEqual(len(radio.stops), 1)

    def test_invalid_filter_is_a_usage_error(self) -> None:
        err = io.StringIO()
        with patch("thingshub.cli.BleakRadioAdapter", _EmittingRadio), contextlib.redirect_stderr(err):
            with self.assertRaises(SystemExit) as ctx:
                cli.main(["watch", "--address", " "])
        self.assertEqual(ctx.exception.code, 2)
        self.assertEqual(_EmittingRadio.instances, [])

    def test_watch_without_filters_scans_configured_devices(self) -> None:
        env = {"THINGSHUB_DEVICES": "C8:59:1C:2B:6C:76,f4:18:ee:6c:be:aa"}
        with patch.dict(os.environ, env), patch("thingshub.cli.BleakRadioAdapter", _EmittingRadio), \
                contextlib.redirect_stdout(io.StringIO()):
            code = cli.main(["watch", "--runtime", "0.05", "--json"])

        self.assertEqual(code, 0)
        radio = _EmittingRadio.instances[-1]
        self.assertEqual(
            radio.starts[0],
            frozenset({DeviceFilter.by_address("C8:59:1C:2B:6C:76"), DeviceFilter.by_address("F4:18:EE:6C:BE:AA")}),
        )

    def test_parser_requires_command(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                cli.main([])


if __name__ == "__main__":
    unittest.main()
