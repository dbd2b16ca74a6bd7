"""CSV event log for scan lifecycle transitions."""
from __future__ import annotations

import asyncio
import contextlib
import contextvars
import csv
import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "status",
    "state",
    "generation",
    "message",
    "extra",
)

_Layers = Tuple[Mapping[str, Any], ...]


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True)
    except (TypeError, ValueError):
        return repr(dict(extra))


@dataclass(slots=True)
class LifecycleRecord:
    """One CSV row describing a manager or session transition."""

    timestamp: str
    event: str
    status: Optional[str] = None
    state: Optional[str] = None
    generation: Optional[int] = None
    message: Optional[str] = None
    extra: str = ""

    def as_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        values = {key: ("" if value is None else value) for key, value in asdict(self).items()}
        return {key: values.get(key, "") for key in fields}


class MetricsLogger:
    """Append-only CSV log of scan lifecycle events.

    Rows are written and flushed one at a time so a process tailing the file
    sees each transition as soon as it happens. Payloads pushed with
    :meth:`scope` live in a context variable, so they follow the task that
    pushed them into :meth:`log_async` worker threads.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields else DEFAULT_FIELDS
        if not self.fields:
            raise ValueError("fields must contain at least one column")

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self._layers: contextvars.ContextVar[_Layers] = contextvars.ContextVar(
            f"thingshub_metrics_{id(self)}", default=()
        )
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if not self.path.exists() or self.path.stat().st_size == 0:
                self._append(header=True)

    def log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        state: Optional[str] = None,
        generation: Optional[int] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = dict(self._static_extra)
        for layer in self._layers.get():
            payload.update(layer)
        payload.update(extra or {})
        record = LifecycleRecord(
            timestamp=self._timestamp(),
            event=event,
            status=status,
            state=state,
            generation=generation,
            message=message,
            extra=_encode_extra(payload),
        )
        with self._lock:
            self._append(record.as_row(self.fields))

    async def log_async(self, event: str, **kwargs: Any) -> None:
        await asyncio.to_thread(self.log, event, **kwargs)

    @contextlib.contextmanager
    def scope(self, extra: Mapping[str, Any] | None = None, **extra_kwargs: Any) -> Iterator[None]:
        layer = {**(extra or {}), **extra_kwargs}
        token = self._layers.set(self._layers.get() + (layer,))
        try:
            yield
        finally:
            self._layers.reset(token)

    def _append(self, row: Optional[Dict[str, Any]] = None, *, header: bool = False) -> None:
        mode = "w" if header else "a"
        with self.path.open(mode, newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
            if header:
                writer.writeheader()
            else:
                writer.writerow(row or {})
            handle.flush()

    def _timestamp(self) -> str:
        try:
            dt = self._clock()
        except Exception:  # pragma: no cover - guard against faulty clock
            dt = datetime.now(timezone.utc)
        if not isinstance(dt, datetime):
            return str(dt)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


__all__ = [
    "MetricsLogger",
    "LifecycleRecord",
    "DEFAULT_FIELDS",
]
