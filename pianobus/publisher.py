from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from pianobus.errors import PianoBusError, PublishError, print_reporter
from pianobus.notes import NoteEvent
from pianobus import wire


@dataclass
class DebugEntry:
    ts: float
    topic: str
    kind: str
    message: Dict[str, Any]
    status: str = "pending"
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        d = {"ts": self.ts, "topic": self.topic, "kind": self.kind, "message": dict(self.message), "status": self.status}
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class DebugLog:
    """Append-only record of publish attempts, capped at `limit` entries."""

    limit: int = 500
    entries: Deque[DebugEntry] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.entries = deque(self.entries, maxlen=max(1, int(self.limit)))

    def append(self, entry: DebugEntry) -> DebugEntry:
        self.entries.append(entry)
        return entry

    def tail(self, n: int = 20) -> List[Dict[str, Any]]:
        xs = list(self.entries)[-n:] if n > 0 else []
        return [e.as_dict() for e in xs]

    def __len__(self) -> int:
        return len(self.entries)


class MessagePublisher:
    """Turns NoteEvents and volume changes into wire messages on one topic.

    Publishing never raises into the caller and never waits on the network:
    each call returns a future that resolves to {"ok": True} or
    {"ok": False, "error": code}. Failures are reported once, not retried.
    """

    def __init__(
        self,
        connection,
        topic: str = "piano",
        qos: int = 1,
        debug_log: Optional[DebugLog] = None,
        reporter: Optional[Callable[[Exception], None]] = None,
        log: bool = False,
    ) -> None:
        self.connection = connection
        self.log = log
        self.topic = topic
        self.qos = qos
        self.debug_log = debug_log if debug_log is not None else DebugLog()
        self._report = reporter or print_reporter
        self._inflight: set = set()
        self.metrics: Dict[str, int] = {"published": 0, "acked": 0, "failed": 0}

    def publish_note(self, event: NoteEvent) -> asyncio.Future:
        return self._publish("note", wire.encode_note(event))

    def publish_volume(self, volume: int) -> asyncio.Future:
        return self._publish("volume", wire.encode_volume(volume))

    def get_metrics(self) -> Dict[str, int]:
        m = dict(self.metrics)
        m["inflight"] = len(self._inflight)
        return m

    async def drain(self, timeout: float = 1.0) -> None:
        """Wait (bounded) for in-flight publishes to settle."""
        # A resolved future stays in _inflight until its _settled callback
        # has run, so wait on all of them, done or not.
        if self._inflight:
            await asyncio.wait(list(self._inflight), timeout=timeout)
        await asyncio.sleep(0)

    def _publish(self, kind: str, msg: Dict[str, Any]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        entry = self.debug_log.append(DebugEntry(ts=time.time(), topic=self.topic, kind=kind, message=msg))
        self.metrics["published"] += 1
        try:
            fut = self.connection.publish(self.topic, wire.dumps(msg), self.qos)
        except PianoBusError as e:
            # Dropped, not queued: the caller's state is already consistent
            self._failed(entry, getattr(e, "code", "publish"), e)
            done = loop.create_future()
            done.set_result({"ok": False, "error": entry.error})
            return done
        self._inflight.add(fut)
        fut.add_done_callback(lambda f: self._settled(entry, f))
        return fut

    def _settled(self, entry: DebugEntry, fut: asyncio.Future) -> None:
        self._inflight.discard(fut)
        res = fut.result() if not fut.cancelled() else {"ok": False, "error": "cancelled"}
        if res.get("ok"):
            entry.status = "ok"
            self.metrics["acked"] += 1
            if self.log:
                print(f"[pub] {self.topic} {wire.describe(entry.message)}", flush=True)
        else:
            code = str(res.get("error", "unknown"))
            self._failed(entry, code, PublishError(f"publish {wire.describe(entry.message)} failed: {code}"))

    def _failed(self, entry: DebugEntry, code: str, err: Exception) -> None:
        entry.status = "failed"
        entry.error = code
        self.metrics["failed"] += 1
        if not isinstance(err, PublishError):
            err = PublishError(str(err))
        self._report(err)
