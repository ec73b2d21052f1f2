from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from pianobus.catalog import NoteCatalog
from pianobus.clock import NowFn, monotonic_ms
from pianobus.config import BrokerConfig
from pianobus.connection import ConnectionManager, ConnectionState
from pianobus.errors import WireFormatError, print_reporter
from pianobus.input_adapter import InputAdapter
from pianobus.notes import NoteStateMachine
from pianobus.publisher import DebugLog, MessagePublisher
from pianobus.volume import VolumeControl, VolumeState
from pianobus import wire


class KeyboardSession:
    """Everything one keyboard client owns, built once and torn down once.

    Input sources and the UI get `session.input`, `session.volume` and
    `get_state()`; they never hold the press ledger or the connection directly.
    """

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        catalog: Optional[NoteCatalog] = None,
        now: NowFn = monotonic_ms,
        reporter: Optional[Callable[[Exception], None]] = None,
        connection: Optional[ConnectionManager] = None,
        log_inbound: bool = True,
        log_publishes: bool = False,
    ) -> None:
        self.config = config or BrokerConfig()
        self.catalog = catalog or NoteCatalog.default()
        self.report = reporter or print_reporter
        self.volume_state = VolumeState(self.config.default_volume)
        self.connection = connection or ConnectionManager(self.config, reporter=self.report)
        self.debug_log = DebugLog(limit=self.config.debug_log_limit)
        self.publisher = MessagePublisher(
            self.connection,
            topic=self.config.topic,
            qos=self.config.qos,
            debug_log=self.debug_log,
            reporter=self.report,
            log=log_publishes,
        )
        self.machine = NoteStateMachine(self.volume_state, now=now)
        self.volume = VolumeControl(self.volume_state, self.publisher)
        self.input = InputAdapter(self.catalog, self.machine, self.publisher, emit_start=self.config.emit_start)
        self.inbound: Deque[Dict[str, Any]] = deque(maxlen=max(1, self.config.debug_log_limit))
        self._log_inbound = log_inbound
        self._torn_down = False
        self.connection.add_message_listener(self._on_message)

    async def init(self) -> bool:
        """Connect and subscribe. A failed connect leaves the session usable offline."""
        if self._torn_down:
            raise RuntimeError("session already torn down")
        return await self.connection.connect(self.config.endpoint, self.config.client_id)

    async def teardown(self, drain_timeout: float = 1.0) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        # Held notes get their stop while the connection is still up
        self.input.force_clear()
        self.input.detach()
        if self.connection.connected:
            await self.publisher.drain(drain_timeout)
        await self.connection.close()

    async def __aenter__(self) -> "KeyboardSession":
        await self.init()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.teardown()

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def add_state_listener(self, cb: Callable[[ConnectionState], None]) -> None:
        self.connection.add_state_listener(cb)

    def get_state(self, log_tail: int = 20) -> Dict[str, Any]:
        return {
            "connection": self.connection.state.value,
            "clientId": self.connection.client_id,
            "topic": self.config.topic,
            "volume": self.volume_state.value,
            "activeNotes": self.machine.get_active_snapshot(),
            "debugLog": self.debug_log.tail(log_tail),
            "metrics": {
                "publisher": self.publisher.get_metrics(),
                "connection": self.connection.get_metrics(),
            },
        }

    def _on_message(self, topic: str, data) -> None:
        try:
            msg = wire.decode_message(data)
        except WireFormatError as e:
            self.report(e)
            return
        self.inbound.append(msg)
        if self._log_inbound:
            print(f"[conn] recv on {topic}: {wire.describe(msg)}", flush=True)
