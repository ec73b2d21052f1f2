from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pianobus.config import BrokerConfig
from pianobus.errors import BrokerConnectionError, NotConnectedError, SubscriptionError, print_reporter
from pianobus.transports import TRANSPORTS, resolve


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


StateListener = Callable[[ConnectionState], None]
MessageListener = Callable[[str, str], None]


class ConnectionManager:
    """Publish-side broker connection.

    Disconnected -> Connecting -> Connected. A transport drop while Connected
    reports an error and moves to Reconnecting (bounded exponential backoff,
    re-subscribe on success) or straight to Disconnected when reconnection is
    disabled. All methods run on the owning event loop; publish() never
    blocks, its outcome arrives on the returned future as {"ok": ...}.

    The wire itself is a transport picked by `config.protocol`: MQTT over
    WebSockets, or the JSON relay in pianobus.broker.
    """

    def __init__(
        self,
        config: BrokerConfig,
        reporter: Optional[Callable[[Exception], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transport_factory=None,
    ) -> None:
        self.config = config
        self.state = ConnectionState.DISCONNECTED
        self._report = reporter or print_reporter
        self._sleep = sleep
        if transport_factory is None:
            try:
                transport_factory = TRANSPORTS[config.protocol]
            except KeyError:
                raise ValueError(f"unknown broker protocol {config.protocol!r}") from None
        self._transport_factory = transport_factory
        self._endpoint = config.endpoint
        self._client_id = config.client_id
        self._transport = None
        self._opening: Optional[asyncio.Future] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        # publish futures not yet settled
        self._pending: Set[asyncio.Future] = set()
        # bumped by close(); an _open() from an older generation backs out
        self._generation = 0
        self._closing = False
        self._subscribed = False
        self._state_listeners: List[StateListener] = []
        self._message_listeners: List[MessageListener] = []
        self.metrics: Dict[str, int] = {"connects": 0, "reconnects": 0, "drops": 0}

    # --- Listeners ---
    def add_state_listener(self, cb: StateListener) -> None:
        self._state_listeners.append(cb)

    def add_message_listener(self, cb: MessageListener) -> None:
        self._message_listeners.append(cb)

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    @property
    def client_id(self) -> str:
        return self._client_id

    def get_metrics(self) -> Dict[str, Any]:
        m: Dict[str, Any] = dict(self.metrics)
        m["state"] = self.state.value
        m["pending"] = len(self._pending)
        return m

    # --- Lifecycle ---
    async def connect(self, endpoint: Optional[str] = None, client_id: Optional[str] = None) -> bool:
        if endpoint:
            self._endpoint = endpoint
        if client_id:
            self._client_id = client_id
        if self.state is ConnectionState.CONNECTED:
            return True
        if self.state is not ConnectionState.DISCONNECTED:
            # already connecting or reconnecting
            return False
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        ok = await self._open()
        if not ok and self.state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.DISCONNECTED)
        return ok

    async def close(self) -> None:
        if self._closing and self.state is ConnectionState.DISCONNECTED:
            return
        self._closing = True
        self._generation += 1
        opening = self._opening
        if opening is not None:
            opening.cancel()
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        transport = self._transport
        self._transport = None
        if transport is not None:
            await transport.close(self.config.topic if self._subscribed else None)
            print(f"[conn] closed {self._endpoint}", flush=True)
        self._fail_pending("closed")
        self._subscribed = False
        self._set_state(ConnectionState.DISCONNECTED)

    # --- Publish ---
    def publish(self, topic: str, payload: str, qos: int = 1) -> asyncio.Future:
        """Hand one message to the transport. Raises NotConnectedError unless Connected."""
        transport = self._transport
        if self.state is not ConnectionState.CONNECTED or transport is None:
            raise NotConnectedError()
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        self._pending.add(fut)
        fut.add_done_callback(self._pending.discard)
        if qos > 0:
            handle = loop.call_later(self.config.ack_timeout, resolve, fut, {"ok": False, "error": "ack_timeout"})
            fut.add_done_callback(lambda _f: handle.cancel())
        transport.publish(topic, payload, int(qos), fut)
        return fut

    # --- Internals ---
    async def _open(self) -> bool:
        generation = self._generation
        transport = self._transport_factory(self.config, self._on_transport_message, self._on_transport_lost, self._report)
        opening = asyncio.ensure_future(transport.open(self._endpoint, self._client_id))
        self._opening = opening
        try:
            await asyncio.wait({opening})
        except asyncio.CancelledError:
            opening.cancel()
            await transport.close(None)
            raise
        finally:
            if self._opening is opening:
                self._opening = None
        if opening.cancelled() or generation != self._generation:
            await transport.close(None)
            return False
        err = opening.exception()
        if err is not None:
            if not isinstance(err, BrokerConnectionError):
                err = BrokerConnectionError(f"connect to {self._endpoint} failed: {err}")
            self._report(err)
            return False
        self._transport = transport
        self.metrics["connects"] += 1
        print(f"[conn] connected to {self._endpoint} as {self._client_id} ({self.config.protocol})", flush=True)
        self._set_state(ConnectionState.CONNECTED)
        await self._subscribe(transport)
        # the transport may have dropped while subscribing
        return self.connected

    async def _subscribe(self, transport) -> bool:
        topic = self.config.topic
        res = await transport.subscribe(topic)
        if transport is not self._transport:
            return False
        if res.get("ok"):
            self._subscribed = True
            print(f"[conn] subscribed to '{topic}'", flush=True)
            return True
        self._subscribed = False
        self._report(SubscriptionError(f"subscribe to '{topic}' failed: {res.get('error', 'unknown')}"))
        return False

    def _on_transport_message(self, topic: str, data: str) -> None:
        for cb in list(self._message_listeners):
            try:
                cb(topic, data)
            except Exception as e:
                self._report(e)

    def _on_transport_lost(self, transport) -> None:
        if transport is self._transport and not self._closing:
            self._on_dropped()

    def _on_dropped(self) -> None:
        self._transport = None
        self._subscribed = False
        self.metrics["drops"] += 1
        self._fail_pending("connection_lost")
        self._report(BrokerConnectionError(f"connection to {self._endpoint} lost"))
        if self.config.reconnect_attempts <= 0:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._set_state(ConnectionState.RECONNECTING)
        if self._reconnect_task is None:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        for attempt, delay in enumerate(self.config.backoff_delays(), start=1):
            await self._sleep(delay)
            if self._closing:
                return
            print(f"[conn] reconnect attempt {attempt}/{self.config.reconnect_attempts} after {delay:.2f}s", flush=True)
            if await self._open():
                self.metrics["reconnects"] += 1
                self._reconnect_task = None
                return
        self._reconnect_task = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._report(BrokerConnectionError(f"gave up reconnecting after {self.config.reconnect_attempts} attempts"))

    def _fail_pending(self, error: str) -> None:
        for fut in list(self._pending):
            resolve(fut, {"ok": False, "error": error})

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        for cb in list(self._state_listeners):
            try:
                cb(state)
            except Exception as e:
                self._report(e)
