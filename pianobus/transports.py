from __future__ import annotations

import asyncio
import contextlib
import json
import time
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from pianobus.config import BrokerConfig
from pianobus.errors import BrokerConnectionError

"""Broker transports used by ConnectionManager.

A transport is built fresh for every connection attempt and never reconnects
by itself. Its surface:

    await open(endpoint, client_id)       raises BrokerConnectionError
    await subscribe(topic)                -> {"ok": ...}
    publish(topic, data, qos, fut)        resolves fut with {"ok": ...}
    await close(unsubscribe_topic)

Inbound messages go to on_message(topic, text); an unexpected drop calls
on_lost(transport) once.
"""

MessageCallback = Callable[[str, str], None]
LostCallback = Callable[[Any], None]


def resolve(fut: asyncio.Future, result: Dict[str, Any]) -> None:
    if not fut.done():
        fut.set_result(result)


class MqttTransport:
    """MQTT over WebSockets with paho-mqtt.

    paho runs its network loop on its own thread. Its callbacks only hop onto
    the event loop; all bookkeeping happens there. paho's own reconnect is
    never used: on a drop the client is stopped and ConnectionManager decides.
    """

    def __init__(
        self,
        config: BrokerConfig,
        on_message: MessageCallback,
        on_lost: LostCallback,
        reporter: Callable[[Exception], None],
        client_cls=None,
    ) -> None:
        self.config = config
        self._on_message = on_message
        self._on_lost = on_lost
        self._report = reporter
        self._client_cls = client_cls or mqtt.Client
        self._client = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future] = None
        # mid -> future waiting on PUBACK / SUBACK (or on the write, for qos 0)
        self._acks: Dict[int, asyncio.Future] = {}
        self._stopping: Optional[asyncio.Future] = None
        self._closed = False

    async def open(self, endpoint: str, client_id: str) -> None:
        loop = self._loop = asyncio.get_running_loop()
        url = urlsplit(endpoint)
        secure = url.scheme == "wss"
        client = self._client_cls(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, transport="websockets")
        client.ws_set_options(path=url.path or "/")
        if secure:
            client.tls_set()
        client.on_connect = self._cb_connect
        client.on_connect_fail = self._cb_connect_fail
        client.on_disconnect = self._cb_disconnect
        client.on_publish = self._cb_publish
        client.on_subscribe = self._cb_subscribe
        client.on_message = self._cb_message
        self._client = client
        self._connack = loop.create_future()
        try:
            client.connect_async(url.hostname or "127.0.0.1", url.port or (443 if secure else 80), keepalive=self.config.keepalive)
            client.loop_start()
            await asyncio.wait_for(self._connack, self.config.open_timeout)
            return
        except asyncio.TimeoutError:
            err = BrokerConnectionError(f"connect to {endpoint} timed out")
        except BrokerConnectionError as e:
            err = e
        except (OSError, ValueError) as e:
            err = BrokerConnectionError(f"connect to {endpoint} failed: {e}")
        self._client = None
        await self._stop(client)
        raise err

    async def subscribe(self, topic: str) -> Dict[str, Any]:
        client = self._client
        if client is None:
            return {"ok": False, "error": "not_connected"}
        try:
            rc, mid = client.subscribe(topic, qos=self.config.qos)
        except ValueError as e:
            return {"ok": False, "error": str(e)}
        if rc != mqtt.MQTT_ERR_SUCCESS:
            return {"ok": False, "error": mqtt.error_string(rc)}
        fut = self._loop.create_future()
        self._acks[mid] = fut
        try:
            return await asyncio.wait_for(fut, self.config.ack_timeout)
        except asyncio.TimeoutError:
            return {"ok": False, "error": "ack_timeout"}
        finally:
            self._forget(mid, fut)

    def publish(self, topic: str, data: str, qos: int, fut: asyncio.Future) -> None:
        client = self._client
        if client is None:
            resolve(fut, {"ok": False, "error": "connection_lost"})
            return
        try:
            info = client.publish(topic, data, qos=qos)
        except ValueError as e:
            resolve(fut, {"ok": False, "error": str(e)})
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            code = "connection_lost" if info.rc == mqtt.MQTT_ERR_NO_CONN else mqtt.error_string(info.rc)
            resolve(fut, {"ok": False, "error": code})
            return
        mid = info.mid
        self._acks[mid] = fut
        fut.add_done_callback(lambda f: self._forget(mid, f))

    async def close(self, unsubscribe: Optional[str] = None) -> None:
        client = self._client
        self._client = None
        self._closed = True
        self._fail_acks("closed")
        if client is not None:
            if unsubscribe is not None:
                client.unsubscribe(unsubscribe)
            await self._stop(client)
        elif self._stopping is not None:
            await self._stopping

    # --- paho network thread ---
    def _cb_connect(self, client, userdata, flags, reason_code, properties) -> None:
        self._hop(self._connected, client, reason_code)

    def _cb_connect_fail(self, client, userdata) -> None:
        self._hop(self._connect_failed, client)

    def _cb_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        self._hop(self._disconnected, client, reason_code)

    def _cb_publish(self, client, userdata, mid, reason_code, properties) -> None:
        self._hop(self._acked, mid, [reason_code])

    def _cb_subscribe(self, client, userdata, mid, reason_codes, properties) -> None:
        self._hop(self._acked, mid, list(reason_codes))

    def _cb_message(self, client, userdata, message) -> None:
        self._hop(self._received, client, message.topic, message.payload)

    def _hop(self, fn, *args) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # event loop already closed; nothing left to notify
            pass

    # --- event loop ---
    def _connected(self, client, reason_code) -> None:
        fut = self._connack
        if client is not self._client or fut is None or fut.done():
            return
        if reason_code.is_failure:
            fut.set_exception(BrokerConnectionError(f"broker refused connection: {reason_code}"))
        else:
            fut.set_result(True)

    def _connect_failed(self, client) -> None:
        fut = self._connack
        if client is self._client and fut is not None and not fut.done():
            fut.set_exception(BrokerConnectionError("broker unreachable"))

    def _disconnected(self, client, reason_code) -> None:
        if client is not self._client:
            return
        fut = self._connack
        if fut is not None and not fut.done():
            fut.set_exception(BrokerConnectionError(f"disconnected before CONNACK: {reason_code}"))
            return
        if self._closed:
            return
        self._closed = True
        self._client = None
        self._fail_acks("connection_lost")
        self._stopping = asyncio.ensure_future(self._stop(client))
        self._on_lost(self)

    def _acked(self, mid: int, reason_codes) -> None:
        fut = self._acks.pop(mid, None)
        if fut is None:
            return
        failed = [rc for rc in reason_codes if getattr(rc, "is_failure", False)]
        if failed:
            resolve(fut, {"ok": False, "error": str(failed[0])})
        else:
            resolve(fut, {"ok": True})

    def _received(self, client, topic: str, payload) -> None:
        if client is not self._client:
            return
        if isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload).decode("utf-8", "replace")
        self._on_message(str(topic), payload)

    def _forget(self, mid: int, fut: asyncio.Future) -> None:
        if self._acks.get(mid) is fut:
            del self._acks[mid]

    def _fail_acks(self, error: str) -> None:
        acks = list(self._acks.values())
        self._acks.clear()
        for fut in acks:
            resolve(fut, {"ok": False, "error": error})

    async def _stop(self, client) -> None:
        # loop_stop() joins paho's thread
        await asyncio.get_running_loop().run_in_executor(None, _stop_client, client)


def _stop_client(client) -> None:
    client.disconnect()
    client.loop_stop()


class RelayTransport:
    """JSON envelopes over a plain WebSocket, spoken by pianobus.broker.

    Frames are {"type", "ts", "id", "payload"}; requests carry an integer id
    and the relay answers with an "ack" or "error" frame bearing the same id.
    """

    def __init__(
        self,
        config: BrokerConfig,
        on_message: MessageCallback,
        on_lost: LostCallback,
        reporter: Callable[[Exception], None],
    ) -> None:
        self.config = config
        self._on_message = on_message
        self._on_lost = on_lost
        self._report = reporter
        self._ws = None
        self._client_id = ""
        self._reader: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        # request id -> future awaiting the relay's ack/error
        self._acks: Dict[int, asyncio.Future] = {}
        self._next_id = 1
        self._closed = False

    async def open(self, endpoint: str, client_id: str) -> None:
        try:
            ws = await websockets.connect(endpoint, open_timeout=self.config.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise BrokerConnectionError(f"connect to {endpoint} failed: {e}") from e
        self._ws = ws
        self._client_id = client_id
        self._reader = asyncio.create_task(self._read_loop(ws))

    async def subscribe(self, topic: str) -> Dict[str, Any]:
        return await self._request("subscribe", {"topic": topic, "clientId": self._client_id})

    def publish(self, topic: str, data: str, qos: int, fut: asyncio.Future) -> None:
        ws = self._ws
        if ws is None:
            resolve(fut, {"ok": False, "error": "connection_lost"})
            return
        msg_id = self._new_id()
        if qos > 0:
            self._acks[msg_id] = fut
            fut.add_done_callback(lambda _f: self._acks.pop(msg_id, None))
        frame = self._frame("publish", {"topic": topic, "qos": int(qos), "data": data}, msg_id)
        t = self._spawn(self._send(ws, frame, fut, qos))
        t.add_done_callback(lambda _t: self._send_done(fut, _t))

    async def close(self, unsubscribe: Optional[str] = None) -> None:
        self._closed = True
        ws = self._ws
        self._ws = None
        if ws is not None:
            if unsubscribe is not None:
                with contextlib.suppress(ConnectionClosed):
                    await ws.send(self._frame("unsubscribe", {"topic": unsubscribe, "clientId": self._client_id}))
            await ws.close()
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        for t in list(self._tasks):
            t.cancel()
        self._fail_acks("closed")

    async def _send(self, ws, frame: str, fut: asyncio.Future, qos: int) -> None:
        try:
            await ws.send(frame)
        except ConnectionClosed:
            resolve(fut, {"ok": False, "error": "connection_lost"})
            return
        if qos == 0:
            resolve(fut, {"ok": True})

    def _send_done(self, fut: asyncio.Future, task: asyncio.Task) -> None:
        # a send task cancelled before it ever ran still settles its future
        if task.cancelled():
            resolve(fut, {"ok": False, "error": "closed"})

    async def _request(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ws = self._ws
        if ws is None:
            return {"ok": False, "error": "not_connected"}
        fut = asyncio.get_running_loop().create_future()
        msg_id = self._new_id()
        self._acks[msg_id] = fut
        try:
            await ws.send(self._frame(kind, payload, msg_id))
            return await asyncio.wait_for(fut, self.config.ack_timeout)
        except asyncio.TimeoutError:
            return {"ok": False, "error": "ack_timeout"}
        except ConnectionClosed:
            return {"ok": False, "error": "connection_lost"}
        finally:
            self._acks.pop(msg_id, None)

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            self._report(BrokerConnectionError(f"reader failed on {type(e).__name__}: {e}"))
            await ws.close()
        if not self._closed:
            self._lost()

    def _dispatch(self, raw) -> None:
        try:
            obj = json.loads(raw)
        except ValueError:
            print("[conn] ignoring non-JSON frame", flush=True)
            return
        if not isinstance(obj, dict):
            return
        t = obj.get("type")
        payload = obj.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            print(f"[conn] ignoring {t!r} frame without an object payload", flush=True)
            return
        if t in ("ack", "error"):
            msg_id = obj.get("id")
            fut = self._acks.pop(msg_id, None) if isinstance(msg_id, int) else None
            if fut is not None:
                res = dict(payload)
                res.setdefault("ok", t == "ack")
                resolve(fut, res)
            elif t == "error":
                print(f"[conn] broker error: {payload}", flush=True)
        elif t == "message":
            data = payload.get("data")
            if not isinstance(data, str):
                print("[conn] ignoring message frame without text data", flush=True)
                return
            self._on_message(str(payload.get("topic", "")), data)

    def _lost(self) -> None:
        self._closed = True
        self._ws = None
        self._reader = None
        self._fail_acks("connection_lost")
        self._on_lost(self)

    def _fail_acks(self, error: str) -> None:
        acks = list(self._acks.values())
        self._acks.clear()
        for fut in acks:
            resolve(fut, {"ok": False, "error": error})

    def _spawn(self, coro) -> asyncio.Task:
        t = asyncio.create_task(coro)
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)
        return t

    def _new_id(self) -> int:
        i = self._next_id
        self._next_id += 1
        return i

    def _frame(self, kind: str, payload: Dict[str, Any], msg_id: Optional[int] = None) -> str:
        obj: Dict[str, Any] = {"type": kind, "ts": time.time(), "payload": payload}
        if msg_id is not None:
            obj["id"] = msg_id
        return json.dumps(obj)


TRANSPORTS = {"mqtt": MqttTransport, "relay": RelayTransport}
