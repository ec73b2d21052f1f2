from __future__ import annotations

import asyncio
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from pianobus.config import BrokerConfig
from pianobus.connection import ConnectionManager, ConnectionState
from pianobus.errors import BrokerConnectionError, NotConnectedError, SubscriptionError
from pianobus.transports import MqttTransport


class RC:
    """Enough of paho's ReasonCode for the transport."""

    def __init__(self, value: int = 0):
        self.value = value

    @property
    def is_failure(self) -> bool:
        return self.value >= 0x80

    def __str__(self) -> str:
        return "Success" if self.value < 0x80 else f"Failure 0x{self.value:02x}"


class VirtualClient:
    """Answers like a paho client talking to a live broker.

    Callbacks fire on the caller's thread; the transport hops onto the loop
    either way, as it must for paho's network thread.
    """

    refuse = False
    silent = False
    grant = 1
    auto_ack = True
    instances: list = []

    def __init__(self, api_version, client_id="", transport="tcp"):
        self.api_version = api_version
        self.client_id = client_id
        self.transport = transport
        self.ws_path = None
        self.address = None
        self.running = False
        self.is_connected = False
        self.published = []
        self.subscriptions = []
        self.unsubscribed = []
        self._mid = 0
        self.instances.append(self)

    def ws_set_options(self, path="/mqtt", headers=None):
        self.ws_path = path

    def tls_set(self, *args, **kwargs):
        pass

    def connect_async(self, host, port=1883, keepalive=60):
        self.address = (host, port, keepalive)

    def loop_start(self):
        self.running = True
        if self.silent:
            return
        if self.refuse:
            self.on_connect(self, None, {}, RC(0x87), None)
            return
        self.is_connected = True
        self.on_connect(self, None, {}, RC(0), None)

    def loop_stop(self):
        self.running = False

    def disconnect(self):
        if self.is_connected:
            self.is_connected = False
            self.on_disconnect(self, None, {}, RC(0), None)

    def subscribe(self, topic, qos=0):
        mid = self._next_mid()
        self.subscriptions.append((topic, qos))
        self.on_subscribe(self, None, mid, [RC(self.grant)], None)
        return mqtt.MQTT_ERR_SUCCESS, mid

    def unsubscribe(self, topic):
        self.unsubscribed.append(topic)
        return mqtt.MQTT_ERR_SUCCESS, self._next_mid()

    def publish(self, topic, payload=None, qos=0):
        if not self.is_connected:
            return SimpleNamespace(rc=mqtt.MQTT_ERR_NO_CONN, mid=0)
        mid = self._next_mid()
        self.published.append((topic, payload, qos))
        if self.auto_ack or qos == 0:
            self.on_publish(self, None, mid, RC(0), None)
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS, mid=mid)

    # broker side
    def drop(self):
        self.is_connected = False
        self.on_disconnect(self, None, {}, RC(0x80), None)

    def deliver(self, topic, payload: bytes):
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def _next_mid(self) -> int:
        self._mid += 1
        return self._mid


def _client_cls(**behaviour):
    return type("Client", (VirtualClient,), dict(behaviour, instances=[]))


def _mk(client_cls, **kw):
    base = dict(
        host="broker.local",
        port=9001,
        client_id="piano_client_abc123",
        ack_timeout=0.2,
        reconnect_initial=0.01,
        reconnect_max_delay=0.05,
        reconnect_attempts=3,
    )
    base.update(kw)
    errors = []

    def factory(config, on_message, on_lost, reporter):
        return MqttTransport(config, on_message, on_lost, reporter, client_cls=client_cls)

    return ConnectionManager(BrokerConfig(**base), reporter=errors.append, transport_factory=factory), errors


async def _wait_for(pred, timeout: float = 3.0):
    deadline = asyncio.get_event_loop().time() + timeout
    while not pred():
        if asyncio.get_event_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_mqtt_is_the_default_protocol():
    assert BrokerConfig().protocol == "mqtt"
    with pytest.raises(ValueError):
        ConnectionManager(BrokerConfig(protocol="carrier-pigeon"))


@pytest.mark.asyncio
async def test_connects_over_websockets_subscribes_and_publishes():
    cls = _client_cls()
    conn, errors = _mk(cls)
    assert await conn.connect()
    client = cls.instances[0]
    assert client.api_version is mqtt.CallbackAPIVersion.VERSION2
    assert (client.transport, client.client_id, client.ws_path) == ("websockets", "piano_client_abc123", "/")
    assert client.address == ("broker.local", 9001, 60)
    assert client.subscriptions == [("piano", 1)]
    assert conn.subscribed and errors == []

    res = await conn.publish("piano", '{"volume":40}', qos=1)
    assert res == {"ok": True}
    res0 = await conn.publish("piano", '{"volume":41}', qos=0)
    assert res0 == {"ok": True}
    assert [p[2] for p in client.published] == [1, 0]

    await conn.close()
    await conn.close()
    assert client.unsubscribed == ["piano"]
    assert not client.running
    assert conn.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_missing_puback_times_out_and_close_settles_the_rest():
    cls = _client_cls(auto_ack=False)
    conn, errors = _mk(cls)
    assert await conn.connect()
    assert await conn.publish("piano", "{}", qos=1) == {"ok": False, "error": "ack_timeout"}
    waiting = conn.publish("piano", "{}", qos=1)
    await conn.close()
    assert await waiting == {"ok": False, "error": "closed"}
    assert conn.get_metrics()["pending"] == 0


@pytest.mark.asyncio
async def test_refused_connection_reports_and_stays_disconnected():
    cls = _client_cls(refuse=True)
    conn, errors = _mk(cls)
    assert await conn.connect() is False
    assert conn.state is ConnectionState.DISCONNECTED
    assert len(errors) == 1 and isinstance(errors[0], BrokerConnectionError)
    assert "refused" in str(errors[0])
    assert not cls.instances[0].running
    with pytest.raises(NotConnectedError):
        conn.publish("piano", "{}", 1)


@pytest.mark.asyncio
async def test_rejected_subscription_keeps_publishing():
    cls = _client_cls(grant=0x80)
    conn, errors = _mk(cls)
    try:
        assert await conn.connect()
        assert conn.connected and not conn.subscribed
        assert any(isinstance(e, SubscriptionError) for e in errors)
        assert await conn.publish("piano", '{"volume":1}', qos=1) == {"ok": True}
    finally:
        await conn.close()
    # nothing to unsubscribe from
    assert cls.instances[0].unsubscribed == []


@pytest.mark.asyncio
async def test_inbound_payload_reaches_listeners_as_text():
    cls = _client_cls()
    conn, errors = _mk(cls)
    got = []
    conn.add_message_listener(lambda topic, data: got.append((topic, data)))
    try:
        assert await conn.connect()
        cls.instances[0].deliver("piano", b'{"note":"do","duration":5}')
        await asyncio.sleep(0)
        assert got == [("piano", '{"note":"do","duration":5}')]
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_drop_reconnects_with_a_fresh_client():
    cls = _client_cls()
    conn, errors = _mk(cls)
    states = []
    conn.add_state_listener(states.append)
    try:
        assert await conn.connect()
        cls.instances[0].drop()
        await _wait_for(lambda: conn.connected and len(cls.instances) == 2)
        await _wait_for(lambda: not cls.instances[0].running)
        assert ConnectionState.RECONNECTING in states
        assert cls.instances[1].subscriptions == [("piano", 1)]
        assert conn.get_metrics()["reconnects"] == 1
        assert any(isinstance(e, BrokerConnectionError) for e in errors)
        assert await conn.publish("piano", "{}", qos=1) == {"ok": True}
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_close_while_waiting_for_connack():
    cls = _client_cls(silent=True)
    conn, errors = _mk(cls, open_timeout=10.0)
    attempt = asyncio.create_task(conn.connect())
    await _wait_for(lambda: bool(cls.instances) and cls.instances[0].running)
    await conn.close()
    assert await asyncio.wait_for(attempt, timeout=1.0) is False
    assert conn.state is ConnectionState.DISCONNECTED
    assert not cls.instances[0].running
    assert errors == []
