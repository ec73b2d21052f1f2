from __future__ import annotations

import argparse
import secrets
from dataclasses import dataclass, field


def random_client_id(prefix: str = "piano_client_") -> str:
    return f"{prefix}{secrets.token_hex(3)}"


@dataclass
class BrokerConfig:
    host: str = "127.0.0.1"
    port: int = 9001
    scheme: str = "ws"
    # "mqtt" (MQTT over WebSockets) or "relay" (pianobus.broker)
    protocol: str = "mqtt"
    topic: str = "piano"
    client_id: str = field(default_factory=random_client_id)
    qos: int = 1
    # seconds
    open_timeout: float = 5.0
    ack_timeout: float = 5.0
    keepalive: int = 60
    reconnect_attempts: int = 5
    reconnect_initial: float = 0.5
    reconnect_max_delay: float = 8.0
    emit_start: bool = True
    debug_log_limit: int = 500
    default_volume: int = 80

    @property
    def endpoint(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def backoff_delays(self):
        """Delays before each reconnect attempt: initial, doubling, capped."""
        d = max(0.0, float(self.reconnect_initial))
        for _ in range(max(0, int(self.reconnect_attempts))):
            yield min(d, self.reconnect_max_delay)
            d = d * 2 if d > 0 else 0.0


def add_broker_args(ap: argparse.ArgumentParser) -> None:
    d = BrokerConfig()
    ap.add_argument("--host", default=d.host, help="Broker host")
    ap.add_argument("--port", type=int, default=d.port, help="Broker WebSocket port")
    ap.add_argument("--scheme", choices=["ws", "wss"], default=d.scheme)
    ap.add_argument("--protocol", choices=["mqtt", "relay"], default=d.protocol, help="mqtt for an MQTT broker, relay for pianobus-broker")
    ap.add_argument("--topic", default=d.topic, help="Channel for published and inbound messages")
    ap.add_argument("--client-id", default=None, help="Client id (default: random piano_client_xxxxxx)")
    ap.add_argument("--qos", type=int, choices=[0, 1], default=d.qos)
    ap.add_argument("--ack-timeout", type=float, default=d.ack_timeout)
    ap.add_argument("--reconnect-attempts", type=int, default=d.reconnect_attempts, help="0 disables reconnection")
    ap.add_argument("--no-start-events", action="store_true", help="Publish stop messages only")
    ap.add_argument("--volume", type=int, default=d.default_volume, help="Initial volume 0..100")


def config_from_args(args: argparse.Namespace) -> BrokerConfig:
    cfg = BrokerConfig(
        host=args.host,
        port=int(args.port),
        scheme=args.scheme,
        protocol=getattr(args, "protocol", "mqtt"),
        topic=args.topic,
        qos=int(args.qos),
        ack_timeout=float(args.ack_timeout),
        reconnect_attempts=int(args.reconnect_attempts),
        emit_start=not bool(getattr(args, "no_start_events", False)),
        default_volume=int(args.volume),
    )
    if args.client_id:
        cfg.client_id = args.client_id
    return cfg
