from __future__ import annotations

import argparse
import asyncio
import json
import time
from typing import Any, Dict, Optional, Set

from websockets.exceptions import ConnectionClosed

"""Minimal WebSocket pub/sub relay for keyboard sessions.

Frames are JSON objects {"type", "ts", "id", "payload"}. Clients subscribe to
topics; every publish on a topic is forwarded to all of its subscribers
(publisher included, when subscribed) as a "message" frame, and acknowledged
to the publisher when qos >= 1. No retained messages and no persistence.
"""


def _frame(kind: str, payload: Optional[Dict[str, Any]] = None, req_id=None) -> str:
    obj: Dict[str, Any] = {"type": kind, "ts": time.time()}
    if req_id is not None:
        obj["id"] = req_id
    if payload is not None:
        obj["payload"] = payload
    return json.dumps(obj)


class Broker:
    def __init__(self) -> None:
        self.topics: Dict[str, Set[Any]] = {}
        self.client_ids: Dict[Any, str] = {}
        self.metrics: Dict[str, int] = {"published": 0, "delivered": 0, "clients": 0}

    def subscribe(self, ws, topic: str, client_id: Optional[str] = None) -> None:
        self.topics.setdefault(topic, set()).add(ws)
        if client_id:
            self.client_ids[ws] = client_id

    def unsubscribe(self, ws, topic: str) -> None:
        subs = self.topics.get(topic)
        if subs is None:
            return
        subs.discard(ws)
        if not subs:
            del self.topics[topic]

    def drop(self, ws) -> None:
        for topic in list(self.topics):
            self.unsubscribe(ws, topic)
        self.client_ids.pop(ws, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self.topics.get(topic, ()))

    async def publish(self, topic: str, data: str, sender=None) -> int:
        subs = list(self.topics.get(topic, ()))
        self.metrics["published"] += 1
        if not subs:
            return 0
        msg = _frame("message", {"topic": topic, "data": data, "sender": self.client_ids.get(sender)})
        results = await asyncio.gather(*[s.send(msg) for s in subs], return_exceptions=True)
        delivered = sum(1 for r in results if not isinstance(r, Exception))
        self.metrics["delivered"] += delivered
        return delivered

    async def handle(self, ws, *maybe_path) -> None:
        self.metrics["clients"] += 1
        try:
            ra = getattr(ws, "remote_address", None)
            print(f"[broker] client connected: {ra}", flush=True)
        except Exception:
            pass
        try:
            await ws.send(_frame("hello", {"protocol": 1}))
            async for message in ws:
                try:
                    obj = json.loads(message)
                except ValueError:
                    await ws.send(_frame("error", {"ok": False, "error": "invalid_json"}))
                    continue
                if not isinstance(obj, dict):
                    await ws.send(_frame("error", {"ok": False, "error": "invalid_frame"}))
                    continue
                await self._handle_frame(ws, obj)
        except ConnectionClosed:
            pass
        finally:
            self.drop(ws)
            self.metrics["clients"] -= 1

    async def _handle_frame(self, ws, obj: Dict[str, Any]) -> None:
        t = obj.get("type")
        req_id = obj.get("id")
        payload = obj.get("payload") or {}
        if not isinstance(payload, dict):
            await ws.send(_frame("error", {"ok": False, "error": "invalid_payload"}, req_id))
            return
        topic = payload.get("topic")
        if t in ("subscribe", "unsubscribe", "publish") and (not isinstance(topic, str) or not topic):
            await ws.send(_frame("error", {"ok": False, "error": "invalid_topic"}, req_id))
            return
        if t == "subscribe":
            self.subscribe(ws, topic, payload.get("clientId"))
            print(f"[broker] {payload.get('clientId') or 'client'} subscribed to '{topic}'", flush=True)
            await ws.send(_frame("ack", {"ok": True, "subscribed": True}, req_id))
        elif t == "unsubscribe":
            self.unsubscribe(ws, topic)
            await ws.send(_frame("ack", {"ok": True, "subscribed": False}, req_id))
        elif t == "publish":
            data = payload.get("data")
            if not isinstance(data, str):
                await ws.send(_frame("error", {"ok": False, "error": "invalid_data"}, req_id))
                return
            delivered = await self.publish(topic, data, sender=ws)
            if int(payload.get("qos", 0) or 0) > 0:
                await ws.send(_frame("ack", {"ok": True, "delivered": delivered}, req_id))
        elif t == "ping":
            await ws.send(_frame("pong", None, req_id))
        else:
            await ws.send(_frame("error", {"ok": False, "error": "unknown_type", "details": str(t)}, req_id))


async def serve_broker(host: str, port: int, broker: Optional[Broker] = None, ready: Optional[asyncio.Event] = None):
    import websockets  # type: ignore

    broker = broker or Broker()
    async with websockets.serve(broker.handle, host, port):
        print(f"[broker] listening on ws://{host}:{port}", flush=True)
        if ready is not None:
            ready.set()
        await asyncio.Future()


def main():
    ap = argparse.ArgumentParser(description="WebSocket pub/sub relay for pianobus keyboards")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=9001)
    args = ap.parse_args()
    try:
        asyncio.run(serve_broker(args.host, args.port))
    except KeyboardInterrupt:
        print("[broker] shutting down")


if __name__ == "__main__":
    main()
