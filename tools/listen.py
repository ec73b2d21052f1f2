from __future__ import annotations

import argparse
import asyncio

from pianobus.config import add_broker_args, config_from_args
from pianobus.connection import ConnectionManager
from pianobus.errors import WireFormatError
from pianobus import wire


async def run(args: argparse.Namespace):
    cfg = config_from_args(args)
    cfg.client_id = args.client_id or cfg.client_id.replace("piano_client_", "piano_listener_")
    conn = ConnectionManager(cfg)
    count = 0
    done = asyncio.Event()

    def on_message(topic: str, data):
        nonlocal count
        try:
            msg = wire.decode_message(data)
        except WireFormatError as e:
            print(f"[listen] {topic}: invalid message ({e}): {data!r}", flush=True)
            return
        count += 1
        print(f"[listen] {topic}: {wire.describe(msg)}", flush=True)
        if args.count and count >= args.count:
            done.set()

    conn.add_message_listener(on_message)
    if not await conn.connect():
        return
    try:
        if args.timeout:
            try:
                await asyncio.wait_for(done.wait(), timeout=args.timeout)
            except asyncio.TimeoutError:
                pass
        else:
            await done.wait()
    finally:
        await conn.close()


def main():
    ap = argparse.ArgumentParser(description="Print note/volume messages published on a topic")
    add_broker_args(ap)
    ap.add_argument("--count", type=int, default=0, help="Exit after N messages (0 = run until interrupted)")
    ap.add_argument("--timeout", type=float, default=0.0, help="Exit after this many seconds")
    args = ap.parse_args()
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
