from __future__ import annotations

import argparse
import asyncio

from pianobus.config import add_broker_args, config_from_args
from pianobus.input_adapter import pointer_source
from pianobus.session import KeyboardSession


async def run(args: argparse.Namespace) -> int:
    session = KeyboardSession(config_from_args(args), log_inbound=False, log_publishes=True)
    if not await session.init():
        await session.teardown()
        return 1
    try:
        if args.cmd == "press":
            for note in args.notes:
                if note not in session.catalog:
                    print(f"[notectl] unknown note '{note}'; known: {' '.join(n.note_id for n in session.catalog)}")
                    return 2
            # chord: every note starts together and stops together
            src = pointer_source("notectl")
            for note in args.notes:
                session.input.press(note, src)
            await asyncio.sleep(float(args.hold))
            session.input.pointer_up("notectl")
        elif args.cmd == "volume":
            session.volume.set_volume(args.value)
        await session.publisher.drain(timeout=float(args.ack_timeout) + 0.5)
        return 1 if any(e.status == "failed" for e in session.debug_log.entries) else 0
    finally:
        await session.teardown()


def main():
    ap = argparse.ArgumentParser(description="Send scripted notes or a volume change to the broker")
    add_broker_args(ap)
    sub = ap.add_subparsers(dest="cmd", required=True)
    p_press = sub.add_parser("press", help="Press notes, hold, release")
    p_press.add_argument("notes", nargs="+", help="Note ids, e.g. do mi so")
    p_press.add_argument("--hold", default="0.5", help="Seconds to hold (default 0.5)")
    p_vol = sub.add_parser("volume", help="Set volume 0..100 (clamped)")
    p_vol.add_argument("value")
    args = ap.parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
