from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional

from pianobus.config import BrokerConfig, add_broker_args, config_from_args
from pianobus.keyboard_in import KeyboardInput
from pianobus.midi_in import MidiInput
from pianobus.session import KeyboardSession

VOLUME_STEP = 10


async def run(cfg: BrokerConfig, midi_port: Optional[str] = None, use_midi: bool = False) -> None:
    session = KeyboardSession(cfg, log_publishes=True)
    session.add_state_listener(lambda s: print(f"[conn] state={s.value}", flush=True))
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; Esc still quits
            pass

    if not await session.init():
        print("[conn] broker unreachable; key presses will be logged as failed publishes", flush=True)

    def nudge(delta: int):
        def _apply():
            v = session.volume.set_volume(session.volume_state.value + delta)
            print(f"[input] volume={v}", flush=True)
        return _apply

    kb = KeyboardInput(session.input, on_exit=stop.set, controls={"-": nudge(-VOLUME_STEP), "=": nudge(VOLUME_STEP)})
    midi = MidiInput(session.input, midi_port) if use_midi else None
    kb.start()
    if midi is not None:
        midi.start()
    layout = " ".join(f"{n.input_binding}={n.note_id}" for n in session.catalog)
    print(f"[input] keys: {layout}  (-/= volume, Esc quit)", flush=True)
    try:
        await stop.wait()
    finally:
        kb.stop()
        if midi is not None:
            midi.stop()
        await session.teardown()


def main():
    ap = argparse.ArgumentParser(description="Play notes from the computer keyboard and publish them to a broker")
    add_broker_args(ap)
    ap.add_argument("--midi", action="store_true", help="Also accept notes from a MIDI controller")
    ap.add_argument("--midi-port", help="Substring to match MIDI input port")
    args = ap.parse_args()
    cfg = config_from_args(args)
    try:
        asyncio.run(run(cfg, midi_port=args.midi_port, use_midi=bool(args.midi or args.midi_port)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
