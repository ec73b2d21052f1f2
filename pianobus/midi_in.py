from __future__ import annotations

import asyncio
from typing import Optional

import mido

from pianobus.errors import InvalidInputError
from pianobus.input_adapter import InputAdapter

# All Notes Off; controllers send it on panic
CC_ALL_NOTES_OFF = 123


def open_mido_input(name_filter: Optional[str] = None, callback=None):
    """Open the first MIDI input whose name contains `name_filter`.

    Returns None (after printing why) when no backend or no matching port is
    available, so a keyboard session still runs without a controller.
    """
    try:
        names = mido.get_input_names()
    except Exception as e:
        print(f"[midi] cannot list inputs: {e}", flush=True)
        return None
    if name_filter:
        names = [n for n in names if name_filter in n]
    if not names:
        print(f"[midi] no input port matching {name_filter!r}", flush=True)
        return None
    try:
        port = mido.open_input(names[0], callback=callback)
    except Exception as e:
        print(f"[midi] cannot open {names[0]}: {e}", flush=True)
        return None
    print(f"[midi] listening on {names[0]}", flush=True)
    return port


class MidiInput:
    """MIDI controller source: note_on/note_off become presses on the adapter.

    Pitches outside the catalog fold onto the note with the same pitch class.
    Each pitch is its own source, so releasing C5 never ends a press made by
    C4 even though both fold onto the same note.
    mido calls back on its own thread; handling happens on the event loop.
    """

    def __init__(self, adapter: InputAdapter, port_filter: Optional[str] = None, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.adapter = adapter
        self.port_filter = port_filter
        self._loop = loop
        self._port = None
        self.source_id = "midi"

    def start(self) -> bool:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._port = open_mido_input(self.port_filter, callback=self._on_message)
        if self._port is not None:
            self.source_id = f"midi:{getattr(self._port, 'name', 'in')}"
        return self._port is not None

    def stop(self) -> None:
        if self._port is not None:
            self._port.close()
            self._port = None

    def _on_message(self, msg) -> None:
        self._loop.call_soon_threadsafe(self.handle, msg)

    def handle(self, msg) -> None:
        t = getattr(msg, "type", None)
        if t == "control_change" and msg.control == CC_ALL_NOTES_OFF:
            self.adapter.force_clear()
            return
        if t not in ("note_on", "note_off"):
            return
        try:
            note_id = self.adapter.catalog.for_pitch(msg.note, fold_octaves=True).note_id
        except InvalidInputError:
            return
        source = f"{self.source_id}:{msg.note}"
        if t == "note_on" and msg.velocity > 0:
            self.adapter.press(note_id, source)
        else:
            self.adapter.release_source(source)
