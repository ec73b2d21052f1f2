from __future__ import annotations

from typing import List, Optional

from pianobus.catalog import NoteCatalog
from pianobus.errors import InvalidInputError
from pianobus.notes import NoteEvent, NoteStateMachine, START

KEYBOARD_SOURCE = "keyboard"


def pointer_source(pointer_id) -> str:
    return f"pointer:{pointer_id}"


class InputAdapter:
    """Turns raw key/pointer transitions into press calls and publishes the results.

    Unknown keys and notes are dropped quietly. After detach() every call is a
    no-op, so a listener that outlives its session cannot double-fire.
    """

    def __init__(self, catalog: NoteCatalog, machine: NoteStateMachine, publisher=None, emit_start: bool = True) -> None:
        self.catalog = catalog
        self.machine = machine
        self.publisher = publisher
        self.emit_start = emit_start
        self.attached = True

    # --- Keyboard ---
    def key_down(self, key: str, source_id: str = KEYBOARD_SOURCE) -> Optional[NoteEvent]:
        note_id = self._note_for_key(key)
        if note_id is None:
            return None
        return self.press(note_id, source_id)

    def key_up(self, key: str, source_id: str = KEYBOARD_SOURCE) -> Optional[NoteEvent]:
        note_id = self._note_for_key(key)
        if note_id is None:
            return None
        return self.release(note_id, source_id)

    # --- Pointer ---
    def pointer_down(self, note_id: str, pointer_id=0) -> Optional[NoteEvent]:
        return self.press(note_id, pointer_source(pointer_id))

    def pointer_up(self, pointer_id=0) -> List[NoteEvent]:
        # The pointer may be lifted anywhere, not only over the key it pressed
        return self.release_source(pointer_source(pointer_id))

    def pointer_leave(self, pointer_id=0) -> List[NoteEvent]:
        return self.force_clear()

    def focus_lost(self) -> List[NoteEvent]:
        return self.force_clear()

    # --- Shared ---
    def press(self, note_id: str, source_id: str) -> Optional[NoteEvent]:
        if not self.attached or note_id not in self.catalog:
            return None
        ev = self.machine.press_start(note_id, source_id)
        if ev is not None:
            self._emit(ev)
        return ev

    def release(self, note_id: str, source_id: str) -> Optional[NoteEvent]:
        if not self.attached or note_id not in self.catalog:
            return None
        ev = self.machine.press_end(note_id, source_id)
        if ev is not None:
            self._emit(ev)
        return ev

    def release_source(self, source_id: str) -> List[NoteEvent]:
        """End whatever `source_id` holds, whichever note that is."""
        if not self.attached:
            return []
        return self._emit_all(self.machine.release_source(source_id))

    def force_clear(self) -> List[NoteEvent]:
        if not self.attached:
            return []
        return self._emit_all(self.machine.force_clear_all())

    def detach(self) -> None:
        self.attached = False

    def _note_for_key(self, key: str) -> Optional[str]:
        if not self.attached:
            return None
        try:
            return self.catalog.for_key(key).note_id
        except InvalidInputError:
            return None

    def _emit_all(self, events: List[NoteEvent]) -> List[NoteEvent]:
        for ev in events:
            self._emit(ev)
        return events

    def _emit(self, ev: NoteEvent) -> None:
        if self.publisher is None:
            return
        if ev.action == START and not self.emit_start:
            return
        self.publisher.publish_note(ev)
