from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pianobus.clock import NowFn, elapsed_ms, monotonic_ms
from pianobus.volume import VolumeState


START = "start"
STOP = "stop"


@dataclass(frozen=True)
class ActivePress:
    note_id: str
    source_id: str
    started_at_ms: float


@dataclass(frozen=True)
class NoteEvent:
    note_id: str
    action: str
    volume: int
    duration_ms: Optional[int] = None


class NoteStateMachine:
    """Ledger of held notes.

    - At most one ActivePress per note id, whichever source pressed first.
    - A stop carries now() - started_at on the monotonic clock; nothing here
      runs on a timer, so there is nothing to cancel on teardown.
    - Methods return the NoteEvent to publish (or None for a no-op) and never
      publish themselves.
    """

    def __init__(self, volume: VolumeState, now: NowFn = monotonic_ms) -> None:
        self.volume = volume
        self._now = now
        # note_id -> ActivePress; insertion order is press order
        self._active: Dict[str, ActivePress] = {}

    def press_start(self, note_id: str, source_id: str) -> Optional[NoteEvent]:
        if note_id in self._active:
            # auto-repeat, or a second source on the same key
            return None
        self._active[note_id] = ActivePress(note_id, source_id, self._now())
        return NoteEvent(note_id=note_id, action=START, volume=self.volume.value)

    def press_end(self, note_id: str, source_id: str) -> Optional[NoteEvent]:
        press = self._active.pop(note_id, None)
        if press is None:
            return None
        return self._stop(press, self._now())

    def release_source(self, source_id: str) -> List[NoteEvent]:
        now = self._now()
        held = [p for p in self._active.values() if p.source_id == source_id]
        for p in held:
            del self._active[p.note_id]
        return [self._stop(p, now) for p in held]

    def force_clear_all(self) -> List[NoteEvent]:
        # One end time for every note so simultaneous holds stay comparable
        now = self._now()
        held = list(self._active.values())
        self._active.clear()
        return [self._stop(p, now) for p in held]

    def is_active(self, note_id: str) -> bool:
        return note_id in self._active

    def active_notes(self) -> List[str]:
        return list(self._active)

    def get_active_snapshot(self) -> Dict[str, Dict[str, Any]]:
        now = self._now()
        return {
            p.note_id: {"source": p.source_id, "heldMs": elapsed_ms(p.started_at_ms, now)}
            for p in self._active.values()
        }

    def __len__(self) -> int:
        return len(self._active)

    def _stop(self, press: ActivePress, now: float) -> NoteEvent:
        return NoteEvent(
            note_id=press.note_id,
            action=STOP,
            volume=self.volume.value,
            duration_ms=elapsed_ms(press.started_at_ms, now),
        )
