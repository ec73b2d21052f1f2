from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from pianobus.errors import InvalidInputError


@dataclass(frozen=True)
class Note:
    note_id: str
    display_name: str
    is_accidental: bool
    input_binding: str
    pitch: int


# (noteId, key, accidental); pitches run chromatically from middle C
_DEFAULT_LAYOUT: List[Tuple[str, str, bool]] = [
    ("do", "a", False),
    ("do#", "w", True),
    ("re", "s", False),
    ("re#", "e", True),
    ("mi", "d", False),
    ("fa", "f", False),
    ("fa#", "t", True),
    ("so", "g", False),
    ("so#", "y", True),
    ("la", "h", False),
    ("la#", "u", True),
    ("si", "j", False),
]

BASE_PITCH = 60


class NoteCatalog:
    """Immutable lookup table: input key -> note, note id -> note, MIDI pitch -> note."""

    def __init__(self, notes: Iterable[Note]):
        self._notes: List[Note] = list(notes)
        self._by_id: Dict[str, Note] = {}
        self._by_key: Dict[str, Note] = {}
        self._by_pitch: Dict[int, Note] = {}
        self._by_class: Dict[int, Note] = {}
        for n in self._notes:
            if n.note_id in self._by_id:
                raise ValueError(f"duplicate note id: {n.note_id}")
            key = n.input_binding.lower()
            if key in self._by_key:
                raise ValueError(f"key '{key}' bound twice")
            self._by_id[n.note_id] = n
            self._by_key[key] = n
            self._by_pitch[n.pitch] = n
            self._by_class.setdefault(n.pitch % 12, n)

    @classmethod
    def default(cls) -> "NoteCatalog":
        return cls(
            Note(note_id=nid, display_name=nid, is_accidental=acc, input_binding=key, pitch=BASE_PITCH + i)
            for i, (nid, key, acc) in enumerate(_DEFAULT_LAYOUT)
        )

    def __iter__(self):
        return iter(self._notes)

    def __len__(self) -> int:
        return len(self._notes)

    def __contains__(self, note_id: object) -> bool:
        return note_id in self._by_id

    def get(self, note_id: str) -> Note:
        try:
            return self._by_id[note_id]
        except KeyError:
            raise InvalidInputError(f"unknown note '{note_id}'") from None

    def for_key(self, key: str) -> Note:
        # Keyboard layouts report 'A' with shift held; bindings are case-insensitive
        n = self._by_key.get(str(key).lower())
        if n is None:
            raise InvalidInputError(f"unmapped key '{key}'")
        return n

    def for_pitch(self, pitch: int, fold_octaves: bool = False) -> Note:
        n = self._by_pitch.get(int(pitch))
        if n is None and fold_octaves:
            n = self._by_class.get(int(pitch) % 12)
        if n is None:
            raise InvalidInputError(f"unmapped pitch {pitch}")
        return n
