from __future__ import annotations

import json
from typing import Any, Dict, List

from pianobus.errors import WireFormatError
from pianobus.notes import START, STOP, NoteEvent


ACTIONS = (START, STOP)


def _err(errors: List[str], path: str, msg: str) -> None:
    errors.append(f"{path}: {msg}")


def encode_note(event: NoteEvent) -> Dict[str, Any]:
    """Canonical note message: start carries no duration, stop always does."""
    msg: Dict[str, Any] = {"note": event.note_id, "action": event.action}
    if event.action == STOP:
        msg["duration"] = int(event.duration_ms or 0)
    msg["volume"] = int(event.volume)
    return msg


def encode_volume(volume: int) -> Dict[str, Any]:
    return {"volume": int(volume)}


def dumps(msg: Dict[str, Any]) -> str:
    return json.dumps(msg, ensure_ascii=False, separators=(",", ":"))


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def validate_message(msg: Any) -> List[str]:
    """Check a decoded message against the receiver contract.

    Accepts start/stop note messages, legacy stops (note + duration, no
    action) and volume-only messages. Returns human-readable errors; empty
    means valid.
    """
    errors: List[str] = []
    if not isinstance(msg, dict):
        _err(errors, "/", "must be an object")
        return errors

    has_note = "note" in msg
    if not has_note and "volume" not in msg:
        _err(errors, "/", "needs 'note' or 'volume'")

    if has_note:
        if not isinstance(msg["note"], str) or not msg["note"]:
            _err(errors, "/note", "required non-empty string")
        action = msg.get("action")
        if action is not None and action not in ACTIONS:
            _err(errors, "/action", "must be 'start' or 'stop'")
        # A missing action is a legacy stop, which must carry its duration
        if action in (None, STOP):
            d = msg.get("duration")
            if not _is_int(d) or d < 0:
                _err(errors, "/duration", "required non-negative integer (ms) on stop")
        elif "duration" in msg:
            _err(errors, "/duration", "not allowed on start")
    else:
        for key in ("action", "duration"):
            if key in msg:
                _err(errors, f"/{key}", "only valid with 'note'")

    if "volume" in msg:
        v = msg["volume"]
        if not _is_int(v) or not (0 <= v <= 100):
            _err(errors, "/volume", "integer 0..100 required")
    return errors


def decode_message(data) -> Dict[str, Any]:
    """Parse wire text/bytes, validate, and normalize legacy stops to action='stop'."""
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")
    try:
        msg = json.loads(data)
    except (TypeError, ValueError) as e:
        raise WireFormatError([f"/: invalid JSON ({e})"]) from None
    errors = validate_message(msg)
    if errors:
        raise WireFormatError(errors)
    if "note" in msg and "action" not in msg:
        msg["action"] = STOP
    return msg


def describe(msg: Dict[str, Any]) -> str:
    """One-line human form used by the debug log printer and tools/listen.py."""
    if "note" in msg:
        parts = [f"note={msg['note']}", f"action={msg.get('action', STOP)}"]
        if "duration" in msg:
            parts.append(f"duration={msg['duration']}ms")
        if "volume" in msg:
            parts.append(f"volume={msg['volume']}")
        return " ".join(parts)
    return f"volume={msg.get('volume')}"
