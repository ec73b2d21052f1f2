import json
import unittest

from pianobus.errors import WireFormatError
from pianobus.notes import NoteEvent, START, STOP
from pianobus import wire


class TestWire(unittest.TestCase):
    def test_encode_forms(self):
        start = wire.encode_note(NoteEvent("do", START, volume=80))
        stop = wire.encode_note(NoteEvent("do", STOP, volume=80, duration_ms=500))
        self.assertEqual(start, {"note": "do", "action": "start", "volume": 80})
        self.assertEqual(stop, {"note": "do", "action": "stop", "duration": 500, "volume": 80})
        self.assertEqual(wire.encode_volume(100), {"volume": 100})
        self.assertEqual(json.loads(wire.dumps(stop)), stop)
        for msg in (start, stop, wire.encode_volume(0)):
            self.assertEqual(wire.validate_message(msg), [])

    def test_legacy_stop_normalized(self):
        msg = wire.decode_message('{"note":"re","duration":500}')
        self.assertEqual(msg, {"note": "re", "duration": 500, "action": "stop"})

    def test_decode_bytes(self):
        self.assertEqual(wire.decode_message(b'{"volume":7}'), {"volume": 7})

    def test_validation_errors(self):
        cases = [
            ([], "/: must be an object"),
            ({}, "/: needs 'note' or 'volume'"),
            ({"note": "do", "action": "stop"}, "/duration"),
            ({"note": "do", "action": "stop", "duration": -1}, "/duration"),
            ({"note": "do", "action": "start", "duration": 10}, "/duration: not allowed on start"),
            ({"note": "do", "action": "hold"}, "/action"),
            ({"volume": 101}, "/volume"),
            ({"volume": True}, "/volume"),
            ({"volume": 5, "duration": 10}, "/duration: only valid with 'note'"),
            ({"note": "", "duration": 1}, "/note"),
        ]
        for msg, expect in cases:
            errors = wire.validate_message(msg)
            self.assertTrue(any(e.startswith(expect) for e in errors), (msg, errors))

    def test_decode_rejects_garbage(self):
        with self.assertRaises(WireFormatError):
            wire.decode_message("not json")
        with self.assertRaises(WireFormatError) as ctx:
            wire.decode_message('{"note":"do","action":"stop"}')
        self.assertTrue(ctx.exception.errors)

    def test_describe(self):
        self.assertEqual(
            wire.describe({"note": "do", "action": "stop", "duration": 500, "volume": 80}),
            "note=do action=stop duration=500ms volume=80",
        )
        self.assertEqual(wire.describe({"volume": 3}), "volume=3")


if __name__ == "__main__":
    unittest.main()
