import unittest

from pianobus.catalog import NoteCatalog
from pianobus.input_adapter import InputAdapter
from pianobus.notes import NoteStateMachine, START, STOP
from pianobus.volume import VolumeState


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


class VirtualPublisher:
    def __init__(self):
        self.notes = []

    def publish_note(self, event):
        self.notes.append(event)

    def publish_volume(self, volume):
        pass

    def summary(self):
        return [(e.note_id, e.action, e.duration_ms) for e in self.notes]


class TestInputAdapter(unittest.TestCase):
    def _mk(self, emit_start=True):
        clock = FakeClock()
        machine = NoteStateMachine(VolumeState(80), now=clock)
        pub = VirtualPublisher()
        adapter = InputAdapter(NoteCatalog.default(), machine, pub, emit_start=emit_start)
        return clock, machine, pub, adapter

    def test_key_press_release_publishes_start_and_stop(self):
        clock, machine, pub, a = self._mk()
        a.key_down("a")
        clock.t = 500
        a.key_up("a")
        self.assertEqual(pub.summary(), [("do", START, None), ("do", STOP, 500)])

    def test_autorepeat_publishes_once(self):
        clock, machine, pub, a = self._mk()
        for _ in range(5):
            a.key_down("s")
        clock.t = 80
        a.key_up("s")
        a.key_up("s")
        self.assertEqual(pub.summary(), [("re", START, None), ("re", STOP, 80)])

    def test_stop_only_mode(self):
        clock, machine, pub, a = self._mk(emit_start=False)
        a.key_down("d")
        clock.t = 10
        a.key_up("d")
        self.assertEqual(pub.summary(), [("mi", STOP, 10)])

    def test_unmapped_keys_ignored(self):
        clock, machine, pub, a = self._mk()
        self.assertIsNone(a.key_down("q"))
        self.assertIsNone(a.key_up("1"))
        self.assertIsNone(a.pointer_down("ti", 0))
        self.assertEqual(pub.notes, [])
        self.assertEqual(len(machine), 0)

    def test_pointer_up_anywhere_releases_held_note(self):
        clock, machine, pub, a = self._mk()
        a.pointer_down("la", pointer_id=3)
        clock.t = 250
        events = a.pointer_up(pointer_id=3)
        self.assertEqual([(e.note_id, e.duration_ms) for e in events], [("la", 250)])
        self.assertEqual(a.pointer_up(pointer_id=3), [])

    def test_keyboard_and_pointer_share_one_press(self):
        clock, machine, pub, a = self._mk()
        a.key_down("h")
        a.pointer_down("la", pointer_id=1)
        self.assertEqual(len(machine), 1)
        clock.t = 30
        a.key_up("h")
        # pointer did not own the press, nothing left to release
        self.assertEqual(a.pointer_up(pointer_id=1), [])
        self.assertEqual(pub.summary(), [("la", START, None), ("la", STOP, 30)])

    def test_focus_lost_and_pointer_leave_force_clear(self):
        clock, machine, pub, a = self._mk()
        a.key_down("a")
        a.key_down("d")
        clock.t = 300
        events = a.focus_lost()
        self.assertEqual(sorted((e.note_id, e.duration_ms) for e in events), [("do", 300), ("mi", 300)])
        self.assertEqual(len(machine), 0)
        a.pointer_down("si", 0)
        self.assertEqual(len(a.pointer_leave(0)), 1)

    def test_detach_stops_listening(self):
        clock, machine, pub, a = self._mk()
        a.key_down("a")
        a.detach()
        self.assertIsNone(a.key_up("a"))
        self.assertIsNone(a.key_down("s"))
        self.assertEqual(a.force_clear(), [])
        self.assertEqual(len(pub.notes), 1)


if __name__ == "__main__":
    unittest.main()
