from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional

from pynput import keyboard

from pianobus.input_adapter import InputAdapter, KEYBOARD_SOURCE


class KeyboardInput:
    """Desktop keyboard source built on a pynput global listener.

    The listener runs on its own thread; every transition is handed to the
    event loop with call_soon_threadsafe so the press ledger is only touched
    from the loop. Auto-repeat presses arrive as extra key_down calls and are
    absorbed by the ledger. Esc calls `on_exit`.
    """

    def __init__(
        self,
        adapter: InputAdapter,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        on_exit: Optional[Callable[[], None]] = None,
        controls: Optional[Dict[str, Callable[[], None]]] = None,
        listener_cls: Callable[..., keyboard.Listener] = keyboard.Listener,
    ) -> None:
        self.adapter = adapter
        self._loop = loop
        self._on_exit = on_exit
        # non-note keys handled on press only, e.g. volume up/down
        self._controls = dict(controls or {})
        self._listener_cls = listener_cls
        self._listener: Optional[keyboard.Listener] = None

    def start(self) -> None:
        if self._listener is not None:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._listener = self._listener_cls(on_press=self._on_press, on_release=self._on_release)
        self._listener.start()
        print("[input] keyboard listener started (Esc to quit)", flush=True)

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None

    def _on_press(self, key) -> None:
        if key == keyboard.Key.esc:
            if self._on_exit is not None:
                self._loop.call_soon_threadsafe(self._on_exit)
            return
        char = _safe_char(key)
        if char is None:
            return
        if char in self._controls:
            self._loop.call_soon_threadsafe(self._controls[char])
            return
        self._loop.call_soon_threadsafe(self.adapter.key_down, char, KEYBOARD_SOURCE)

    def _on_release(self, key) -> None:
        char = _safe_char(key)
        if char is not None and char not in self._controls:
            self._loop.call_soon_threadsafe(self.adapter.key_up, char, KEYBOARD_SOURCE)


def _safe_char(key) -> Optional[str]:
    char = getattr(key, "char", None)
    if not char:
        return None
    return char.lower()
