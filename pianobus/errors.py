from __future__ import annotations


class PianoBusError(Exception):
    """Base class for errors reported by the keyboard core."""

    code = "error"


class BrokerConnectionError(PianoBusError):
    code = "connection"


class PublishError(PianoBusError):
    code = "publish"


class NotConnectedError(PublishError):
    code = "not_connected"

    def __init__(self, msg: str = "not connected to broker"):
        super().__init__(msg)


class SubscriptionError(PianoBusError):
    code = "subscription"


class InvalidInputError(PianoBusError):
    """Input transition that does not map to a known note. Never surfaced to the user."""

    code = "invalid_input"


class WireFormatError(PianoBusError):
    code = "wire_format"

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


def print_reporter(err: Exception) -> None:
    # Default sink for reported errors
    tag = getattr(err, "code", type(err).__name__)
    print(f"[error] {tag}: {err}", flush=True)
