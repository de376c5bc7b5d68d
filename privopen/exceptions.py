import typing as t

__all__ = [
    "BrokenFactory",
    "OpenFailed",
    "ProtocolError",
]

class BrokenFactory(Exception):
    """The factory can't be used anymore.

    By the time this is raised the factory is already closed; closing it again
    is harmless. Every further `Factory.open` raises this again, without
    contacting the helper. Discard the factory and create a new one.

    """
    pass

class OpenFailed(OSError):
    """The helper reported that it couldn't open this path.

    This is per-call: the factory is still usable, and other calls may succeed.
    `errno` is set when the helper's message carried one.

    """
    def __init__(self, message: str, path: t.Optional[bytes]=None, errno: t.Optional[int]=None) -> None:
        super().__init__(message)
        self.path = path
        self.errno = errno

class ProtocolError(Exception):
    "The peer sent something that doesn't fit the wire protocol; there's no resyncing after this."
    pass
