"""Descriptor adoption: owned handles for file descriptors we received

Anything ever opened corresponds to an entry in the kernel's file table, and a
descriptor number received as ancillary data is nothing but an integer until
someone takes responsibility for closing it. That someone is a
`FileDescriptor`.

A raw number becomes a `FileDescriptor` exactly once, through `adopt`. From
then on the handle is the only owner: it closes the descriptor at most once,
and it can hand ownership on (to `detach` callers, or to a Python file object
through `as_file`), after which it is invalid and won't close anything.

Buffers that hold raw numbers on their way to adoption (see
`privopen.protocol.AsyncReadBuffer.take_fds`) give them up when they're taken,
so the same kernel table entry is never closed twice and never leaked.

"""
from __future__ import annotations
import os
import typing as t
import warnings
import logging
logger = logging.getLogger(__name__)

__all__ = [
    "FileDescriptor",
    "adopt",
    "adopt_all",
    "close_all",
]

class FileDescriptor:
    "An owned file descriptor in our own process"
    __slots__ = ('number', 'valid')
    number: int
    valid: bool

    def __init__(self, number: int) -> None:
        "To make this, use `adopt`."
        self.number = number
        self.valid = True

    def _validate(self) -> None:
        if not self.valid:
            raise ValueError("handle is no longer valid", self.number)

    def fileno(self) -> int:
        self._validate()
        return self.number

    def __int__(self) -> int:
        return self.fileno()

    def close(self) -> None:
        """Close this file descriptor; does nothing if this handle was already closed or detached

        manpage: close(2)
        """
        if self.valid:
            self.valid = False
            logger.debug("closing fd %d", self.number)
            os.close(self.number)

    def detach(self) -> int:
        "Give up ownership of the descriptor and return its number; closing it is now the caller's job."
        self._validate()
        self.valid = False
        return self.number

    def as_file(self, mode: str="rb", **kwargs: t.Any) -> t.IO[t.Any]:
        """Move the descriptor into a Python file object, which then owns it.

        This handle is invalid afterwards. If the file object can't be created,
        the descriptor stays with this handle.

        """
        self._validate()
        f = os.fdopen(self.number, mode, closefd=True, **kwargs)
        self.valid = False
        return f

    def fstat(self) -> os.stat_result:
        "manpage: fstat(2)"
        return os.fstat(self.fileno())

    @property
    def stat_size(self) -> int:
        "The size of the open file, as reported by fstat."
        return self.fstat().st_size

    def __enter__(self) -> FileDescriptor:
        return self

    def __exit__(self, *args: t.Any) -> None:
        self.close()

    def __del__(self) -> None:
        if getattr(self, 'valid', False):
            warnings.warn(f"unclosed {self!r}", ResourceWarning, source=self)
            self.close()

    def __repr__(self) -> str:
        if self.valid:
            return f"FileDescriptor({self.number})"
        else:
            return f"FileDescriptor({self.number}, invalid)"

def adopt(number: int) -> FileDescriptor:
    """Take ownership of this raw descriptor number.

    The number must not be owned by anything else; in particular, don't adopt
    the same number twice.

    """
    if number < 0:
        raise ValueError("not a file descriptor", number)
    return FileDescriptor(number)

def adopt_all(numbers: t.Iterable[int]) -> t.List[FileDescriptor]:
    "Adopt every number, in order."
    return [adopt(number) for number in numbers]

def close_all(fds: t.Iterable[FileDescriptor]) -> None:
    "Close each of these, continuing past failures; logs instead of raising."
    for fd in fds:
        try:
            fd.close()
        except OSError:
            logger.exception("failed to close %s", fd)
