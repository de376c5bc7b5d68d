"""The request/response channel between caller tasks and the Listener

Two `Handoff`s connect the callers of `Factory.open` with the Listener: one
carries a `Request` to the Listener, the other carries the matching `Response`
back. A handoff has zero capacity: `offer` only returns once some other task
has actually taken the value with `poll`. That's what enforces the
at-most-one-request-in-flight rule without any explicit locking; while the
Listener is busy with one request, nobody is polling the intake, so the next
caller's `offer` waits.

Responses are matched to requests by identity, never by value. A caller may
give up (time out, or be cancelled) while its request is still being served;
its response then reaches nobody, or reaches a later caller, and must be
discarded, closing any descriptor it carries.

"""
from __future__ import annotations
from dataclasses import dataclass
from privopen.exceptions import OpenFailed, ProtocolError
from privopen.fcntl import O
from privopen.handle import FileDescriptor, adopt_all, close_all
from privopen.protocol import OK, parse_errno
import math
import outcome
import os
import trio
import typing as t
import logging
logger = logging.getLogger(__name__)

__all__ = [
    "HandoffClosed",
    "Handoff",
    "Request",
    "Response",
]

T = t.TypeVar('T')

class HandoffClosed(Exception):
    "The handoff was closed, either before or while we were waiting on it."
    pass

class Handoff(t.Generic[T]):
    """A zero-capacity, timeout-bounded rendezvous between tasks.

    Any number of tasks may offer and poll concurrently; each exchange pairs
    exactly one offering task with one polling task.

    """
    def __init__(self) -> None:
        self._send, self._receive = trio.open_memory_channel[T](0)

    async def offer(self, value: T, timeout: float) -> bool:
        """Hand `value` to a polling task, waiting at most `timeout` seconds for one.

        Returns False if nobody took the value in time; it was not delivered
        then, and still belongs to the caller.

        """
        with trio.move_on_after(timeout):
            try:
                await self._send.send(value)
            except (trio.ClosedResourceError, trio.BrokenResourceError) as e:
                raise HandoffClosed() from e
            return True
        return False

    async def poll(self, timeout: float=math.inf) -> t.Optional[T]:
        "Take the next offered value, waiting at most `timeout` seconds; returns None on timeout."
        with trio.move_on_after(timeout):
            try:
                return await self._receive.receive()
            except (trio.ClosedResourceError, trio.EndOfChannel) as e:
                raise HandoffClosed() from e
        return None

    def close(self) -> None:
        "Close both ends; every current and future offer or poll raises HandoffClosed."
        self._send.close()
        self._receive.close()

@dataclass(eq=False)
class Request:
    "One open request; compared by identity only."
    path: bytes
    flags: O

    def __str__(self) -> str:
        return f"{os.fsdecode(self.path)!r},{self.flags!r}"

@dataclass(eq=False)
class Response:
    "The helper's answer to one Request."
    request: Request
    outcome: outcome.Outcome

    @classmethod
    def from_status(cls, request: Request, status: str, fds: t.List[int]) -> Response:
        """Interpret one status line from the helper, adopting the descriptors that came with it.

        Only the descriptor of an OK status survives; any others are closed
        here. OK without a descriptor breaks the protocol.

        """
        handles = adopt_all(fds)
        if status == OK:
            if len(handles) == 0:
                raise ProtocolError("helper said OK but sent no file descriptor", request)
            fd, *extra = handles
            close_all(extra)
            return cls(request, outcome.Value(fd))
        else:
            close_all(handles)
            return cls(request, outcome.Error(OpenFailed(
                f"Failed to open {os.fsdecode(request.path)!r}: {status}",
                path=request.path, errno=parse_errno(status))))

    @property
    def fd(self) -> t.Optional[FileDescriptor]:
        if isinstance(self.outcome, outcome.Value):
            return self.outcome.value
        return None

    def discard(self) -> None:
        "Drop this response nobody will use, closing its descriptor if it carries one."
        fd = self.fd
        if fd is not None:
            logger.debug("discarding response to %s, closing %s", self.request, fd)
            fd.close()

    def __str__(self) -> str:
        if self.fd is not None:
            return f"Request: {self.request}. Descriptor: {self.fd}"
        return f"Request: {self.request}. Error: {self.outcome.error}"
