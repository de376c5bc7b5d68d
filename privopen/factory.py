"""Opening files with elevated privileges, through a helper process

A `Factory` runs one privileged helper process and lets any number of tasks
open files through it:

```
async with trio.open_nursery() as nursery:
    factory = await Factory.create(nursery)
    async with factory:
        with await factory.open("/etc/shadow", O.RDONLY) as fd:
            ...
```

The semantics of `Factory.open` are those of open(2), except that the open
happens in the helper, so it's the helper's privileges that are checked. The
descriptor is then passed to us over a unix socket. Most properties of a
descriptor, including its access mode, can't be changed after it was opened;
they're retained when it moves between processes, but its number may change.

The helper is launched through an elevation command, `sudo` by default, which
may prompt interactively; so the first `open` may wait quite a while,
bounded by `FactoryConfig.admission_timeout`. After a request is accepted, the
helper has `FactoryConfig.round_trip_timeout` to answer.

Failures come in two kinds. `OpenFailed` means this one path couldn't be
opened, and the factory is fine. `BrokenFactory` means the factory is closed
for good: the helper died, misbehaved, or timed out, or someone called
`close`. There's no recovering a broken factory; create a new one.

Requests are served strictly one at a time. Tasks that need parallel
privileged opens should use several factories.

"""
from __future__ import annotations
from dataclasses import dataclass, field
from privopen.channel import Handoff, HandoffClosed, Request, Response
from privopen.exceptions import BrokenFactory, OpenFailed
from privopen.fcntl import O, DEFAULT_FLAGS, file_mode
from privopen.handle import FileDescriptor
from privopen.listener import Listener
from privopen.protocol import valid_flags
import enum
import errno
import os
import socket
import subprocess
import sys
import trio
import typing as t
import uuid
import logging
logger = logging.getLogger(__name__)

__all__ = [
    "FactoryConfig",
    "State",
    "Factory",
]

@dataclass(frozen=True)
class FactoryConfig:
    "How to launch the helper, and how long to wait for it."
    admission_timeout: float = 20.0
    "How long `open` waits for the Listener to take a request; covers the helper's startup and any password prompt."
    round_trip_timeout: float = 2.5
    "How long `open` waits for the helper's answer once the request was taken."
    unprivileged: bool = False
    "Run the helper directly, without the elevation command; useful for testing."
    elevate: t.Sequence[str] = ("sudo", "--")
    "Command prefix which runs the helper with elevated privileges."
    helper: t.Sequence[str] = field(default_factory=lambda: (sys.executable, "-m", "privopen.helper"))
    "Command which runs the helper program."
    helper_args: t.Sequence[str] = ()
    "Extra options for the helper, such as --debug; the socket address always comes last."

    def helper_command(self, address: str) -> t.List[str]:
        "The full argv which launches the helper and tells it to connect to `address`."
        command = [] if self.unprivileged else list(self.elevate)
        return [*command, *self.helper, *self.helper_args, address]

class State(enum.Enum):
    CREATED = "created"
    "The helper is being launched; the handshake hasn't completed yet."
    RUNNING = "running"
    CLOSED = "closed"
    "Terminal; every `open` raises BrokenFactory."

class Factory(trio.abc.AsyncResource):
    """Opens files through a privileged helper process; see the module docstring.

    Make one with `Factory.create`.

    """
    def __init__(self, config: FactoryConfig, address: str, sock: t.Any, process: trio.Process) -> None:
        self.config = config
        self.address = address
        self.logger = logger.getChild(address[:8])
        self.state = State.CREATED
        self._running = trio.Event()
        self._intake = Handoff[Request]()
        self._responses = Handoff[Response]()
        self._listener = Listener(
            process, sock, self._intake, self._responses, config.round_trip_timeout,
            on_running=self._set_running, on_exit=self.close,
            log=self.logger.getChild("listener"),
        )

    @classmethod
    async def create(cls, nursery: trio.Nursery, config: FactoryConfig=FactoryConfig()) -> Factory:
        """Bind a fresh socket, launch the helper, and start the Listener in `nursery`.

        Returns without waiting for the helper; the first `open` does that.
        Raises OSError if the socket can't be bound or the helper can't be
        launched, for example when the elevation command doesn't exist.

        """
        address = uuid.uuid4().hex
        sock = trio.socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            # abstract namespace: no filesystem entry, gone when we close the socket
            await sock.bind("\0" + address)
            sock.listen(1)
            command = config.helper_command(address)
            logger.debug("launching helper: %s", command)
            process = await trio.lowlevel.open_process(
                command, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        except BaseException:
            sock.close()
            raise
        self = cls(config, address, sock, process)
        nursery.start_soon(self._listener.run)
        return self

    def _set_running(self) -> None:
        if self.state is State.CREATED:
            self.state = State.RUNNING
            self._running.set()

    @property
    def closed(self) -> bool:
        return self.state is State.CLOSED

    @property
    def helper_pid(self) -> t.Optional[int]:
        "The pid of the long-lived helper process, once it has announced itself."
        return self._listener.helper_pid

    async def wait_running(self) -> None:
        "Wait until the handshake with the helper completed; raises BrokenFactory if the factory closes first."
        if not self.closed:
            await self._running.wait()
        if self.closed:
            raise BrokenFactory("factory closed before the helper was ready")

    async def open(self, path: t.Union[str, bytes, os.PathLike], flags: int=DEFAULT_FLAGS) -> FileDescriptor:
        """Open `path` in the helper and return the descriptor.

        `flags` are `O` flags; by default, read-write and create.

        Raises OpenFailed if the helper couldn't open the path, or if `flags`
        don't fit in a C int; the factory stays usable. Raises BrokenFactory
        if the factory is or becomes closed, including when either timeout
        expires.

        """
        if self.closed:
            raise BrokenFactory("already closed")
        path = os.fsencode(path)
        if not valid_flags(flags):
            raise OpenFailed(f"Failed to open {os.fsdecode(path)!r}: open flags {flags:#x} out of range",
                             path=path, errno=errno.EINVAL)
        request = Request(path, O(flags))
        try:
            if not await self._intake.offer(request, self.config.admission_timeout):
                self.logger.warning("helper didn't accept %s within %ss", request, self.config.admission_timeout)
                self.close()
                raise BrokenFactory("helper isn't accepting requests")
            with trio.move_on_after(self.config.round_trip_timeout):
                while True:
                    response = await self._responses.poll()
                    assert response is not None
                    if response.request is not request:
                        # left behind by some caller who gave up early
                        response.discard()
                        continue
                    return response.outcome.unwrap()
        except HandoffClosed as e:
            raise BrokenFactory("helper went away") from e
        self.logger.warning("no response to %s within %ss", request, self.config.round_trip_timeout)
        self.close()
        raise BrokenFactory("failed to retrieve response from helper")

    async def open_file(self, path: t.Union[str, bytes, os.PathLike], flags: int=DEFAULT_FLAGS,
                        **kwargs: t.Any) -> t.IO[t.Any]:
        """Shorthand for when all you need is a Python file object.

        The file is binary, with a mode matching `flags`; `kwargs` go to
        `os.fdopen`.

        """
        fd = await self.open(path, flags)
        try:
            return fd.as_file(file_mode(flags), **kwargs)
        except BaseException:
            fd.close()
            raise

    def close(self) -> None:
        """Stop the Listener and the helper, and make every further `open` fail.

        Can be called any number of times, from anywhere, and never raises.
        The rest of the teardown happens asynchronously; use `aclose` to wait
        for it.

        """
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.logger.debug("closing")
        self._intake.close()
        self._responses.close()
        # wake anyone in wait_running
        self._running.set()
        self._listener.stop()

    async def aclose(self) -> None:
        "Close, and wait until the Listener has finished tearing down."
        self.close()
        await self._listener.stopped.wait()

    def __repr__(self) -> str:
        return f"Factory({self.address}, {self.state.name}, helper={self.helper_pid})"
