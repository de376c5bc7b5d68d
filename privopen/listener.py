"""The Listener: the task on our side which talks to the helper

One Listener runs per Factory, for the Factory's whole lifetime. It:

1. reads the helper's output until the helper announces the pid of its worker;
2. accepts connections on the Factory's socket until one comes from that pid
   (any other local process can see an abstract socket, so this check is what
   stops impersonation);
3. performs the handshake, receiving the helper's terminal master;
4. tries to protect the helper from the OOM killer;
5. serves requests from the intake handoff, one at a time, until it's stopped
   or something goes wrong.

We never kill the helper explicitly. The helper is the session leader of a
terminal whose master we hold, and the helper dropped its own copy during the
handshake; when we close the master, the kernel hangs up the terminal and
sends the helper SIGHUP. That works even when the helper runs as another user
whom we're not allowed to signal.

Any failure at all is fatal: the Listener closes the Factory rather than
trying to resynchronize with a helper in an unknown state. Nothing the
Listener does ever raises into the nursery it runs in.

"""
from __future__ import annotations
from privopen.channel import Handoff, HandoffClosed, Request, Response
from privopen.exceptions import OpenFailed, ProtocolError
from privopen.fcntl import O
from privopen.handle import FileDescriptor, adopt_all, close_all
from privopen.protocol import AsyncReadBuffer, READY, GO, encode_request, encode_status, parse_greeting
import os
import socket
import struct
import trio
import typing as t
import logging
logger = logging.getLogger(__name__)

__all__ = [
    "Listener",
    "HelperOutput",
    "accept_authenticated",
]

OOM_SCORE_ADJ = b"-1000"
DRAIN_TIMEOUT = 2.0
"How long we keep reading helper output after closing the terminal."
REAP_TIMEOUT = 2.0
"How long we wait for the launched process to exit before killing it."

_ucred = struct.Struct("3i")

def peer_pid(sock: t.Any) -> int:
    "The pid of the process which connected this unix socket; manpage: unix(7) SO_PEERCRED"
    pid, uid, gid = _ucred.unpack(sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _ucred.size))
    return pid

async def accept_authenticated(sock: t.Any, pid: int, log: logging.Logger=logger) -> t.Any:
    "Accept connections on `sock` until one comes from process `pid`; close all the others."
    while True:
        conn, _ = await sock.accept()
        try:
            connected_pid = peer_pid(conn)
        except BaseException:
            conn.close()
            raise
        if connected_pid == pid:
            return conn
        log.warning("dropping connection from pid %d, expecting helper pid %d", connected_pid, pid)
        conn.close()

class HelperOutput:
    "The merged stdout and stderr of the launched helper."
    def __init__(self, stream: trio.abc.ReceiveStream) -> None:
        self.stream = stream
        self.buf = b""
        self.eof = False

    async def _read(self) -> None:
        data = await self.stream.receive_some()
        if len(data) == 0:
            self.eof = True
        self.buf += data

    async def read_line(self) -> t.Optional[bytes]:
        "Return the next line, or what's left at EOF; None once everything was read."
        while True:
            i = self.buf.find(b"\n")
            if i >= 0:
                line, self.buf = self.buf[:i], self.buf[i+1:]
                return line
            if self.eof:
                line, self.buf = self.buf, b""
                return line if line else None
            await self._read()

    async def read_helper_pid(self) -> int:
        """Read output until the helper's greeting, and return the pid it announces.

        The greeting may be preceded by anything: dynamic linkers and
        elevation commands are known to be chatty.

        """
        seen: t.List[bytes] = []
        while True:
            line = await self.read_line()
            if line is None:
                raise ProtocolError("can't get helper PID", b"\n".join(seen))
            pid = parse_greeting(line)
            if pid is not None:
                return pid
            seen.append(line)

    async def pump(self, log: logging.Logger) -> None:
        "Log every line of output until EOF."
        try:
            while True:
                line = await self.read_line()
                if line is None:
                    return
                log.debug("%s", line.decode(errors="replace"))
        except (OSError, trio.ClosedResourceError, trio.BrokenResourceError) as e:
            log.debug("stopped reading helper output: %s", e)

class Listener:
    def __init__(self,
                 process: trio.Process,
                 sock: t.Any,
                 intake: Handoff[Request],
                 responses: Handoff[Response],
                 round_trip_timeout: float,
                 on_running: t.Callable[[], None],
                 on_exit: t.Callable[[], None],
                 log: logging.Logger=logger,
    ) -> None:
        self.process = process
        self.sock = sock
        self.intake = intake
        self.responses = responses
        self.round_trip_timeout = round_trip_timeout
        self.on_running = on_running
        self.on_exit = on_exit
        self.logger = log
        self.output = HelperOutput(process.stdout)
        self.helper_pid: t.Optional[int] = None
        self.conn: t.Optional[t.Any] = None
        self.reader: t.Optional[AsyncReadBuffer] = None
        self.tty: t.Optional[FileDescriptor] = None
        self.cancel_scope = trio.CancelScope()
        self.stopped = trio.Event()
        self._resources_closed = False

    def __str__(self) -> str:
        return f"Listener(helper={self.helper_pid}, launcher={self.process.pid})"

    def stop(self) -> None:
        """Stop serving and hang up the helper; never raises.

        The rest of the teardown happens in the Listener task; wait for
        `stopped` to know it's complete.

        """
        self.cancel_scope.cancel()
        self._close_resources()

    def _close_resources(self) -> None:
        if self._resources_closed:
            return
        self._resources_closed = True
        self.logger.debug("closing socket and helper terminal")
        # closing the terminal master is what kills the helper
        for close in [
                self.tty.close if self.tty else None,
                self.reader.close if self.reader else None,
                self.conn.close if self.conn else None,
                self.sock.close,
        ]:
            if close is None:
                continue
            try:
                close()
            except OSError:
                self.logger.exception("failed to close %s", close)

    async def run(self) -> None:
        "Serve the helper until stopped or broken, then tear everything down."
        try:
            async with trio.open_nursery() as nursery:
                try:
                    with self.cancel_scope:
                        self.helper_pid = await self.output.read_helper_pid()
                        self.logger.debug("helper announced pid %d", self.helper_pid)
                        nursery.start_soon(self.output.pump, self.logger.getChild("helper"))
                        await self._serve(self.helper_pid)
                except Exception:
                    self.logger.exception("listener forced to quit by error")
                finally:
                    self.on_exit()
                    self._close_resources()
                    # give the helper a moment to die and flush its last words
                    nursery.cancel_scope.deadline = trio.current_time() + DRAIN_TIMEOUT
        finally:
            with trio.CancelScope(shield=True):
                await self._reap()
            self.stopped.set()

    async def _reap(self) -> None:
        with trio.move_on_after(REAP_TIMEOUT):
            await self.process.wait()
        if self.process.returncode is None:
            self.logger.warning("helper launcher %d didn't exit, killing it", self.process.pid)
            try:
                self.process.kill()
            except OSError:
                self.logger.exception("failed to kill helper launcher %d", self.process.pid)
            with trio.move_on_after(REAP_TIMEOUT):
                await self.process.wait()
        elif self.process.returncode != 0:
            self.logger.warning("helper launcher exited with status %d", self.process.returncode)
        try:
            await self.process.stdout.aclose()
        except (OSError, trio.ClosedResourceError):
            pass

    async def _serve(self, pid: int) -> None:
        self.conn = await accept_authenticated(self.sock, pid, self.logger)
        self.reader = AsyncReadBuffer(self.conn)
        status, fds = await self.reader.read_status()
        handles = adopt_all(fds)
        if status != READY or len(handles) != 1:
            close_all(handles)
            raise ProtocolError("can't get helper tty", status, len(handles))
        self.tty, = handles
        self.logger.debug("response to tty request: %r, descriptor %s", status, self.tty)
        # the helper can close its copy of the terminal now; ours is the last one
        await self._send(encode_status(GO))
        self.on_running()
        await self._protect_from_oom(pid)
        await self._process_requests()

    async def _send(self, data: bytes) -> None:
        assert self.conn is not None
        while data:
            sent = await self.conn.send(data)
            data = data[sent:]

    async def round_trip(self, request: Request) -> Response:
        "Send one request to the helper and read its response."
        assert self.reader is not None
        await self._send(encode_request(request.path, request.flags))
        status, fds = await self.reader.read_status()
        response = Response.from_status(request, status, fds)
        self.logger.debug("%s", response)
        return response

    async def _protect_from_oom(self, pid: int) -> None:
        "As a little exercise before the real thing, try to keep the OOM killer away from our helper."
        path = f"/proc/{pid}/oom_score_adj".encode()
        response = await self.round_trip(Request(path, O.RDWR))
        try:
            fd = response.outcome.unwrap()
        except OpenFailed as e:
            self.logger.debug("can't open helper's oom_score_adj: %s", e)
            return
        with fd:
            try:
                os.write(fd.fileno(), OOM_SCORE_ADJ)
            except OSError as e:
                self.logger.debug("write to %s failed: %s", path, e)
            else:
                self.logger.debug("adjusted helper's OOM score to %s", OOM_SCORE_ADJ.decode())

    async def _process_requests(self) -> None:
        while True:
            try:
                request = await self.intake.poll()
            except HandoffClosed:
                return
            assert request is not None
            response = await self.round_trip(request)
            delivered = False
            try:
                delivered = await self.responses.offer(response, self.round_trip_timeout)
            except HandoffClosed:
                return
            finally:
                if not delivered:
                    # the caller gave up on this request
                    response.discard()
