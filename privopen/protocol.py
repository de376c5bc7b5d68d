"""The wire protocol between the Listener and the helper

The protocol is line oriented and tiny:

- On its stdout, before anything touches the socket, the helper announces the
  pid of its long-lived worker with a line containing `PID:<digits>`. Whatever
  else the dynamic linker or the elevation command prints is ignored.
- On the socket, the helper sends `READY\\n`, with its terminal master attached
  as `SCM_RIGHTS`; we answer `GO\\n`.
- Then, one at a time, we send a request:
  `<length of path in bytes>\\n<path bytes>\\n<decimal open flags>\\n`
- And the helper answers with one status line: `OK\\n` with the opened
  descriptor attached, or a line of error text with nothing attached.

The path is length-prefixed so that it can contain any byte, newlines
included. Status lines are always a single bounded line; `encode_status` folds
and truncates anything else.

Both ends of the socket are here: `AsyncReadBuffer` is our side, reading a
trio socket and collecting the descriptors that arrive with the data;
`read_request` and `read_line` are the helper's side, reading a plain blocking
file object made from the socket.

"""
from __future__ import annotations
from privopen.exceptions import ProtocolError
import array
import os
import re
import socket
import typing as t
import logging
logger = logging.getLogger(__name__)

__all__ = [
    "READY",
    "GO",
    "OK",
    "encode_request",
    "encode_status",
    "error_status",
    "valid_flags",
    "decode_status",
    "parse_greeting",
    "parse_errno",
    "unpack_fds",
    "AsyncReadBuffer",
    "read_line",
    "read_request",
]

READY = "READY"
GO = "GO"
OK = "OK"

MAX_LINE = 4096
"Longest status, greeting or number line we'll buffer before giving up on the peer."
MAX_PATH = 65536
"Longest path we'll accept in a request."
MAX_FDS = 4
"We only ever expect one descriptor per message; leave room to notice and close extras."

MAX_FLAGS = 2**31 - 1
"Open flags travel as a C int; anything larger can't be passed to open(2)."

_GREETING = re.compile(rb"PID:(\d+)")
_ERRNO = re.compile(r"^\[Errno (\d+)\]")

def valid_flags(flags: int) -> bool:
    return 0 <= flags <= MAX_FLAGS

def encode_request(path: bytes, flags: int) -> bytes:
    "Frame one open request."
    if not valid_flags(flags):
        raise ValueError("open flags out of range", flags)
    return b"%d\n%s\n%d\n" % (len(path), path, flags)

def encode_status(status: str) -> bytes:
    """Frame one status line, folding any line breaks in it into spaces.

    Statuses too long for one line are cut to `MAX_LINE`, so the reader never sees a
    line it would refuse.

    """
    data = " ".join(status.splitlines()).encode("utf-8", "replace")
    return data[:MAX_LINE - 1] + b"\n"

def error_status(exn: Exception) -> str:
    "Describe a failed open in a status line, without the path, which the other side already knows."
    if isinstance(exn, OSError) and exn.errno is not None:
        return f"[Errno {exn.errno}] {exn.strerror}"
    return f"{type(exn).__name__}: {exn}"

def decode_status(line: bytes) -> str:
    return line.decode("utf-8", "replace")

def parse_greeting(line: bytes) -> t.Optional[int]:
    "Return the pid announced on this line of helper output, or None if there isn't one."
    match = _GREETING.search(line)
    if match is None:
        return None
    return int(match.group(1))

def parse_errno(status: str) -> t.Optional[int]:
    "Recover the errno from an error status formatted like str(OSError)."
    match = _ERRNO.match(status)
    if match is None:
        return None
    return int(match.group(1))

def _parse_decimal(line: bytes, what: str) -> int:
    if not line.endswith(b"\n"):
        raise ProtocolError("truncated frame while reading", what, line)
    digits = line[:-1]
    if not digits.isdigit():
        raise ProtocolError("expected a decimal", what, line)
    return int(digits)

def unpack_fds(ancdata: t.Iterable[t.Tuple[int, int, bytes]]) -> t.List[int]:
    "Extract the raw descriptor numbers from the ancillary data returned by recvmsg."
    fds = array.array("i")
    for level, type, data in ancdata:
        if level == socket.SOL_SOCKET and type == socket.SCM_RIGHTS:
            # a truncated control message can end in a partial int
            fds.frombytes(data[:len(data) - (len(data) % fds.itemsize)])
    return list(fds)

class AsyncReadBuffer:
    """A buffer for reading status lines, and the descriptors attached to them, from a trio socket.

    Data from a stream socket isn't delivered in nicely separated records, so
    we rebuffer it. Descriptors arrive attached to the data; we hold their
    raw numbers until someone takes them with `take_fds`, and close whatever
    is left over when we're closed.

    """
    def __init__(self, sock: t.Any) -> None:
        self.sock = sock
        self.buf = b""
        self.fds: t.List[int] = []

    async def _read(self) -> bytes:
        "Read some bytes, collecting any descriptors that come with them; raises EOFError on EOF."
        data, ancdata, flags, _ = await self.sock.recvmsg(
            MAX_LINE, socket.CMSG_SPACE(MAX_FDS * array.array("i").itemsize),
            socket.MSG_CMSG_CLOEXEC)
        self.fds.extend(unpack_fds(ancdata))
        if flags & socket.MSG_CTRUNC:
            raise ProtocolError("ancillary data was truncated; peer sent too many descriptors")
        if len(data) == 0:
            raise EOFError("hangup while reading from helper")
        return data

    async def read_until_delimiter(self, delim: bytes) -> bytes:
        "Read and return all bytes until the specified delimiter, stripping the delimiter."
        while True:
            i = self.buf.find(delim)
            if i >= 0:
                section = self.buf[:i]
                self.buf = self.buf[i+len(delim):]
                return section
            if len(self.buf) > MAX_LINE:
                raise ProtocolError("line too long", self.buf[:64])
            self.buf += await self._read()

    async def read_line(self) -> bytes:
        "Read and return a line, stripping the newline character."
        return await self.read_until_delimiter(b"\n")

    def take_fds(self) -> t.List[int]:
        "Take ownership of the raw descriptors received so far; the buffer forgets them."
        fds, self.fds = self.fds, []
        return fds

    async def read_status(self) -> t.Tuple[str, t.List[int]]:
        "Read one status line; returns it with the raw descriptors that came with it."
        line = await self.read_line()
        return decode_status(line), self.take_fds()

    def close(self) -> None:
        "Close any descriptors nobody took."
        for fd in self.take_fds():
            logger.debug("closing untaken fd %d", fd)
            os.close(fd)

def read_line(stream: t.BinaryIO) -> t.Optional[bytes]:
    """Read one newline-terminated line from a blocking stream, without the newline.

    Returns None on EOF before any byte of the line; a line cut short by EOF
    is a ProtocolError.

    """
    line = stream.readline(MAX_LINE + 1)
    if len(line) == 0:
        return None
    if not line.endswith(b"\n"):
        raise ProtocolError("truncated or overlong line", line[:64])
    return line[:-1]

def read_request(stream: t.BinaryIO) -> t.Optional[t.Tuple[bytes, int]]:
    """Read one request frame from a blocking stream; returns (path, flags).

    Returns None on a clean EOF between frames. Anything malformed, including
    EOF inside a frame, is a ProtocolError.

    """
    line = stream.readline(MAX_LINE + 1)
    if len(line) == 0:
        return None
    length = _parse_decimal(line, "path length")
    if length > MAX_PATH:
        raise ProtocolError("path too long", length)
    path = stream.read(length)
    if len(path) != length:
        raise ProtocolError("truncated path", path[:64])
    if stream.read(1) != b"\n":
        raise ProtocolError("missing newline after path", path[:64])
    flags = _parse_decimal(stream.readline(MAX_LINE + 1), "open flags")
    return path, flags
