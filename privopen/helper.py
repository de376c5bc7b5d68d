"""The privileged helper program

This is what runs as root, or as whoever the elevation command makes us. It's
small and synchronous, and calls nothing outside the standard library.

Run as `python -m privopen.helper ADDRESS`, it:

1. creates a pseudo-terminal and forks; the parent prints `PID:<child pid>`
   and exits immediately, so that the elevation command returns;
2. in the child, starts a new session with the terminal's slave side as its
   controlling terminal and stdin;
3. connects to the abstract unix socket ADDRESS, and hands over the terminal's
   master side;
4. then opens whatever it's asked to, passing each descriptor back, until the
   connection closes.

The terminal is the kill switch. Once the other side holds the only copy of
the master, closing it hangs up our controlling terminal and the kernel sends
us SIGHUP, which we take with the default action.

"""
from __future__ import annotations
from privopen.exceptions import ProtocolError
from privopen.fcntl import CREATE_MODE
from privopen.protocol import READY, GO, OK, encode_status, error_status, read_line, read_request
import argparse
import fcntl
import os
import signal
import socket
import sys
import termios
import typing as t
import logging
logger = logging.getLogger(__name__)

__all__ = [
    "acquire_controlling_tty",
    "connect",
    "handshake",
    "serve",
    "main",
]

def acquire_controlling_tty() -> int:
    """Fork off the long-lived worker, and give it a fresh terminal as controlling terminal and stdin.

    Only the worker returns, with the terminal's master side, which it should
    hand over and then close. The original process prints the worker's pid
    and exits; it's the process our launcher waits for.

    """
    master, slave = os.openpty()
    pid = os.fork()
    if pid != 0:
        # the launcher: announce the worker and get out of the elevation command's way
        print(f"PID:{pid}", flush=True)
        os._exit(0)
    try:
        name = os.ttyname(slave)
        os.close(slave)
        signal.signal(signal.SIGHUP, signal.SIG_DFL)
        os.setsid()
        tty = os.open(name, os.O_RDWR|os.O_NOCTTY)
        try:
            fcntl.ioctl(tty, termios.TIOCSCTTY, 0)
            os.dup2(tty, 0)
        finally:
            os.close(tty)
    except BaseException:
        os.close(master)
        raise
    return master

def connect(address: str) -> socket.socket:
    "Connect to the abstract unix socket named `address`."
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect("\0" + address)
    except BaseException:
        sock.close()
        raise
    return sock

def handshake(sock: socket.socket, reader: t.BinaryIO, master: int) -> None:
    """Pass our terminal master to the other side and wait for it to confirm.

    Closes our copy of `master` once confirmed; from then on the other side
    holds the only one.

    """
    socket.send_fds(sock, [encode_status(READY)], [master])
    line = read_line(reader)
    if line is None:
        raise ProtocolError("hangup during handshake")
    if line != GO.encode():
        raise ProtocolError("unexpected handshake response", line)
    os.close(master)

def serve(sock: socket.socket, reader: t.BinaryIO) -> None:
    """Open files as requested, until the other side closes the connection.

    Failing to open a file is reported to the other side and isn't an error
    here; a malformed request raises ProtocolError.

    """
    while True:
        request = read_request(reader)
        if request is None:
            logger.debug("connection closed, exiting")
            return
        path, flags = request
        try:
            fd = os.open(path, flags, CREATE_MODE)
        except (OSError, ValueError, OverflowError) as e:
            logger.debug("failed to open %r: %s", path, e)
            sock.sendall(encode_status(error_status(e)))
            continue
        try:
            socket.send_fds(sock, [encode_status(OK)], [fd])
        finally:
            os.close(fd)

def main(argv: t.Optional[t.List[str]]=None) -> int:
    parser = argparse.ArgumentParser(
        prog="privopen-helper",
        description="Open files on behalf of a privopen Factory, and pass the descriptors back.")
    parser.add_argument("address", help="name of the abstract unix socket to connect to")
    parser.add_argument("--debug", action="store_true", help="log every request to stderr")
    args = parser.parse_args(argv)
    logging.basicConfig(stream=sys.stderr, level=logging.DEBUG if args.debug else logging.WARNING,
                        format="privopen-helper[%(process)d] %(levelname)s %(message)s")

    try:
        master = acquire_controlling_tty()
        with connect(args.address) as sock:
            with sock.makefile("rb") as reader:
                handshake(sock, reader, master)
                serve(sock, reader)
    except (ProtocolError, OSError):
        logger.exception("helper failed")
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
