from privopen.tests.trio_test_case import TrioTestCase
from privopen.tests.utils import count_fds
from privopen.exceptions import ProtocolError
from privopen.fcntl import O
from privopen.helper import handshake, serve
from privopen.protocol import AsyncReadBuffer, encode_request
import errno
import os
import socket
import tempfile
import trio

class TestServe(TrioTestCase):
    "Runs the helper's side in a thread, against our side over a socketpair."
    async def asyncSetUp(self) -> None:
        ours, theirs = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
        self.ours = trio.socket.from_stdlib_socket(ours)
        self.theirs = theirs
        self.theirs_reader = theirs.makefile("rb")
        self.reader = AsyncReadBuffer(self.ours)
        self.tmpdir = tempfile.TemporaryDirectory()

    async def asyncTearDown(self) -> None:
        self.reader.close()
        self.ours.close()
        self.theirs_reader.close()
        self.theirs.close()
        self.tmpdir.cleanup()

    async def start_serving(self) -> trio.Event:
        done = trio.Event()
        async def run() -> None:
            try:
                await trio.to_thread.run_sync(serve, self.theirs, self.theirs_reader)
            finally:
                done.set()
        self.nursery.start_soon(run)
        return done

    async def test_open_and_fail(self) -> None:
        done = await self.start_serving()
        path = os.path.join(self.tmpdir.name, "new")
        await self.ours.send(encode_request(os.fsencode(path), O.RDWR|O.CREAT))
        status, fds = await self.reader.read_status()
        self.assertEqual(status, "OK")
        self.assertEqual(len(fds), 1)
        os.write(fds[0], b"written through the helper")
        os.close(fds[0])
        self.assertEqual(os.stat(path).st_mode & 0o777, 0o600)
        with open(path, "rb") as f:
            self.assertEqual(f.read(), b"written through the helper")

        await self.ours.send(encode_request(b"/nonexistent/file", O.RDONLY))
        status, fds = await self.reader.read_status()
        self.assertTrue(status.startswith(f"[Errno {errno.ENOENT}]"), status)
        self.assertEqual(fds, [])

        await self.ours.send(encode_request(b"embedded\0null", O.RDONLY))
        status, fds = await self.reader.read_status()
        self.assertNotEqual(status, "OK")
        self.assertEqual(fds, [])

        self.ours.shutdown(socket.SHUT_WR)
        await done.wait()

    async def test_unusable_requests_are_answered(self) -> None:
        done = await self.start_serving()
        # flags beyond a C int, which encode_request refuses to produce
        await self.ours.send(b"17\n/proc/self/status\n%d\n" % (1 << 40))
        status, fds = await self.reader.read_status()
        self.assertTrue(status.startswith("OverflowError"), status)
        self.assertEqual(fds, [])

        path = b"/nonexistent/" + b"/".join([b"\xff" * 200] * 15)
        await self.ours.send(encode_request(path, O.RDONLY))
        status, fds = await self.reader.read_status()
        self.assertEqual(status, f"[Errno {errno.ENOENT}] {os.strerror(errno.ENOENT)}")
        self.assertEqual(fds, [])

        # still serving
        await self.ours.send(encode_request(b"/proc/self/status", O.RDONLY))
        status, fds = await self.reader.read_status()
        self.assertEqual(status, "OK")
        for fd in fds:
            os.close(fd)
        self.ours.shutdown(socket.SHUT_WR)
        await done.wait()

    async def test_helper_keeps_no_descriptors(self) -> None:
        done = await self.start_serving()
        before = count_fds()
        for _ in range(5):
            await self.ours.send(encode_request(b"/proc/self/status", O.RDONLY))
            status, fds = await self.reader.read_status()
            self.assertEqual(status, "OK")
            for fd in fds:
                os.close(fd)
        self.ours.shutdown(socket.SHUT_WR)
        await done.wait()
        self.assertEqual(count_fds(), before)

    async def test_malformed_frame(self) -> None:
        await self.ours.send(b"notanumber\n/tmp\n0\n")
        with self.assertRaises(ProtocolError):
            await trio.to_thread.run_sync(serve, self.theirs, self.theirs_reader)

class TestHandshake(TrioTestCase):
    async def asyncSetUp(self) -> None:
        ours, theirs = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
        self.ours = trio.socket.from_stdlib_socket(ours)
        self.theirs = theirs
        self.theirs_reader = theirs.makefile("rb")
        self.reader = AsyncReadBuffer(self.ours)

    async def asyncTearDown(self) -> None:
        self.reader.close()
        self.ours.close()
        self.theirs_reader.close()
        self.theirs.close()

    async def test_master_closed_only_after_go(self) -> None:
        master, slave = os.openpty()
        os.close(slave)
        done = trio.Event()
        async def run() -> None:
            await trio.to_thread.run_sync(handshake, self.theirs, self.theirs_reader, master)
            done.set()
        self.nursery.start_soon(run)
        status, fds = await self.reader.read_status()
        self.assertEqual(status, "READY")
        self.assertEqual(len(fds), 1)
        # the helper is waiting for GO, so its copy is still open
        os.fstat(master)
        await self.ours.send(b"GO\n")
        await done.wait()
        with self.assertRaises(OSError):
            os.fstat(master)
        os.close(fds[0])

    async def test_wrong_reply(self) -> None:
        master, slave = os.openpty()
        os.close(slave)
        await self.ours.send(b"NO\n")
        try:
            with self.assertRaises(ProtocolError):
                await trio.to_thread.run_sync(handshake, self.theirs, self.theirs_reader, master)
        finally:
            os.close(master)
        status, fds = await self.reader.read_status()
        for fd in fds:
            os.close(fd)
