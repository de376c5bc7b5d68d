from privopen.handle import FileDescriptor, adopt, adopt_all, close_all
from privopen.tests.utils import count_fds
import gc
import os
import unittest
import warnings

class TestHandle(unittest.TestCase):
    def setUp(self) -> None:
        self.r, self.w = os.pipe()

    def tearDown(self) -> None:
        for fd in (self.r, self.w):
            try:
                os.close(fd)
            except OSError:
                pass

    def test_close_once(self) -> None:
        fd = adopt(self.r)
        self.assertTrue(fd.valid)
        self.assertEqual(fd.fileno(), self.r)
        fd.close()
        self.assertFalse(fd.valid)
        # a second close must not close whatever reuses the number
        fd.close()
        with self.assertRaises(OSError):
            os.fstat(self.r)
        with self.assertRaises(ValueError):
            fd.fileno()

    def test_context_manager(self) -> None:
        before = count_fds()
        with adopt(self.r) as fd:
            os.write(self.w, b"hello")
            self.assertEqual(os.read(fd.fileno(), 5), b"hello")
        self.assertEqual(count_fds(), before - 1)

    def test_detach(self) -> None:
        fd = adopt(self.w)
        number = fd.detach()
        self.assertEqual(number, self.w)
        self.assertFalse(fd.valid)
        fd.close()
        # still open, it's ours now
        os.write(number, b"x")

    def test_as_file(self) -> None:
        os.write(self.w, b"data")
        os.close(self.w)
        fd = adopt(self.r)
        with fd.as_file("rb") as f:
            self.assertFalse(fd.valid)
            self.assertEqual(f.read(), b"data")
        with self.assertRaises(OSError):
            os.fstat(self.r)

    def test_stat_size(self) -> None:
        with adopt(os.open("/proc/self/status", os.O_RDONLY)) as fd:
            self.assertEqual(fd.stat_size, 0)

    def test_adopt_negative(self) -> None:
        with self.assertRaises(ValueError):
            adopt(-1)

    def test_adopt_all_close_all(self) -> None:
        before = count_fds()
        fds = adopt_all([self.r, self.w])
        self.assertEqual([fd.number for fd in fds], [self.r, self.w])
        close_all(fds)
        self.assertEqual(count_fds(), before - 2)
        self.assertTrue(all(not fd.valid for fd in fds))

    def test_leak_warns(self) -> None:
        before = count_fds()
        fd: FileDescriptor = adopt(self.r)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            del fd
            gc.collect()
        self.assertTrue(any(issubclass(w.category, ResourceWarning) for w in caught))
        self.assertEqual(count_fds(), before - 1)
