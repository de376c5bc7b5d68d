import os
import typing as t
import trio

import logging
logger = logging.getLogger(__name__)
# logging.basicConfig(level=logging.DEBUG)

def count_fds() -> int:
    "The number of descriptors currently open in this process."
    return len(os.listdir("/proc/self/fd"))

def process_state(pid: int) -> t.Optional[str]:
    "The one-letter state of a process from /proc, or None if there's no such process."
    try:
        with open(f"/proc/{pid}/stat", "rb") as f:
            stat = f.read()
    except FileNotFoundError:
        return None
    # the command name is parenthesized and may itself contain parentheses
    return stat[stat.rindex(b")")+2:][:1].decode()

def process_gone(pid: int) -> bool:
    "Whether this process has exited; a zombie counts as gone."
    return process_state(pid) in (None, "Z", "X")

async def wait_for_exit(pid: int, timeout: float=5.0) -> bool:
    "Poll until the process is gone, for at most `timeout` seconds."
    with trio.move_on_after(timeout):
        while not process_gone(pid):
            logger.debug("waiting for %d to exit", pid)
            await trio.sleep(0.05)
        return True
    return False
