"The open flag vocabulary understood by the helper; `#include <fcntl.h>` subset."
import enum
import os

__all__ = [
    "O",
    "DEFAULT_FLAGS",
    "CREATE_MODE",
    "file_mode",
]

class O(enum.IntFlag):
    """The flags argument to open, as sent to the helper.

    Values are the native Linux ones, so the helper passes them to open(2)
    unchanged. Other bits may be or-ed in; they reach the kernel as-is.

    O_CLOEXEC isn't here: descriptors always arrive in our process with
    close-on-exec set, whatever the helper opened them with.

    """
    RDONLY = os.O_RDONLY
    WRONLY = os.O_WRONLY
    RDWR = os.O_RDWR
    APPEND = os.O_APPEND
    CREAT = os.O_CREAT
    DIRECTORY = os.O_DIRECTORY
    NOFOLLOW = os.O_NOFOLLOW
    PATH = os.O_PATH
    TRUNC = os.O_TRUNC

DEFAULT_FLAGS = O.RDWR|O.CREAT
"Used by `Factory.open` when no flags are passed."

CREATE_MODE = 0o600
"Permission bits for files created by the helper through `O.CREAT`."

_ACCMODE = O.RDONLY|O.WRONLY|O.RDWR

def file_mode(flags: int) -> str:
    """Return the binary `open`/`os.fdopen` mode matching these open flags.

    fdopen never opens anything itself, so `O.TRUNC` and `O.CREAT` have
    already taken effect in the helper and don't show up in the mode.

    """
    flags = O(flags)
    if flags & O.PATH:
        raise ValueError("O_PATH descriptors can't be used as files", flags)
    access = flags & _ACCMODE
    if access == O.RDONLY:
        return "rb"
    elif flags & O.APPEND:
        return "ab" if access == O.WRONLY else "a+b"
    elif access == O.WRONLY:
        return "wb"
    else:
        return "r+b"
