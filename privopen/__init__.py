"""Open files with someone else's privileges

privopen lets an unprivileged process obtain open file descriptors for files
it can't open itself. It launches a helper through an elevation command such
as `sudo`; the helper opens files on request and passes the descriptors back
over a unix socket. Everything else, reading and writing included, happens in
our own process with ordinary system calls on the descriptor we received.

## `Factory`

The main entry point is `privopen.factory.Factory`.
One `Factory` exists for each helper process.

`Factory.create` takes a trio nursery, in which it runs the task that talks to
the helper, and a `FactoryConfig` which says how to launch the helper and how
long to wait for it. `Factory.open` then opens a path with open(2) flags from
`privopen.fcntl.O`, and returns an owned `FileDescriptor`;
`Factory.open_file` returns a Python file object instead.

```
async with trio.open_nursery() as nursery:
    async with await Factory.create(nursery) as factory:
        with await factory.open("/etc/shadow", O.RDONLY) as fd:
            print(fd.stat_size)
```

## Errors

`OpenFailed` is an `OSError` for one path the helper couldn't open; the
factory is still usable afterwards. `BrokenFactory` means the factory is
closed: explicitly, or because the helper died, misbehaved, or didn't answer in
time. A broken factory stays broken.

## The helper

`privopen.helper` is the helper program. It uses nothing but the standard
library, and serves one request at a time. It holds a pseudo-terminal as its
controlling terminal, whose master side it hands to us during startup; when we
close the master, the helper gets SIGHUP and dies, even if it runs as a user
we're not allowed to signal.

"""
from privopen.exceptions import BrokenFactory, OpenFailed
from privopen.factory import Factory, FactoryConfig, State
from privopen.fcntl import O
from privopen.handle import FileDescriptor

__all__ = [
    'Factory', 'FactoryConfig', 'State',
    'BrokenFactory', 'OpenFailed',
    'FileDescriptor',
    'O',
]
