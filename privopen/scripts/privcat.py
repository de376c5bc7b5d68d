"Print files we aren't allowed to read, by opening them through a privileged helper."
from __future__ import annotations
from privopen.exceptions import BrokenFactory, OpenFailed
from privopen.factory import Factory, FactoryConfig
from privopen.fcntl import O
import argparse
import shlex
import shutil
import sys
import trio
import typing as t
import logging
logger = logging.getLogger(__name__)

async def cat(factory: Factory, path: str, out: t.BinaryIO) -> None:
    "Copy one file to `out`."
    fd = await factory.open(path, O.RDONLY)
    with fd.as_file("rb") as f:
        await trio.to_thread.run_sync(shutil.copyfileobj, f, out)
    await trio.to_thread.run_sync(out.flush)

async def run(config: FactoryConfig, paths: t.List[str], out: t.BinaryIO) -> int:
    status = 0
    async with trio.open_nursery() as nursery:
        try:
            factory = await Factory.create(nursery, config)
        except OSError as e:
            print(f"privcat: can't start helper: {e}", file=sys.stderr)
            return 2
        async with factory:
            for path in paths:
                try:
                    await cat(factory, path, out)
                except OpenFailed as e:
                    print(f"privcat: {e}", file=sys.stderr)
                    status = 1
                except BrokenFactory as e:
                    print(f"privcat: {path}: {e}", file=sys.stderr)
                    return 2
    return status

def main(argv: t.Optional[t.List[str]]=None) -> int:
    parser = argparse.ArgumentParser(prog="privcat", description=__doc__)
    parser.add_argument("paths", metavar="PATH", nargs="+")
    parser.add_argument("--unprivileged", action="store_true",
                        help="run the helper as ourselves, without elevating")
    parser.add_argument("--elevate", default="sudo --",
                        help="command prefix which runs the helper with privileges (default: %(default)r)")
    parser.add_argument("--admission-timeout", type=float, default=FactoryConfig.admission_timeout,
                        metavar="S", help="how long to wait for the helper to start (default: %(default)s)")
    parser.add_argument("--round-trip-timeout", type=float, default=FactoryConfig.round_trip_timeout,
                        metavar="S", help="how long to wait for each file (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output, the helper's included")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    config = FactoryConfig(
        admission_timeout=args.admission_timeout,
        round_trip_timeout=args.round_trip_timeout,
        unprivileged=args.unprivileged,
        elevate=tuple(shlex.split(args.elevate)),
        helper_args=("--debug",) if args.verbose else (),
    )
    try:
        return trio.run(run, config, args.paths, sys.stdout.buffer)
    except* OSError as group:
        # failures writing our output; raised from inside the nursery, so possibly wrapped
        for e in group.exceptions:
            print(f"privcat: {e}", file=sys.stderr)
    return 2

if __name__ == "__main__":
    sys.exit(main())
