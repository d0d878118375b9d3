"""Module entrypoint for `python -m fcvm`."""

from __future__ import annotations

import argparse
import logging
import shlex
import sys
from collections.abc import Sequence

from .errors import FcvmError
from .launch import launch
from .pipeline import build
from .preflight import check_host, describe


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fcvm",
        description="Turn container images into ext4 rootfs images and boot them with Firecracker.",
    )
    parser.add_argument("--app-dir", default=None, help="Override FC_HOME for this invocation.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log subprocess commands.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("check", help="Report missing host tools.")

    build_parser = commands.add_parser("build", help="Convert an image or `docker save` archive.")
    build_parser.add_argument("source", help="Image reference (name[:tag]) or path to a .tar/.tar.gz archive.")
    build_parser.add_argument("--output", default=None, help="Artifact directory (default: FC_HOME/artifacts/<name>).")
    build_parser.add_argument("--size", default=None, help="Explicit filesystem size such as 512M; skips shrinking.")
    build_parser.add_argument(
        "--entrypoint",
        type=shlex.split,
        default=None,
        help="Replace the image entrypoint (shell-split) and clear its cmd.",
    )

    launch_parser = commands.add_parser("launch", help="Boot a built artifact.")
    launch_parser.add_argument("artifact", help="Artifact directory produced by `fcvm build`.")
    launch_parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the guest program.")
    return parser


def _check(app_dir: str | None) -> int:
    result = check_host(app_dir)
    if result.ok:
        print("fcvm host is ready.")
        return 0
    print(describe(result), file=sys.stderr)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    options = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if options.command == "check":
            return _check(options.app_dir)
        if options.command == "build":
            artifact = build(
                options.source,
                options.output,
                size=options.size,
                entrypoint=options.entrypoint,
                app_dir=options.app_dir,
            )
            print(f"{artifact.name}: {artifact.rootfs.path}")
            return 0
        args = list(options.args)
        if args[:1] == ["--"]:
            args = args[1:]
        return launch(options.artifact, args, app_dir=options.app_dir)
    except FcvmError as exc:
        print(f"fcvm: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
