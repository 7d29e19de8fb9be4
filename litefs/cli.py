"""The ``litefs`` command: dispatches to subcommands."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import socket
import subprocess
import sys
import threading

from .config import Config
from .mount import MountCommand

__all__ = ["VERSION", "COMMIT", "DEFAULT_URL", "UsageError", "version_string", "run", "main"]

logger = logging.getLogger(__name__)

VERSION = ""
COMMIT = ""

DEFAULT_URL = "http://localhost:20202"

USAGE = """\
litefs is a distributed file system for replicating SQLite databases.

Usage:

\tlitefs <command> [arguments]

The commands are:

\tmount        mount the LiteFS FUSE file system
\tversion      prints the version
"""


class UsageError(Exception):
    """Raised when the command line asks for help or names no command."""


def version_string(version: str = VERSION, commit: str = COMMIT) -> str:
    """Return a human-readable description of the build."""
    if version:
        return f"LiteFS {version}, commit={commit}"
    if commit:
        return f"LiteFS commit={commit}"
    return "LiteFS development build"


def _exec_commands(config: Config) -> subprocess.Popen | None:
    """Run every exec command but the last to completion; start the last one."""
    process = None
    last = len(config.exec) - 1
    for i, exec_config in enumerate(config.exec):
        try:
            argv = shlex.split(exec_config.cmd)
        except ValueError as exc:
            raise ValueError(f"cannot exec: cannot parse exec command[{i}]: {exc}") from exc
        if not argv:
            raise ValueError(f"cannot exec: empty exec command[{i}]")

        if exec_config.if_candidate and not config.lease.candidate:
            logger.info(
                "node is not a candidate, skipping command execution: %s %s", argv[0], argv[1:]
            )
            continue

        if i < last:
            logger.info("executing command: %s %s", argv[0], argv[1:])
            try:
                subprocess.run(argv, check=True)
            except (OSError, subprocess.CalledProcessError) as exc:
                raise RuntimeError(f"cannot exec: sync cmd: cannot run command: {exc}") from exc
        else:
            logger.info("starting background subprocess: %s %s", argv[0], argv[1:])
            try:
                process = subprocess.Popen(argv)
            except OSError as exc:
                raise RuntimeError(
                    f"cannot exec: background cmd: cannot start exec command: {exc}"
                ) from exc
    return process


def _wait(process: subprocess.Popen | None) -> int:
    """Wait for the subprocess to exit or for SIGINT/SIGTERM; return the exit code."""
    received: list[int] = []
    wake = threading.Event()

    def handler(signum, _frame):
        received.append(signum)
        wake.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
    try:
        while not received and not (process is not None and process.poll() is not None):
            wake.wait(0.05)
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)

    if received:
        if process is not None and process.poll() is None:
            print("sending signal to exec process")
            process.send_signal(received[0])
            print("waiting for exec process to close")
            code = process.wait()
            if code > 0:
                raise RuntimeError(f"cannot wait for exec process: exit status {code}")
        print("signal received, litefs shutting down")
        return 0

    code = process.returncode
    if code > 0:
        print(f"subprocess exited with error code {code}, litefs shutting down")
        return code
    if code < 0:
        print(f"subprocess exited with error, litefs shutting down: signal {-code}")
        return 1
    print("subprocess exited successfully, litefs shutting down")
    return 0


def _run_mount(args: list[str]) -> int:
    if not os.environ.get("HOSTNAME"):
        os.environ["HOSTNAME"] = socket.gethostname()

    command = MountCommand()
    try:
        command.parse_flags(args)
        command.validate()
    except (ValueError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    print(version_string())

    process = None
    try:
        command.init_backup_config_from_env()
        process = _exec_commands(command.config)
    except (ValueError, OSError, RuntimeError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        if command.config.exit_on_error:
            return 1

    print("waiting for signal or subprocess to exit")
    exit_code = _wait(process)
    print("litefs shut down complete")
    return exit_code


def run(args: list[str]) -> int:
    """Run the subcommand named by ``args[0]`` and return its exit code."""
    cmd, rest = (args[0], list(args[1:])) if args else ("", [])

    if cmd == "mount":
        return _run_mount(rest)
    if cmd == "version":
        print(version_string())
        return 0
    if cmd in ("", "help") or cmd.startswith("-"):
        print(USAGE)
        raise UsageError("usage requested")
    raise ValueError(f"litefs {cmd}: unknown command")


def main(argv: list[str] | None = None) -> int:
    """Command-line entry point; returns the process exit code."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        return run(args)
    except UsageError:
        return 2
    except (ValueError, OSError, RuntimeError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())