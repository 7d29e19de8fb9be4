"""Flag parsing, configuration loading and validation for the mount command."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Callable

from .config import Config, ExecConfig, new_config, parse_config_path, split_args

__all__ = [
    "LEASE_TYPE_CONSUL",
    "LEASE_TYPE_STATIC",
    "DEFAULT_CLOUD_URL",
    "MountCommand",
    "is_valid_lease_type",
]

logger = logging.getLogger(__name__)

LEASE_TYPE_CONSUL = "consul"
LEASE_TYPE_STATIC = "static"

BACKUP_TYPE_FILE = "file"
BACKUP_TYPE_CLOUD = "litefs-cloud"
DEFAULT_CLOUD_URL = "https://litefs.fly.io"

USAGE = """\
The mount command will mount a LiteFS directory via FUSE and begin communicating
with the LiteFS cluster. The mount will be accessible once the node becomes the
primary or is able to connect and sync with the primary.

All options are specified in the litefs.yml config file which is searched for in
the present working directory, the current user's home directory, and then
finally at /etc/litefs.yml.

Usage:

\tlitefs mount [arguments]

Arguments:
"""


def is_valid_lease_type(value: str) -> bool:
    """Return True if ``value`` names a supported lease type."""
    return value in (LEASE_TYPE_CONSUL, LEASE_TYPE_STATIC)


class _FlagParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ValueError(message)


def _build_parser() -> _FlagParser:
    parser = _FlagParser(prog="litefs-mount", add_help=False, allow_abbrev=False)
    parser.add_argument("-config", "--config", dest="config", default="", help="config file path")
    parser.add_argument(
        "-no-expand-env", "--no-expand-env", dest="no_expand_env", action="store_true",
        help="do not expand env vars in config",
    )
    parser.add_argument(
        "-fuse.debug", "--fuse.debug", dest="fuse_debug", action="store_true",
        help="enable FUSE debug logging",
    )
    parser.add_argument(
        "-debug", "--debug", dest="debug", action="store_true", help="enable DEBUG level logging"
    )
    parser.add_argument(
        "-tracing", "--tracing", dest="tracing", action="store_true",
        help="enable trace logging to stdout",
    )
    parser.add_argument("-h", "-help", "--help", dest="help", action="store_true")
    parser.add_argument("rest", nargs="*")
    return parser


class MountCommand:
    """Holds the configuration of a mount and checks that it is usable."""

    def __init__(self) -> None:
        self.config: Config = new_config()
        self.advertise_url_fn: Callable[[], str] | None = None
        self.trace_to_stdout = False
        self.trace_path = ""

    def parse_flags(self, args: list[str]) -> None:
        """Parse command-line flags and load the configuration file.

        Arguments after ``--`` replace the configured exec command. Asking for
        help prints the usage text and exits with status 2.
        """
        args0, args1 = split_args(args)

        parser = _build_parser()
        parsed = parser.parse_args(args0)
        if parsed.help:
            print(USAGE)
            print(parser.format_help())
            raise SystemExit(2)
        if parsed.rest:
            raise ValueError("too many arguments, specify a '--' to specify an exec command")

        parse_config_path(parsed.config, not parsed.no_expand_env, self.config)

        if args1 is not None:
            self.config.exec = [ExecConfig(cmd=" ".join(args1))]

        if parsed.fuse_debug:
            self.config.fuse.debug = True
        if parsed.debug:
            self.config.log.debug = True

        tracing = self.config.tracing
        if tracing.enabled and tracing.path:
            logger.info("trace log enabled: %s", tracing.path)
            self.trace_path = tracing.path
        self.trace_to_stdout = parsed.tracing

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot be used to mount."""
        config = self.config
        if not config.fuse.dir:
            raise ValueError("fuse directory required")
        if not config.data.dir:
            raise ValueError("data directory required")
        if config.fuse.dir == config.data.dir:
            raise ValueError("fuse directory and data directory cannot be the same path")

        if not is_valid_lease_type(config.lease.type):
            raise ValueError(
                "invalid lease type, must be either 'consul' or 'static', "
                f"got: '{config.lease.type}'"
            )

        if config.lease.candidate and config.lease.databases:
            raise ValueError("cannot specify a database replication filter on candidate nodes")

    def init_backup_config_from_env(self) -> None:
        """Apply LITEFS_CLOUD_* environment settings and defaults to the backup config.

        Raises ValueError for an unknown backup type.
        """
        backup = self.config.backup

        token = os.environ.get("LITEFS_CLOUD_TOKEN", "").strip()
        if token:
            endpoint = os.environ.get("LITEFS_CLOUD_ENDPOINT", "").strip()
            if endpoint:
                backup.url = endpoint
            if backup.type in ("", BACKUP_TYPE_CLOUD):
                backup.type = BACKUP_TYPE_CLOUD
                if not backup.auth_token:
                    backup.auth_token = token

        if backup.type == BACKUP_TYPE_CLOUD and not backup.url:
            backup.url = DEFAULT_CLOUD_URL

        if backup.type not in ("", BACKUP_TYPE_FILE, BACKUP_TYPE_CLOUD):
            raise ValueError(f'invalid backup client type: "{backup.type}"')

    def advertise_url(self, hostname: str, port: int) -> str:
        """Return the URL other nodes use to reach this node's API."""
        url = self.config.lease.advertise_url
        if self.advertise_url_fn is not None:
            url = self.advertise_url_fn()
        if not url and hostname:
            url = f"http://{hostname}:{port}"
        return url