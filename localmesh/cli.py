"""Command-line entry point for the local service mesh."""

from __future__ import annotations

import argparse
import contextlib
import signal
import subprocess
import sys
import threading
from typing import Iterator, Sequence

from . import runner
from .config import Config, ConfigError, load
from .hosts import HostsFileCorruptedError
from .kube import KubeError

PROG = "kubectl-localmesh"

_CLI_ERRORS = (
    ValueError,
    KubeError,
    HostsFileCorruptedError,
    OSError,
    subprocess.CalledProcessError,
)


def resolve_config_path(config_flag: str | None, positional: str | None) -> str:
    """Pick the config path from the flag, falling back to the positional argument."""
    path = config_flag or positional or ""
    if not path:
        raise ValueError("config file required: use -f or provide as argument")
    return path


def _load_config(path: str) -> Config:
    try:
        return load(path)
    except (OSError, ConfigError) as exc:
        raise ConfigError(f"failed to load config: {exc}") from exc


@contextlib.contextmanager
def _stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    signals = (signal.SIGINT, signal.SIGTERM)
    previous = {sig: signal.getsignal(sig) for sig in signals}
    for sig in signals:
        signal.signal(sig, lambda _signum, _frame: stop_event.set())
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _run_up(args: argparse.Namespace) -> int:
    cfg = _load_config(resolve_config_path(args.config, args.config_file))
    stop_event = threading.Event()
    with _stop_on_signals(stop_event):
        runner.run(cfg, args.log_level, not args.no_edit_hosts, stop_event)
    return 0


def _run_dump(args: argparse.Namespace) -> int:
    cfg = _load_config(resolve_config_path(args.config, args.config_file))
    runner.dump_envoy_config(cfg, args.mock_config, sys.stdout)
    return 0


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("config_file", nargs="?", default=None, metavar="config-file")
    parser.add_argument("-f", "--config", default="", help="config yaml path")
    parser.add_argument(
        "--log-level",
        default=argparse.SUPPRESS,
        help="log level: debug|info|warn",
    )


def build_parser() -> argparse.ArgumentParser:
    """The argument parser with the 'up' and 'dump-envoy-config' commands."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description=(
            "Local-only pseudo service mesh built on kubectl port-forward. "
            "It runs a local Envoy proxy for host-based routing without "
            "installing anything into your cluster."
        ),
    )
    parser.add_argument("--log-level", default="info", help="log level: debug|info|warn")
    commands = parser.add_subparsers(dest="command", metavar="command")

    up = commands.add_parser(
        "up",
        help="Start the local service mesh",
        description=(
            "Start port-forwards for all configured services and run a local "
            "Envoy proxy for host-based routing."
        ),
    )
    _add_common(up)
    up.add_argument(
        "--no-edit-hosts",
        action="store_true",
        default=False,
        help="skip updating /etc/hosts",
    )
    up.set_defaults(handler=_run_up)

    dump = commands.add_parser(
        "dump-envoy-config",
        help="Dump the Envoy configuration to stdout",
        description=(
            "Generate the Envoy configuration without starting any services "
            "and write it to stdout."
        ),
    )
    _add_common(dump)
    dump.add_argument(
        "--mock-config",
        default="",
        help="mock configuration for offline use (no cluster connection)",
    )
    dump.set_defaults(handler=_run_dump)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; return the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0
    try:
        return args.handler(args)
    except _CLI_ERRORS as exc:
        print(exc, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())