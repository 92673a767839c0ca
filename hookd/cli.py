#!/usr/bin/env python3
"""
hookd CLI - post-edit lint/test hooks without overlapping runs.

Usage:
    hookd lint                          Run the project's lint command for an edit (hook payload on stdin)
    hookd test                          Run the project's test command for an edit
    hookd validate                      Run lint and test in parallel for an edit
    hookd serve [--socket PATH]         Run the daemon in the foreground
    hookd status                        Show daemon stats
    hookd stop                          Stop the daemon
    hookd skip lint|test|all|list|status
    hookd unskip [lint|test|all]
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .client import create_client
from .config import Settings, load_settings
from .daemon.startup import query_daemon, resolve_socket_path, run_daemon, stop_daemon
from .errors import HookdError, TransportError
from .protocol import EXIT_INTERNAL_ERROR
from .skip_registry import SkipRegistry, SkipType

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

SKIP_MESSAGES = {
    SkipType.LINT: "Linting will be skipped in {dir}",
    SkipType.TEST: "Testing will be skipped in {dir}",
    SkipType.ALL: "Linting and testing will be skipped in {dir}",
}

UNSKIP_MESSAGES = {
    SkipType.LINT: "Linting will no longer be skipped in {dir}",
    SkipType.TEST: "Testing will no longer be skipped in {dir}",
    SkipType.ALL: "All skips removed from {dir}",
}

STATUS_LABELS = {SkipType.LINT: "Linting", SkipType.TEST: "Testing"}


def _configure_hook_logging(settings: Settings) -> None:
    """Hook runs keep stdout for the status message; diagnostics go to stderr."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if settings.debug else logging.WARNING,
        format=LOG_FORMAT,
    )


def _run_hook(method: str, settings: Settings) -> int:
    payload = sys.stdin.read()
    response = create_client(settings).call(method, payload)
    if response.error is not None:
        logging.getLogger(__name__).debug(f"{method} failed: {response.error}")
        return response.exit_code
    if response.result:
        print(response.result)
    return response.exit_code


def _run_status(socket_path: Path) -> int:
    try:
        response = query_daemon(socket_path, "stats")
    except TransportError as e:
        if not socket_path.exists():
            print(f"Server: NOT RUNNING\nSocket: {socket_path} (not found)")
        else:
            print(f"Server: NOT RUNNING\nSocket: {socket_path}\nError: {e}")
        return 1
    if response.error is not None:
        print(f"Server: ERROR\nSocket: {socket_path}\nError: {response.error}")
        return 1
    print(response.result, end="")
    return 0


def _run_skip(action: str, registry: SkipRegistry) -> int:
    cwd = os.getcwd()

    if action == "list":
        entries = registry.list_all()
        if not entries:
            print("No directories have skip configurations")
            return 0
        print("Skip configurations:")
        for entry in entries:
            types = ", ".join(sorted(t.value for t in entry.types))
            print(f"  {entry.path}: {types}")
        return 0

    if action == "status":
        types = registry.get_skip_types(cwd)
        if not types:
            print(f"No skips configured for {cwd}")
            return 0
        print(f"Skip status for {cwd}:")
        for skip_type in (SkipType.LINT, SkipType.TEST):
            if skip_type in types:
                print(f"  {STATUS_LABELS[skip_type]}: SKIPPED")
        return 0

    skip_type = SkipType.parse(action)
    registry.add_skip(cwd, skip_type)
    print(SKIP_MESSAGES[skip_type].format(dir=cwd))
    return 0


def _run_unskip(action: str, registry: SkipRegistry) -> int:
    cwd = os.getcwd()
    skip_type = SkipType.parse(action)
    if skip_type is SkipType.ALL:
        registry.clear(cwd)
    else:
        registry.remove_skip(cwd, skip_type)
    print(UNSKIP_MESSAGES[skip_type].format(dir=cwd))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hookd",
        description="Post-edit lint/test hooks without overlapping runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Version: %(prog)s """
        + __version__
        + """

Examples:
    echo "$PAYLOAD" | hookd lint         # Lint after an edit (exit 2 shows the message)
    hookd serve --verbose               # Run the daemon in the foreground
    hookd skip lint                     # Stop linting in the current directory
    hookd unskip                        # Remove all skips from the current directory

Environment:
    HOOKD_SOCKET                        Daemon socket path
    HOOKD_NO_SERVER=1                   Always run in-process
    CLAUDE_HOOKS_DEBUG=1                Debug logging on stderr
    CLAUDE_HOOKS_LINT_TIMEOUT           Lint timeout in seconds (default 30)
    CLAUDE_HOOKS_TEST_TIMEOUT           Test timeout in seconds (default 60)
        """,
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # hookd lint / test / validate
    subparsers.add_parser("lint", help="Run lint for the edited file's project (payload on stdin)")
    subparsers.add_parser("test", help="Run tests for the edited file's project (payload on stdin)")
    subparsers.add_parser("validate", help="Run lint and test in parallel (payload on stdin)")

    # hookd serve [--socket PATH] [--verbose]
    serve_p = subparsers.add_parser(
        "serve",
        help="Run the daemon in the foreground",
        description="Run the hook daemon. Stops on SIGINT/SIGTERM or 'hookd stop'.",
    )
    serve_p.add_argument("--socket", default=None, help="Socket path (default: $HOOKD_SOCKET or per-user path)")
    serve_p.add_argument("--verbose", action="store_true", help="Debug logging")

    # hookd status / stop
    subparsers.add_parser("status", help="Show daemon stats")
    subparsers.add_parser("stop", help="Stop the daemon gracefully")

    # hookd skip lint|test|all|list|status
    skip_p = subparsers.add_parser(
        "skip",
        help="Skip lint/test in the current directory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n  hookd skip lint\n  hookd skip all\n  hookd skip list\n  hookd skip status",
    )
    skip_p.add_argument("action", choices=["lint", "test", "all", "list", "status"])

    # hookd unskip [lint|test|all]
    unskip_p = subparsers.add_parser("unskip", help="Remove skips from the current directory")
    unskip_p.add_argument("action", nargs="?", default="all", choices=["lint", "test", "all"])

    subparsers.add_parser("version", help="Print version information")

    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()

    try:
        if args.command in ("lint", "test", "validate"):
            _configure_hook_logging(settings)
            sys.exit(_run_hook(args.command, settings))

        elif args.command == "serve":
            logging.basicConfig(
                level=logging.DEBUG if args.verbose else logging.INFO,
                format=LOG_FORMAT,
            )
            socket_path = Path(args.socket) if args.socket else None
            sys.exit(run_daemon(settings, socket_path))

        elif args.command == "status":
            sys.exit(_run_status(resolve_socket_path(settings)))

        elif args.command == "stop":
            socket_path = resolve_socket_path(settings)
            if stop_daemon(socket_path):
                print("Daemon stopped")
            else:
                print("Daemon not running")
                sys.exit(1)

        elif args.command == "skip":
            sys.exit(_run_skip(args.action, SkipRegistry()))

        elif args.command == "unskip":
            sys.exit(_run_unskip(args.action, SkipRegistry()))

        elif args.command == "version":
            print(f"hookd {__version__}")

    except HookdError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_INTERNAL_ERROR)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_INTERNAL_ERROR)


if __name__ == "__main__":
    main()
