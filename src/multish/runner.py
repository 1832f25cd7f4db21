#!/usr/bin/env python3
"""Main entry point for multish."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from collections import Counter
from pathlib import Path

from . import __version__
from .config import (
    ExecutionConfig,
    FileConfig,
    HeaderMode,
    Mode,
    SSHOptions,
    Transport,
    expand_hosts,
    find_config_path,
    load_config,
)
from .errors import EnvironmentPreconditionError, MultishError, RunAborted, UsageError
from .executor import AsyncSSHRunner, RemoteCommandRunner, RunResult
from .interrupt import InterruptController
from .scheduler import Scheduler
from .terminal import TerminalLauncher, check_display

logger = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """argparse that reports problems as UsageError instead of exiting with 2."""

    def error(self, message: str):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="multish",
        description="Run one command on many hosts over SSH, serially or in parallel",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("-c", "--code", help="Shell code to run on each host")
    source.add_argument(
        "-f", "--file", type=Path, help="Local script piped to each host's stdin"
    )
    parser.add_argument(
        "-m", "--mode", choices=[m.value for m in Mode], help="serial or parallel (default parallel)"
    )
    parser.add_argument(
        "-w", "--windows", action="store_true", help="Open one terminal window per host"
    )
    parser.add_argument(
        "-i",
        "--interactive",
        action="store_true",
        help="Pass the local terminal through to the remote command (allocates a pty)",
    )
    parser.add_argument(
        "-o",
        "--output-files",
        action="store_true",
        help="Write output to <host>.stdout and <host>.stderr instead of the screen",
    )
    parser.add_argument(
        "-p", "--fanout", type=int, help="Maximum concurrent hosts in parallel mode (default 20)"
    )
    parser.add_argument(
        "-t", "--timeout", type=int, help="SSH connect timeout in seconds (default 10)"
    )
    parser.add_argument(
        "-H", "--header", help="Host header style: auto, multiline, inline or none"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="Print the commands instead of running them"
    )
    parser.add_argument(
        "--transport", choices=[t.value for t in Transport], help="SSH implementation to use"
    )
    parser.add_argument("--terminal", help="Terminal emulator for --windows (default xterm)")
    parser.add_argument("-l", "--user", help="Remote user name")
    parser.add_argument("--port", type=int, help="Remote SSH port")
    parser.add_argument("--identity", type=Path, help="SSH private key file")
    parser.add_argument(
        "--ssh-option",
        action="append",
        default=[],
        metavar="OPTION",
        help="Extra ssh -o option, may be repeated",
    )
    parser.add_argument("--config", type=Path, help="YAML file with defaults and host groups")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("hosts", nargs="*", metavar="HOST", help="Hosts or @group names")
    return parser


def build_config(args: argparse.Namespace, file_config: FileConfig) -> ExecutionConfig:
    """Merge command-line flags over config-file defaults."""
    defaults = file_config.defaults

    header_mode = defaults.header_mode
    if args.header is not None:
        try:
            header_mode = HeaderMode(args.header)
        except ValueError:
            raise UsageError(
                f"Invalid header mode '{args.header}' (choose from auto, multiline, inline, none)"
            ) from None

    identity = args.identity.expanduser() if args.identity else defaults.ssh_key
    ssh = SSHOptions(
        user=args.user or defaults.user,
        port=args.port or defaults.port,
        ssh_key=identity,
        options=tuple(defaults.ssh_options + args.ssh_option),
    )

    return ExecutionConfig(
        mode=Mode(args.mode) if args.mode else defaults.mode,
        fanout=args.fanout if args.fanout is not None else defaults.fanout,
        connect_timeout=args.timeout if args.timeout is not None else defaults.connect_timeout,
        header_mode=header_mode,
        interactive=args.interactive,
        output_to_files=args.output_files,
        verbose=args.verbose,
        dry_run=args.dry_run,
        detached_windows=args.windows,
        transport=Transport(args.transport) if args.transport else defaults.transport,
        terminal=args.terminal or defaults.terminal,
        ssh=ssh,
    )


def resolve_hosts(
    args: argparse.Namespace, config: ExecutionConfig, file_config: FileConfig
) -> list[str]:
    if not args.hosts:
        raise UsageError("At least one host is required")
    hosts = expand_hosts(args.hosts, file_config.host_groups)
    if config.output_to_files:
        duplicates = sorted(host for host, count in Counter(hosts).items() if count > 1)
        if duplicates:
            raise UsageError(
                f"Hosts given more than once with file output: {', '.join(duplicates)}"
            )
    return hosts


def check_environment(config: ExecutionConfig) -> None:
    """Verify the local tools the run needs before touching any host."""
    if config.dry_run:
        return
    if config.transport is Transport.OPENSSH and shutil.which("ssh") is None:
        raise EnvironmentPreconditionError("ssh client not found in PATH")
    if config.detached_windows:
        check_display()
        if shutil.which(config.terminal) is None:
            raise EnvironmentPreconditionError(f"Terminal emulator not found: {config.terminal}")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("asyncssh").setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
        if args.code is None and args.file is None:
            raise UsageError("One of --code or --file is required")
        if args.file is not None and not args.file.is_file():
            raise UsageError(f"Script not found: {args.file}")
        file_config = load_config(find_config_path(args.config))
        config = build_config(args, file_config)
        hosts = resolve_hosts(args, config, file_config)
        check_environment(config)
    except MultishError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    configure_logging(config.verbose)

    if config.transport is Transport.ASYNCSSH:
        runner = AsyncSSHRunner(config)
    else:
        runner = RemoteCommandRunner(config)
    launcher = TerminalLauncher(config, runner) if config.detached_windows else None
    controller = InterruptController(global_abort=config.global_interrupts)
    scheduler = Scheduler(config, runner, controller, launcher=launcher)

    script_path = args.file.resolve() if args.file is not None else None
    tasks = scheduler.build_tasks(hosts, args.code, script_path)

    try:
        results = asyncio.run(scheduler.run(tasks))
    except RunAborted as e:
        print(f"\n{e}", file=sys.stderr)
        return e.exit_code

    _report_failures(results)
    return 0


def _report_failures(results: list[RunResult]) -> None:
    failed_hosts = [result.host for result in results if result.failed]
    if failed_hosts:
        print(f"\nFailed hosts: {', '.join(failed_hosts)}", file=sys.stderr)


if __name__ == "__main__":
    sys.exit(main())
