"""
Command-line entry point for droidtail.

Runs a device log command (by default `adb logcat -b all`) under a
StreamSupervisor and prints every line it produces.

Example:
    ```bash
    # Follow the device log, restarting adb whenever it exits
    droidtail

    # Dump the current log and exit
    droidtail --dump

    # Follow any other command, restarting it on exit, first 100 lines only
    droidtail "adb -s emulator-5554 logcat" --restart --head 100
    ```
"""

import argparse
import logging
import logging.handlers
import os
import sys
from typing import List, Optional, Tuple

from droidtail.adb import locate_adb, logcat_command
from droidtail.config import RunnerConfig, load_config
from droidtail.errors import DroidtailError
from droidtail.supervisor import StreamSupervisor

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Colors:
    """ANSI escape codes used for supervisor notices."""
    DIM = '\033[2m'
    RESET = '\033[0m'


def setup_logging(level: str = "WARNING", log_file: Optional[str] = None) -> None:
    """
    Configure logging for the droidtail process.

    Logs go to stderr so they never interleave with log lines on stdout.
    When log_file is set they are also written there through a
    WatchedFileHandler, which reopens the file after external rotation.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.handlers.WatchedFileHandler(log_file, mode='a', encoding='utf-8'))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='droidtail',
        description='Follow a device log command, merging stdout and stderr',
    )
    parser.add_argument(
        'command',
        nargs='?',
        metavar='COMMAND',
        help='Command to run instead of adb logcat (split on whitespace)'
    )
    parser.add_argument(
        '--restart', '-r',
        action='store_true',
        help='Restart COMMAND when it exits (adb logcat restarts unless --tail or --dump)'
    )
    parser.add_argument(
        '--tail', '-t',
        type=int,
        metavar='N',
        help='Print only the most recent N lines of the device log and exit'
    )
    parser.add_argument(
        '--dump', '-d',
        action='store_true',
        help='Dump the device log and exit'
    )
    parser.add_argument(
        '--head', '-H',
        type=int,
        metavar='N',
        help='Stop after N lines'
    )
    return parser


def resolve_command(args: argparse.Namespace, config: RunnerConfig) -> Tuple[str, bool]:
    """
    Work out the command line to supervise and whether to restart it.

    An explicit COMMAND restarts only with --restart. The default logcat
    command restarts unless it was asked for a one-shot --tail or --dump.

    Raises:
        AdbNotFoundError: If the default command is used and adb is missing
    """
    if args.command:
        return args.command, args.restart

    adb = locate_adb(config.adb_path)
    command = logcat_command(adb, config.logcat_buffers, tail=args.tail, dump=args.dump)
    restart = args.tail is None and not args.dump
    return command, restart


def _print_restart_notice(command: str) -> None:
    print(f'{Colors.DIM}Restarting "{command}"{Colors.RESET}', flush=True)


def run(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments, run the supervisor and print its output.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.head is not None and args.head < 0:
        parser.error('--head must be >= 0')
    if args.tail is not None and args.tail < 0:
        parser.error('--tail must be >= 0')

    try:
        config = load_config()
    except ValueError as e:
        print(f"droidtail: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level, config.log_file)

    try:
        command, restart = resolve_command(args, config)
        supervisor = StreamSupervisor.from_config(
            command, restart, args.head, config, on_restart=_print_restart_notice
        )
    except DroidtailError as e:
        logger.error(f"Failed to start: {e}")
        return 1

    try:
        with supervisor:
            for record in supervisor:
                if record is None:
                    break
                print(record.raw, flush=True)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except DroidtailError as e:
        logger.error(f"Stopped: {e}", exc_info=True)
        return 1
    except BrokenPipeError:
        # stdout consumer went away (e.g. `droidtail | head`)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    return 0


def main() -> None:
    sys.exit(run())
