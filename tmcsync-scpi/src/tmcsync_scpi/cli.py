"""Command-line interface for tmcsync.

Provides commands to inspect an instrument's status registers and to run
the driver check suite against a VISA instrument or the built-in emulator.

Usage:
    # Show the status registers
    tmcsync status --resource "USB0::0x0957::0x1796::MY12345678::INSTR"

    # Run the full driver check suite against the emulator
    tmcsync suite --emulate

    # Run selected checks with instrument-specific commands from a config
    tmcsync suite --config scope.yaml --only stb srq
"""

from __future__ import annotations

import argparse
import logging
import sys

from tmcsync_core.errors import TmcsyncError

from tmcsync_scpi.config import TmcsyncConfig, load_config
from tmcsync_scpi.connection import TmcConnection
from tmcsync_scpi.emulator import TmcEmulator
from tmcsync_scpi.registers import RegisterKind, format_register
from tmcsync_scpi.suite import CheckResult, SuiteContext, check_names, run_suite
from tmcsync_scpi.transport import TmcTransport
from tmcsync_scpi.visa import VisaTransport


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load(args: argparse.Namespace) -> TmcsyncConfig:
    if args.config:
        return load_config(args.config)
    return TmcsyncConfig()


def open_transport(args: argparse.Namespace, config: TmcsyncConfig) -> TmcTransport:
    """Open the emulator or the VISA resource selected on the command line.

    Raises:
        TmcsyncError: If no resource is given or it cannot be opened.
    """
    if args.emulate:
        transport: TmcTransport = TmcEmulator()
        transport.timeout_ms = config.instrument.timeout_ms
        return transport
    resource = args.resource or config.instrument.resource
    if not resource:
        raise TmcsyncError("No instrument resource given; use --resource, --config or --emulate")
    visa = VisaTransport(resource, timeout_ms=config.instrument.timeout_ms)
    visa.open()
    return visa


def cmd_status(args: argparse.Namespace) -> int:
    """Print the identity and the four status registers."""
    config = _load(args)
    transport = open_transport(args, config)
    conn = TmcConnection(transport, read_chunk_size=config.block.chunk_size)
    try:
        print(f"Instrument: {conn.get_identity()}")
        print(f"  {format_register(RegisterKind.STB, transport.read_stb())}")
        for kind in (RegisterKind.SRE, RegisterKind.ESE, RegisterKind.ESR):
            print(f"  {format_register(kind, conn.get_register(kind))}")
    finally:
        conn.close()
    return 0


def _print_result(result: CheckResult) -> None:
    print(
        f"  {result.name:<14} {result.status.value.upper():<8} "
        f"{result.duration_seconds:7.3f}s  {result.message}"
    )


def cmd_suite(args: argparse.Namespace) -> int:
    """Run the driver check suite."""
    config = _load(args)
    transport = open_transport(args, config)
    ctx = SuiteContext.create(transport, config)
    try:
        print(f"Instrument: {ctx.connection.identify()}")
        result = run_suite(ctx, only=args.only, on_result=_print_result)
    finally:
        ctx.connection.close()

    print()
    print(
        f"Passed: {result.passed}/{result.total}  "
        f"Failed: {result.failed}  Errors: {result.errors}  Skipped: {result.skipped}"
    )
    return 0 if result.all_passed else 1


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        "--resource", "-r",
        help="VISA resource string (default: instrument.resource from the config)"
    )
    target.add_argument(
        "--emulate", action="store_true",
        help="Use the built-in instrument emulator"
    )
    parser.add_argument(
        "--config", "-c",
        help="YAML configuration file"
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="USBTMC operation-complete synchronization tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # status command
    status_parser = subparsers.add_parser("status", help="Show the status registers")
    _add_target_arguments(status_parser)

    # suite command
    suite_parser = subparsers.add_parser("suite", help="Run the driver check suite")
    _add_target_arguments(suite_parser)
    suite_parser.add_argument(
        "--only", nargs="+", choices=check_names(), metavar="NAME",
        help=f"Checks to run (default: all of {', '.join(check_names())})"
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.debug)

    try:
        if args.command == "status":
            return cmd_status(args)
        elif args.command == "suite":
            return cmd_suite(args)
    except (TmcsyncError, FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
