"""Command-line interface for hw-tester."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NoReturn, Optional, Sequence

from . import constants
from .adapters import ConnectError, UdpTransport
from .config import TesterConfig, load_config
from .core.models import Peripheral
from .logging import configure_logging
from .orchestrator import IdAllocationError, SessionOrchestrator, SessionStatus
from .server import ResultsServer
from .store import SqliteResultStore, StoreError

LOGGER = logging.getLogger(__name__)

EXIT_ARGS_ERROR = 1
EXIT_NETWORK_ERROR = 2
EXIT_STORE_ERROR = 3

_FLAG_LETTERS = {
    "u": Peripheral.UART,
    "s": Peripheral.SPI,
    "i": Peripheral.I2C,
}

_DEFAULT_MESSAGES = {
    Peripheral.UART: constants.DEFAULT_UART_MESSAGE,
    Peripheral.SPI: constants.DEFAULT_SPI_MESSAGE,
    Peripheral.I2C: constants.DEFAULT_I2C_MESSAGE,
}

_TEST_EPILOG = """\
Selection flags:
  -u ["msg"]      Run UART test (with optional message)
  -s ["msg"]      Run SPI test (with optional message)
  -i ["msg"]      Run I2C test (with optional message)
  --all ["msg"]   Run all tests

Flags u, s, i may be stacked (e.g. -usi). A message right after a stack
applies to every peripheral in it, e.g.  hw-tester test -si "shared" -u
At least one of u, s, i (or --all) is required. No letter may appear twice.
"""


class SelectionError(ValueError):
    """Raised when the peripheral selection flags are invalid."""


@dataclass(slots=True)
class TestSelection:
    """Peripherals requested on the command line and their messages."""

    __test__ = False  # not a pytest test class

    messages: Dict[Peripheral, str] = field(default_factory=dict)
    explicit: bool = False

    @property
    def peripheral_mask(self) -> int:
        mask = 0
        for peripheral in self.messages:
            mask |= peripheral
        return mask

    @property
    def payload(self) -> str:
        """Message shared by every selected peripheral.

        When at least one message was given on the command line this is the
        message of the first selected peripheral in UART, SPI, I2C order.
        Otherwise the UART default is sent whatever the selection.
        """
        if not self.explicit:
            return constants.DEFAULT_UART_MESSAGE
        for peripheral in Peripheral.requested(self.peripheral_mask):
            return self.messages[peripheral]
        raise SelectionError("No peripheral selected")


def parse_selection(tokens: Sequence[str]) -> TestSelection:
    """Parse ``-u``/``-s``/``-i`` stacks, ``--all`` and their optional messages."""

    chosen: Dict[Peripheral, Optional[str]] = {}
    used_all = False
    index = 0

    while index < len(tokens):
        token = tokens[index]

        if token == "--all":
            if used_all:
                raise SelectionError("'--all' cannot be repeated")
            used_all = True
            stack = [Peripheral.UART, Peripheral.SPI, Peripheral.I2C]
        elif token.startswith("-") and len(token) > 1 and not token.startswith("--"):
            stack = []
            for letter in token[1:]:
                peripheral = _FLAG_LETTERS.get(letter)
                if peripheral is None:
                    raise SelectionError(f"Unknown option '-{letter}'")
                if peripheral in stack:
                    raise SelectionError(f"'-{letter}' repeated")
                stack.append(peripheral)
        else:
            raise SelectionError(f"Unexpected token '{token}'")

        for peripheral in stack:
            if peripheral in chosen:
                raise SelectionError(f"{peripheral.label} test requested more than once")

        message: Optional[str] = None
        if index + 1 < len(tokens) and not tokens[index + 1].startswith("-"):
            message = tokens[index + 1]
            index += 1
        index += 1

        for peripheral in stack:
            chosen[peripheral] = message

    if not chosen:
        raise SelectionError("At least one of -u, -s, -i, or --all must be provided")

    selection = TestSelection(
        explicit=any(message is not None for message in chosen.values())
    )
    for peripheral in Peripheral.requested(Peripheral.all()):
        if peripheral in chosen:
            message = chosen[peripheral]
            selection.messages[peripheral] = (
                message if message is not None else _DEFAULT_MESSAGES[peripheral]
            )
    return selection


def _iteration_count(value: str) -> int:
    try:
        count = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("'-n' requires a 0-255 value") from exc
    if not 0 <= count <= 0xFF:
        raise argparse.ArgumentTypeError("'-n' requires a 0-255 value")
    return count


def _test_id(value: str) -> int:
    try:
        test_id = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"Invalid test ID '{value}'. Must be non-negative integer."
        ) from exc
    if test_id < 0:
        raise argparse.ArgumentTypeError(
            f"Invalid test ID '{value}'. Must be non-negative integer."
        )
    return test_id


class _StoreOnce(argparse.Action):
    """Store an option value, rejecting a second occurrence."""

    def __call__(self, parser, namespace, values, option_string=None):
        seen = getattr(namespace, "_seen_options", set())
        if self.dest in seen:
            parser.error(f"'{option_string}' cannot be repeated")
        seen.add(self.dest)
        setattr(namespace, "_seen_options", seen)
        setattr(namespace, self.dest, values)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_ARGS_ERROR, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=constants.APP_NAME,
        description="Exercise UART/SPI/I2C peripherals on a remote unit under test",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level", help="Override the configured log level (e.g. DEBUG)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    test_parser = subparsers.add_parser(
        "test",
        help="Run peripheral tests on the UUT",
        epilog=_TEST_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    test_parser.add_argument(
        "-n",
        dest="iterations",
        action=_StoreOnce,
        type=_iteration_count,
        default=constants.DEFAULT_ITERATIONS,
        metavar="N",
        help="Number (0-255) of test iterations (default: 1)",
    )

    get_parser = subparsers.add_parser("get", help="Print test data by test ID")
    get_parser.add_argument("ids", nargs="+", type=_test_id, metavar="ID")

    subparsers.add_parser("export", help="Print all test data in CSV format")

    serve_parser = subparsers.add_parser(
        "serve", help="Serve recorded test data over HTTP"
    )
    serve_parser.add_argument("--host", help="Listen address")
    serve_parser.add_argument("--port", type=int, help="Listen port")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args, extras = parser.parse_known_args(argv)

    selection: Optional[TestSelection] = None
    if args.command == "test":
        try:
            selection = parse_selection(extras)
        except SelectionError as exc:
            parser.error(str(exc))
    elif extras:
        parser.error(f"unrecognized arguments: {' '.join(extras)}")

    config = load_config(args.config)
    configure_logging(
        args.log_level or config.logging.level,
        log_path=config.logging.path,
        log_access=config.logging.access_log,
    )

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    store = SqliteResultStore(config.store.path)

    if args.command == "test":
        if selection is None:
            raise RuntimeError("Test selection was not parsed")
        return _run_tests(config, store, selection, args.iterations)

    try:
        store.prep()
    except StoreError as exc:
        LOGGER.error("Database init failed: %s", exc)
        return EXIT_STORE_ERROR

    if args.command == "get":
        try:
            for test_id in args.ids:
                print(store.lookup_run(test_id))
        except StoreError as exc:
            LOGGER.error("Reading test records failed: %s", exc)
            return EXIT_STORE_ERROR
        return 0

    if args.command == "export":
        try:
            sys.stdout.write(store.export_all())
        except StoreError as exc:
            LOGGER.error("Export failed: %s", exc)
            return EXIT_STORE_ERROR
        return 0

    if args.command == "serve":
        server = ResultsServer(
            store,
            args.host or config.server.host,
            args.port if args.port is not None else config.server.port,
        )
        try:
            asyncio.run(server.serve_forever())
        except KeyboardInterrupt:
            LOGGER.info("Results view stopped")
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return EXIT_ARGS_ERROR


def _run_tests(
    config: TesterConfig,
    store: SqliteResultStore,
    selection: TestSelection,
    iterations: int,
) -> int:
    payload = selection.payload
    if len(payload.encode("utf-8")) > constants.MAX_PAYLOAD_SIZE:
        LOGGER.error(
            "Message is longer than %d bytes", constants.MAX_PAYLOAD_SIZE
        )
        return EXIT_ARGS_ERROR

    transport = UdpTransport(
        config.uut.host,
        config.uut.port,
        local_port=config.uut.local_port,
        receive_timeout=config.uut.receive_timeout_seconds,
    )
    try:
        transport.open()
    except ConnectError as exc:
        LOGGER.error("Network connection failed: %s", exc)
        return EXIT_NETWORK_ERROR

    try:
        try:
            store.prep()
        except StoreError as exc:
            LOGGER.error("Database init failed: %s", exc)
            return EXIT_STORE_ERROR

        orchestrator = SessionOrchestrator(
            transport, store, verify_test_id=config.uut.verify_test_id
        )
        report = asyncio.run(
            orchestrator.run(selection.peripheral_mask, iterations, payload)
        )
    finally:
        transport.close()

    print(report.render())

    if report.aborted:
        if isinstance(report.error, IdAllocationError):
            return EXIT_STORE_ERROR
        return EXIT_NETWORK_ERROR
    if report.status is SessionStatus.PERSIST_FAILED:
        return EXIT_STORE_ERROR
    return 0


if __name__ == "__main__":
    sys.exit(main())
