"""Application entrypoint."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional, TextIO

from baud_table import BaudTable
from config import DEFAULT_READ_TIMEOUT_S, JsonConfigStore, SessionConfig
from control_loop import ControlLoop
from errors import ERROR_MESSAGES, TransportError
from interfaces import ConfigStore, ConfigWriter
from log_setup import configure_logging, get_logger
from minicom import MinicomConfigWriter
from models import BaudCandidate, Mode, SessionResult
from terminal import PosixTerminalIO
from transport import PySerialTransport

VERSION = "0.2"
EXIT_STATUS = 1
DELIM = "@" * 67
CENTER_PADDING = " " * 18


def banner(text: str) -> str:
    return f"\n\n{DELIM}\n{CENTER_PADDING}{text}\n{DELIM}\n\n"


def parse_args(argv: Optional[List[str]] = None, store: Optional[ConfigStore] = None) -> argparse.Namespace:
    if argv is None:
        argv = sys.argv[1:]
    store = store or JsonConfigStore()

    p = argparse.ArgumentParser(
        prog="baudrate",
        description="Identify the baud rate of an unknown serial port, automatically or with the arrow keys.",
    )
    p.add_argument("port", nargs="?", default=store.get_port(), help="Serial device [%(default)s]")
    p.add_argument(
        "-t",
        dest="wait_period",
        type=float,
        default=store.get_wait_period(),
        help="Seconds to wait before switching baud rates in auto detect mode [%(default)s]",
    )
    p.add_argument(
        "-c",
        dest="threshold",
        type=int,
        default=store.get_threshold(),
        help="Minimum run of ASCII characters needed to detect a baud rate [%(default)s]",
    )
    p.add_argument("-n", dest="name", default="", help="Save the minicom configuration as NAME and launch minicom")
    p.add_argument("-E", dest="no_launch", action="store_true", help="Do not launch minicom when -n is given")
    p.add_argument("-m", dest="manual", action="store_true", help="Manual mode: use the up/down arrow keys")
    p.add_argument("-b", dest="list_rates", action="store_true", help="Display supported baud rates and exit")
    p.add_argument("-p", dest="no_prompt", action="store_true", help="Disable interactive prompts")
    p.add_argument("-q", dest="quiet", action="store_true", help="Quiet mode, implies -p")
    p.add_argument("--log-level", dest="log_level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-file", dest="log_file", default=None, help="Append JSON log records to this file")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    args = p.parse_args(argv)
    if args.threshold < 1:
        p.error("-c must be at least 1")
    if args.wait_period < 1:
        p.error("-t must be at least 1 second")
    if args.quiet:
        args.no_prompt = True
    if not args.manual and store.get_mode() == Mode.MANUAL.value:
        args.manual = True
    return args


def list_rates(table: BaudTable, out: TextIO) -> None:
    out.write("\n")
    for candidate in table:
        out.write(f"{candidate.label:>6} baud\n")
    out.write("\n")


def prompt_config_name(stdin: TextIO, err: TextIO) -> str:
    err.write("\nSave serial port configuration as [stdout]: ")
    err.flush()
    return stdin.readline().strip()


class App:
    def __init__(self, args: argparse.Namespace, store: Optional[ConfigStore] = None) -> None:
        self.args = args
        self.store = store or JsonConfigStore()
        self.table = BaudTable()
        self.err = sys.stderr
        self.logger = get_logger(__name__)
        config = SessionConfig(
            mode=Mode.MANUAL if args.manual else Mode.AUTO,
            threshold=args.threshold,
            wait_period=args.wait_period,
            read_timeout=DEFAULT_READ_TIMEOUT_S,
        )
        self.controller = ControlLoop(
            port=args.port,
            transport=PySerialTransport(read_timeout_s=config.read_timeout),
            config=config,
            table=self.table,
            terminal=PosixTerminalIO(),
            on_baud_change=self._on_baud_change,
            on_data=self._on_data,
            on_error=self._on_error,
        )
        self.writer: ConfigWriter = MinicomConfigWriter(self.store.get_minicom_dir())

    # ------------------------------------------------------------------
    # Callbacks (reader thread and control loop)
    # ------------------------------------------------------------------

    def _on_baud_change(self, candidate: BaudCandidate) -> None:
        if not self.args.quiet:
            self.err.write(banner(f"Serial baud rate set to: {candidate.label}"))
            self.err.flush()

    def _on_data(self, data: bytes) -> None:
        if not self.args.quiet:
            self.err.buffer.write(data)
            self.err.buffer.flush()

    def _on_error(self, code: str, message: str) -> None:
        self.err.write(f"\n{ERROR_MESSAGES.get(code, code)} {message}\n")
        self.err.flush()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        if not self.args.quiet:
            if self.args.manual:
                self.err.write("\nPress the up or down arrow keys to increase or decrease the baud rate.\n")
            else:
                self.err.write("\nAuto detecting baudrate. ")
            self.err.write("Press Ctrl+C to quit.\n")
            self.err.flush()

        try:
            result = self.controller.run()
        except TransportError:
            return EXIT_STATUS

        if not self.args.quiet:
            self.err.write(banner(f"Detected baud rate: {result.candidate.label} baud"))
            self.err.flush()
        self.logger.info(
            "Session finished: %s",
            result.reason.value,
            extra={"port": result.port, "baud": result.candidate.rate, "cycle_count": result.cycle_count},
        )
        self.emit_config(result)
        return EXIT_STATUS

    def emit_config(self, result: SessionResult) -> None:
        name = self.args.name
        if not name and not self.args.no_prompt:
            try:
                name = prompt_config_name(sys.stdin, self.err)
            except (EOFError, KeyboardInterrupt):
                name = ""
        saved = self.writer.write(result.port, result.candidate, name)
        if saved is None:
            return
        self.err.write(f"\nMinicom configuration data saved to: {saved}\n")
        if self.args.name and not self.args.no_launch:
            self.writer.launch(name)


def main(argv: Optional[List[str]] = None) -> int:
    store = JsonConfigStore()
    args = parse_args(argv, store)
    configure_logging(level=args.log_level, json_file=args.log_file)
    if args.list_rates:
        list_rates(BaudTable(), sys.stderr)
        return EXIT_STATUS
    app = App(args, store)
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
