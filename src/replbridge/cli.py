"""Command-line front end: discover, describe, eval and an interactive REPL."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Optional, Sequence

from prompt_toolkit import PromptSession  # type: ignore

from replbridge import __version__, display
from replbridge.config import ReplSettings, load_settings, validate_port_requirement
from replbridge.connection import ReplConnection, create_and_start_connection
from replbridge.discovery import destroy_quietly, resolve_port
from replbridge.errors import ReplBridgeError
from replbridge.log_utils import build_log_config, configure_logging
from replbridge.nrepl import DEFAULT_SESSION_TYPE
from replbridge.outputs import collect_outputs, has_error

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

REPL_EXIT_WORDS = {":quit", ":exit", ":q"}
# How often the REPL wakes up while waiting on an evaluation, so Ctrl-C is seen.
EVAL_WAIT_INTERVAL = 0.1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="replbridge", description="Discover, start and drive nREPL servers.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Echo logs to stderr; repeat for debug output",
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--project-dir", help="Project root; working directory for --start-nrepl-cmd")
    parser.add_argument("--host", help="nREPL host (default: localhost)")
    parser.add_argument("--port", type=int, help="Explicit nREPL port; disables discovery")
    parser.add_argument("--start-nrepl-cmd", help="Shell command that starts an nREPL server")
    parser.add_argument(
        "--parse-nrepl-port",
        action="store_true",
        default=None,
        help="Read the port from the started command's output",
    )
    parser.add_argument(
        "--read-nrepl-port-file",
        action="store_true",
        default=None,
        help="Read the port from the .nrepl-port file",
    )
    parser.add_argument("--port-file", help="Location of the port file (default: <project>/.nrepl-port)")
    parser.add_argument("--env-type", dest="nrepl_env_type", help="Skip detection and use this environment type")
    parser.add_argument("--discovery-timeout-ms", type=int, help="Port discovery deadline")

    subparsers = parser.add_subparsers(dest="command", required=True)

    discover = subparsers.add_parser("discover", help="Print the resolved nREPL port")
    discover.add_argument(
        "--wait",
        action="store_true",
        help="Keep a started server running until it exits or Ctrl-C is pressed",
    )

    subparsers.add_parser("describe", help="Show the server's versions and supported ops")

    eval_parser = subparsers.add_parser("eval", help="Evaluate code and print the results")
    eval_parser.add_argument("code", help="Code to evaluate")
    eval_parser.add_argument("--timeout-ms", type=int, help="Evaluation deadline")
    eval_parser.add_argument("--session-type", default=DEFAULT_SESSION_TYPE, help="Session to evaluate in")

    repl = subparsers.add_parser("repl", help="Interactive prompt; Ctrl-C interrupts a running evaluation")
    repl.add_argument("--session-type", default=DEFAULT_SESSION_TYPE, help="Session to evaluate in")
    return parser


def settings_from_args(args: argparse.Namespace) -> ReplSettings:
    overrides: dict[str, Any] = {
        "host": args.host,
        "port": args.port,
        "start_nrepl_cmd": args.start_nrepl_cmd,
        "parse_nrepl_port": args.parse_nrepl_port,
        "read_nrepl_port_file": args.read_nrepl_port_file,
        "port_file": args.port_file,
        "nrepl_env_type": args.nrepl_env_type,
        "discovery_timeout_ms": args.discovery_timeout_ms,
    }
    settings = load_settings(config_file=args.config, project_dir=args.project_dir, **overrides)
    return validate_port_requirement(settings)


def cmd_discover(settings: ReplSettings, args: argparse.Namespace) -> int:
    result = resolve_port(settings)
    try:
        if result.port is None:
            display.print_error("command started but no port discovery is configured")
            return EXIT_ERROR
        display.print_port(result.port, result.strategy)
        if args.wait and result.process is not None:
            display.print_info(f"Serving from pid {result.process.pid}; press Ctrl-C to stop")
            while result.process.is_alive():
                time.sleep(0.5)
        return EXIT_OK
    finally:
        destroy_quietly(result.process)


def cmd_describe(settings: ReplSettings, args: argparse.Namespace) -> int:
    with create_and_start_connection(settings) as conn:
        display.print_describe(conn.describe, conn.env_type)
    return EXIT_OK


def cmd_eval(settings: ReplSettings, args: argparse.Namespace) -> int:
    with create_and_start_connection(settings) as conn:
        responses = conn.client.eval_code(args.code, session_type=args.session_type, timeout_ms=args.timeout_ms)
    display.print_outputs(collect_outputs(responses))
    return EXIT_ERROR if has_error(responses) else EXIT_OK


def _eval_interruptibly(conn: ReplConnection, executor: ThreadPoolExecutor, code: str, session_type: str) -> None:
    status = display.create_eval_status()
    future = executor.submit(conn.client.eval_code, code, session_type=session_type)
    status.start()
    interrupted = False
    try:
        while True:
            try:
                responses = future.result(timeout=EVAL_WAIT_INTERVAL)
                break
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                if interrupted:
                    raise
                interrupted = True
                status.stop()
                display.print_info("[interrupting]")
                try:
                    conn.client.interrupt()
                except ReplBridgeError as exc:
                    display.print_error(str(exc))
    finally:
        status.stop()
    display.print_outputs(collect_outputs(responses))


def cmd_repl(settings: ReplSettings, args: argparse.Namespace) -> int:
    with create_and_start_connection(settings) as conn, ThreadPoolExecutor(max_workers=1) as executor:
        display.print_info(f"Connected to {conn.env_type} nREPL on port {conn.port}; :quit to exit")
        session: PromptSession = PromptSession()
        while True:
            ns = conn.client.current_ns(args.session_type) or "user"
            try:
                line = session.prompt(f"{ns}=> ")
            except EOFError:
                break
            except KeyboardInterrupt:
                continue
            code = line.strip()
            if not code:
                continue
            if code in REPL_EXIT_WORDS:
                break
            try:
                _eval_interruptibly(conn, executor, code, args.session_type)
            except ReplBridgeError as exc:
                logger.warning("Evaluation failed: %s", exc)
                display.print_error(str(exc))
    return EXIT_OK


COMMANDS = {
    "discover": cmd_discover,
    "describe": cmd_describe,
    "eval": cmd_eval,
    "repl": cmd_repl,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])
    configure_logging(build_log_config(verbosity=args.verbose))
    try:
        settings = settings_from_args(args)
        return COMMANDS[args.command](settings, args)
    except ReplBridgeError as exc:
        logger.error("%s failed: %s", args.command, exc)
        display.print_error(str(exc))
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


def main_entry() -> None:
    raise SystemExit(main())
