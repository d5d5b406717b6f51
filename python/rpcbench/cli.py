"""
Command-line entry point

    rpcbench call SERVER
    rpcbench stream-call SERVER [SERVER ...] [-p N] [-a] [--preread] [--dry-run]
    rpcbench bench SERVER [SERVER ...] [-c N] [--io-driver KIND] [--dry-run] [--no-metadata] [--stats]
    rpcbench stats
    rpcbench req METHOD [PARAMS] [--id ID]
    rpcbench run-echo-server ADDR

Stdout carries protocol output only; logs go to stderr.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Callable, List, Optional, TextIO

import orjson

from rpcbench import __version__
from rpcbench.addresses import normalize_server_addr, split_host_port
from rpcbench.config_loader import IO_DRIVERS, Config, initialize_config
from rpcbench.echo_server import run_echo_server
from rpcbench.engine.event_loop import BenchRunner
from rpcbench.engine.workers import StreamCaller
from rpcbench.errors import ProtocolError, RpcBenchError, exit_code_for
from rpcbench.protocol import make_request, parse_request, serialize
from rpcbench.records import OutputRecord
from rpcbench.stats import StatsAccumulator

logger = logging.getLogger("rpcbench")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def server_addr(value: str) -> str:
    """argparse type for `host:port` targets (`:port` means loopback)"""
    addr = normalize_server_addr(value)
    try:
        split_host_port(addr)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return addr


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rpcbench",
        description="JSON-RPC 2.0 client and benchmark tool over JSON Lines / TCP",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="PATH", help="Path to runtime.yaml")
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Log level for stderr output (default: from config)",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    call = subparsers.add_parser("call", help="Send requests from stdin one at a time")
    call.add_argument("server", type=server_addr, help="Target HOST:PORT")
    call.set_defaults(handler=cmd_call)

    stream_call = subparsers.add_parser(
        "stream-call", help="Send requests from stdin over one pipelined connection per server"
    )
    stream_call.add_argument("servers", nargs="+", type=server_addr, metavar="SERVER")
    stream_call.add_argument("-p", "--pipelining", type=positive_int, help="Max outstanding calls per connection")
    stream_call.add_argument(
        "-a", "--add-metadata", action="store_true", help="Attach timing metadata to every response"
    )
    stream_call.add_argument("--preread", action="store_true", help="Read all input before sending")
    stream_call.add_argument("--dry-run", action="store_true", help="Answer locally with result: null")
    stream_call.set_defaults(handler=cmd_stream_call)

    bench = subparsers.add_parser("bench", help="Run requests from stdin through the event-loop engine")
    bench.add_argument("servers", nargs="+", type=server_addr, metavar="SERVER")
    bench.add_argument("-c", "--concurrency", type=positive_int, help="Global in-flight budget")
    bench.add_argument("--io-driver", choices=IO_DRIVERS, help="Channel I/O strategy")
    bench.add_argument("--dry-run", action="store_true", help="Answer locally with result: null")
    bench.add_argument("--no-metadata", action="store_true", help="Skip per-call timing metadata")
    bench.add_argument("--stats", action="store_true", help="Print a summary instead of responses")
    bench.set_defaults(handler=cmd_bench)

    stats = subparsers.add_parser("stats", help="Summarize output records read from stdin")
    stats.set_defaults(handler=cmd_stats)

    req = subparsers.add_parser("req", help="Print one JSON-RPC request object")
    req.add_argument("method")
    req.add_argument("params", nargs="?", help="JSON array or object")
    req.add_argument("--id", dest="request_id", help="Request id (integer or string); omit for a notification")
    req.set_defaults(handler=cmd_req)

    echo = subparsers.add_parser("run-echo-server", help="Run a JSON-RPC echo server")
    echo.add_argument("addr", type=server_addr, help="Listen HOST:PORT")
    echo.set_defaults(handler=cmd_run_echo_server)

    return parser


def _record_writer(out: TextIO, flush: bool = False) -> Callable[[OutputRecord], None]:
    def write(record: OutputRecord) -> None:
        out.write(record.to_json())
        out.write("\n")
        if flush:
            out.flush()

    return write


def cmd_call(args: argparse.Namespace, config: Config) -> int:
    caller = StreamCaller(
        [args.server],
        sink=_record_writer(sys.stdout, flush=True),
        pipelining=1,
        config=config,
    )
    return EXIT_FAILURE if caller.run(sys.stdin) else EXIT_OK


def cmd_stream_call(args: argparse.Namespace, config: Config) -> int:
    caller = StreamCaller(
        args.servers,
        sink=_record_writer(sys.stdout),
        pipelining=args.pipelining,
        add_metadata=args.add_metadata,
        dry_run=args.dry_run,
        config=config,
    )
    failed = caller.run(sys.stdin, preread=args.preread)
    sys.stdout.flush()
    return EXIT_FAILURE if failed else EXIT_OK


def cmd_bench(args: argparse.Namespace, config: Config) -> int:
    requests = [parse_request(line) for line in sys.stdin if line.strip()]
    concurrency = args.concurrency or config.concurrency

    stats = StatsAccumulator() if args.stats else None
    sink = stats.add if stats is not None else _record_writer(sys.stdout)

    runner = BenchRunner.connect(
        args.servers,
        concurrency,
        sink,
        io_driver=args.io_driver,
        dry_run=args.dry_run,
        collect_metadata=not args.no_metadata,
        config=config,
    )
    with runner:
        runner.run(requests)

    if stats is not None:
        sys.stdout.write(serialize(stats.finalize().to_dict()) + "\n")
    sys.stdout.flush()
    return EXIT_FAILURE if runner.failed_channels else EXIT_OK


def cmd_stats(args: argparse.Namespace, config: Config) -> int:
    stats = StatsAccumulator()
    for line in sys.stdin:
        stats.add_line(line)
    sys.stdout.write(serialize(stats.finalize().to_dict()) + "\n")
    return EXIT_OK


def _parse_request_id(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        return value


def cmd_req(args: argparse.Namespace, config: Config) -> int:
    params = None
    if args.params is not None:
        try:
            params = orjson.loads(args.params)
        except orjson.JSONDecodeError as exc:
            raise ProtocolError(f"PARAMS is not valid JSON ({exc})", args.params) from exc
    request_id = _parse_request_id(args.request_id) if args.request_id is not None else None
    sys.stdout.write(serialize(make_request(args.method, params, request_id)) + "\n")
    return EXIT_OK


def cmd_run_echo_server(args: argparse.Namespace, config: Config) -> int:
    asyncio.run(run_echo_server(args.addr))
    return EXIT_OK


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = initialize_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        configure_logging(args.log_level or "WARNING")
        logger.error(f"Invalid configuration: {exc}")
        return EXIT_USAGE

    configure_logging(args.log_level or config.effective_log_level())
    logger.debug(f"rpcbench {__version__}: {args.command}")

    try:
        return args.handler(args, config)
    except RpcBenchError as exc:
        logger.error(str(exc))
        return exit_code_for(exc)
    except ValueError as exc:
        logger.error(str(exc))
        return EXIT_USAGE
    except BrokenPipeError:
        # Downstream closed stdout (e.g. piped into `head`)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
