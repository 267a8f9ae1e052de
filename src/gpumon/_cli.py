"""Command line entry point: ``gpumon <source>-poll``."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Sequence
from types import FrameType

from gpumon._config import load_config
from gpumon._errors import LaunchError
from gpumon._runner import run

logger = logging.getLogger("gpumon.cli")

_COMMANDS: dict[str, str] = {
    "nvidia-smi-poll": "nvidia-smi",
    "dynolog-poll": "dynolog",
    "nvml-poll": "nvml",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpumon", description="Export GPU utilization metrics over OTLP."
    )
    parser.add_argument("--endpoint", help="OTLP gRPC endpoint (host:port)")
    parser.add_argument("--service-name", help="service.name resource attribute")
    parser.add_argument(
        "--interval", type=float, metavar="SECONDS", help="export interval (default 15)"
    )
    parser.add_argument(
        "--insecure", action="store_true", default=None, help="use a plaintext gRPC channel"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("nvidia-smi-poll", help="Collect GPU metrics via nvidia-smi")
    dyn = sub.add_parser("dynolog-poll", help="Collect GPU metrics via dynolog JSON (on stderr)")
    dyn.add_argument("--dcgm-lib-path", help="path to libdcgm passed to dynolog")
    dyn.add_argument(
        "--dcgm-reporting-interval", type=int, metavar="SECONDS",
        help="dynolog GPU monitor reporting interval",
    )
    dyn.add_argument(
        "--no-echo", dest="echo", action="store_false", default=None,
        help="do not echo dynolog's stderr to the log",
    )
    sub.add_parser("nvml-poll", help="Collect GPU metrics via NVML (requires pynvml)")
    return parser


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def handle(signum: int, frame: FrameType | None) -> None:
        logger.info("received %s, shutting down", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    interval_ms = int(args.interval * 1000) if args.interval is not None else None
    try:
        config = load_config(
            endpoint=args.endpoint,
            service_name=args.service_name,
            insecure=args.insecure,
            export_interval_ms=interval_ms,
            dcgm_lib_path=getattr(args, "dcgm_lib_path", None),
            dcgm_reporting_interval_s=getattr(args, "dcgm_reporting_interval", None),
            echo_stream_lines=getattr(args, "echo", None),
        )
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        return 1
    if not config.api_key:
        logger.warning("HONEYCOMB_API_KEY is not set; exports will be unauthenticated")

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        run(config, _COMMANDS[args.command], stop_event=stop_event)
    except LaunchError as exc:
        logger.error("cannot start collector: %s", exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
