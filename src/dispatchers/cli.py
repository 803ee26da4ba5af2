#!/usr/bin/env python3
"""k8s-dispatchers - kamailio dispatcher list from Kubernetes Endpoints

Keeps kamailio's dispatcher list in sync with the Endpoints of one or more
Kubernetes Services and tells kamailio to reload the list (BINRPC
``dispatcher.reload`` over UDP) whenever it changes.

Command line:

    --set [namespace:]name=index[:port]
                           Dispatcher set backed by the Service `name`. `index`
                           is the dispatcher set number, `port` the port on
                           which SIP is signaled to its members. May be passed
                           multiple times or as a comma-separated list.
    -o, --output PATH      Output file for the dispatcher list
    -h, --rpc-host HOST    Host of kamailio's BINRPC service
    -p, --rpc-port PORT    Port of kamailio's BINRPC service
    --kubecfg PATH         kubecfg file, when not running inside Kubernetes
    --api ADDR             Address for the membership check API, e.g. ":8080"
                           (default: disabled)
    --help                 Show help

Environment variables:

    Defaults for the command line:
        DISPATCHER_SETS            Comma-separated set definitions
        OUTPUT_FILENAME            (default: /data/kamailio/dispatcher.list)
        RPC_HOST                   (default: 127.0.0.1)
        RPC_PORT                   (default: 9998)
        KUBECFG                    (default: unset)
        API_ADDR                   (default: unset)

    Set definitions:
        POD_NAMESPACE              Namespace for sets that do not name one (default: default)
        DISPATCHER_PORT            SIP port for sets that do not name one (default: 5060)

    Runtime:
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
        STARTUP_RENOTIFY_SECONDS   Delay before the follow-up startup notify (default: 60)
        WATCH_TIMEOUT_SECONDS      Server-side timeout of each Endpoints watch (default: 300)
        MIN_RUNTIME_SECONDS        Runs shorter than this count as short deaths (default: 60)
        MAX_SHORT_DEATHS           Short deaths tolerated before exiting (default: 10)
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .api import ApiServer, parse_listen_addr
from .errors import DispatcherError, NotifyError
from .sets import KubeClient, KubernetesSet, SetDefinition, connect, parse_set_definitions
from .supervisor import Supervisor
from .syncer import DispatcherSets, Notifier

# =============================================================================
# Configuration
# =============================================================================

DISPATCHER_SETS = os.getenv("DISPATCHER_SETS", "")
OUTPUT_FILENAME = os.getenv("OUTPUT_FILENAME", "/data/kamailio/dispatcher.list")
RPC_HOST = os.getenv("RPC_HOST", "127.0.0.1")
RPC_PORT = os.getenv("RPC_PORT", "9998")
KUBECFG = os.getenv("KUBECFG", "")
API_ADDR = os.getenv("API_ADDR", "")

POD_NAMESPACE = os.getenv("POD_NAMESPACE", "") or "default"
DISPATCHER_PORT = os.getenv("DISPATCHER_PORT", "") or "5060"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
STARTUP_RENOTIFY_SECONDS = float(os.getenv("STARTUP_RENOTIFY_SECONDS", "60"))
WATCH_TIMEOUT_SECONDS = int(os.getenv("WATCH_TIMEOUT_SECONDS", "300"))
MIN_RUNTIME_SECONDS = float(os.getenv("MIN_RUNTIME_SECONDS", "60"))
MAX_SHORT_DEATHS = int(os.getenv("MAX_SHORT_DEATHS", "10"))

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Config:
    """Validated process configuration."""

    sets: List[SetDefinition]
    output_filename: str = OUTPUT_FILENAME
    rpc_host: str = RPC_HOST
    rpc_port: str = RPC_PORT
    kubecfg: str = KUBECFG
    api_addr: str = API_ADDR
    startup_renotify_seconds: float = STARTUP_RENOTIFY_SECONDS
    watch_timeout_seconds: int = WATCH_TIMEOUT_SECONDS


# =============================================================================
# Argument Parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k8s-dispatchers",
        description="Keep kamailio's dispatcher list in sync with Kubernetes Endpoints",
        add_help=False,
    )
    parser.add_argument("--help", action="help", help="show this help message and exit")
    parser.add_argument(
        "--set",
        dest="sets",
        action="append",
        default=[],
        metavar="[NAMESPACE:]NAME=INDEX[:PORT]",
        help="dispatcher set definition; may be repeated",
    )
    parser.add_argument("-o", "--output", default=OUTPUT_FILENAME, help="output file for dispatcher list")
    parser.add_argument("-h", "--rpc-host", default=RPC_HOST, help="host for kamailio's RPC service")
    parser.add_argument("-p", "--rpc-port", default=RPC_PORT, help="port for kamailio's RPC service")
    parser.add_argument("--kubecfg", default=KUBECFG, help="kubecfg file (if not running inside k8s)")
    parser.add_argument("--api", default=API_ADDR, help="address for the web API, e.g. ':8080'")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> Config:
    parser = build_parser()
    args = parser.parse_args(argv)

    raw_sets = list(args.sets) or ([DISPATCHER_SETS] if DISPATCHER_SETS else [])
    definitions: List[SetDefinition] = []
    for raw in raw_sets:
        try:
            definitions.extend(parse_set_definitions(raw, POD_NAMESPACE, DISPATCHER_PORT))
        except ValueError as e:
            parser.error(str(e))

    if not definitions:
        parser.error("at least one --set is required")

    seen = set()
    for definition in definitions:
        if definition.id in seen:
            parser.error(f"dispatcher set index {definition.id} defined more than once")
        seen.add(definition.id)

    if args.api:
        try:
            parse_listen_addr(args.api)
        except ValueError as e:
            parser.error(str(e))

    return Config(
        sets=definitions,
        output_filename=args.output,
        rpc_host=args.rpc_host,
        rpc_port=args.rpc_port,
        kubecfg=args.kubecfg,
        api_addr=args.api,
    )


# =============================================================================
# Run
# =============================================================================


def run(
    config: Config,
    stop: threading.Event,
    *,
    connect_fn: Callable[[str], KubeClient] = connect,
) -> None:
    """One supervised attempt: set up, export, notify, then reconcile until stopped."""
    client = connect_fn(config.kubecfg)

    registry = DispatcherSets(
        output_filename=config.output_filename,
        notifier=Notifier(config.rpc_host, config.rpc_port),
        source_factory=lambda d: KubernetesSet(
            client,
            d.id,
            d.namespace,
            d.name,
            d.port,
            watch_timeout_seconds=config.watch_timeout_seconds,
        ),
    )

    for definition in config.sets:
        registry.add(definition)

    try:
        registry.update_all()
    except Exception as e:
        raise DispatcherError(f"failed to run initial dispatcher set update: {e}") from e

    registry.export_all()

    try:
        registry.notify()
    except NotifyError as e:
        logger.warning(
            f"NOTICE: failed to notify kamailio after initial dispatcher export; "
            f"kamailio may not be up yet: {e}"
        )

    api: Optional[ApiServer] = None
    if config.api_addr:
        api = ApiServer(registry, config.api_addr)
        api.start()

    followup = registry.notifier.schedule_followup(config.startup_renotify_seconds)

    try:
        registry.reconcile(stop)
    finally:
        if api is not None:
            api.stop()
        if stop.is_set():
            followup.cancel()


def install_signal_handlers(stop: threading.Event) -> None:
    def _handle(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}")
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    config = parse_args(argv)

    logger.info("k8s-dispatchers starting")
    logger.info(f"Dispatcher sets: {', '.join(str(d) for d in config.sets)}")
    logger.info(f"Output file: {config.output_filename}")
    logger.info(f"kamailio RPC: {config.rpc_host}:{config.rpc_port}")
    if config.api_addr:
        logger.info(f"Membership API: {config.api_addr}")

    stop = threading.Event()
    install_signal_handlers(stop)

    supervisor = Supervisor(
        lambda: run(config, stop),
        stop,
        min_runtime_seconds=MIN_RUNTIME_SECONDS,
        max_short_deaths=MAX_SHORT_DEATHS,
    )
    sys.exit(supervisor.run())


if __name__ == "__main__":
    main()
