"""Main entry point for the PADM exporter.

This module handles:
- Loading configuration from the YAML file given on the command line
- Wiring token manager, fetcher, store, poller and exporter together
- Scheduling the poll cycle with APScheduler
- Serving Prometheus metrics until interrupted
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from dotenv import load_dotenv

from padm_exporter import __version__
from padm_exporter.auth import TokenManager
from padm_exporter.client import VariableFetcher, create_session
from padm_exporter.config import ConfigError, ExporterConfig, load_config
from padm_exporter.exporter import PADMExporter
from padm_exporter.poller import Poller, RetryPolicy
from padm_exporter.store import MetricStore

# Configure module logger
logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="padm-exporter",
        description="Prometheus exporter for PADM process variables",
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to the YAML configuration file (default: config.yaml)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_poller(config: ExporterConfig, store: MetricStore, exporter: Optional[PADMExporter] = None) -> Poller:
    """Create the token manager, fetcher and poller for a configuration."""
    session = create_session(tls_insecure=config.tls_insecure)

    token_manager = TokenManager(
        base_url=config.base_url,
        username=config.username,
        password=config.password,
        session=session,
        timeout=config.timeout,
        default_ttl=config.token_ttl,
        safety_margin=config.token_margin,
    )
    fetcher = VariableFetcher(config.base_url, session=session, timeout=config.timeout)

    return Poller(
        token_manager,
        fetcher,
        store,
        config.variables,
        interval=config.interval,
        stale_after=config.staleness_threshold,
        retry_policy=RetryPolicy(
            retry_cap=config.retry_cap,
            base_delay=config.backoff_base,
            max_delay=config.backoff_max,
        ),
        exporter=exporter,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    1. Load .env file with python-dotenv
    2. Load and validate configuration
    3. Start Prometheus HTTP server
    4. Schedule the poll job (first cycle runs immediately)
    5. Keep running (block on scheduler) until SIGINT/SIGTERM

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    args = parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logger.info(f"PADM exporter {__version__} starting")

    # Credentials may come from .env via ${VAR} placeholders
    load_dotenv()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration failed, exiting: {e}")
        return 1

    logging.getLogger().setLevel(config.log_level.upper())

    store = MetricStore(config.variables)
    exporter = PADMExporter(store, host=config.listen_host, port=config.listen_port)

    try:
        exporter.start()
    except OSError as e:
        logger.error(f"Cannot listen on {config.listen_addr}, exiting: {e}")
        return 1

    logger.info(f"Prometheus metrics available at http://{config.listen_addr}/metrics")

    poller = build_poller(config, store, exporter)
    scheduler = BlockingScheduler()
    poller.schedule(scheduler)

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        poller.stop()
        # Waits for the in-flight cycle, which is bounded by the request timeout
        scheduler.shutdown(wait=True)

    signal.signal(signal.SIGTERM, shutdown)

    logger.info("Starting scheduler, press Ctrl+C to exit")
    try:
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        poller.stop()
        scheduler.shutdown(wait=True)

    exporter.stop()
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
