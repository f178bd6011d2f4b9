"""
Entry point for running the gallery pipeline.

Usage:
    # Run until interrupted
    python -m gallery_pipeline

    # Use a config file and seed some uploads into the object store
    python -m gallery_pipeline --config config.yaml --upload ./photos

    # Run for a fixed time, then shut down gracefully
    python -m gallery_pipeline --upload cat.png --run-seconds 10

Configuration:
    YAML file (--config, default ./config.yaml if present) overridden by
    environment variables; see gallery_pipeline.config.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

from prometheus_client import start_http_server

from core.errors import ConfigurationError
from core.logging import get_logger, log_with_context, set_log_context, setup_multi_worker_logging
from gallery_pipeline.config import load_config
from gallery_pipeline.topology import WORKER_STAGES, Topology, build_topology

# Placeholder logger until logging is configured in main()
logger = logging.getLogger(__name__)

# Set by signal handlers; the pipeline stops gracefully when it is set
_shutdown_event: Optional[asyncio.Event] = None


def get_shutdown_event() -> asyncio.Event:
    """Get or create the global shutdown event."""
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the gallery ingestion pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with defaults
    python -m gallery_pipeline

    # Seed uploads and tag them with the uploader's address
    python -m gallery_pipeline --upload ./photos --uploader-email me@example.com

    # Disable the metrics server
    python -m gallery_pipeline --metrics-port 0
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (default: ./config.yaml if it exists)",
    )

    parser.add_argument(
        "--upload",
        type=Path,
        action="append",
        default=[],
        metavar="PATH",
        help="File or directory to upload into the object store at startup (repeatable)",
    )

    parser.add_argument(
        "--uploader-email",
        type=str,
        default=None,
        help="Email stored as object metadata on seeded uploads",
    )

    parser.add_argument(
        "--run-seconds",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server, 0 to disable (default: 8000)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    return parser.parse_args(argv)


def collect_uploads(paths: List[Path]) -> List[Path]:
    """Expand directories into the files they contain, sorted by name."""
    files: List[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.is_file()))
        elif path.is_file():
            files.append(path)
        else:
            log_with_context(logger, logging.WARNING, "Upload path not found", key=str(path))
    return files


async def seed_uploads(topology: Topology, files: List[Path], email: Optional[str]) -> None:
    metadata = {"email": email} if email else None
    for path in files:
        await topology.object_store.put_object(path.name, path.read_bytes(), metadata=metadata)


async def run_pipeline(
    topology: Topology,
    uploads: List[Path],
    uploader_email: Optional[str] = None,
    run_seconds: Optional[float] = None,
) -> None:
    """Run the topology until shutdown is requested or run_seconds elapse."""
    shutdown_event = get_shutdown_event()
    set_log_context(stage="pipeline")

    await topology.start()
    try:
        await seed_uploads(topology, uploads, uploader_email)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=run_seconds)
        except asyncio.TimeoutError:
            logger.info("Run time elapsed, shutting down...")
    finally:
        await topology.stop()

    log_with_context(
        logger,
        logging.INFO,
        "Pipeline summary",
        queue=topology.image_queue.name,
        delivered=topology.notifier.published_count,
        checkpoint=topology.joiner.position,
        failed=len(topology.dead_letter),
    )


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown.

    First SIGINT/SIGTERM sets the shutdown event: workers finish their
    in-flight messages and the joiner its current batch. A second signal
    cancels every task.

    Signal handlers are not supported on Windows; KeyboardInterrupt is
    used there instead.
    """

    def handle_signal(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    global logger
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level)

    # JSON_LOGS=false gives human-readable file logs during local development
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))

    setup_multi_worker_logging(
        workers=WORKER_STAGES,
        domain="gallery",
        log_dir=log_dir,
        json_format=json_logs,
        console_level=log_level,
    )
    logger = get_logger(__name__)

    if args.metrics_port:
        logger.info(f"Starting metrics server on port {args.metrics_port}")
        start_http_server(args.metrics_port)

    try:
        config = load_config(args.config)
        uploads = collect_uploads(args.upload)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    try:
        # Build inside the loop so queue and joiner events bind to it
        topology = loop.run_until_complete(_build(config))
        loop.run_until_complete(
            run_pipeline(topology, uploads, args.uploader_email, args.run_seconds)
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Pipeline shutdown complete")


async def _build(config) -> Topology:
    return build_topology(config)


if __name__ == "__main__":
    main()
