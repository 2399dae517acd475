"""CFD Marine - offline-first marine conditions app for a rescue boat team."""

import argparse
import logging
import signal
import sys
from threading import Event

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Event | None = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the app server, worker and gateway."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("CFD Marine %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, AppServer
    from .buckets import BucketStore, CacheStorageError
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db
    from .gateway import GatewayServer
    from .marine import MarineConditions
    from .network import HttpFetcher
    from .notifications import ClientRegistry, NotificationCenter
    from .push import PushBroadcaster
    from .pwa import resolve_app_version
    from .resources import ResourceError, ResourceStore
    from .strategies import BackgroundTasks
    from .worker import ServiceWorker

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Initialize storage
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
        storage = BucketStore(config.worker.cache_path)
        logger.info("Cache buckets stored at %s", config.worker.cache_path)
        resources = ResourceStore(config.resources.path, config.resources.max_upload_bytes)
    except (DatabaseError, CacheStorageError, ResourceError) as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)

    version = resolve_app_version(config)
    logger.info("App version %s", version)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Build components
    broadcaster = PushBroadcaster(config.push, db_conn)
    fetcher = HttpFetcher(config.worker.origin, timeout=config.gateway.request_timeout)
    tasks = BackgroundTasks(config.worker.background_workers)
    worker = ServiceWorker(
        config.worker,
        storage,
        fetcher,
        ClientRegistry(config.worker.origin),
        NotificationCenter(),
        tasks=tasks,
        version=version,
    )
    app_server: AppServer | None = None
    gateway: GatewayServer | None = None

    try:
        # 5. Start components; the origin must be up before the worker pre-caches it
        if config.api.enabled:
            try:
                app_server = AppServer(
                    config.api,
                    config.push,
                    db_conn,
                    MarineConditions(config.stations),
                    resources,
                    broadcaster,
                    app_version=version,
                    api_prefix=config.worker.api_prefix,
                )
                app_server.start()
            except ApiError as e:
                logger.error("Failed to start app server: %s", e)
                logger.warning("Continuing without app server")
                app_server = None

        if config.gateway.enabled:
            worker.start()
            try:
                gateway = GatewayServer(config.gateway, worker, fetcher)
                gateway.start()
            except ApiError as e:
                logger.error("Failed to start gateway: %s", e)
                logger.warning("Continuing without gateway")
                gateway = None

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        if gateway is not None:
            gateway.stop()

        if app_server is not None:
            app_server.stop()

        worker.shutdown()
        fetcher.close()
        storage.close()
        db_conn.close()
        logger.info("Storage closed")

        logger.info("Shutdown complete")


def _cmd_clean_cache(args: argparse.Namespace) -> None:
    """Execute the clean-cache command - delete stale (or all) cache buckets."""
    from pathlib import Path

    from .buckets import BucketStore, CacheStorageError
    from .pwa import resolve_app_version

    config = _load_config_or_exit(args.config)

    if not Path(config.worker.cache_path).exists():
        print(f"Error: Cache storage not found at {config.worker.cache_path}")
        sys.exit(1)

    version = resolve_app_version(config)
    try:
        storage = BucketStore(config.worker.cache_path)
        names = storage.keys()
        stale = names if args.all else [name for name in names if not name.startswith(version + "-")]
        for name in stale:
            storage.delete(name)
        storage.close()
    except CacheStorageError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.all:
        print(f"Deleted all {len(stale)} cache bucket(s).")
    else:
        print(f"Deleted {len(stale)} stale cache bucket(s); current version is {version}.")


def _cmd_test_push(args: argparse.Namespace) -> None:
    """Execute the test-push command - broadcast a test notification."""
    from .database import DatabaseError, init_db
    from .push import PushBroadcaster, admin_test_payload

    config = _load_config_or_exit(args.config)

    try:
        db_conn = init_db(config.database.path)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    broadcaster = PushBroadcaster(config.push, db_conn)
    try:
        count = broadcaster.subscription_count()
        if count == 0:
            print("Error: No push subscriptions stored")
            sys.exit(1)

        print(f"Sending test notification to {count} subscription(s)...\n")
        result = broadcaster.broadcast(admin_test_payload())
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    print(f"Sent: {result.sent}")
    print(f"Removed (gone): {result.removed}")
    print(f"Failed: {result.failed}")

    if result.failed:
        sys.exit(1)


def main() -> None:
    """Main entry point for the cfdmarine package."""
    parser = argparse.ArgumentParser(
        description="CFD Marine - offline-first marine conditions app for a rescue boat team"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"cfdmarine {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the app server, cache worker and gateway (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Clean-cache subcommand
    clean_parser = subparsers.add_parser(
        "clean-cache",
        help="Delete cache buckets from older app versions",
    )
    clean_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete every cache bucket, including the current version's",
    )
    clean_parser.set_defaults(func=_cmd_clean_cache)

    # Test-push subcommand
    test_push_parser = subparsers.add_parser(
        "test-push",
        help="Broadcast a test notification to every push subscription",
    )
    test_push_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    test_push_parser.set_defaults(func=_cmd_test_push)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
