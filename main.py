"""Entry point for the eventscope recorder service and maintenance commands."""

import argparse
import logging
import signal
import threading

from eventscope.api import create_app
from eventscope.config import load_config
from eventscope.factory import build_components
from eventscope.scheduler import build_scheduler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="eventscope recorder")
    parser.add_argument("--config", type=str, default=None, help="path to a YAML config file")
    parser.add_argument("--log-level", type=str, default="INFO")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="run the read API with background flush and retention")
    sub.add_parser("flush", help="drain the write buffer once")
    sub.add_parser("sweep", help="delete entries past the retention horizon once")
    sub.add_parser("clear", help="delete every entry")
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"
    return args


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    config = load_config(args.config)
    components = build_components(config)

    try:
        if args.command == "flush":
            if components.flush is None:
                logger.info("Storage %r has no write buffer, nothing to flush", config.storage)
                return
            logger.info("Flushed %d entries", components.flush.run())
            return
        if args.command == "sweep":
            components.sweeper.sweep()
            return
        if args.command == "clear":
            logger.info("Deleted %d entries", components.storage.delete_all())
            return
        serve(config, components, logger)
    finally:
        components.close()


def serve(config, components, logger):
    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    scheduler = build_scheduler(components, config)
    scheduler.start()

    app = create_app(config, components)
    server = threading.Thread(
        target=app.run,
        kwargs={"host": config.host, "port": config.port, "use_reloader": False},
        daemon=True,
    )
    server.start()
    logger.info("Serving eventscope API on %s:%d (storage=%s)", config.host, config.port, config.storage)

    try:
        shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        scheduler.shutdown(wait=False)
        if components.flush is not None:
            components.flush.run_safely()


if __name__ == "__main__":
    main()
