import argparse
import json
import logging
import os
import sys

from config.config_manager import ConfigManager
from core.event_system import EventType, to_notification
from core.photo_library import PhotoLibrary
from core.rating_store import RatingStoreOpenError
from plugins.exiftool_process import shutdown_all


def setup_logging(log_level, log_dir):
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "pickshot.log")
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode="a"),
            logging.StreamHandler(sys.stderr)
        ]
    )


def _print_notification(event_data):
    print(to_notification(event_data).model_dump_json(), flush=True)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Pickshot: scan a photo folder and keep its thumbnails and ratings current.")
    parser.add_argument('directory', help='The directory to scan.')
    parser.add_argument('--config', default=None, help='Path to config.yaml.')
    parser.add_argument(
        '--wait',
        type=float,
        default=None,
        metavar='SECONDS',
        help='Wait up to SECONDS for thumbnail and rating work to finish, printing events as they arrive.',
    )
    args = parser.parse_args(argv)

    try:
        config_manager = ConfigManager(args.config)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    logging_level = config_manager.logging_level
    setup_logging(logging_level, config_manager.cache_dir)
    logging.info(f"Logging level set to: {logging_level.upper()}")

    try:
        library = PhotoLibrary.from_config(config_manager)
    except RatingStoreOpenError as e:
        logging.error(f"Ratings database unavailable: {e}")
        print(
            "Pickshot could not open its ratings database.\n"
            f"{e}\n"
            "Check that the data directory is writable and not used by another copy of Pickshot.",
            file=sys.stderr,
        )
        return 2

    try:
        if args.wait is not None:
            library.events.subscribe(EventType.THUMBNAILS_READY, _print_notification)
            library.events.subscribe(EventType.RATINGS_REFRESHED, _print_notification)

        result = library.scan(os.path.expanduser(args.directory))
        summary = {
            "directory": result.directory,
            "photos": len(result.photos),
            "rated": len(result.ratings),
            "ratings": result.ratings,
        }
        print(json.dumps(summary, indent=2), flush=True)

        if args.wait is not None:
            if not library.wait_idle(args.wait):
                logging.warning(f"Background work still running after {args.wait}s")
    finally:
        library.shutdown()
        shutdown_all()
    return 0


if __name__ == "__main__":
    sys.exit(main())
