"""
Entry point for running degu via `python -m degu` or the `degu` script.

    degu [type] [url] [branch]

Environment variables (REMOTE_TYPE, REMOTE_URL, REMOTE_BRANCH, APP_DIR,
DEGU_FILE, ...) take precedence over positional arguments.
"""

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler

from .config import Settings
from .errors import DeguError
from .runtime import Degu

logger = logging.getLogger("degu")


def setup_logging(settings: Settings):
    """Configure console logging, plus a rotating log file if one is set."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    handlers = [console_handler]

    if settings.log_file:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(log_formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=settings.log_level, handlers=handlers, force=True)


def parse_args(argv: list[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="degu",
        description="Fetch an application, run its setup steps and supervise it.",
    )
    parser.add_argument("remote", nargs="*", metavar="type url branch",
                        help="remote type, url and branch (or just a url)")
    parser.add_argument("--app-dir", help="application directory (default: /app)")
    parser.add_argument("--degu-file", help="options file (default: <app-dir>/.degu.json)")
    args = parser.parse_args(argv)
    if len(args.remote) > 3:
        parser.error("at most three positional arguments are accepted")
    return args


def main(argv: list[str] = None) -> int:
    """Run degu; returns the exit code of the supervised app."""
    args = parse_args(argv)
    try:
        settings = Settings.from_env(args.remote, app_dir=args.app_dir, degu_file=args.degu_file)
    except DeguError as e:
        logger.error(str(e))
        return 1
    setup_logging(settings)

    try:
        runtime = Degu.bootstrap(settings)
    except DeguError as e:
        logger.error(str(e))
        return 1

    return asyncio.run(runtime.run())


if __name__ == "__main__":
    sys.exit(main())
