#!/usr/bin/env python3
"""
MailBrief Main Entry Point.
Runs the daily digest scheduler and the management API, or a single run with --once.
"""

import argparse
import signal
import sqlite3
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from mailbrief.config import Settings, get_settings
from mailbrief.exceptions import MailBriefError
from mailbrief.pipeline import EmailDigestPipeline
from mailbrief.scheduler import DailyDigestJob
from mailbrief.utils import setup_logger
from mailbrief.web import create_app


class MailBriefApp:
    """
    Process-level runner.
    Owns the pipeline, the daily job and the web server thread.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.pipeline = EmailDigestPipeline.from_settings(settings)
        self.job = DailyDigestJob(self.pipeline, settings)
        self._web_thread: Optional[threading.Thread] = None
        self._shutdown_requested = False

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum: int, frame) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self._shutdown_requested = True

    def run_once(self, user_id: str) -> bool:
        """
        Run one daily digest for a user.

        Returns:
            True if the run finished (any non-error status).
        """
        try:
            result = self.pipeline.process_daily_emails(user_id)
        except MailBriefError as e:
            logger.error(f"Run failed for user {user_id}: {e}")
            return False

        logger.info(
            f"Run result: status={result.status}, processed={result.processed_count}, "
            f"summarized={result.summarized_count}, digest={result.digest_id}"
        )
        return result.status != "already_processing"

    def start_web_server(self) -> None:
        """Start the Flask web server in a daemon thread."""
        app = create_app(pipeline=self.pipeline, local_store=self.pipeline.local_store, job=self.job)
        host = self.settings.WEB_SERVER_HOST
        port = self.settings.WEB_SERVER_PORT

        def run_server():
            try:
                logger.info(f"Starting web server on {host}:{port}")
                app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
            except Exception as e:
                logger.exception(f"Web server error: {e}")
                raise

        self._web_thread = threading.Thread(target=run_server, daemon=True)
        self._web_thread.start()
        logger.info(f"Management API available at http://{host}:{port}")

    def run_forever(self) -> None:
        """Start the scheduler and the web server, then wait for a shutdown signal."""
        self._setup_signal_handlers()
        self.job.start()
        self.start_web_server()

        try:
            logger.info("MailBrief running. Press Ctrl+C to stop.")
            while not self._shutdown_requested:
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            logger.info("Shutting down...")
        finally:
            self.job.stop(wait=True)
            self.cleanup()
            logger.info("MailBrief stopped gracefully")

    def cleanup(self) -> None:
        self.pipeline.cleanup()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MailBrief - daily email digests")
    parser.add_argument("--once", metavar="USER_ID", help="run one daily digest for USER_ID and exit")
    return parser.parse_args(argv)


def main() -> None:
    """
    Main entry point for MailBrief.
    """
    args = parse_args()

    try:
        settings = get_settings()
        setup_logger(log_level=settings.LOG_LEVEL, log_dir=Path(settings.DATA_DIR) / "logs")

        logger.info("=" * 60)
        logger.info("  MailBrief - Daily Email Digests")
        logger.info("=" * 60)

        app = MailBriefApp(settings)

        if args.once:
            logger.info(f"Running in one-shot mode for user {args.once}")
            ok = app.run_once(args.once)
            app.cleanup()
            sys.exit(0 if ok else 1)

        app.run_forever()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except ValueError as e:
        logger.exception(f"Configuration error: {e}")
        sys.exit(1)
    except sqlite3.Error as e:
        logger.exception(f"Database error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
