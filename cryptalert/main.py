"""
Main application entry point.
"""

import asyncio
import logging
import signal
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from cryptalert.app import CryptAlertApp
from cryptalert.config import AppConfig, ConfigValidationError, load_config
from cryptalert.database.models import Notification

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure root logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def log_toast(notification: Notification) -> None:
    logger.info(f"[{notification.priority.value}] {notification.title}: {notification.description}")


async def run(config: AppConfig, once: bool = False, dry_run: bool = False) -> int:
    """
    Run the alert service until interrupted.

    Args:
        config: Loaded configuration
        once: Run a single alert check and exit
        dry_run: Deliver in-app only

    Returns:
        Number of alerts triggered when once is set, else 0
    """
    app = CryptAlertApp.from_config(config, on_toast=log_toast, dry_run=dry_run)

    if once:
        try:
            triggered = await app.check_now()
            logger.info(f"Check complete: {triggered} alerts triggered")
            return triggered
        finally:
            await app.stop()
            app.db.close()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Not available on Windows event loops
            pass

    await app.start()
    try:
        await stop_event.wait()
    finally:
        await app.stop()
        app.db.close()
    return 0


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="CryptAlert Crypto Alert Service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="Run without sending external notifications"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single alert check and exit"
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (ConfigValidationError, FileNotFoundError) as e:
        setup_logging("INFO")
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(2)

    # Setup logging
    setup_logging("DEBUG" if args.debug else config.advanced.log_level)

    if args.dry_run:
        logger.info("Dry run mode - only in-app notifications will be delivered")

    asyncio.run(run(config, once=args.once, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
