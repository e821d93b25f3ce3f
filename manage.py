#!/usr/bin/env python3
"""
Mail sync command line

Synchronizes an IMAP account into the local cache directory and reports what the cache holds.

Usage:
    python manage.py [--mode MODE] [--folder FOLDER]

Modes:
    - sync: Run one sync pass over every folder (default)
    - watch: Keep syncing on the poll interval until interrupted
    - folders: Print the cached folders without contacting the server

Environment Variables:
    ACCOUNT_EMAIL, ACCOUNT_PASSWORD: Mailbox credentials
    ACCOUNT_IMAP_HOST, ACCOUNT_SMTP_HOST: Server hosts
    STORAGE_BLOB_DIR: Directory holding the cache documents
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv(override=True)
from logging_config import setup_logging  # noqa: E402
from mailsync.container import ApplicationContainer  # noqa: E402
from mailsync.controllers.mailbox.mailbox_controller import MailboxController, Notification  # noqa: E402
from mailsync.exceptions import BaseError  # noqa: E402
from mailsync.models import Account  # noqa: E402
from mailsync.repos.blob_store import FileBlobStore  # noqa: E402
from mailsync.transport.container import TransportContainer  # noqa: E402
from settings import settings  # noqa: E402

setup_logging()

logger = logging.getLogger(__name__)


def build_container() -> ApplicationContainer:
    transports = TransportContainer()
    return ApplicationContainer(
        blob_store=FileBlobStore(settings.storage.blob_dir),
        transport=transports.imap_transport(),
    )


def account_from_settings() -> Account:
    if not settings.account.email:
        raise SystemExit("ACCOUNT_EMAIL is not set")
    return Account(
        id=settings.account.email.lower(),
        email=settings.account.email,
        imap_host=settings.account.imap_host,
        imap_port=settings.account.imap_port,
        smtp_host=settings.account.smtp_host,
        smtp_port=settings.account.smtp_port,
        password=settings.account.password,
    )


def print_folders(mailbox: MailboxController, account: Account) -> None:
    folders = mailbox.folder_list(account.id)
    if not folders:
        print("No folders cached.")
        return

    logger.info(f"\nFound {len(folders)} folders:")
    logger.info("-" * 80)
    for folder in folders:
        logger.info(f"{folder.name:30} {folder.special_use.value:10} {folder.unread_count:6d} / {folder.total_count:6d}")
    logger.info("-" * 80)


def log_notification(notification: Notification) -> None:
    logger.warning(notification.message, extra={"errors": [str(error) for error in notification.errors]})


async def run_sync(folder_id: str | None) -> None:
    container = build_container()
    mailbox = container.controllers.mailbox_controller()
    mailbox.on_failure = log_notification
    account = account_from_settings()

    await mailbox.load(account.id)
    await mailbox.sync(account, folder_id)
    print_folders(mailbox, account)


async def run_watch() -> None:
    container = build_container()
    mailbox = container.controllers.mailbox_controller()
    mailbox.on_failure = log_notification
    scheduler = container.controllers.sync_scheduler()
    account = account_from_settings()

    loop = asyncio.get_running_loop()
    for sig in [signal.SIGINT, signal.SIGTERM]:
        loop.add_signal_handler(sig, scheduler.stop)

    await mailbox.load(account.id)
    logger.info(f"Watching {account.email} every {settings.sync.poll_interval}s")
    await scheduler.run(account)
    print_folders(mailbox, account)


async def list_folders() -> None:
    container = build_container()
    mailbox = container.controllers.mailbox_controller()
    account = account_from_settings()
    if not await mailbox.load(account.id):
        print("No cache found. Run with --mode sync first.")
        return
    print_folders(mailbox, account)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Mail sync and local cache")
    parser.add_argument("--mode", choices=["sync", "watch", "folders"], default="sync", help="Operating mode")
    parser.add_argument("--folder", help="Canonical folder id to sync instead of the whole account")

    args = parser.parse_args()

    try:
        if args.mode == "sync":
            asyncio.run(run_sync(args.folder))
        elif args.mode == "watch":
            asyncio.run(run_watch())
        elif args.mode == "folders":
            asyncio.run(list_folders())

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except BaseError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
