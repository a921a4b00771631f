"""Command line follower printing a case conversation as it grows."""

from __future__ import annotations

import argparse
import logging
from typing import Callable, Optional

from support_portal.config import Settings
from support_portal.models import Message
from support_portal.repositories.case_repository import PersistenceGateway
from support_portal.services.case_api_client import CaseApiClient

LOGGER = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print the messages of a support case as they arrive.")
    parser.add_argument("case_id", help="Case to follow, e.g. case-001.")
    parser.add_argument("--url", default=None, help="Case store API URL (defaults to env CASE_STORE_API_URL).")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between polls (defaults to env SUBSCRIBE_POLL_SECONDS).",
    )
    return parser.parse_args()


def format_message(message: Message) -> str:
    line = f"[{message.created_at}] {message.sender}: {message.text}"
    if message.attachment:
        line += f" ({message.attachment})"
    return line


def follow(
    gateway: PersistenceGateway,
    case_id: str,
    *,
    out: Optional[Callable[[str], None]] = None,
) -> int:
    emit = out or print
    count = 0
    for message in gateway.subscribe(case_id):
        emit(format_message(message))
        count += 1
    return count


def main() -> None:
    args = parse_args()
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    url: Optional[str] = args.url or settings.case_store_api_url
    if not url:
        raise SystemExit("Set CASE_STORE_API_URL or pass --url")
    client = CaseApiClient(
        url,
        timeout=settings.case_store_timeout_seconds,
        poll_interval=args.interval if args.interval is not None else settings.subscribe_poll_seconds,
    )
    try:
        follow(client, args.case_id)
    except KeyboardInterrupt:
        LOGGER.info("Stopped following %s", args.case_id)


if __name__ == "__main__":
    main()
