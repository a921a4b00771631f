"""Utility script to seed a demo support case for a given driver."""

from __future__ import annotations

import argparse
import os
from typing import List

from pymongo import MongoClient

from case_store_api.mongo_gateway import MongoCaseGateway
from support_portal.models import ROLE_DRIVER, Identity
from support_portal.services.case_session import CaseSession, SessionAction
from support_portal.services.conversation_engine import ConversationEngine
from support_portal.services.conversation_graph import FlowCatalog

DEFAULT_MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017/")
DEFAULT_DB = os.environ.get("MONGO_DB", "driver_support")
CASES_COLLECTION = "cases"
MESSAGES_COLLECTION = "case_messages"
COUNTERS_COLLECTION = "counters"

RELAY_CANCELLED = "Site told me load is cancelled but it is still on my Relay app"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the Relay cancellation intake for a driver and store the resulting case."
    )
    parser.add_argument("driver_id", help="Driver identifier to open the case for.")
    parser.add_argument("--name", default="", help="Driver display name.")
    parser.add_argument("--email", default="", help="Driver contact email.")
    parser.add_argument("--company", default="", help="Transport company of the driver.")
    parser.add_argument("--vrid", default="113456789", help="VRID typed into the intake.")
    parser.add_argument(
        "--mongo-uri",
        default=DEFAULT_MONGO_URI,
        help="MongoDB connection string (defaults to env MONGO_URI or localhost).",
    )
    parser.add_argument(
        "--database",
        default=DEFAULT_DB,
        help="MongoDB database name (defaults to env MONGO_DB or driver_support).",
    )
    return parser.parse_args()


def relay_cancellation_actions(vrid: str) -> List[SessionAction]:
    return [
        SessionAction.option("Yes"),
        SessionAction.option(RELAY_CANCELLED),
        SessionAction.text(vrid),
    ]


def main() -> None:
    args = parse_args()
    identity = Identity(
        id=args.driver_id,
        role=ROLE_DRIVER,
        email=args.email,
        name=args.name,
        company=args.company,
    )
    engine = ConversationEngine(FlowCatalog().get("tour_check"))

    with MongoClient(args.mongo_uri) as client:
        database = client[args.database]
        gateway = MongoCaseGateway(
            database[CASES_COLLECTION],
            database[MESSAGES_COLLECTION],
            database[COUNTERS_COLLECTION],
        )
        gateway.ensure_indexes()
        session = CaseSession(engine, identity, gateway=gateway)
        for action in relay_cancellation_actions(args.vrid):
            session.advance(action)
        print(
            f"Inserted {session.case_id} for {args.driver_id} "
            f"({len(session.transcript)} messages, cursor={session.cursor})."
        )


if __name__ == "__main__":
    main()
