from __future__ import annotations

import logging
import os

import boto3

from spotball.domain import CreateCompetitionRequest
from spotball.lifecycle import TicketLifecycle
from spotball.store import DynamoDBStore

logger = logging.getLogger("create_dynamodb_table")


def _required_env(name: str) -> str:
    v = os.environ.get(name, "").strip()
    if not v:
        raise SystemExit(f"{name} is required")
    return v


def _ensure_table(table_name: str) -> None:
    ddb = boto3.client("dynamodb")
    existing = ddb.list_tables().get("TableNames", [])
    if table_name in existing:
        logger.info("table already exists: %s", table_name)
        return

    # pk=COMPETITION#{id}, sk=META | PARTICIPANT#{id} | COUNTER#TICKET | RESULT
    ddb.create_table(
        TableName=table_name,
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    ddb.get_waiter("table_exists").wait(TableName=table_name)
    logger.info("created table: %s", table_name)


def _seed_competition(table_name: str) -> None:
    """SEED_COMPETITION_TITLE が設定されていれば大会を1件作成する。"""

    title = os.environ.get("SEED_COMPETITION_TITLE", "").strip()
    if not title:
        return
    req = CreateCompetitionRequest(
        title=title,
        max_entries=int(os.environ.get("SEED_MAX_ENTRIES", "100")),
        invite_password=_required_env("SEED_INVITE_PASSWORD"),
        image_url=_required_env("SEED_IMAGE_URL"),
    )
    competition = TicketLifecycle(DynamoDBStore(table_name=table_name)).create_competition(req)
    logger.info("seeded competition %s (%s)", competition.id, competition.title)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    table_name = _required_env("DDB_TABLE_NAME")
    _ensure_table(table_name)
    _seed_competition(table_name)


if __name__ == "__main__":
    main()
