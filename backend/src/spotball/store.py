from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .domain import (
    Competition,
    Participant,
    Ticket,
    TicketSpec,
    TicketStatus,
    WinnerResult,
    new_id,
    normalize_phone,
)
from .errors import CompetitionNotFound, ParticipantNotFound, SlotsExhausted, StaleWrite

logger = logging.getLogger(__name__)


class Store(Protocol):
    """Repository contract. Each call is atomic on its own; callers serialize
    multi-call sequences per competition.

    Participant writes are conditional on ``Participant.version``: a write
    based on an outdated snapshot raises ``StaleWrite`` and the caller is
    expected to re-read and retry. ``create_tickets`` enforces ``max_entries``
    atomically with the ticket write.
    """

    def create_competition(self, competition: Competition) -> Competition: ...

    def get_competition(self, competition_id: str) -> Competition | None: ...

    def list_competitions(self) -> list[Competition]: ...

    def update_competition(
        self,
        competition_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> Competition: ...

    def list_participants(self, competition_id: str) -> list[Participant]: ...

    def get_participant(self, competition_id: str, participant_id: str) -> Participant | None: ...

    def find_participant_by_phone(self, competition_id: str, phone: str) -> Participant | None: ...

    def save_participant(self, participant: Participant) -> Participant: ...

    def delete_participant(self, participant: Participant) -> None: ...

    def list_tickets(self, competition_id: str) -> list[Ticket]: ...

    def create_tickets(
        self, competition_id: str, specs: list[TicketSpec], max_entries: int
    ) -> list[Ticket]: ...

    def next_ticket_number(self, competition_id: str) -> int: ...

    def save_result(self, result: WinnerResult) -> None: ...

    def get_result(self, competition_id: str) -> WinnerResult | None: ...

    def delete_result(self, competition_id: str) -> None: ...


def _ticket_from_spec(competition_id: str, spec: TicketSpec) -> Ticket:
    return Ticket(
        id=new_id("tkt"),
        competition_id=competition_id,
        participant_id=spec.participant_id,
        ticket_number=spec.ticket_number,
        status=spec.status,
        markers_allowed=spec.markers_allowed,
    )


def _held(participant: Participant) -> int:
    return sum(1 for t in participant.tickets if t.status is not TicketStatus.AVAILABLE)


@dataclass
class InMemoryStore(Store):
    """Process-local store. Every read returns a deep copy, so callers always
    work on a snapshot and only ``save_*``/``update_*`` calls mutate state."""

    competitions: dict[str, Competition]
    participants: dict[tuple[str, str], Participant]
    results: dict[str, WinnerResult]
    ticket_counters: dict[str, int]
    _mutex: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def create(cls) -> "InMemoryStore":
        return cls(competitions={}, participants={}, results={}, ticket_counters={})

    def create_competition(self, competition: Competition) -> Competition:
        with self._mutex:
            self.competitions[competition.id] = competition.model_copy(deep=True)
        return competition

    def get_competition(self, competition_id: str) -> Competition | None:
        with self._mutex:
            competition = self.competitions.get(competition_id)
            return competition.model_copy(deep=True) if competition else None

    def list_competitions(self) -> list[Competition]:
        with self._mutex:
            return [c.model_copy(deep=True) for c in self.competitions.values()]

    def update_competition(
        self,
        competition_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> Competition:
        with self._mutex:
            current = self.competitions.get(competition_id)
            if current is None:
                raise CompetitionNotFound(competition_id)
            for name, value in (expected or {}).items():
                if getattr(current, name) != value:
                    raise StaleWrite(f"Competition {competition_id}")
            updated = current.model_copy(update=patch, deep=True)
            self.competitions[competition_id] = updated
            return updated.model_copy(deep=True)

    def list_participants(self, competition_id: str) -> list[Participant]:
        with self._mutex:
            return [
                p.model_copy(deep=True)
                for (cid, _), p in self.participants.items()
                if cid == competition_id
            ]

    def get_participant(self, competition_id: str, participant_id: str) -> Participant | None:
        with self._mutex:
            participant = self.participants.get((competition_id, participant_id))
            return participant.model_copy(deep=True) if participant else None

    def find_participant_by_phone(self, competition_id: str, phone: str) -> Participant | None:
        wanted = normalize_phone(phone)
        for participant in self.list_participants(competition_id):
            if normalize_phone(participant.phone) == wanted:
                return participant
        return None

    def _check_version(self, participant: Participant) -> None:
        current = self.participants.get((participant.competition_id, participant.id))
        if (current.version if current else 0) != participant.version:
            raise StaleWrite(f"Participant {participant.id}")

    def save_participant(self, participant: Participant) -> Participant:
        saved = participant.model_copy(update={"version": participant.version + 1}, deep=True)
        with self._mutex:
            self._check_version(participant)
            self.participants[(participant.competition_id, participant.id)] = saved
            return saved.model_copy(deep=True)

    def delete_participant(self, participant: Participant) -> None:
        with self._mutex:
            self._check_version(participant)
            self.participants.pop((participant.competition_id, participant.id), None)

    def list_tickets(self, competition_id: str) -> list[Ticket]:
        tickets: list[Ticket] = []
        for participant in self.list_participants(competition_id):
            tickets.extend(participant.tickets)
        return tickets

    def create_tickets(
        self, competition_id: str, specs: list[TicketSpec], max_entries: int
    ) -> list[Ticket]:
        created = [_ticket_from_spec(competition_id, spec) for spec in specs]
        with self._mutex:
            # 先に全件の所有者と残り枠を確認してから追加する
            for spec in specs:
                if (competition_id, spec.participant_id) not in self.participants:
                    raise ParticipantNotFound(spec.participant_id)
            sold = sum(
                _held(p) for (cid, _), p in self.participants.items() if cid == competition_id
            )
            if sold + len(created) > max_entries:
                raise SlotsExhausted(max(0, max_entries - sold), len(created))
            for ticket in created:
                owner = self.participants[(competition_id, ticket.participant_id)]
                owner.tickets.append(ticket.model_copy(deep=True))
            for participant_id in {t.participant_id for t in created}:
                self.participants[(competition_id, participant_id)].version += 1
        return created

    def next_ticket_number(self, competition_id: str) -> int:
        with self._mutex:
            value = self.ticket_counters.get(competition_id, 0) + 1
            self.ticket_counters[competition_id] = value
            return value

    def save_result(self, result: WinnerResult) -> None:
        with self._mutex:
            self.results[result.competition_id] = result.model_copy(deep=True)

    def get_result(self, competition_id: str) -> WinnerResult | None:
        with self._mutex:
            result = self.results.get(competition_id)
            return result.model_copy(deep=True) if result else None

    def delete_result(self, competition_id: str) -> None:
        with self._mutex:
            self.results.pop(competition_id, None)


def _to_item(model: Any) -> dict[str, Any]:
    # DynamoDB は float を受け付けないので Decimal に変換する
    return json.loads(model.model_dump_json(), parse_float=Decimal)


def _to_values(values: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(values, default=str), parse_float=Decimal)


_serializer = TypeSerializer()


def _serialize(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in item.items()}


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _version_condition(version: int) -> dict[str, Any]:
    if version == 0:
        return {
            "ConditionExpression": "attribute_not_exists(#ver)",
            "ExpressionAttributeNames": {"#ver": "version"},
        }
    return {
        "ConditionExpression": "#ver = :ver",
        "ExpressionAttributeNames": {"#ver": "version"},
        "ExpressionAttributeValues": {":ver": version},
    }


@dataclass
class DynamoDBStore(Store):
    """Single-table layout keyed by ``pk = COMPETITION#{id}``.

    ``sk`` values: ``META`` (competition), ``PARTICIPANT#{id}`` (participant
    with embedded tickets), ``COUNTER#TICKET`` (ticket number sequence),
    ``COUNTER#SOLD`` (slots taken) and ``RESULT`` (cached winner result).

    Several Lambda instances may write the same competition, so participant
    writes are conditional on ``version`` and ticket creation goes through a
    transaction that bumps ``COUNTER#SOLD`` only while it stays within
    ``max_entries``.
    """

    table_name: str

    @classmethod
    def from_env(cls) -> "DynamoDBStore":
        table_name = os.environ.get("DDB_TABLE_NAME", "")
        if not table_name:
            raise RuntimeError("DDB_TABLE_NAME is required for dynamodb store")
        return cls(table_name=table_name)

    @property
    def _table(self):
        ddb = boto3.resource("dynamodb")
        return ddb.Table(self.table_name)

    def _pk(self, competition_id: str) -> str:
        return f"COMPETITION#{competition_id}"

    def _collect(self, operation, **kwargs) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        while True:
            resp = operation(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _query(self, competition_id: str, prefix: str) -> list[dict[str, Any]]:
        return self._collect(
            self._table.query,
            KeyConditionExpression=Key("pk").eq(self._pk(competition_id))
            & Key("sk").begins_with(prefix),
        )

    def create_competition(self, competition: Competition) -> Competition:
        item = _to_item(competition)
        item.update({"pk": self._pk(competition.id), "sk": "META"})
        self._table.put_item(Item=item)
        return competition

    def get_competition(self, competition_id: str) -> Competition | None:
        resp = self._table.get_item(Key={"pk": self._pk(competition_id), "sk": "META"})
        item = resp.get("Item")
        if not item:
            return None
        return Competition.model_validate(item)

    def list_competitions(self) -> list[Competition]:
        items = self._collect(self._table.scan, FilterExpression=Attr("sk").eq("META"))
        return [Competition.model_validate(it) for it in items]

    def update_competition(
        self,
        competition_id: str,
        patch: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> Competition:
        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        assignments: list[str] = []
        for i, (name, value) in enumerate(_to_values(patch).items()):
            names[f"#f{i}"] = name
            values[f":f{i}"] = value
            assignments.append(f"#f{i} = :f{i}")
        conditions = ["attribute_exists(pk)"]
        for i, (name, value) in enumerate(_to_values(expected or {}).items()):
            names[f"#e{i}"] = name
            values[f":e{i}"] = value
            conditions.append(f"#e{i} = :e{i}")

        try:
            resp = self._table.update_item(
                Key={"pk": self._pk(competition_id), "sk": "META"},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=" AND ".join(conditions),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _error_code(exc) != "ConditionalCheckFailedException":
                raise
            if self.get_competition(competition_id) is None:
                raise CompetitionNotFound(competition_id) from exc
            raise StaleWrite(f"Competition {competition_id}") from exc
        return Competition.model_validate(resp["Attributes"])

    def list_participants(self, competition_id: str) -> list[Participant]:
        return [Participant.model_validate(it) for it in self._query(competition_id, "PARTICIPANT#")]

    def get_participant(self, competition_id: str, participant_id: str) -> Participant | None:
        resp = self._table.get_item(
            Key={"pk": self._pk(competition_id), "sk": f"PARTICIPANT#{participant_id}"}
        )
        item = resp.get("Item")
        if not item:
            return None
        return Participant.model_validate(item)

    def find_participant_by_phone(self, competition_id: str, phone: str) -> Participant | None:
        wanted = normalize_phone(phone)
        for participant in self.list_participants(competition_id):
            if normalize_phone(participant.phone) == wanted:
                return participant
        return None

    def _participant_item(self, participant: Participant) -> dict[str, Any]:
        item = _to_item(participant)
        item.update(
            {
                "pk": self._pk(participant.competition_id),
                "sk": f"PARTICIPANT#{participant.id}",
            }
        )
        return item

    def save_participant(self, participant: Participant) -> Participant:
        saved = participant.model_copy(update={"version": participant.version + 1}, deep=True)
        try:
            self._table.put_item(
                Item=self._participant_item(saved), **_version_condition(participant.version)
            )
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                raise StaleWrite(f"Participant {participant.id}") from exc
            raise
        return saved

    def _slots_update(
        self, competition_id: str, delta: int, limit: int | None = None
    ) -> dict[str, Any]:
        update: dict[str, Any] = {
            "TableName": self.table_name,
            "Key": _serialize({"pk": self._pk(competition_id), "sk": "COUNTER#SOLD"}),
            "UpdateExpression": "ADD #v :delta",
            "ExpressionAttributeNames": {"#v": "value"},
        }
        values: dict[str, Any] = {":delta": delta}
        if limit is not None:
            update["ConditionExpression"] = "attribute_not_exists(#v) OR #v <= :limit"
            values[":limit"] = limit
        update["ExpressionAttributeValues"] = _serialize(values)
        return {"Update": update}

    def _conditional(self, version: int) -> dict[str, Any]:
        condition = _version_condition(version)
        if "ExpressionAttributeValues" in condition:
            condition["ExpressionAttributeValues"] = _serialize(
                condition["ExpressionAttributeValues"]
            )
        return condition

    def _transact(self, items: list[dict[str, Any]]) -> None:
        self._table.meta.client.transact_write_items(TransactItems=items)

    def slots_taken(self, competition_id: str) -> int:
        resp = self._table.get_item(Key={"pk": self._pk(competition_id), "sk": "COUNTER#SOLD"})
        item = resp.get("Item") or {}
        return int(item.get("value", 0))

    def delete_participant(self, participant: Participant) -> None:
        items: list[dict[str, Any]] = [
            {
                "Delete": {
                    "TableName": self.table_name,
                    "Key": _serialize(
                        {
                            "pk": self._pk(participant.competition_id),
                            "sk": f"PARTICIPANT#{participant.id}",
                        }
                    ),
                    **self._conditional(participant.version),
                }
            }
        ]
        held = _held(participant)
        if held:
            items.append(self._slots_update(participant.competition_id, -held))
        try:
            self._transact(items)
        except ClientError as exc:
            if _error_code(exc) == "TransactionCanceledException":
                raise StaleWrite(f"Participant {participant.id}") from exc
            raise

    def list_tickets(self, competition_id: str) -> list[Ticket]:
        tickets: list[Ticket] = []
        for participant in self.list_participants(competition_id):
            tickets.extend(participant.tickets)
        return tickets

    def create_tickets(
        self, competition_id: str, specs: list[TicketSpec], max_entries: int
    ) -> list[Ticket]:
        count = len(specs)
        if count > max_entries:
            raise SlotsExhausted(max(0, max_entries - self.slots_taken(competition_id)), count)

        owners: dict[str, Participant] = {}
        for spec in specs:
            if spec.participant_id not in owners:
                owner = self.get_participant(competition_id, spec.participant_id)
                if owner is None:
                    raise ParticipantNotFound(spec.participant_id)
                owners[spec.participant_id] = owner
        created = [_ticket_from_spec(competition_id, spec) for spec in specs]

        # 枠の確保を先頭に置き、失敗理由の判定に使う
        items = [self._slots_update(competition_id, count, limit=max_entries - count)]
        for owner in owners.values():
            expected_version = owner.version
            owner.tickets.extend(t for t in created if t.participant_id == owner.id)
            owner.version = expected_version + 1
            items.append(
                {
                    "Put": {
                        "TableName": self.table_name,
                        "Item": _serialize(self._participant_item(owner)),
                        **self._conditional(expected_version),
                    }
                }
            )

        try:
            self._transact(items)
        except ClientError as exc:
            if _error_code(exc) != "TransactionCanceledException":
                raise
            reasons = exc.response.get("CancellationReasons", [])
            if reasons and reasons[0].get("Code") == "ConditionalCheckFailed":
                remaining = max(0, max_entries - self.slots_taken(competition_id))
                raise SlotsExhausted(remaining, count) from exc
            raise StaleWrite(f"Tickets for competition {competition_id}") from exc
        return created

    def next_ticket_number(self, competition_id: str) -> int:
        resp = self._table.update_item(
            Key={"pk": self._pk(competition_id), "sk": "COUNTER#TICKET"},
            UpdateExpression="ADD #v :one",
            ExpressionAttributeNames={"#v": "value"},
            ExpressionAttributeValues={":one": 1},
            ReturnValues="UPDATED_NEW",
        )
        return int(resp["Attributes"]["value"])

    def save_result(self, result: WinnerResult) -> None:
        item = _to_item(result)
        item.update({"pk": self._pk(result.competition_id), "sk": "RESULT"})
        self._table.put_item(Item=item)

    def get_result(self, competition_id: str) -> WinnerResult | None:
        resp = self._table.get_item(Key={"pk": self._pk(competition_id), "sk": "RESULT"})
        item = resp.get("Item")
        if not item:
            return None
        return WinnerResult.model_validate(item)

    def delete_result(self, competition_id: str) -> None:
        self._table.delete_item(Key={"pk": self._pk(competition_id), "sk": "RESULT"})


def build_store(kind: str | None = None) -> Store:
    kind = (kind or os.environ.get("STORE_BACKEND", "inmemory")).strip().lower()
    if kind == "dynamodb":
        logger.info("using dynamodb store")
        return DynamoDBStore.from_env()
    return InMemoryStore.create()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
