"""
CRDT ingestion: per-cell last-writer-wins over either backend.

A message sets one column of one row:

    {"dataset": "accounts", "row": "A", "column": "name",
     "value": "Checking", "timestamp": "2024-05-01T12:00:00.000Z-0000-4F2A9C0D11E3B7A5"}

For each message, in order:
  1. Find the newest timestamp recorded in messages_crdt for (dataset, row, column)
  2. If there is none, or the incoming timestamp is greater, write the value
     (creating the row with tombstone = 0 if it does not exist)
  3. Otherwise discard it; replaying a message is a no-op
  4. Record the message in messages_crdt (duplicates ignored)

Deletes are ordinary writes of tombstone = 1. A receive() call is one
transaction: a malformed message, a query failure or excessive clock drift
rolls back the whole batch.

Timestamps compare as (millis, counter, node); equal millis and counter from
different devices are ordered by node id.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from .adapters import BackendKind, Row
from .errors import MalformedMessageError
from .session import StorageSession
from .timestamp import Clock, Timestamp, make_node_id
from .values import coerce_for_column, deserialize_value, is_scalar, serialize_value

log = logging.getLogger("ledgerstore.crdt")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
CLOCK_ROW_ID = 1


@dataclass(frozen=True)
class CRDTMessage:
    dataset: str
    row: str
    column: str
    value: Any
    timestamp: Timestamp

    def __post_init__(self):
        if not isinstance(self.timestamp, Timestamp):
            try:
                ts = Timestamp.parse(self.timestamp)
            except ValueError as exc:
                raise MalformedMessageError(f"Bad timestamp: {exc}") from exc
            object.__setattr__(self, "timestamp", ts)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CRDTMessage":
        missing = [k for k in ("dataset", "row", "column", "value", "timestamp") if k not in data]
        if missing:
            raise MalformedMessageError(f"Message missing fields: {', '.join(missing)}")
        return cls(data["dataset"], data["row"], data["column"], data["value"], data["timestamp"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset,
            "row": self.row,
            "column": self.column,
            "value": self.value,
            "timestamp": str(self.timestamp),
        }


MessageLike = Union[CRDTMessage, Dict[str, Any]]


class CRDTIngestor:
    """Applies replicated edits to whatever backend the session has open."""

    def __init__(self, session: StorageSession, clock: Optional[Clock] = None):
        self.session = session
        self.clock = clock
        self._columns: Dict[tuple, Dict[str, str]] = {}

    # ── validation ─────────────────────────────────────

    async def _table_columns(self, table: str) -> Dict[str, str]:
        key = (self.session.kind, table)
        if key not in self._columns:
            adapter, conn = self.session.adapter, self.session.connection
            self._columns[key] = await adapter.describe_columns(conn, table)
        return self._columns[key]

    async def validate(self, message: CRDTMessage) -> None:
        for field_name in ("dataset", "column"):
            name = getattr(message, field_name)
            if not isinstance(name, str) or not _IDENTIFIER.match(name):
                raise MalformedMessageError(f"Invalid {field_name}: {name!r}")
        if not isinstance(message.row, str) or not message.row:
            raise MalformedMessageError(f"Invalid row id: {message.row!r}")
        if not is_scalar(message.value):
            raise MalformedMessageError(
                f"Value for {message.dataset}.{message.column} is not a scalar: "
                f"{type(message.value).__name__}"
            )

        columns = await self._table_columns(message.dataset)
        if "id" not in columns or "tombstone" not in columns:
            raise MalformedMessageError(f"Unknown dataset: {message.dataset}")
        if message.column == "id" or message.column not in columns:
            raise MalformedMessageError(f"Unknown column: {message.dataset}.{message.column}")
        # Same acceptance rule on both backends, so stores converge
        try:
            coerce_for_column(message.value, columns[message.column])
        except ValueError as exc:
            raise MalformedMessageError(str(exc)) from exc

    # ── clock ─────────────────────────────────────

    async def load_clock(self) -> Clock:
        row = await self.session.first(
            f'SELECT "clock" FROM "messages_clock" WHERE "id" = {self.session.placeholder(1)}',
            [CLOCK_ROW_ID],
        )
        if row and row["clock"]:
            self.clock = Clock.deserialize(row["clock"])
        else:
            self.clock = Clock(make_node_id())
            await self.save_clock()
        log.debug(f"Clock loaded: {self.clock.timestamp}")
        return self.clock

    async def save_clock(self) -> None:
        if self.clock is None:
            return
        ph = self.session.placeholder
        await self.session.run(
            f'INSERT INTO "messages_clock" ("id", "clock") VALUES ({ph(1)}, {ph(2)}) '
            f'ON CONFLICT ("id") DO UPDATE SET "clock" = EXCLUDED."clock"',
            [CLOCK_ROW_ID, self.clock.serialize()],
        )

    async def _ensure_clock(self) -> Clock:
        if self.clock is None:
            return await self.load_clock()
        return self.clock

    # ── apply ─────────────────────────────────────

    def _order_by_timestamp(self) -> str:
        # Byte order, so the text form sorts like (millis, counter, node)
        if self.session.kind is BackendKind.NETWORKED:
            return 'ORDER BY "timestamp" COLLATE "C" DESC'
        return 'ORDER BY "timestamp" DESC'

    async def cell_timestamp(self, dataset: str, row: str, column: str) -> Optional[Timestamp]:
        ph = self.session.placeholder
        found = await self.session.first(
            f'SELECT "timestamp" FROM "messages_crdt" '
            f'WHERE "dataset" = {ph(1)} AND "row" = {ph(2)} AND "column" = {ph(3)} '
            f"{self._order_by_timestamp()} LIMIT 1",
            [dataset, row, column],
        )
        return Timestamp.parse(found["timestamp"]) if found else None

    async def _write_cell(self, message: CRDTMessage) -> None:
        s = self.session
        q, ph = s.quote_ident, s.placeholder
        table, column = q(message.dataset), q(message.column)

        value = message.value
        if s.kind is BackendKind.NETWORKED:
            columns = await self._table_columns(message.dataset)
            value = coerce_for_column(value, columns.get(message.column))

        exists = await s.first(f'SELECT 1 AS found FROM {table} WHERE "id" = {ph(1)}', [message.row])
        if exists:
            await s.run(f'UPDATE {table} SET {column} = {ph(1)} WHERE "id" = {ph(2)}', [value, message.row])
        elif message.column == "tombstone":
            await s.run(f'INSERT INTO {table} ("id", {column}) VALUES ({ph(1)}, {ph(2)})', [message.row, value])
        else:
            await s.run(
                f'INSERT INTO {table} ("id", "tombstone", {column}) VALUES ({ph(1)}, {ph(2)}, {ph(3)})',
                [message.row, 0, value],
            )

    async def _apply(self, message: CRDTMessage) -> bool:
        current = await self.cell_timestamp(message.dataset, message.row, message.column)
        changed = current is None or message.timestamp > current
        if changed:
            await self._write_cell(message)

        ph = self.session.placeholder
        await self.session.run(
            f'INSERT INTO "messages_crdt" ("timestamp", "dataset", "row", "column", "value") '
            f"VALUES ({self.session.placeholders(5)}) "
            f'ON CONFLICT ("timestamp") DO NOTHING',
            [
                str(message.timestamp),
                message.dataset,
                message.row,
                message.column,
                serialize_value(message.value),
            ],
        )
        return changed

    async def receive(self, messages: Iterable[MessageLike]) -> int:
        """Apply messages atomically. Returns how many changed a cell."""
        batch: List[CRDTMessage] = [
            m if isinstance(m, CRDTMessage) else CRDTMessage.from_dict(m) for m in messages
        ]
        for message in batch:
            await self.validate(message)
        if not batch:
            return 0

        clock = await self._ensure_clock()
        before = clock.timestamp
        applied = 0
        try:
            async with self.session.transaction_scope():
                for message in batch:
                    if message.timestamp.node != clock.node:
                        clock.recv(message.timestamp)
                    if await self._apply(message):
                        applied += 1
                await self.save_clock()
        except Exception:
            clock.timestamp = before
            raise

        log.debug(f"Received {len(batch)} messages, {applied} applied")
        return applied

    # ── local mutations ─────────────────────────────────────

    def _stamp(self, table: str, row_id: str, fields: Dict[str, Any]) -> List[CRDTMessage]:
        return [
            CRDTMessage(table, row_id, column, value, self.clock.send())
            for column, value in fields.items()
            if column != "id"
        ]

    async def insert(self, table: str, row: Dict[str, Any]) -> str:
        """Create a row through replicated messages; returns its id."""
        await self._ensure_clock()
        row_id = str(row.get("id") or uuid.uuid4())
        fields = dict(row)
        fields.setdefault("tombstone", 0)
        await self.receive(self._stamp(table, row_id, fields))
        return row_id

    async def update(self, table: str, fields: Dict[str, Any]) -> None:
        if not fields.get("id"):
            raise MalformedMessageError(f"update({table}) requires an id")
        await self._ensure_clock()
        await self.receive(self._stamp(table, str(fields["id"]), fields))

    async def delete(self, table: str, row_id: str) -> None:
        await self._ensure_clock()
        await self.receive(self._stamp(table, row_id, {"tombstone": 1}))

    # ── reads ─────────────────────────────────────

    async def select_alive(self, table: str, include_deleted: bool = False) -> List[Row]:
        if not _IDENTIFIER.match(table):
            raise MalformedMessageError(f"Invalid table name: {table!r}")
        sql = f"SELECT * FROM {self.session.quote_ident(table)}"
        if not include_deleted:
            sql += ' WHERE COALESCE("tombstone", 0) = 0'
        return await self.session.all(sql + ' ORDER BY "id"')

    async def history(self, dataset: str, row: str) -> List[Dict[str, Any]]:
        """Every recorded message for one row, oldest first, values decoded."""
        ph = self.session.placeholder
        order = self._order_by_timestamp().replace(" DESC", " ASC")
        rows = await self.session.all(
            f'SELECT "timestamp", "column", "value" FROM "messages_crdt" '
            f'WHERE "dataset" = {ph(1)} AND "row" = {ph(2)} {order}',
            [dataset, row],
        )
        return [
            {"timestamp": r["timestamp"], "column": r["column"], "value": deserialize_value(r["value"])}
            for r in rows
        ]
