"""
Event store on SQLAlchemy Core.

One engine is shared by backfill inserts, live-watch inserts and API reads.
Each insert is its own transaction.
"""
from __future__ import annotations

import json
import threading
from typing import Any, Iterable

from sqlalchemy import MetaData, Table, create_engine, event as sa_event, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, NoSuchTableError, SQLAlchemyError

from ..domain.models import EventDescriptor, LogRecord
from ..domain.schema import AUTO_COLUMNS, synthesize, check_identifier, ddl_statements, to_column_value
from ..errors import InvalidIdentifierError, InvalidQueryError, SchemaDriftError
from ..log import ThrottledLogger, get_logger
from ..ports.storage import EventStore, InsertOutcome, StatsSink

logger = get_logger(__name__)

TABLE_PREFIX = "event_"


def sqlite_url(path: str) -> str:
    return "sqlite://" if path in ("", ":memory:") else f"sqlite:///{path}"


def make_engine(url: str, *, wal_mode: bool = True, echo: bool = False) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
        if wal_mode and url not in ("sqlite://", "sqlite:///:memory:"):
            @sa_event.listens_for(engine, "connect")
            def _pragma(dbapi_conn, _record) -> None:
                cur = dbapi_conn.cursor()
                cur.execute("PRAGMA journal_mode=WAL")
                cur.execute("PRAGMA synchronous=NORMAL")
                cur.close()
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("[", "{"):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


class SqlEventStore(EventStore):
    def __init__(self, engine: Engine | str, *, wal_mode: bool = True, echo: bool = False) -> None:
        self.engine = make_engine(engine, wal_mode=wal_mode, echo=echo) if isinstance(engine, str) else engine
        self.metadata = MetaData()
        self._tables: dict[str, Table] = {}          # event key -> table synthesized this run
        self._events: dict[str, EventDescriptor] = {}
        self._reflected: dict[str, Table] = {}
        self._lock = threading.Lock()
        self._throttle = ThrottledLogger(logger)

    # ---------------- schema ----------------

    def sync_schemas(self, events: Iterable[EventDescriptor]) -> list[str]:
        ready: list[str] = []
        for ev in events:
            try:
                table = synthesize(ev, self.metadata)
                self._check_drift(table)
                table.create(self.engine, checkfirst=True)
                for idx in table.indexes:
                    idx.create(self.engine, checkfirst=True)
            except (SchemaDriftError, InvalidIdentifierError, SQLAlchemyError) as e:
                logger.error("schema_failed", event_name=ev.name, error=str(e))
                continue
            self._tables[ev.key] = table
            self._events[ev.key] = ev
            ready.append(ev.name)
            logger.debug("table_ready", table=table.name)
        if ready:
            logger.info("schema_ready", tables=len(ready))
        return ready

    def _check_drift(self, table: Table) -> None:
        insp = inspect(self.engine)
        if not insp.has_table(table.name):
            return
        existing = {c["name"] for c in insp.get_columns(table.name)}
        wanted = {c.name for c in table.columns}
        if existing != wanted:
            raise SchemaDriftError(table.name, wanted - existing, existing - wanted)

    def ddl(self, event: EventDescriptor) -> list[str]:
        return ddl_statements(synthesize(event, self.metadata), self.engine.dialect)

    def has_table(self, event_name: str) -> bool:
        return event_name.lower() in self._tables

    def _read_table(self, event_name: str) -> Table | None:
        key = event_name.lower()
        if key in self._tables:
            return self._tables[key]
        try:
            check_identifier(key)
        except InvalidIdentifierError:
            return None
        with self._lock:
            if key not in self._reflected:
                try:
                    self._reflected[key] = Table(TABLE_PREFIX + key, MetaData(), autoload_with=self.engine)
                except NoSuchTableError:
                    return None
            return self._reflected[key]

    # ---------------- writes ----------------

    def build_row(self, record: LogRecord, event: EventDescriptor) -> dict[str, Any]:
        row: dict[str, Any] = {
            "contract_address": record.contract_address,
            "transaction_hash": record.transaction_hash,
            "block_number": record.block_number,
            "log_index": record.log_index or 0,
        }
        for i, (col, inp) in enumerate(zip(event.column_names(), event.inputs)):
            arg = record.args[i] if i < len(record.args) else None
            row[col] = to_column_value(arg, inp)
        return row

    @staticmethod
    def _exists(conn, table: Table, record: LogRecord) -> bool:
        return conn.execute(
            select(table.c.id).where(
                table.c.transaction_hash == record.transaction_hash,
                table.c.log_index == (record.log_index or 0),
            ).limit(1)
        ).first() is not None

    def insert(self, record: LogRecord, event_name: str, stats: StatsSink | None = None) -> InsertOutcome:
        key = event_name.lower()
        table = self._tables.get(key)
        if table is None:
            return InsertOutcome.SKIPPED
        outcome = InsertOutcome.INSERTED
        try:
            with self.engine.begin() as conn:
                if self._exists(conn, table, record):
                    outcome = InsertOutcome.DUPLICATE
                else:
                    row = self.build_row(record, self._events[key])
                    conn.execute(table.insert().values(**{k: v for k, v in row.items() if k not in AUTO_COLUMNS}))
        except IntegrityError as e:
            # a concurrent insert of the same key won; any other constraint is a real failure
            with self.engine.connect() as conn:
                raced = self._exists(conn, table, record)
            if raced:
                outcome = InsertOutcome.DUPLICATE
            else:
                outcome = InsertOutcome.ERROR
                self._throttle.log("db_save_errors", "error", "insert_failed",
                                   event_name=event_name, tx=record.transaction_hash, error=str(e.orig))
        except Exception as e:
            outcome = InsertOutcome.ERROR
            self._throttle.log("db_save_errors", "error", "insert_failed",
                               event_name=event_name, tx=record.transaction_hash, error=str(e))
        if outcome is InsertOutcome.DUPLICATE:
            self._throttle.log("duplicate_logs", "debug", "duplicate_skipped",
                               event_name=event_name, tx=record.transaction_hash[:10])
        if stats is not None:
            stats.record(outcome)
        return outcome

    # ---------------- reads ----------------

    def query(
        self,
        event_name: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
        order_by: str = "timestamp",
        order_direction: str = "DESC",
    ) -> list[dict[str, Any]]:
        table = self._read_table(event_name)
        if table is None:
            return []
        direction = order_direction.upper()
        if direction not in ("ASC", "DESC"):
            raise InvalidQueryError(f"order direction must be ASC or DESC, got {order_direction!r}")
        if order_by not in table.c:
            raise InvalidQueryError(f"unknown order column {order_by!r}")
        stmt = select(table)
        for col, value in (filters or {}).items():
            if col not in table.c:
                raise InvalidQueryError(f"unknown filter column {col!r}")
            if isinstance(value, (list, tuple, dict)):
                value = json.dumps(value, separators=(",", ":"))
            stmt = stmt.where(table.c[col] == value)
        order_col = table.c[order_by]
        stmt = stmt.order_by(*(
            (order_col.desc(), table.c.id.desc()) if direction == "DESC" else (order_col.asc(), table.c.id.asc())
        ))
        stmt = stmt.limit(max(0, int(limit))).offset(max(0, int(offset)))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [{k: _maybe_json(v) for k, v in r.items()} for r in rows]

    def count(self, event_name: str) -> int:
        table = self._read_table(event_name)
        if table is None:
            return 0
        with self.engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(table)).scalar_one())

    def list_event_names(self) -> list[str]:
        names = inspect(self.engine).get_table_names()
        return sorted(n[len(TABLE_PREFIX):] for n in names if n.startswith(TABLE_PREFIX))

    def close(self) -> None:
        self.engine.dispose()
