"""
Ledger Store - durable audit trail of every relay decision.

One row per inbound V1 transaction hash (unique). Rows are claimed as
`pending` right before a disbursement is submitted and settled exactly once
to `sent`, `returned` or `failed`. Terminal rows are never modified or
deleted.

Amounts are uint256, so they are stored as decimal strings and summed in
Python; SQL SUM() over NUMERIC/REAL would lose precision past 2**63.

Sessions are synchronous SQLAlchemy and run in the default executor, the
same way chain calls do.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, create_engine, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import LedgerWriteError

logger = logging.getLogger("migration.ledger")


class RelayStatus(str, Enum):
    PENDING = "pending"     # claimed, disbursement in flight or unconfirmed
    SENT = "sent"           # V2 delivered
    RETURNED = "returned"   # V1 refunded
    FAILED = "failed"       # no outbound transfer; operator must act

    @property
    def is_terminal(self) -> bool:
        return self is not RelayStatus.PENDING


class RelayReason(str, Enum):
    NOT_WHITELISTED = "not_whitelisted"
    OVER_ALLOCATION = "over_allocation"
    INSUFFICIENT_V2 = "insufficient_v2"


# Rows whose v2_amount_sent consumes a sender's allocation
_ALLOCATING_STATUSES = (RelayStatus.SENT.value, RelayStatus.PENDING.value)


# ============================================================
# SCHEMA
# ============================================================

class Base(DeclarativeBase):
    pass


class MigrationRelayRow(Base):
    __tablename__ = "migration_relays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash_in: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    sender_address: Mapped[str] = mapped_column(String(42), nullable=False)
    v1_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    v2_amount_sent: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    asset_out: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)  # v1 / v2
    tx_hash_out: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RelayStatus.PENDING.value)
    reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("migration_relays_sender_idx", "sender_address"),
        Index("migration_relays_sender_status_idx", "sender_address", "status"),
    )


@dataclass
class RelayRecord:
    """Domain view of a ledger row. Amounts are ints in the token's smallest unit."""
    tx_hash_in: str
    sender_address: str
    v1_amount: int
    block_number: int
    status: RelayStatus
    v2_amount_sent: Optional[int] = None
    asset_out: Optional[str] = None
    tx_hash_out: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.sender_address = self.sender_address.lower()
        self.status = RelayStatus(self.status)

    @classmethod
    def from_row(cls, row: MigrationRelayRow) -> "RelayRecord":
        return cls(
            tx_hash_in=row.tx_hash_in,
            sender_address=row.sender_address,
            v1_amount=int(row.v1_amount),
            block_number=row.block_number,
            status=RelayStatus(row.status),
            v2_amount_sent=int(row.v2_amount_sent) if row.v2_amount_sent is not None else None,
            asset_out=row.asset_out,
            tx_hash_out=row.tx_hash_out,
            reason=row.reason,
            error=row.error,
            processed_at=row.processed_at,
            created_at=row.created_at,
        )

    def to_row(self) -> MigrationRelayRow:
        return MigrationRelayRow(
            tx_hash_in=self.tx_hash_in,
            sender_address=self.sender_address,
            v1_amount=str(self.v1_amount),
            v2_amount_sent=str(self.v2_amount_sent) if self.v2_amount_sent is not None else None,
            asset_out=self.asset_out,
            tx_hash_out=self.tx_hash_out,
            block_number=self.block_number,
            status=self.status.value,
            reason=self.reason,
            error=self.error,
            processed_at=self.processed_at,
        )

    def to_dict(self) -> dict:
        return {
            "tx_hash_in": self.tx_hash_in,
            "sender_address": self.sender_address,
            "v1_amount": str(self.v1_amount),
            "v2_amount_sent": str(self.v2_amount_sent) if self.v2_amount_sent is not None else None,
            "asset_out": self.asset_out,
            "tx_hash_out": self.tx_hash_out,
            "block_number": self.block_number,
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================================
# STORE
# ============================================================

class LedgerStore:
    """
    Usage:
        ledger = LedgerStore("sqlite:///data/migration_relays.db")
        ledger.init_schema()
        if await ledger.insert_if_absent(record): ...
    """

    def __init__(self, database_url: str):
        # Railway/Heroku style URLs
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        kwargs: dict = {"pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            # Sessions run on executor threads
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool

        self.database_url = database_url
        self._engine = create_engine(database_url, **kwargs)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)

    def init_schema(self) -> None:
        """Create the table and indexes if missing (idempotent)."""
        if self.database_url.startswith("sqlite:///") and ":memory:" not in self.database_url:
            from pathlib import Path
            Path(self.database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(self._engine, checkfirst=True)
        logger.info("Ledger schema ready")

    def dispose(self) -> None:
        self._engine.dispose()

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    # ---- reads ----

    async def exists(self, tx_hash_in: str) -> bool:
        def _q():
            with self._sessions() as session:
                stmt = select(MigrationRelayRow.id).where(
                    MigrationRelayRow.tx_hash_in == tx_hash_in
                ).limit(1)
                return session.execute(stmt).first() is not None
        return await self._run(_q)

    async def get(self, tx_hash_in: str) -> Optional[RelayRecord]:
        def _q():
            with self._sessions() as session:
                row = session.scalars(
                    select(MigrationRelayRow).where(MigrationRelayRow.tx_hash_in == tx_hash_in)
                ).first()
                return RelayRecord.from_row(row) if row else None
        return await self._run(_q)

    async def sum_sent_amount(self, sender: str) -> int:
        """V2 already committed to `sender`: sent rows plus in-flight pending rows."""
        sender = sender.lower()

        def _q():
            with self._sessions() as session:
                amounts = session.scalars(
                    select(MigrationRelayRow.v2_amount_sent).where(
                        MigrationRelayRow.sender_address == sender,
                        MigrationRelayRow.status.in_(_ALLOCATING_STATUSES),
                        MigrationRelayRow.v2_amount_sent.is_not(None),
                    )
                ).all()
                return sum(int(a) for a in amounts)
        return await self._run(_q)

    async def history(self, sender: str, limit: int = 50) -> list[RelayRecord]:
        sender = sender.lower()

        def _q():
            with self._sessions() as session:
                rows = session.scalars(
                    select(MigrationRelayRow)
                    .where(MigrationRelayRow.sender_address == sender)
                    .order_by(MigrationRelayRow.created_at.desc(), MigrationRelayRow.id.desc())
                    .limit(limit)
                ).all()
                return [RelayRecord.from_row(r) for r in rows]
        return await self._run(_q)

    async def list_by_status(self, status: RelayStatus, limit: int = 100) -> list[RelayRecord]:
        """Oldest first, for operator reconciliation."""
        status = RelayStatus(status)

        def _q():
            with self._sessions() as session:
                rows = session.scalars(
                    select(MigrationRelayRow)
                    .where(MigrationRelayRow.status == status.value)
                    .order_by(MigrationRelayRow.block_number, MigrationRelayRow.id)
                    .limit(limit)
                ).all()
                return [RelayRecord.from_row(r) for r in rows]
        return await self._run(_q)

    async def count_by_status(self) -> dict[str, int]:
        def _q():
            with self._sessions() as session:
                rows = session.execute(
                    select(MigrationRelayRow.status, func.count(MigrationRelayRow.id))
                    .group_by(MigrationRelayRow.status)
                ).all()
                counts = {s.value: 0 for s in RelayStatus}
                counts.update({status: n for status, n in rows})
                return counts
        return await self._run(_q)

    # ---- writes ----

    async def insert_if_absent(self, record: RelayRecord) -> bool:
        """Persist `record` unless its tx_hash_in exists. Returns True if inserted."""
        def _w():
            with self._sessions() as session:
                exists = session.execute(
                    select(MigrationRelayRow.id).where(
                        MigrationRelayRow.tx_hash_in == record.tx_hash_in
                    ).limit(1)
                ).first()
                if exists:
                    return False
                session.add(record.to_row())
                try:
                    session.commit()
                except IntegrityError:
                    # Lost a race on the unique index
                    session.rollback()
                    return False
                return True
        return await self._run(_w)

    async def settle(
        self,
        tx_hash_in: str,
        status: RelayStatus,
        *,
        v2_amount_sent: Optional[int] = None,
        tx_hash_out: Optional[str] = None,
        error: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move a pending row to its terminal status. Terminal rows are left
        untouched (returns False). Raises LedgerWriteError on DB failure.
        """
        status = RelayStatus(status)
        if not status.is_terminal:
            raise ValueError("settle() needs a terminal status")
        processed_at = processed_at or datetime.now(timezone.utc)

        def _w():
            with self._sessions() as session:
                result = session.execute(
                    update(MigrationRelayRow)
                    .where(
                        MigrationRelayRow.tx_hash_in == tx_hash_in,
                        MigrationRelayRow.status == RelayStatus.PENDING.value,
                    )
                    .values(
                        status=status.value,
                        v2_amount_sent=str(v2_amount_sent) if v2_amount_sent is not None else None,
                        tx_hash_out=tx_hash_out,
                        error=error,
                        processed_at=processed_at,
                    )
                )
                session.commit()
                return result.rowcount == 1

        try:
            return await self._run(_w)
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"settle {tx_hash_in} -> {status.value}: {e}") from e

    async def mark_unconfirmed(self, tx_hash_in: str, *, tx_hash_out: str, error: str) -> bool:
        """
        Attach the outbound hash and error to a row that stays `pending`
        because its transfer was broadcast but never confirmed.
        Raises LedgerWriteError on DB failure.
        """
        def _w():
            with self._sessions() as session:
                result = session.execute(
                    update(MigrationRelayRow)
                    .where(
                        MigrationRelayRow.tx_hash_in == tx_hash_in,
                        MigrationRelayRow.status == RelayStatus.PENDING.value,
                    )
                    .values(tx_hash_out=tx_hash_out, error=error)
                )
                session.commit()
                return result.rowcount == 1

        try:
            return await self._run(_w)
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"mark_unconfirmed {tx_hash_in}: {e}") from e
