"""SQLAlchemy-backed voucher store.

Voucher consumption is expressed as conditional ``UPDATE`` statements whose
``WHERE`` clause carries the precondition; a statement that touches no row
means another commit got there first. The ledger relies on a unique
constraint over ``(new_member_id, group_id)``.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    and_,
    func,
    not_,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .logging_config import get_logger
from .models import ConsumptionKind, RewardLedgerEntry, Voucher, VoucherUpdate
from .store import CommitConflictError, StoreError, StoreUnavailableError, VoucherQuery, VoucherStore

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class VoucherRow(Base):
    __tablename__ = "rewards_vouchers"
    __table_args__ = (
        CheckConstraint("remaining_uses >= 0", name="ck_rewards_vouchers_remaining_uses"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    added_by: Mapped[str] = mapped_column(String(64), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    remaining_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_multi_use: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class LedgerRow(Base):
    __tablename__ = "rewards_ledger"
    __table_args__ = (
        UniqueConstraint("new_member_id", "group_id", name="uq_rewards_ledger_join"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    new_member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    referrer_voucher_refs: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    new_member_voucher_refs: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)


_CONFLICT_FREE_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def _available_clause():
    return or_(
        and_(VoucherRow.is_multi_use.is_(True), VoucherRow.remaining_uses > 0),
        and_(VoucherRow.is_multi_use.is_(False), VoucherRow.owner_id.is_(None)),
    )


def _filtered(stmt, query: VoucherQuery):
    if query.codes is not None:
        stmt = stmt.where(VoucherRow.code.in_(sorted(query.codes)))
    if query.owner_id is not None:
        stmt = stmt.where(VoucherRow.owner_id == query.owner_id)
    if query.assigned is True:
        stmt = stmt.where(VoucherRow.owner_id.is_not(None))
    elif query.assigned is False:
        stmt = stmt.where(VoucherRow.owner_id.is_(None))
    if query.multi_use is not None:
        stmt = stmt.where(VoucherRow.is_multi_use.is_(query.multi_use))
    if query.available is True:
        stmt = stmt.where(_available_clause())
    elif query.available is False:
        stmt = stmt.where(not_(_available_clause()))
    return stmt


class SqlVoucherStore(VoucherStore):
    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("tables_created", url=self.database_url)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_maker() as session:
                yield session
        except StoreError:
            raise
        except IntegrityError as e:
            raise CommitConflictError(str(e.orig)) from e
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", error=str(e))
            raise StoreUnavailableError(str(e)) from e

    async def get_ledger_entry(self, new_member_id: str, group_id: str) -> Optional[RewardLedgerEntry]:
        async with self._session() as session:
            result = await session.execute(
                select(LedgerRow).where(
                    LedgerRow.new_member_id == new_member_id,
                    LedgerRow.group_id == group_id,
                )
            )
            row = result.scalar_one_or_none()
            return RewardLedgerEntry.model_validate(row) if row else None

    async def list_ledger_entries(
        self, referrer_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> list[RewardLedgerEntry]:
        stmt = select(LedgerRow)
        if referrer_id is not None:
            stmt = stmt.where(LedgerRow.referrer_id == referrer_id)
        if group_id is not None:
            stmt = stmt.where(LedgerRow.group_id == group_id)
        async with self._session() as session:
            result = await session.execute(stmt.order_by(LedgerRow.decided_at, LedgerRow.id))
            return [RewardLedgerEntry.model_validate(row) for row in result.scalars().all()]

    async def list_vouchers(self, query: VoucherQuery) -> list[Voucher]:
        stmt = _filtered(select(VoucherRow), query).order_by(VoucherRow.added_at, VoucherRow.code)
        if query.offset:
            stmt = stmt.offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [Voucher.model_validate(row) for row in result.scalars().all()]

    async def count_vouchers(self, query: VoucherQuery) -> int:
        stmt = _filtered(select(func.count()).select_from(VoucherRow), query)
        async with self._session() as session:
            result = await session.execute(stmt)
            return int(result.scalar() or 0)

    async def insert_vouchers(self, vouchers: list[Voucher]) -> list[str]:
        if not vouchers:
            return []
        insert = _CONFLICT_FREE_INSERTS.get(self.engine.dialect.name)
        async with self._session() as session:
            async with session.begin():
                if insert is None:
                    existing = await session.execute(
                        select(VoucherRow.code).where(VoucherRow.code.in_([v.code for v in vouchers]))
                    )
                    existing_codes = set(existing.scalars().all())
                    fresh = [v for v in vouchers if v.code not in existing_codes]
                    session.add_all([VoucherRow(**v.model_dump()) for v in fresh])
                    return [v.code for v in fresh]

                # Codes written by a concurrent batch are skipped by the
                # database instead of failing the whole statement.
                stmt = (
                    insert(VoucherRow)
                    .values([v.model_dump() for v in vouchers])
                    .on_conflict_do_nothing(index_elements=["code"])
                    .returning(VoucherRow.code)
                )
                result = await session.execute(stmt)
                written = set(result.scalars().all())

        inserted = []
        for voucher in vouchers:
            if voucher.code in written and voucher.code not in inserted:
                inserted.append(voucher.code)
        return inserted

    async def _ledger_entry_exists(self, session: AsyncSession, entry: RewardLedgerEntry) -> bool:
        existing = await session.execute(
            select(LedgerRow.id).where(
                LedgerRow.new_member_id == entry.new_member_id,
                LedgerRow.group_id == entry.group_id,
            )
        )
        return existing.scalar_one_or_none() is not None

    async def commit_reward(self, updates: list[VoucherUpdate], entry: RewardLedgerEntry) -> RewardLedgerEntry:
        async with self._session() as session:
            async with session.begin():
                # A concurrent commit can pass this check too; the
                # uq_rewards_ledger_join constraint rejects the later flush.
                if await self._ledger_entry_exists(session, entry):
                    raise CommitConflictError(
                        f"Ledger entry already exists for {entry.new_member_id} in {entry.group_id}"
                    )

                for change in updates:
                    if change.kind == ConsumptionKind.MULTI_USE:
                        stmt = (
                            update(VoucherRow)
                            .where(
                                VoucherRow.code == change.voucher_code,
                                VoucherRow.is_multi_use.is_(True),
                                VoucherRow.remaining_uses >= change.units,
                            )
                            .values(remaining_uses=VoucherRow.remaining_uses - change.units)
                        )
                    else:
                        stmt = (
                            update(VoucherRow)
                            .where(
                                VoucherRow.code == change.voucher_code,
                                VoucherRow.is_multi_use.is_(False),
                                VoucherRow.owner_id.is_(None),
                            )
                            .values(owner_id=change.owner_id, assigned_at=change.assigned_at)
                        )
                    result = await session.execute(stmt.execution_options(synchronize_session=False))
                    if result.rowcount != 1:
                        raise CommitConflictError(
                            f"Precondition failed for voucher {change.voucher_code}"
                        )

                session.add(LedgerRow(**entry.model_dump()))
                await session.flush()
        return entry
