"""
Transaction store.

Persistent mapping from provider correlation ids to transaction records.
Every public operation runs in its own session and database transaction.
Status changes are read-modify-write under ``SELECT ... FOR UPDATE`` and every
UPDATE is guarded by the row's version counter. Where the database takes no
row lock (SQLite), the later of two racing writers matches no row, re-reads
and has the lifecycle rules evaluated again against the committed status, so
a provider callback and a query-triggered reconciliation serialise instead of
losing an update.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import distinct, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.sql.elements import ColumnElement

from ticket_payments.core.errors import DuplicateKey, NotFound, StoreError
from ticket_payments.core.state_machine import (
    TransactionStatus,
    TransitionDecision,
    classify_transition,
)
from ticket_payments.database.models import Transaction, TransactionEvent, utc_now

logger = structlog.get_logger(__name__)

# Re-reads allowed when a concurrent writer commits first
MAX_WRITE_CONFLICTS = 5

# Columns a status transition may write besides status/result fields
MUTABLE_FIELDS = frozenset(
    {
        "provider_reference",
        "payment_intent_id",
        "amount",
        "currency",
        "phone_number",
        "discount_amount",
        "settled_at",
        "refund_amount",
        "refunded_at",
        "details",
    }
)

# Columns only written when a checkout session creates the record
CREATE_ONLY_FIELDS = frozenset(
    {
        "customer",
        "customer_email",
        "ticket_id",
        "ticket_label",
        "promo_code",
        "idempotency_key",
        "description",
    }
)


@dataclass
class TransitionOutcome:
    """Result of a status change request."""

    transaction: Transaction
    previous_status: Optional[str]
    decision: TransitionDecision
    created: bool = False

    @property
    def changed(self) -> bool:
        """True if the stored status moved."""
        return self.created or self.decision is TransitionDecision.APPLY


class TransactionStore:
    """
    SQLAlchemy-backed transaction store.

    Args:
        session_factory: Async session factory; every operation opens its
            own session from it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, record: Transaction) -> Transaction:
        """
        Persist a new transaction.

        Args:
            record: Unsaved transaction

        Returns:
            Transaction: The stored record

        Raises:
            DuplicateKey: If a record with the same correlation id exists
            StoreError: If the write fails
        """
        record.customer_email = (record.customer_email or "").lower().strip()

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    existing = await session.execute(
                        select(Transaction.id).where(
                            self._correlation_clause(record.request_id, record.merchant_request_id)
                        )
                    )
                    if existing.first() is not None:
                        raise DuplicateKey(
                            f"Transaction {record.request_id} already exists",
                            request_id=record.request_id,
                        )

                    session.add(record)
                    await session.flush()
                    session.add(
                        self._audit_event(
                            record, "transaction.created", None, {"provider": record.provider}
                        )
                    )
            except DuplicateKey:
                logger.warning("transaction_duplicate_key", request_id=record.request_id)
                raise
            except IntegrityError as e:
                # Lost a concurrent insert race on the unique index
                logger.warning(
                    "transaction_duplicate_key", request_id=record.request_id, error=str(e)
                )
                raise DuplicateKey(
                    f"Transaction {record.request_id} already exists",
                    request_id=record.request_id,
                ) from e
            except SQLAlchemyError as e:
                logger.error("transaction_create_failed", request_id=record.request_id, error=str(e))
                raise StoreError(f"Failed to create transaction: {e}") from e

        logger.info(
            "transaction_created",
            request_id=record.request_id,
            provider=record.provider,
            status=record.status,
        )
        return record

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_by_correlation_id(self, correlation_id: str) -> Transaction:
        """
        Find a transaction by any of its provider correlation ids.

        Raises:
            NotFound: If nothing matches
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction).where(self._correlation_clause(correlation_id))
            )
            transaction = result.scalars().first()

        if transaction is None:
            raise NotFound(f"Transaction {correlation_id} not found", correlation_id=correlation_id)
        return transaction

    async def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Transaction]:
        """Find a card transaction by its Stripe PaymentIntent id."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.payment_intent_id == payment_intent_id)
            )
            return result.scalars().first()

    async def find_by_customer(
        self, email: str, provider: Optional[str] = None
    ) -> List[Transaction]:
        """Return a customer's transactions, most recent first."""
        stmt = select(Transaction).where(Transaction.customer_email == email.lower().strip())
        if provider:
            stmt = stmt.where(Transaction.provider == provider)
        stmt = stmt.order_by(Transaction.created_at.desc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_stale_pending(
        self, minutes_old: int, now: Optional[datetime] = None
    ) -> List[Transaction]:
        """Return pending transactions created more than ``minutes_old`` ago, oldest first."""
        cutoff = (now or utc_now()) - timedelta(minutes=minutes_old)
        stmt = (
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.created_at < cutoff,
            )
            .order_by(Transaction.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_transactions(
        self,
        provider: Optional[str] = None,
        email: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Transaction], int]:
        """
        List transactions with optional filters.

        Returns:
            Tuple of (page of transactions most recent first, total matching)
        """
        filters: List[ColumnElement[bool]] = []
        if provider:
            filters.append(Transaction.provider == provider)
        if email:
            filters.append(Transaction.customer_email == email.lower().strip())
        if status:
            filters.append(Transaction.status == status)

        page = max(page, 1)
        stmt = (
            select(Transaction)
            .where(*filters)
            .order_by(Transaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_stmt = select(func.count(Transaction.id)).where(*filters)

        async with self._session_factory() as session:
            items = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(count_stmt)).scalar_one()
        return items, int(total)

    async def summary(self, provider: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate counts by status and the total succeeded amount.

        Args:
            provider: Restrict to one provider ('mpesa', 'stripe', 'free')
        """
        stmt = select(
            Transaction.status,
            func.count(Transaction.id).label("count"),
            func.coalesce(func.sum(Transaction.amount), 0).label("amount"),
        ).group_by(Transaction.status)
        if provider:
            stmt = stmt.where(Transaction.provider == provider)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        counts = {status.value: 0 for status in TransactionStatus}
        succeeded_amount = 0
        for row in rows:
            counts[row.status] = int(row.count)
            if row.status == TransactionStatus.SUCCEEDED.value:
                succeeded_amount = int(row.amount)

        return {
            "total_transactions": sum(counts.values()),
            "by_status": counts,
            "total_succeeded_amount": succeeded_amount,
        }

    async def stats(self, provider: Optional[str] = None) -> Dict[str, Any]:
        """Payment statistics: totals, revenue, unique customers and a per-status breakdown."""
        by_status_stmt = select(
            Transaction.status,
            func.count(Transaction.id).label("count"),
            func.coalesce(func.sum(Transaction.amount), 0).label("total_amount"),
        ).group_by(Transaction.status)
        customers_stmt = select(func.count(distinct(Transaction.customer_email)))
        if provider:
            by_status_stmt = by_status_stmt.where(Transaction.provider == provider)
            customers_stmt = customers_stmt.where(Transaction.provider == provider)

        async with self._session_factory() as session:
            rows = (await session.execute(by_status_stmt)).all()
            unique_customers = (await session.execute(customers_stmt)).scalar_one()

        by_status = [
            {"status": row.status, "count": int(row.count), "total_amount": int(row.total_amount)}
            for row in rows
        ]
        revenue = sum(
            item["total_amount"]
            for item in by_status
            if item["status"] == TransactionStatus.SUCCEEDED.value
        )
        return {
            "total_payments": sum(item["count"] for item in by_status),
            "total_revenue": revenue,
            "unique_customers": int(unique_customers),
            "by_status": by_status,
        }

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        correlation_id: str,
        new_status: TransactionStatus,
        result_code: Optional[str] = None,
        result_description: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        event_type: str = "status_change",
    ) -> TransitionOutcome:
        """
        Atomically move a transaction found by correlation id to ``new_status``.

        Raises:
            NotFound: If no transaction matches
            StoreError: If the write fails
        """
        where = self._correlation_clause(correlation_id)
        return await self._retry_write_conflicts(
            correlation_id,
            lambda: self._transition(
                where,
                correlation_id,
                new_status,
                result_code,
                result_description,
                extra,
                event_type,
            ),
        )

    async def apply_transition_by_payment_intent(
        self,
        payment_intent_id: str,
        new_status: TransactionStatus,
        result_code: Optional[str] = None,
        result_description: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        event_type: str = "status_change",
    ) -> TransitionOutcome:
        """Same as :meth:`apply_transition`, keyed by Stripe PaymentIntent id."""
        where = Transaction.payment_intent_id == payment_intent_id
        return await self._retry_write_conflicts(
            payment_intent_id,
            lambda: self._transition(
                where,
                payment_intent_id,
                new_status,
                result_code,
                result_description,
                extra,
                event_type,
            ),
        )

    async def upsert_checkout_session(
        self,
        session_id: str,
        status: TransactionStatus,
        values: Dict[str, Any],
        result_code: Optional[str] = None,
        result_description: Optional[str] = None,
        event_type: str = "checkout.session.completed",
    ) -> TransitionOutcome:
        """
        Create-if-absent, update-if-present for a Stripe checkout session.

        On create every value is written. On update the customer snapshot and
        other creation-time context are left alone; descriptive fields are
        refreshed only while the record is still pending, and the status
        follows the lifecycle rules. A terminal record only gains a missing
        PaymentIntent id. The result code and description travel with every
        status write.
        """

        async def upsert() -> TransitionOutcome:
            try:
                return await self._upsert_once(
                    session_id, status, values, result_code, result_description, event_type
                )
            except DuplicateKey:
                # A concurrent writer created the row between our read and insert
                logger.info("checkout_session_upsert_raced", session_id=session_id)
                return await self._upsert_once(
                    session_id, status, values, result_code, result_description, event_type
                )

        return await self._retry_write_conflicts(session_id, upsert)

    async def _retry_write_conflicts(
        self, lookup: str, write: Callable[[], Awaitable[TransitionOutcome]]
    ) -> TransitionOutcome:
        for attempt in range(1, MAX_WRITE_CONFLICTS + 1):
            try:
                return await write()
            except StaleDataError:
                # Another writer committed first; re-read and reclassify
                logger.info("transaction_write_conflict", lookup=lookup, attempt=attempt)

        logger.error("transaction_write_conflicts_exhausted", lookup=lookup)
        raise StoreError(
            f"Transaction {lookup} kept changing under concurrent writes",
            correlation_id=lookup,
        )

    async def _upsert_once(
        self,
        session_id: str,
        status: TransactionStatus,
        values: Dict[str, Any],
        result_code: Optional[str],
        result_description: Optional[str],
        event_type: str,
    ) -> TransitionOutcome:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        select(Transaction)
                        .where(Transaction.request_id == session_id)
                        .with_for_update()
                    )
                    transaction = result.scalars().first()

                    if transaction is None:
                        transaction = self._new_checkout_record(
                            session_id, status, values, result_code, result_description
                        )
                        session.add(transaction)
                        await session.flush()
                        session.add(
                            self._audit_event(
                                transaction, event_type, None, {"upsert": "created"}
                            )
                        )
                        return TransitionOutcome(
                            transaction=transaction,
                            previous_status=None,
                            decision=TransitionDecision.APPLY,
                            created=True,
                        )

                    previous = transaction.status
                    decision = classify_transition(previous, status)
                    updates = {
                        k: v for k, v in values.items()
                        if k in MUTABLE_FIELDS and v is not None
                    }

                    if previous == TransactionStatus.PENDING.value:
                        self._write_fields(transaction, updates)
                    elif transaction.payment_intent_id is None and updates.get("payment_intent_id"):
                        transaction.payment_intent_id = updates["payment_intent_id"]

                    if decision is TransitionDecision.APPLY:
                        self._write_status(transaction, status, result_code, result_description)
                        session.add(
                            self._audit_event(
                                transaction,
                                event_type,
                                previous,
                                {
                                    "upsert": "updated",
                                    "result_code": result_code,
                                    "result_description": result_description,
                                },
                            )
                        )
                    await session.flush()
            except (StaleDataError, DuplicateKey):
                raise
            except IntegrityError as e:
                raise DuplicateKey(f"Transaction {session_id} already exists") from e
            except SQLAlchemyError as e:
                logger.error("checkout_session_upsert_failed", session_id=session_id, error=str(e))
                raise StoreError(f"Failed to upsert checkout session: {e}") from e

        return TransitionOutcome(
            transaction=transaction, previous_status=previous, decision=decision
        )

    async def _transition(
        self,
        where: ColumnElement[bool],
        lookup: str,
        new_status: TransactionStatus,
        result_code: Optional[str],
        result_description: Optional[str],
        extra: Optional[Dict[str, Any]],
        event_type: str,
    ) -> TransitionOutcome:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        select(Transaction).where(where).with_for_update()
                    )
                    transaction = result.scalars().first()
                    if transaction is None:
                        raise NotFound(f"Transaction {lookup} not found", correlation_id=lookup)

                    previous = transaction.status
                    decision = classify_transition(previous, new_status)

                    if decision is TransitionDecision.APPLY:
                        self._write_fields(transaction, extra or {})
                        self._write_status(transaction, new_status, result_code, result_description)
                        session.add(
                            self._audit_event(
                                transaction,
                                event_type,
                                previous,
                                {
                                    "result_code": result_code,
                                    "result_description": result_description,
                                },
                            )
                        )
                        # Version-checked UPDATE; raises StaleDataError if we lost the race
                        await session.flush()
            except (NotFound, StaleDataError):
                raise
            except SQLAlchemyError as e:
                logger.error(
                    "transaction_transition_failed",
                    lookup=lookup,
                    new_status=new_status.value,
                    error=str(e),
                )
                raise StoreError(f"Failed to update transaction {lookup}: {e}") from e

        log = logger.info if decision is TransitionDecision.APPLY else logger.debug
        log(
            "transaction_transition",
            request_id=transaction.request_id,
            from_status=previous,
            to_status=new_status.value,
            decision=decision.value,
        )
        return TransitionOutcome(
            transaction=transaction, previous_status=previous, decision=decision
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _correlation_clause(
        correlation_id: str, merchant_request_id: Optional[str] = None
    ) -> ColumnElement[bool]:
        clauses = [
            Transaction.request_id == correlation_id,
            Transaction.merchant_request_id == correlation_id,
        ]
        if merchant_request_id:
            clauses.append(Transaction.merchant_request_id == merchant_request_id)
            clauses.append(Transaction.request_id == merchant_request_id)
        return or_(*clauses)

    @staticmethod
    def _write_fields(transaction: Transaction, fields: Dict[str, Any]) -> None:
        for name, value in fields.items():
            if name not in MUTABLE_FIELDS:
                raise ValueError(f"Field {name!r} cannot be changed after creation")
            if name == "details":
                transaction.details = {**(transaction.details or {}), **(value or {})}
            else:
                setattr(transaction, name, value)

    @staticmethod
    def _write_status(
        transaction: Transaction,
        new_status: TransactionStatus,
        result_code: Optional[str],
        result_description: Optional[str],
    ) -> None:
        transaction.status = new_status.value
        if result_code is not None:
            transaction.result_code = result_code
        if result_description is not None:
            transaction.result_description = result_description

        now = datetime.now(timezone.utc)
        if new_status is TransactionStatus.REFUNDED:
            transaction.refunded_at = transaction.refunded_at or now
        elif new_status is not TransactionStatus.PENDING and transaction.settled_at is None:
            transaction.settled_at = now
        transaction.updated_at = now

    @classmethod
    def _new_checkout_record(
        cls,
        session_id: str,
        status: TransactionStatus,
        values: Dict[str, Any],
        result_code: Optional[str],
        result_description: Optional[str],
    ) -> Transaction:
        allowed = MUTABLE_FIELDS | CREATE_ONLY_FIELDS
        unknown = set(values) - allowed
        if unknown:
            raise ValueError(f"Unknown checkout session fields: {sorted(unknown)}")

        transaction = Transaction(
            provider="stripe",
            request_id=session_id,
            status=status.value,
            result_code=result_code,
            result_description=result_description,
            **{k: v for k, v in values.items() if v is not None and k != "details"},
        )
        transaction.details = values.get("details") or {}
        transaction.customer = transaction.customer or {}
        transaction.customer_email = (transaction.customer_email or "").lower().strip()
        if status is TransactionStatus.SUCCEEDED and transaction.settled_at is None:
            transaction.settled_at = datetime.now(timezone.utc)
        return transaction

    @staticmethod
    def _audit_event(
        transaction: Transaction,
        event_type: str,
        from_status: Optional[str],
        event_data: Dict[str, Any],
    ) -> TransactionEvent:
        return TransactionEvent(
            transaction_id=transaction.id,
            event_type=event_type,
            from_status=from_status,
            to_status=transaction.status,
            event_data=event_data,
        )
