"""Narrow repositories returning plain records instead of ORM objects."""

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from cardfund.common.state_machine import TRANSACTION_TRANSITIONS, validate_transition
from cardfund.services.deposits.errors import DuplicateTransaction, ReconciliationMismatch
from cardfund.services.deposits.models import Account, DepositTransaction
from cardfund.services.deposits.schemas import AccountRecord, TransactionRecord


def _to_record(row: DepositTransaction) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=row.transaction_id,
        account_id=row.account_id,
        external_transfer_id=row.external_transfer_id,
        application_id=row.application_id,
        status=row.status,
        amount=row.amount,
        credited_amount=row.credited_amount,
        created_at=row.created_at,
    )


class AccountRepository:
    """Read access to monitored accounts (address and issuer user assigned)."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _monitored():
        return select(Account).where(Account.address.is_not(None), Account.issuer_user_id.is_not(None))

    def count_monitored(self) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(self._monitored().subquery())
            ).scalar_one()

    def list_monitored(self, offset: int = 0, limit: int | None = None) -> list[AccountRecord]:
        # Stable order so batch offsets partition the same way within a cycle.
        query = self._monitored().order_by(Account.account_id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        with self.session_factory() as db:
            rows = db.execute(query).scalars().all()
        return [
            AccountRecord(account_id=row.account_id, address=row.address, issuer_user_id=row.issuer_user_id)
            for row in rows
        ]


class TransactionRepository:
    """find-by-id, insert-with-uniqueness-check and update-status over deposits.

    Methods taking `db` join the caller's transaction; the rest open their own
    short session.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def find_by_id(self, transaction_id: str) -> TransactionRecord | None:
        with self.session_factory() as db:
            row = db.get(DepositTransaction, transaction_id)
            return _to_record(row) if row else None

    def find_by_transfer_id(self, external_transfer_id: str, db=None) -> TransactionRecord | None:
        query = select(DepositTransaction).where(DepositTransaction.external_transfer_id == external_transfer_id)
        if db is not None:
            row = db.execute(query).scalar_one_or_none()
            return _to_record(row) if row else None
        with self.session_factory() as session:
            row = session.execute(query).scalar_one_or_none()
            return _to_record(row) if row else None

    def claimed_application_ids(self, application_ids: list[str]) -> set[str]:
        """Subset of `application_ids` already backing a recorded transaction."""

        if not application_ids:
            return set()
        with self.session_factory() as db:
            rows = db.execute(
                select(DepositTransaction.application_id).where(
                    DepositTransaction.application_id.in_(application_ids)
                )
            ).scalars().all()
        return set(rows)

    def insert_unique(self, db, record: DepositTransaction) -> TransactionRecord:
        """Insert inside the caller's transaction; flush to surface constraint errors.

        Raises `DuplicateTransaction` when the transfer is already recorded and
        `ReconciliationMismatch` when the application backs another transfer.
        The savepoint keeps the outer transaction usable after a violation.
        """

        try:
            with db.begin_nested():
                db.add(record)
                db.flush()
        except IntegrityError as exc:
            existing = self.find_by_transfer_id(record.external_transfer_id, db=db)
            if existing is not None:
                raise DuplicateTransaction(record.external_transfer_id) from exc
            raise ReconciliationMismatch(
                f"application {record.application_id} already linked to another transfer"
            ) from exc
        return _to_record(record)

    def update_status(self, transaction_id: str, new_status: str) -> TransactionRecord:
        with self.session_factory() as db:
            row = db.get(DepositTransaction, transaction_id)
            if row is None:
                raise ValueError(f"transaction {transaction_id} not found")
            validate_transition(row.status, new_status, TRANSACTION_TRANSITIONS)
            row.status = new_status
            db.commit()
            return _to_record(row)
