"""Applies single transaction rows against customer balances."""
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from points_ingest.clock import Clock, SystemClock
from points_ingest.database import upsert_insert
from points_ingest.exceptions import IngestionError
from points_ingest.models.customer import CustomerNumber, CustomerTransaction
from points_ingest.schemas.upload import TransactionRow

logger = logging.getLogger(__name__)


class IngestOutcome(str, enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    reason: Optional[str] = None

    @classmethod
    def applied(cls) -> "IngestResult":
        return cls(IngestOutcome.APPLIED)

    @classmethod
    def skipped(cls, reason: str) -> "IngestResult":
        return cls(IngestOutcome.SKIPPED, reason)

    @classmethod
    def failed(cls, reason: str) -> "IngestResult":
        return cls(IngestOutcome.FAILED, reason)


class BatchIngestor:
    """
    Resolves the customer for a row and records its transaction.

    Each ``apply`` call runs in its own database transaction. Customer
    creation is an INSERT ... ON CONFLICT DO NOTHING on the unique
    ``(mobile_number, branch_id)`` pair followed by a read, so concurrent
    first sightings of a mobile number converge on one customer id.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Optional[Clock] = None,
        allow_negative_amounts: bool = True,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._allow_negative_amounts = allow_negative_amounts

    def apply(self, branch_id: str, row: TransactionRow, job_id: Optional[str] = None) -> IngestResult:
        """
        Apply one row.

        Args:
            branch_id: Branch the row belongs to
            row: Transaction row to apply
            job_id: Upload job the row came from; rows of the same job that
                repeat an external transaction id are skipped

        Returns:
            ``applied``, ``skipped`` (in-job duplicate) or ``failed`` with a reason
        """
        try:
            mobile, transaction_date = self._prepare(row)
        except IngestionError as e:
            return IngestResult.failed(str(e))

        session = self._session_factory()
        try:
            customer_id = self.resolve_customer(session, mobile, branch_id)
            inserted = self._record_transaction(
                session, customer_id, branch_id, row, transaction_date, job_id
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.debug(f"Transaction write rolled back for mobile {mobile}: {e}")
            return IngestResult.failed(f"Failed to record transaction: {e}")
        finally:
            session.close()

        if not inserted:
            return IngestResult.skipped(f"Duplicate transaction id {row.external_id}")
        return IngestResult.applied()

    def resolve_customer(self, session: Session, mobile: str, branch_id: str) -> str:
        """
        Return the customer id for ``(mobile, branch_id)``, creating it on first sight.

        Args:
            session: Session whose transaction the lookup joins
            mobile: Normalized mobile number
            branch_id: Branch id

        Returns:
            The stable customer id for the pair
        """
        stmt = upsert_insert(session, CustomerNumber).values(
            customer_id=str(uuid.uuid4()),
            mobile_number=mobile,
            branch_id=branch_id,
            created_at=self._clock.now(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["mobile_number", "branch_id"])
        result = session.execute(stmt)
        if result.rowcount:
            logger.debug(f"🆕 Created customer for mobile {mobile} at branch {branch_id}")

        return session.execute(
            select(CustomerNumber.customer_id).where(
                CustomerNumber.mobile_number == mobile,
                CustomerNumber.branch_id == branch_id,
            )
        ).scalar_one()

    def _prepare(self, row: TransactionRow) -> tuple[str, datetime]:
        mobile = row.mobile.strip()
        if not mobile:
            raise IngestionError("Missing mobile number")
        if not row.amount.is_finite():
            raise IngestionError(f"Invalid amount {row.amount}")
        if row.amount < 0 and not self._allow_negative_amounts:
            raise IngestionError(f"Negative amount {row.amount} not allowed")

        if not row.date:
            return mobile, self._clock.now()
        try:
            transaction_date = datetime.fromisoformat(row.date.strip())
        except ValueError as e:
            raise IngestionError(f"Invalid transaction date {row.date!r}") from e
        if transaction_date.tzinfo is None:
            transaction_date = transaction_date.replace(tzinfo=timezone.utc)
        return mobile, transaction_date

    def _record_transaction(
        self,
        session: Session,
        customer_id: str,
        branch_id: str,
        row: TransactionRow,
        transaction_date: datetime,
        job_id: Optional[str],
    ) -> bool:
        stmt = upsert_insert(session, CustomerTransaction).values(
            customer_id=customer_id,
            branch_id=branch_id,
            upload_job_id=job_id,
            external_id=row.external_id or None,
            amount=row.amount,
            transaction_date=transaction_date,
            notes=row.note,
            created_at=self._clock.now(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["upload_job_id", "external_id"])
        return session.execute(stmt).rowcount == 1
