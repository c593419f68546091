"""Customer identity and transaction models touched by ingestion."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from points_ingest.database import Base


class CustomerNumber(Base):
    """Maps a mobile number at a branch to a stable customer id."""

    __tablename__ = "customer_numbers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(36), nullable=False, unique=True)
    mobile_number = Column(String(32), nullable=False)
    branch_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("mobile_number", "branch_id", name="uq_customer_numbers_mobile_branch"),
    )

    def __repr__(self):
        return f"<CustomerNumber(customer_id='{self.customer_id}', mobile='{self.mobile_number}')>"


class CustomerTransaction(Base):
    """A balance-affecting transaction recorded against a customer."""

    __tablename__ = "customer_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(
        String(36), ForeignKey("customer_numbers.customer_id"), nullable=False, index=True
    )
    branch_id = Column(String(255), nullable=False)
    upload_job_id = Column(String(36), nullable=True, index=True)
    external_id = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # NULL external ids never collide, so only rows carrying one are deduplicated.
    __table_args__ = (
        UniqueConstraint("upload_job_id", "external_id", name="uq_customer_transactions_job_external"),
    )
