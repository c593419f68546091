"""Generate random transaction rows and submit them as an upload job."""
import random
import sys
from decimal import Decimal

from points_ingest.database import Base, engine
from points_ingest.models import CustomerNumber, CustomerTransaction, UploadJob  # noqa: F401 - Import to register models
from points_ingest.schemas.upload import TransactionRow
from points_ingest.wiring import build_upload_queue


def generate_rows(num_rows: int, num_customers: int) -> list[TransactionRow]:
    """
    Generate random transaction rows.

    Args:
        num_rows: Number of transaction rows to generate
        num_customers: Number of distinct mobile numbers to spread them over

    Returns:
        List of transaction rows
    """
    mobiles = [f"+9477{random.randint(1000000, 9999999)}" for _ in range(num_customers)]
    notes = ["In-store purchase", "Online order", "Promotion bonus", "Refund", None]

    rows = []
    for i in range(num_rows):
        amount = Decimal(random.randint(100, 50000)) / 100
        note = random.choice(notes)
        if note == "Refund":
            amount = -amount
        rows.append(
            TransactionRow(
                mobile=random.choice(mobiles),
                amount=amount,
                external_id=f"TX-{i+1:08d}",
                note=note,
            )
        )
    return rows


def main():
    """Main function to parse arguments and submit the job."""
    if len(sys.argv) < 3:
        print("Usage: python submit_sample_upload.py <branch_id> <num_rows> [num_customers]")
        print("Example: python submit_sample_upload.py branch-001 1000 50")
        sys.exit(1)

    branch_id = sys.argv[1]
    num_rows = int(sys.argv[2])
    num_customers = int(sys.argv[3]) if len(sys.argv) > 3 else max(1, num_rows // 10)

    Base.metadata.create_all(bind=engine)

    print(f"Generating {num_rows:,} transactions for {num_customers:,} customers...")
    rows = generate_rows(num_rows, num_customers)
    job_id = build_upload_queue().submit(
        "system_user", branch_id, f"sample_{num_rows}.csv", rows
    )
    print(f"✅ Queued upload job {job_id} with {num_rows:,} transactions")


if __name__ == "__main__":
    main()
