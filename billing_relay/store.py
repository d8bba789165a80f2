"""
billing_relay/store.py

Quota store client: reads and writes of the per-user quota record.

Every mutation here is a single conditional UPDATE so concurrent requests
for the same user or customer cannot interleave a read and a write:

    - increment_request_count: count + 1 only while not premium and under limit
    - set_customer_id_if_absent: never replaces a different customer id
    - compare_and_set_subscription: only if webhook_version is unchanged

Operations:
    - get_record(db, user_id) -> UserQuotaRecord | None
    - get_record_by_customer(db, customer_id, for_update=False)
    - ensure_record(db, user_id) -> UserQuotaRecord
    - increment_request_count(db, user_id, limit) -> int | None
    - set_customer_id_if_absent(db, user_id, customer_id) -> bool
    - compare_and_set_subscription(db, record_id, expected_version, **values) -> bool
"""

from typing import Optional

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_relay.models import UserQuotaRecord, utcnow


# =============================================================================
# READS
# =============================================================================

def get_record(db: Session, user_id: str) -> Optional[UserQuotaRecord]:
    """Fetch the record for a user, refreshed from the database."""
    return db.query(UserQuotaRecord).filter_by(
        user_id=user_id
    ).populate_existing().first()


def get_record_by_customer(
    db: Session,
    customer_id: str,
    for_update: bool = False
) -> Optional[UserQuotaRecord]:
    """
    Fetch the record linked to a Stripe customer.

    Args:
        db: Session
        customer_id: Stripe customer ID (cus_xxx)
        for_update: Take a row lock (PostgreSQL); the caller owns the transaction
    """
    query = db.query(UserQuotaRecord).filter_by(stripe_customer_id=customer_id)
    if for_update:
        query = query.with_for_update()
    return query.populate_existing().first()


# =============================================================================
# WRITES
# =============================================================================

def ensure_record(db: Session, user_id: str) -> UserQuotaRecord:
    """
    Create the record iff it is absent. Idempotent.

    A concurrent creator hitting the unique constraint first is not an
    error; we just read the row it made.
    """
    record = get_record(db, user_id)
    if record is not None:
        return record

    now = utcnow()
    record = UserQuotaRecord(
        user_id=user_id,
        request_count=0,
        is_premium=False,
        webhook_version=0,
        created_at=now,
        updated_at=now,
    )

    try:
        db.add(record)
        db.commit()
        print(f"[Store] Created quota record for user {user_id}")
        return record
    except IntegrityError:
        db.rollback()
        record = get_record(db, user_id)
        if record is None:
            raise
        return record


def increment_request_count(db: Session, user_id: str, limit: int) -> Optional[int]:
    """
    Atomically consume one free request.

    Returns:
        The new request_count, or None if nothing was incremented
        (user is premium, at the limit, or has no record).
    """
    stmt = (
        update(UserQuotaRecord)
        .where(
            UserQuotaRecord.user_id == user_id,
            UserQuotaRecord.is_premium.is_(False),
            UserQuotaRecord.request_count < limit,
        )
        .values(
            request_count=UserQuotaRecord.request_count + 1,
            updated_at=utcnow(),
        )
        .returning(UserQuotaRecord.request_count)
        .execution_options(synchronize_session=False)
    )

    new_count = db.execute(stmt).scalar_one_or_none()
    db.commit()
    return new_count


def set_customer_id_if_absent(db: Session, user_id: str, customer_id: str) -> bool:
    """
    Link a Stripe customer to a user.

    Sets the id when the record has none, or re-affirms the same id.
    A record already linked to a different customer is left alone.

    Returns:
        True if the record now carries customer_id
    """
    stmt = (
        update(UserQuotaRecord)
        .where(
            UserQuotaRecord.user_id == user_id,
            or_(
                UserQuotaRecord.stripe_customer_id.is_(None),
                UserQuotaRecord.stripe_customer_id == customer_id,
            ),
        )
        .values(stripe_customer_id=customer_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )

    try:
        result = db.execute(stmt)
        db.commit()
    except IntegrityError:
        # customer already linked to another user
        db.rollback()
        print(f"[Store] Customer {customer_id} is linked to another user; not linking to {user_id}")
        return False

    if result.rowcount != 1:
        print(f"[Store] User {user_id} already has a different customer id; kept it")
        return False

    return True


def compare_and_set_subscription(
    db: Session,
    record_id: int,
    expected_version: int,
    **values
) -> bool:
    """
    Write webhook-driven fields if nobody else has since.

    Bumps webhook_version. Does not commit; the reconciliation
    procedure owns the transaction.

    Returns:
        True if the row was updated, False if the version moved on
    """
    values['webhook_version'] = expected_version + 1
    values.setdefault('updated_at', utcnow())

    stmt = (
        update(UserQuotaRecord)
        .where(
            UserQuotaRecord.id == record_id,
            UserQuotaRecord.webhook_version == expected_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    return db.execute(stmt).rowcount == 1
