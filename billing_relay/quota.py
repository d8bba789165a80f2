"""
billing_relay/quota.py

Free-tier request gate.

Usage:
    gate = QuotaGate(limit=config.free_request_limit)

    decision = gate.check_and_consume(db, user_id)
    if not decision.allowed:
        return jsonify(decision.to_dict()), 403

Premium users pass without touching request_count. Free users consume
one request per allowed call, through a conditional UPDATE, so two
concurrent calls at limit - 1 cannot both get through.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from billing_relay.config import FREE_REQUEST_LIMIT
from billing_relay.store import ensure_record, get_record, increment_request_count


@dataclass(frozen=True)
class QuotaDecision:
    """Result of one quota check."""
    allowed: bool
    is_premium: bool
    request_count: int
    limit: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            'allowed': self.allowed,
            'isPremium': self.is_premium,
            'requestCount': self.request_count,
        }
        if not self.allowed:
            data['limit'] = self.limit
            data['message'] = self.message
        return data


def limit_reached_message(limit: int) -> str:
    return (
        f'You have reached your free request limit of {limit} requests. '
        f'Please upgrade to Premium for unlimited requests.'
    )


class QuotaGate:
    """Counts free-tier requests per user against a fixed limit."""

    def __init__(self, limit: int = FREE_REQUEST_LIMIT):
        if limit < 0:
            raise ValueError(f"limit must not be negative, got {limit}")
        self.limit = limit

    def _denied(self, request_count: int) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            is_premium=False,
            request_count=request_count,
            limit=self.limit,
            message=limit_reached_message(self.limit),
        )

    def check_and_consume(self, db: Session, user_id: str) -> QuotaDecision:
        """
        Check the user's quota and consume one request if allowed.

        Flow:
            1. Ensure the record exists
            2. Premium -> allowed, count unchanged
            3. At or over the limit -> denied, nothing written
            4. Otherwise conditional increment; if it loses a race,
               re-read and answer from what is stored now
        """
        record = ensure_record(db, user_id)

        if record.is_premium:
            return QuotaDecision(allowed=True, is_premium=True, request_count=record.request_count)

        if record.request_count >= self.limit:
            print(f"[Quota] Limit hit: user={user_id}, usage={record.request_count}/{self.limit}")
            return self._denied(record.request_count)

        new_count = increment_request_count(db, user_id, self.limit)
        if new_count is not None:
            return QuotaDecision(allowed=True, is_premium=False, request_count=new_count)

        # Lost the race: either the limit was reached or the user went premium
        record = get_record(db, user_id)
        if record.is_premium:
            return QuotaDecision(allowed=True, is_premium=True, request_count=record.request_count)

        print(f"[Quota] Limit hit (concurrent): user={user_id}, usage={record.request_count}/{self.limit}")
        return self._denied(record.request_count)
