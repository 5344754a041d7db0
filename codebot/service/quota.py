from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from codebot.storage.models import User


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    used: int
    total: int
    remaining: int
    reset_date: datetime


def is_account_active(user: User) -> bool:
    """Only an explicit ``False`` deactivates; an unset flag counts as active."""
    return user.is_active is not False


class QuotaGate:
    """Pure quota evaluation over a user snapshot. Never mutates state."""

    def evaluate(self, user: User) -> QuotaStatus:
        used = max(0, int(user.message_count))
        total = int(user.message_quota)
        remaining = total - used
        return QuotaStatus(
            allowed=remaining > 0,
            used=used,
            total=total,
            remaining=max(0, remaining),
            reset_date=user.quota_reset_date,
        )
