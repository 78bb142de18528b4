"""
Notification collaborator for backup failures.

The scheduler sends one notice when an account's automatic backups are
disabled after repeated failures. Delivery is pluggable; the default
sender writes the notice to the log.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class BackupFailureNotice:
    """
    Details of a disabled automatic backup schedule.

    Attributes:
        account_email: Where the notice should go.
        username: Account display name.
        provider: Provider kind value the backups were going to.
        last_attempt: When the final failed attempt ran.
        failure_count: Consecutive failures that led to disabling.
    """

    account_email: str
    username: str
    provider: str
    last_attempt: datetime
    failure_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_email": self.account_email,
            "username": self.username,
            "provider": self.provider,
            "last_attempt": self.last_attempt.isoformat(),
            "failure_count": self.failure_count,
        }


class NotificationSender(ABC):
    """Delivers backup notices to account owners."""

    @abstractmethod
    def send_backup_failure_email(self, notice: BackupFailureNotice) -> None:
        """
        Send a backup failure notice.

        Implementations may raise; the scheduler logs delivery failures and
        carries on.
        """


class LoggingNotificationSender(NotificationSender):
    """Writes notices to the log instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[BackupFailureNotice] = []

    def send_backup_failure_email(self, notice: BackupFailureNotice) -> None:
        self.sent.append(notice)
        logger.warning(
            f"Automatic backups disabled for {notice.username} <{notice.account_email}> "
            f"after {notice.failure_count} failed attempts to {notice.provider} "
            f"(last attempt {notice.last_attempt.isoformat()})"
        )
