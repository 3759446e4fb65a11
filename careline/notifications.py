from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from .errors import TransientActionError
from .models import Person
from .utils.logging import get_logger

logger = get_logger()


class NotificationSender(ABC):
    """Delivers messages to patients and doctors.

    Implementations raise :class:`~careline.errors.TransientActionError` when
    delivery fails; the job is then retried under its lane policy.
    """

    @abstractmethod
    def send(self, target: Person, message: str) -> None:
        """Deliver *message* to *target*."""


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the log instead of delivering them."""

    def send(self, target: Person, message: str) -> None:
        logger.bind(target=target.id).info(f"Notify {target.full_name} <{target.email or '-'}>: {message}")


@dataclass
class SentNotification:
    target_id: str
    address: str | None
    message: str


class RecordingNotificationSender(NotificationSender):
    """Keeps every message in memory.

    ``fail_times`` makes the next deliveries fail; ``fail_targets`` makes the
    first delivery to each listed recipient fail.
    """

    def __init__(self, fail_times: int = 0, fail_targets: Iterable[str] = ()) -> None:
        self.sent: list[SentNotification] = []
        self.fail_times = fail_times
        self.fail_targets = set(fail_targets)
        self._lock = threading.Lock()

    def send(self, target: Person, message: str) -> None:
        with self._lock:
            if self.fail_times > 0:
                self.fail_times -= 1
                raise TransientActionError(f"delivery to {target.id} failed")
            if target.id in self.fail_targets:
                self.fail_targets.discard(target.id)
                raise TransientActionError(f"delivery to {target.id} failed")
            self.sent.append(SentNotification(target.id, target.email, message))
