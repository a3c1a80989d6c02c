"""Persistence collaborators: verification records and feed subscriptions.

Production deployments plug in their own store behind these protocols; the
in-memory implementations serve single-instance deployments and tests.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .OracleOrchestrator import VerificationRecord


class VerificationStore(Protocol):
    def save(self, record: VerificationRecord) -> None: ...

    def find_by_milestone(self, milestone_id: str) -> list[VerificationRecord]: ...


class InMemoryVerificationStore:
    """Verification records grouped by milestone, newest last."""

    def __init__(self) -> None:
        self._records: dict[str, list[VerificationRecord]] = {}
        self._lock = threading.Lock()

    def save(self, record: VerificationRecord) -> None:
        with self._lock:
            self._records.setdefault(record.milestone_id, []).append(record)

    def find_by_milestone(self, milestone_id: str) -> list[VerificationRecord]:
        with self._lock:
            return list(self._records.get(milestone_id, []))


class FeedType(str, Enum):
    ENERGY_PRODUCTION = "ENERGY_PRODUCTION"
    WEATHER = "WEATHER"
    EQUIPMENT_STATUS = "EQUIPMENT_STATUS"


@dataclass
class FeedSubscription:
    """A project's subscription to an oracle data feed.

    :ivar project_id: Subscribing project.
    :ivar feed_type: Kind of data delivered.
    :ivar webhook_url: Optional push destination.
    :ivar budget: Optional spending cap for paid feeds.
    :ivar location: Optional site location filter value.
    :ivar equipment_type: Optional equipment filter value (e.g. "solar").
    """

    project_id: str
    feed_type: FeedType
    webhook_url: str | None = None
    budget: float | None = None
    location: str | None = None
    equipment_type: str | None = None
    is_active: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "feedType": self.feed_type.value,
            "webhookUrl": self.webhook_url,
            "budget": self.budget,
            "location": self.location,
            "equipmentType": self.equipment_type,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }


class SubscriptionStore(Protocol):
    def add(self, subscription: FeedSubscription) -> FeedSubscription: ...

    def find(
        self,
        project_id: str,
        *,
        location: str | None = None,
        equipment_type: str | None = None,
    ) -> list[FeedSubscription]: ...


class InMemorySubscriptionStore:
    def __init__(self) -> None:
        self._subscriptions: list[FeedSubscription] = []
        self._lock = threading.Lock()

    def add(self, subscription: FeedSubscription) -> FeedSubscription:
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def find(
        self,
        project_id: str,
        *,
        location: str | None = None,
        equipment_type: str | None = None,
    ) -> list[FeedSubscription]:
        """Active subscriptions of a project, optionally filtered (case-insensitive)."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        return [
            s for s in subscriptions
            if s.is_active
            and s.project_id == project_id
            and (location is None or (s.location or "").lower() == location.lower())
            and (equipment_type is None or (s.equipment_type or "").lower() == equipment_type.lower())
        ]
