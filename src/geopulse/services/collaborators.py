"""
External Collaborators

Contracts for the services the generation engine depends on but does not
own: the per-user download quota and the generation log. In-memory
implementations back the tests and the standalone HTTP service.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import structlog

from ..errors import PersistenceLogError


class QuotaService(Protocol):
    """Per-user download balance. ``decrement_quota`` must be atomic."""

    def has_remaining_quota(self, user_id: str) -> bool:
        ...

    def decrement_quota(self, user_id: str) -> bool:
        ...

    def refund_quota(self, user_id: str, n: int) -> None:
        ...


@dataclass
class GenerationRecord:
    """One row of the generation log."""
    user_id: str
    bbox: Optional[Dict[str, float]]
    zoom_min: int
    zoom_max: int
    tile_source: str
    export_format: str
    size_mb: Optional[float]
    tile_count: Optional[int]
    status: str
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class GenerationLogSink(Protocol):
    """Accepts generation records. Implementations raise on write failure."""

    def record(self, record: GenerationRecord) -> None:
        ...


class InMemoryQuotaService:
    """Thread-safe quota ledger keyed by user id."""

    def __init__(self, balances: Optional[Dict[str, int]] = None, default_balance: int = 0):
        self._balances: Dict[str, int] = dict(balances or {})
        self._default_balance = default_balance
        self._lock = threading.Lock()
        self.refunds: List[Dict[str, Any]] = []
        self.logger = structlog.get_logger(component="InMemoryQuotaService")

    def balance(self, user_id: str) -> int:
        with self._lock:
            return self._balances.get(user_id, self._default_balance)

    def set_balance(self, user_id: str, balance: int) -> None:
        with self._lock:
            self._balances[user_id] = balance

    def has_remaining_quota(self, user_id: str) -> bool:
        return self.balance(user_id) > 0

    def decrement_quota(self, user_id: str) -> bool:
        with self._lock:
            current = self._balances.get(user_id, self._default_balance)
            if current <= 0:
                return False
            self._balances[user_id] = current - 1
        self.logger.info("Download deducted", user_id=user_id, remaining=current - 1)
        return True

    def refund_quota(self, user_id: str, n: int) -> None:
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, self._default_balance) + n
            self.refunds.append({"user_id": user_id, "n": n})
        self.logger.info("Downloads refunded", user_id=user_id, refunded=n)


class InMemoryGenerationLog:
    """Keeps generation records in a list."""

    def __init__(self):
        self.records: List[GenerationRecord] = []
        self._lock = threading.Lock()

    def record(self, record: GenerationRecord) -> None:
        with self._lock:
            self.records.append(record)

    def for_user(self, user_id: str) -> List[GenerationRecord]:
        with self._lock:
            return [r for r in self.records if r.user_id == user_id]


class StructlogGenerationLog:
    """Writes generation records as structured log events."""

    def __init__(self, logger=None):
        self.logger = logger or structlog.get_logger(component="GenerationLog")

    def record(self, record: GenerationRecord) -> None:
        try:
            self.logger.info("Generation recorded", **record.to_dict())
        except (TypeError, ValueError) as e:
            raise PersistenceLogError(f"Could not write generation record: {e}") from e
