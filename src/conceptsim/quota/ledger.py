"""Per-identity usage ledger gating generation requests."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from ..logger import EventLogger


@dataclass
class QuotaRecord:
    identity: str
    units_consumed: int = 0
    committed_requests: set[int] = field(default_factory=set)


@dataclass
class QuotaLedger:
    """Admission control over generation requests.

    ``try_reserve`` is a precondition check, not a lock: requests that passed it
    before the limit was crossed may still commit.
    """

    logger: EventLogger
    limit: int = 2000
    chars_per_unit: int = 4
    records: dict[str, QuotaRecord] = field(default_factory=dict)

    def record(self, identity: str) -> QuotaRecord:
        return self.records.setdefault(identity, QuotaRecord(identity))

    def consumed(self, identity: str) -> int:
        return self.record(identity).units_consumed

    def remaining(self, identity: str) -> int:
        return max(0, self.limit - self.consumed(identity))

    def try_reserve(self, identity: str) -> bool:
        return self.consumed(identity) < self.limit

    def commit(self, identity: str, request_id: int, units: int) -> bool:
        if units < 0:
            return False
        record = self.record(identity)
        if request_id in record.committed_requests:
            self.logger.log(
                "quota_duplicate_commit",
                {"identity": identity, "request_id": request_id, "units": units},
            )
            return False
        record.committed_requests.add(request_id)
        record.units_consumed += units
        self.logger.log(
            "quota_committed",
            {
                "identity": identity,
                "request_id": request_id,
                "units": units,
                "units_consumed": record.units_consumed,
                "limit": self.limit,
            },
        )
        return True

    def estimate_units(self, prompt: str, result_text: str) -> int:
        return math.ceil((len(prompt) + len(result_text)) / self.chars_per_unit)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            identity: {
                "units_consumed": record.units_consumed,
                "remaining": self.remaining(identity),
                "limit": self.limit,
                "requests": len(record.committed_requests),
            }
            for identity, record in self.records.items()
        }
