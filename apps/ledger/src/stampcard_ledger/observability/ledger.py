from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LedgerSnapshot:
    stamps: Dict[str, int]
    claim_failures: Dict[str, int]
    redemptions: Dict[str, int]
    scratch: Dict[str, Dict[str, int]]
    contention: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "stamps": dict(self.stamps),
            "claim_failures": dict(self.claim_failures),
            "redemptions": dict(self.redemptions),
            "scratch": {key: dict(value) for key, value in self.scratch.items()},
            "contention": dict(self.contention),
        }


class LedgerObservabilityStore:
    """Collect ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._stamps: Dict[str, int] = defaultdict(int)
        self._claim_failures: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._scratch_tickets: Dict[str, int] = defaultdict(int)
        self._scratch_prizes: Dict[str, int] = defaultdict(int)
        self._contention: Dict[str, int] = defaultdict(int)

    def record_stamps_issued(self, value: int) -> None:
        with self._lock:
            self._stamps["codes_issued"] += 1
            self._stamps["stamps_issued"] += value

    def record_stamps_claimed(self, value: int, *, new_card: bool) -> None:
        with self._lock:
            self._stamps["codes_claimed"] += 1
            self._stamps["stamps_claimed"] += value
            if new_card:
                self._stamps["cards_created"] += 1

    def record_claim_failure(self, reason: str) -> None:
        with self._lock:
            self._claim_failures[reason] += 1

    def record_redemption_event(self, event: str) -> None:
        with self._lock:
            self._redemptions[event] += 1

    def record_ticket_event(self, event: str) -> None:
        with self._lock:
            self._scratch_tickets[event] += 1

    def record_prize_awarded(self, prize_type: str) -> None:
        with self._lock:
            self._scratch_prizes[prize_type or "unknown"] += 1

    def record_retry(self, label: str) -> None:
        with self._lock:
            self._contention[f"retry:{label}"] += 1

    def record_contention_exhausted(self, label: str) -> None:
        with self._lock:
            self._contention[f"exhausted:{label}"] += 1

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                stamps=dict(self._stamps),
                claim_failures=dict(self._claim_failures),
                redemptions=dict(self._redemptions),
                scratch={
                    "tickets": dict(self._scratch_tickets),
                    "prizes": dict(self._scratch_prizes),
                },
                contention=dict(self._contention),
            )

    def reset(self) -> None:
        with self._lock:
            self._stamps.clear()
            self._claim_failures.clear()
            self._redemptions.clear()
            self._scratch_tickets.clear()
            self._scratch_prizes.clear()
            self._contention.clear()


_STORE = LedgerObservabilityStore()


def get_ledger_store() -> LedgerObservabilityStore:
    return _STORE


__all__ = ["get_ledger_store", "LedgerObservabilityStore", "LedgerSnapshot"]
