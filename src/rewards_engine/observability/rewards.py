from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RewardsSnapshot:
    ledger: Dict[str, int]
    checkouts: Dict[str, int]
    transitions: Dict[str, int]
    coupons: Dict[str, int]
    transactions: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "checkouts": dict(self.checkouts),
            "transitions": dict(self.transitions),
            "coupons": dict(self.coupons),
            "transactions": dict(self.transactions),
        }


class RewardsObservabilityStore:
    """In-process counters for ledger, checkout and coupon activity."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._checkouts: Dict[str, int] = defaultdict(int)
        self._transitions: Dict[str, int] = defaultdict(int)
        self._coupons: Dict[str, int] = defaultdict(int)
        self._transactions: Dict[str, int] = defaultdict(int)

    def record_ledger_entry(self, kind: str, amount: int) -> None:
        with self._lock:
            self._ledger[f"{kind}:count"] += 1
            self._ledger[f"{kind}:points"] += abs(amount)

    def record_limit_rejection(self, key: str) -> None:
        with self._lock:
            self._ledger[f"limited:{key}"] += 1

    def record_checkout(self, outcome: str) -> None:
        with self._lock:
            self._checkouts[outcome] += 1

    def record_transition(self, action: str, outcome: str) -> None:
        with self._lock:
            self._transitions[f"{action}:{outcome}"] += 1

    def record_coupon_event(self, event: str, count: int = 1) -> None:
        with self._lock:
            self._coupons[event] += count

    def record_transaction_event(self, unit: str, event: str) -> None:
        with self._lock:
            self._transactions[event] += 1
            self._transactions[f"{unit}:{event}"] += 1

    def snapshot(self) -> RewardsSnapshot:
        with self._lock:
            return RewardsSnapshot(
                ledger=dict(self._ledger),
                checkouts=dict(self._checkouts),
                transitions=dict(self._transitions),
                coupons=dict(self._coupons),
                transactions=dict(self._transactions),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._checkouts.clear()
            self._transitions.clear()
            self._coupons.clear()
            self._transactions.clear()


_STORE = RewardsObservabilityStore()


def get_rewards_store() -> RewardsObservabilityStore:
    return _STORE


__all__ = ["get_rewards_store", "RewardsObservabilityStore", "RewardsSnapshot"]
