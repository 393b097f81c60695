"""
Infrastructure layer: In-process cache of derived balances.

The cache is an optimisation only. Entries are keyed by beneficiary, expire
after a TTL and are dropped explicitly whenever an earning record or payout
of that beneficiary changes. A miss always falls back to a fold over the
ledger.
"""
import threading
import time
from typing import Optional

from harvest_ledger.domain.models import Balance


class BalanceCache:
    """
    Thread-safe TTL cache of Balance objects keyed by beneficiary.

    Each invalidation stamps the beneficiary with a fresh value of a global
    counter. A fold records the stamp before reading the ledger and passes it
    to ``put``; if an invalidation happened in between, the result is dropped.
    Stamps are forgotten on ``clear`` or once more than ``max_tracked``
    beneficiaries carry one; forgotten beneficiaries read the current floor,
    which is newer than every stamp handed out before.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_tracked: int = 10_000):
        self.ttl_seconds = ttl_seconds
        self.max_tracked = max_tracked
        self._entries: dict[str, tuple[float, Balance]] = {}
        self._generations: dict[str, int] = {}
        self._counter = 0
        self._floor = 0
        self._lock = threading.Lock()

    def generation(self, beneficiary: str) -> int:
        with self._lock:
            return self._generations.get(beneficiary, self._floor)

    def get(self, beneficiary: str) -> Optional[Balance]:
        with self._lock:
            entry = self._entries.get(beneficiary)
            if entry is None:
                return None
            stored_at, balance = entry
            if time.monotonic() - stored_at > self.ttl_seconds:
                del self._entries[beneficiary]
                return None
            return balance

    def put(self, balance: Balance, generation: Optional[int] = None) -> bool:
        """
        Store a freshly folded balance.

        Returns:
            False if the entry was invalidated since ``generation`` was read
        """
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            current = self._generations.get(balance.beneficiary, self._floor)
            if generation is not None and generation != current:
                return False
            self._entries[balance.beneficiary] = (time.monotonic(), balance)
            return True

    def invalidate(self, *beneficiaries: str) -> None:
        with self._lock:
            for beneficiary in beneficiaries:
                self._entries.pop(beneficiary, None)
                self._counter += 1
                self._generations[beneficiary] = self._counter
            if len(self._generations) > self.max_tracked:
                self._forget_generations()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._forget_generations()

    def _forget_generations(self) -> None:
        self._generations.clear()
        self._counter += 1
        self._floor = self._counter

    def tracked(self) -> int:
        """Number of beneficiaries currently carrying an invalidation stamp."""
        with self._lock:
            return len(self._generations)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
