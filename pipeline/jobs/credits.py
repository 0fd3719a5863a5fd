"""
Credits/licensing collaborator.

The render core only consumes this interface: one credit check right before
encoding starts. The in-memory ledger mirrors the transactional behaviour of
the production ledger (all-or-nothing consume, append-only transaction log)
for development and tests.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from utils.logger import setup_logger

logger = setup_logger(__name__)


class CreditCheck(BaseModel):
    ok: bool
    remaining: int


class CreditTransaction(BaseModel):
    license_key: str
    delta: int
    reason: str
    ref: Optional[str] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CreditsLedger(ABC):
    """Interface the renderer and HTTP layer depend on."""

    @abstractmethod
    async def check_and_consume(self, license_key: Optional[str], cost: int, job_ref: Optional[str] = None) -> CreditCheck:
        """Atomically consume ``cost`` credits, or consume nothing and return ok=False."""

    @abstractmethod
    async def add_credits(self, license_key: str, amount: int, reason: str, event_ref: Optional[str] = None) -> None:
        """Grant credits (negative amounts are ignored for the balance but still logged)."""


class InMemoryCreditsLedger(CreditsLedger):
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._totals: Dict[str, int] = dict(balances or {})
        self._used: Dict[str, int] = {key: 0 for key in self._totals}
        self.transactions: List[CreditTransaction] = []
        self._lock = asyncio.Lock()

    def remaining(self, license_key: str) -> int:
        return self._totals.get(license_key, 0) - self._used.get(license_key, 0)

    async def check_and_consume(self, license_key, cost, job_ref=None) -> CreditCheck:
        async with self._lock:
            if not license_key or license_key not in self._totals:
                return CreditCheck(ok=False, remaining=0)
            remaining = self.remaining(license_key)
            if remaining < cost:
                logger.info(f"[credits] {license_key}: {remaining} left, {cost} needed")
                return CreditCheck(ok=False, remaining=remaining)
            self._used[license_key] += cost
            self.transactions.append(CreditTransaction(license_key=license_key, delta=-cost, reason="consume", ref=job_ref))
            return CreditCheck(ok=True, remaining=remaining - cost)

    async def add_credits(self, license_key, amount, reason, event_ref=None) -> None:
        async with self._lock:
            self._totals[license_key] = self._totals.get(license_key, 0) + max(amount, 0)
            self._used.setdefault(license_key, 0)
            self.transactions.append(CreditTransaction(license_key=license_key, delta=amount, reason=reason, ref=event_ref))
            logger.info(f"[credits] +{max(amount, 0)} for {license_key} ({reason})")
