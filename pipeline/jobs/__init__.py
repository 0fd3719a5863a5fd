"""
Jobs subpackage init.
Asynchronous job records, the bounded render queue and the credits ledger.
"""
from .credits import CreditCheck, CreditsLedger, InMemoryCreditsLedger
from .queue import RenderQueue
from .store import InMemoryJobStore, InvalidJobTransition, JobStore, transition

__all__ = [
    "CreditCheck",
    "CreditsLedger",
    "InMemoryCreditsLedger",
    "RenderQueue",
    "InMemoryJobStore",
    "InvalidJobTransition",
    "JobStore",
    "transition",
]
