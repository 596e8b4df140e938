"""Credit accounting collaborators."""

from genguard.infrastructure.credits.credit_ledger import InMemoryCreditLedger

__all__ = ["InMemoryCreditLedger"]
