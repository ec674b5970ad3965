"""Quota package exports."""

from .ledger import QuotaLedger, QuotaRecord

__all__ = ["QuotaLedger", "QuotaRecord"]
