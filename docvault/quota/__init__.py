"""DocVault storage accounting."""

from docvault.quota.ledger import QuotaDrift, QuotaLedger, QuotaUsage  # noqa: F401

__all__ = ["QuotaLedger", "QuotaUsage", "QuotaDrift"]
