"""DocVault access control — owner bypass and shared grants."""

from docvault.security.access import AccessResolver, Permission  # noqa: F401

__all__ = ["AccessResolver", "Permission"]
