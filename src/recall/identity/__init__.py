"""Identity registry: canonical contacts, aliases, notes, and KYC suggestions."""

from recall.identity.registry import IdentityRegistry, classify_handle

__all__ = ["IdentityRegistry", "classify_handle"]
