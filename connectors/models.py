"""
Re-exports the credential model from the database package for connector code.
"""

from database.models import ProviderCredential  # noqa: F401

__all__ = ["ProviderCredential"]
