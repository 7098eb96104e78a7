"""
BaseConnector — abstract interface for every booking provider.

Each provider (Acuity, Square, …) subclasses this and implements the OAuth
methods plus ``fetch_slots``.  Nothing outside a connector knows a
provider's URLs, auth header format or pagination.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from config.settings import Settings
from utils.schemas import Credential, DateRange, ProviderSlotPayload, TokenGrant


class ProviderError(Exception):
    """A provider API call failed (network error, non-2xx, rejected token)."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.body = body


class BaseConnector(ABC):
    """Abstract base for all booking-provider connectors."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.http = http_client

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'acuity', 'square'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Acuity Scheduling', 'Square'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    @property
    def uses_pkce(self) -> bool:
        return False

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            CSRF nonce echoed back on the callback.
        code_challenge : str, optional
            S256 PKCE challenge for providers that use PKCE.
        """
        ...

    @abstractmethod
    async def handle_callback(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenGrant:
        """Exchange the authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Refresh an expired access token.  Raises ``ProviderError``."""
        ...

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if the provider refused or doesn't
        support revocation.
        """
        return False

    # ── Availability ────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_slots(
        self,
        date_range: DateRange,
        access_token: str,
        credential: Credential,
    ) -> List[ProviderSlotPayload]:
        """
        Fetch open slots inside ``date_range``.

        ``credential.provider_meta`` carries the user's calendar / location
        selection.  Raises ``ProviderError`` when the provider is unusable.
        """
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """
        Return True if this connector has all required config
        (client IDs, secrets, …).
        """
        return True

    def _json(self, response: httpx.Response, message: str) -> Any:
        """Decode a response body, raising ``ProviderError`` when it is not JSON."""
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                self.provider_name,
                f"{message}: invalid JSON response",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def _error(self, message: str, response: Optional[httpx.Response] = None) -> ProviderError:
        if response is None:
            return ProviderError(self.provider_name, message)
        return ProviderError(
            self.provider_name,
            f"{message} ({response.status_code})",
            status_code=response.status_code,
            body=response.text,
        )
