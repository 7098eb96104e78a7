"""
ConnectorRegistry — the booking providers known to this deployment.

Built once from ``Settings`` by the app container; iteration order is
registration order and is the order providers appear in pull results.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Sequence

import httpx

from config.settings import Settings
from connectors.acuity import AcuityConnector
from connectors.base import BaseConnector
from connectors.square import SquareConnector

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Ordered, name-indexed collection of connectors."""

    def __init__(self, connectors: Sequence[BaseConnector]) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in connectors:
            if conn.provider_name in self._connectors:
                raise ValueError(f"Duplicate connector: {conn.provider_name}")
            self._connectors[conn.provider_name] = conn
            if conn.is_configured():
                logger.info(
                    "Connector registered: %s (%s)",
                    conn.display_name,
                    conn.provider_name,
                )
            else:
                logger.warning(
                    "Connector %s registered but not configured (missing client id/secret)",
                    conn.provider_name,
                )

    def __iter__(self) -> Iterator[BaseConnector]:
        return iter(self._connectors.values())

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a connector by provider name."""
        return self._connectors.get(provider)

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all registered connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "scopes": c.scopes,
                "configured": c.is_configured(),
            }
            for c in self._connectors.values()
        ]

    def list_configured(self) -> List[str]:
        """Return names of configured connectors."""
        return [name for name, c in self._connectors.items() if c.is_configured()]


def build_registry(settings: Settings, http_client: httpx.AsyncClient) -> ConnectorRegistry:
    """All known connectors — add new ones here."""
    return ConnectorRegistry(
        [
            AcuityConnector(settings, http_client),
            SquareConnector(settings, http_client),
        ]
    )
