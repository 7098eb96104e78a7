"""
FastAPI dependencies (shared across routes).

Everything hangs off the ``ServiceContainer`` the lifespan stores on
``app.state``; tests swap in a container built from fakes.
"""

from __future__ import annotations

from fastapi import Depends, Request

from config.settings import Settings
from connectors.credential_store import CredentialStore
from connectors.oauth_state import OAuthStateSigner
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from core.container import ServiceContainer
from core.one_time_codes import OneTimeCodeStore
from core.orchestrator import AvailabilityOrchestrator
from core.rate_limit import AttemptLimiter


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_settings(container: ServiceContainer = Depends(get_container)) -> Settings:
    return container.settings


def get_registry(container: ServiceContainer = Depends(get_container)) -> ConnectorRegistry:
    return container.registry


def get_credential_store(container: ServiceContainer = Depends(get_container)) -> CredentialStore:
    return container.credentials


def get_token_manager(container: ServiceContainer = Depends(get_container)) -> TokenManager:
    return container.tokens


def get_orchestrator(
    container: ServiceContainer = Depends(get_container),
) -> AvailabilityOrchestrator:
    return container.orchestrator


def get_code_store(container: ServiceContainer = Depends(get_container)) -> OneTimeCodeStore:
    return container.codes


def get_state_signer(container: ServiceContainer = Depends(get_container)) -> OAuthStateSigner:
    return container.state_signer


def get_verify_limiter(container: ServiceContainer = Depends(get_container)) -> AttemptLimiter:
    return container.verify_limiter
