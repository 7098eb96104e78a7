"""
SquareConnector — OAuth2 (PKCE) + Bookings availability for Square.

Appointment services are catalog item variations that carry a
``service_duration``; availability is searched per location, per variation,
in chunks Square accepts (at most 27 days).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from connectors.base import BaseConnector, ProviderError
from utils.schemas import (
    AppointmentType,
    Credential,
    DateRange,
    ProviderSlotPayload,
    SquareSlotPayload,
    TokenGrant,
)

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 27
MAX_SERVICE_VARIATIONS = 40
MAX_CATALOG_PAGES = 3


class SquareConnector(BaseConnector):
    """OAuth2 connector for Square (authorization code + PKCE)."""

    @property
    def provider_name(self) -> str:
        return "square"

    @property
    def display_name(self) -> str:
        return "Square"

    @property
    def scopes(self) -> List[str]:
        return [
            "MERCHANT_PROFILE_READ",
            "CUSTOMERS_READ",
            "EMPLOYEES_READ",
            "ORDERS_READ",
            "ITEMS_READ",
            "PAYMENTS_READ",
            "APPOINTMENTS_READ",
        ]

    @property
    def uses_pkce(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return bool(self.settings.square_application_id)

    @property
    def _base(self) -> str:
        return self.settings.square_base_url

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Square-Version": self.settings.square_version}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def get_auth_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.square_application_id,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "session": "false",
            "state": state,
            "redirect_uri": self.settings.get_square_redirect_url(),
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self._base}/oauth2/authorize?{urlencode(params)}"

    async def handle_callback(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenGrant:
        """PKCE code exchange (no client secret), then merchant lookup."""
        body: Dict[str, Any] = {
            "client_id": self.settings.square_application_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.get_square_redirect_url(),
        }
        if code_verifier:
            body["code_verifier"] = code_verifier
        else:
            body["client_secret"] = self.settings.square_application_secret

        data = await self._token_request(body, "Square token exchange failed")
        merchant_id = data.get("merchant_id")

        meta: Dict[str, Any] = {}
        label: Optional[str] = None
        if merchant_id:
            try:
                resp = await self.http.get(
                    f"{self._base}/v2/merchants/{merchant_id}",
                    headers=self._headers(data["access_token"]),
                )
                if resp.is_success:
                    payload = self._json(resp, "Square merchant lookup failed")
                    merchant = payload.get("merchant") or {}
                    label = merchant.get("business_name")
                    meta["currency"] = merchant.get("currency")
                else:
                    logger.warning("Square merchant lookup failed (%s)", resp.status_code)
            except (httpx.HTTPError, ProviderError):
                logger.warning("Square merchant lookup failed", exc_info=True)

        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type"),
            expires_in=data.get("expires_in"),
            expires_at=data.get("expires_at"),
            scopes=self.scopes,
            account_id=merchant_id,
            account_label=label,
            provider_meta=meta,
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        if not self.settings.square_application_secret:
            raise ProviderError(self.provider_name, "Square client secret not configured")

        data = await self._token_request(
            {
                "client_id": self.settings.square_application_id,
                "client_secret": self.settings.square_application_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            "Square token refresh failed",
        )
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type"),
            expires_in=data.get("expires_in"),
            expires_at=data.get("expires_at"),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke via ``/oauth2/revoke`` (``Authorization: Client <secret>``)."""
        if not self.settings.square_application_secret:
            logger.warning("Square revoke skipped: client secret not configured")
            return False
        try:
            resp = await self.http.post(
                f"{self._base}/oauth2/revoke",
                json={
                    "client_id": self.settings.square_application_id,
                    "access_token": access_token,
                },
                headers={
                    **self._headers(),
                    "Authorization": f"Client {self.settings.square_application_secret}",
                },
            )
        except httpx.HTTPError:
            logger.warning("Square token revocation failed", exc_info=True)
            return False
        if not resp.is_success:
            logger.warning("Square token revocation rejected (%s)", resp.status_code)
        return resp.is_success

    # ── Availability ────────────────────────────────────────────────────

    async def fetch_slots(
        self,
        date_range: DateRange,
        access_token: str,
        credential: Credential,
    ) -> List[ProviderSlotPayload]:
        locations = await self.list_locations(access_token)
        selected = credential.provider_meta.get("location_ids") or []
        active = [loc for loc in locations if loc.get("status") == "ACTIVE"]
        if selected:
            active = [loc for loc in active if loc["id"] in selected]
        if not active:
            return []

        variations = (await self.fetch_service_variations(access_token))[:MAX_SERVICE_VARIATIONS]
        if not variations:
            return []

        chunks = build_date_chunks(date_range, MAX_RANGE_DAYS)
        slots: List[ProviderSlotPayload] = []
        seen = set()

        for location in active:
            for variation in variations:
                for chunk_start, chunk_end in chunks:
                    availabilities = await self._search_availability(
                        access_token, location["id"], variation.id, chunk_start, chunk_end
                    )
                    for availability in availabilities:
                        start_at = _parse_start_at(availability.get("start_at"))
                        if start_at is None:
                            continue
                        key = (location["id"], variation.id, start_at)
                        if key in seen:
                            continue
                        seen.add(key)
                        slots.append(
                            SquareSlotPayload(
                                location_id=location["id"],
                                location_timezone=location.get("timezone"),
                                variation=variation,
                                start_at=start_at,
                            )
                        )
                    if self.settings.square_request_delay_seconds > 0:
                        await asyncio.sleep(self.settings.square_request_delay_seconds)

        logger.debug("Square returned %d raw slots across %d locations", len(slots), len(active))
        return slots

    async def list_locations(self, access_token: str) -> List[Dict[str, Any]]:
        try:
            resp = await self.http.get(
                f"{self._base}/v2/locations", headers=self._headers(access_token)
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_name, f"Square request failed: {exc}") from exc
        if not resp.is_success:
            raise self._error("Square locations fetch failed", resp)

        locations = self._json(resp, "Square locations fetch failed").get("locations") or []
        return [
            {
                "id": loc["id"],
                "name": loc.get("name"),
                "timezone": loc.get("timezone"),
                "status": loc.get("status"),
            }
            for loc in locations
            if isinstance(loc, dict) and loc.get("id")
        ]

    async def fetch_service_variations(self, access_token: str) -> List[AppointmentType]:
        variations: List[AppointmentType] = []
        cursor: Optional[str] = None

        for _ in range(MAX_CATALOG_PAGES):
            params = {"types": "ITEM"}
            if cursor:
                params["cursor"] = cursor
            try:
                resp = await self.http.get(
                    f"{self._base}/v2/catalog/list",
                    params=params,
                    headers=self._headers(access_token),
                )
            except httpx.HTTPError as exc:
                raise ProviderError(self.provider_name, f"Square request failed: {exc}") from exc
            if not resp.is_success:
                logger.warning("Square catalog list failed (%s)", resp.status_code)
                break

            data = self._json(resp, "Square catalog list failed")
            for item in data.get("objects") or []:
                item_data = item.get("item_data") or {}
                for variation in item_data.get("variations") or []:
                    variation_data = variation.get("item_variation_data") or {}
                    if not variation.get("id") or not variation_data.get("service_duration"):
                        continue
                    amount = (variation_data.get("price_money") or {}).get("amount")
                    variations.append(
                        AppointmentType(
                            id=variation["id"],
                            name=variation_data.get("name") or item_data.get("name"),
                            duration_minutes=_duration_minutes(variation_data["service_duration"]),
                            price=amount / 100 if isinstance(amount, (int, float)) else None,
                        )
                    )

            cursor = data.get("cursor")
            if not cursor:
                break

        return variations

    # ── Internals ───────────────────────────────────────────────────────

    async def _search_availability(
        self,
        access_token: str,
        location_id: str,
        variation_id: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]:
        body = {
            "query": {
                "filter": {
                    "location_id": location_id,
                    "start_at_range": {
                        "start_at": _iso(start),
                        "end_at": _iso(end),
                    },
                    "segment_filters": [{"service_variation_id": variation_id}],
                }
            }
        }
        try:
            resp = await self.http.post(
                f"{self._base}/v2/bookings/availability/search",
                json=body,
                headers=self._headers(access_token),
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_name, f"Square request failed: {exc}") from exc
        if not resp.is_success:
            logger.warning(
                "Square availability search failed for %s/%s (%s)",
                location_id, variation_id, resp.status_code,
            )
            return []
        return self._json(resp, "Square availability search failed").get("availabilities") or []

    async def _token_request(self, body: Dict[str, Any], message: str) -> Dict[str, Any]:
        try:
            resp = await self.http.post(
                f"{self._base}/oauth2/token", json=body, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_name, f"{message}: {exc}") from exc
        if not resp.is_success:
            raise self._error(message, resp)

        data = self._json(resp, message)
        if not isinstance(data, dict) or "access_token" not in data:
            raise ProviderError(self.provider_name, f"{message}: no access_token", body=resp.text)
        return data


def build_date_chunks(date_range: DateRange, max_days: int) -> List[Tuple[datetime, datetime]]:
    """Split ``[start, end)`` into UTC windows of at most ``max_days``."""
    start = datetime.combine(date_range.start, time.min, tzinfo=timezone.utc)
    end = datetime.combine(date_range.end, time.min, tzinfo=timezone.utc)

    chunks: List[Tuple[datetime, datetime]] = []
    current = start
    while current < end:
        chunk_end = min(current + timedelta(days=max_days), end)
        chunks.append((current, chunk_end))
        current = chunk_end
    return chunks


def _duration_minutes(value: Any) -> Optional[int]:
    # service_duration is in milliseconds
    if not isinstance(value, (int, float)) or value <= 0:
        return None
    return round(value / 60000)


def _parse_start_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
