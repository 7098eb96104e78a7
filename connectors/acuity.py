"""
AcuityConnector — OAuth2 + availability for Acuity Scheduling.

Availability is read per appointment type: the month endpoint narrows the
days that have openings, then the times endpoint lists each day's slots.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlencode

import httpx

from connectors.base import BaseConnector, ProviderError
from utils.schemas import (
    AcuitySlotPayload,
    AppointmentType,
    Credential,
    DateRange,
    ProviderSlotPayload,
    TokenGrant,
)

logger = logging.getLogger(__name__)

# Acuity OAuth2 / REST endpoints
_ACUITY_BASE = "https://acuityscheduling.com"
_ACUITY_AUTH_URL = f"{_ACUITY_BASE}/oauth2/authorize"
_ACUITY_TOKEN_URL = f"{_ACUITY_BASE}/oauth2/token"
_ACUITY_DISCONNECT_URL = f"{_ACUITY_BASE}/oauth2/disconnect"
_ACUITY_API = f"{_ACUITY_BASE}/api/v1"

_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::\d{2})?\s*(am|pm)?$")
_ISO_TIME_RE = re.compile(r"T(\d{2}:\d{2})")
_OFFSET_RE = re.compile(r"([+-]\d{2}):?(\d{2})$")

_DATETIME_KEYS = ("datetime", "dateTime", "start_at", "startAt", "start", "start_time")
_TIME_KEYS = ("time", "startTime", "start_time", "label")
_TIMEZONE_KEYS = ("timezone", "timeZone", "tz")


class AcuityConnector(BaseConnector):
    """OAuth2 connector for Acuity Scheduling."""

    @property
    def provider_name(self) -> str:
        return "acuity"

    @property
    def display_name(self) -> str:
        return "Acuity Scheduling"

    @property
    def scopes(self) -> List[str]:
        return ["api-v1"]

    def is_configured(self) -> bool:
        return bool(self.settings.acuity_client_id and self.settings.acuity_client_secret)

    def get_auth_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "client_id": self.settings.acuity_client_id,
            "redirect_uri": self.settings.acuity_redirect_uri,
            "state": state,
        }
        return f"{_ACUITY_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenGrant:
        """Exchange auth code for tokens and look up the account profile."""
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.acuity_redirect_uri,
            },
            "Acuity token exchange failed",
        )

        profile: Dict[str, Any] = {}
        try:
            resp = await self._get("/me", data["access_token"])
            if resp.is_success:
                profile = self._json(resp, "Acuity profile lookup failed")
            else:
                logger.warning("Acuity profile lookup failed (%s)", resp.status_code)
        except ProviderError as exc:
            logger.warning("Acuity profile lookup failed: %s", exc)

        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type"),
            expires_in=data.get("expires_in"),
            scopes=(data.get("scope") or "api-v1").split(),
            account_id=str(profile["id"]) if profile.get("id") else None,
            account_label=profile.get("email"),
            provider_meta={
                "name": profile.get("name"),
                "timezone": profile.get("timezone"),
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Acuity token refresh failed",
        )
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type"),
            expires_in=data.get("expires_in"),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token via Acuity's OAuth disconnect endpoint."""
        try:
            resp = await self.http.post(
                _ACUITY_DISCONNECT_URL,
                data={
                    "access_token": access_token,
                    "client_id": self.settings.acuity_client_id,
                    "client_secret": self.settings.acuity_client_secret,
                },
            )
        except httpx.HTTPError:
            logger.warning("Acuity token revocation failed", exc_info=True)
            return False
        if not resp.is_success:
            logger.warning("Acuity token revocation rejected (%s)", resp.status_code)
        return resp.is_success

    # ── Availability ────────────────────────────────────────────────────

    async def fetch_slots(
        self,
        date_range: DateRange,
        access_token: str,
        credential: Credential,
    ) -> List[ProviderSlotPayload]:
        calendar = await self._resolve_calendar(
            access_token, credential.provider_meta.get("calendar")
        )
        calendar_id = str(calendar["id"])
        appointment_types = await self.fetch_appointment_types(access_token)
        if not appointment_types:
            return []

        range_dates = date_range.dates()
        months = sorted({day.strftime("%Y-%m") for day in range_dates})
        slots: List[ProviderSlotPayload] = []

        for appointment_type in appointment_types:
            available: Set[date] = set()
            for month in months:
                available |= await self._available_dates(
                    access_token, appointment_type.id, calendar_id, month
                )

            days = [day for day in range_dates if day in available] or range_dates

            for day in days:
                entries = await self._available_times(
                    access_token, appointment_type.id, calendar_id, day
                )
                for entry in entries:
                    parsed = parse_time_entry(entry)
                    if parsed is None:
                        continue
                    start_time, start_at, tz = parsed
                    slots.append(
                        AcuitySlotPayload(
                            calendar_id=calendar_id,
                            appointment_type=appointment_type,
                            slot_date=day,
                            start_time=start_time,
                            start_at=start_at,
                            timezone=calendar.get("timezone") or tz,
                        )
                    )

        logger.debug("Acuity returned %d raw slots for calendar %s", len(slots), calendar_id)
        return slots

    async def list_calendars(self, access_token: str) -> List[Dict[str, Any]]:
        resp = await self._get("/calendars", access_token)
        if not resp.is_success:
            raise self._error("Failed to fetch Acuity calendars", resp)
        data = self._json(resp, "Failed to fetch Acuity calendars")
        if not isinstance(data, list):
            return []
        return [
            {
                "id": str(item["id"]),
                "name": item.get("name"),
                "timezone": item.get("timezone"),
            }
            for item in data
            if isinstance(item, dict) and item.get("id") is not None
        ]

    async def fetch_appointment_types(self, access_token: str) -> List[AppointmentType]:
        resp = await self._get("/appointment-types", access_token)
        if not resp.is_success:
            raise self._error("Failed to fetch Acuity appointment types", resp)
        data = self._json(resp, "Failed to fetch Acuity appointment types")
        if not isinstance(data, list):
            return []

        types: List[AppointmentType] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            type_id = item.get("id") or item.get("appointmentTypeID")
            if not type_id:
                continue
            duration = _to_number(item.get("duration", item.get("durationMinutes")))
            types.append(
                AppointmentType(
                    id=str(type_id),
                    name=str(item.get("name") or ""),
                    duration_minutes=int(duration) if duration is not None else None,
                    price=_to_number(item.get("price", item.get("amount"))),
                )
            )
        return types

    # ── Internals ───────────────────────────────────────────────────────

    async def _resolve_calendar(
        self, access_token: str, wanted: Optional[str]
    ) -> Dict[str, Any]:
        calendars = await self.list_calendars(access_token)
        if not calendars:
            raise ProviderError(self.provider_name, "No Acuity calendars found")
        if not wanted:
            return calendars[0]

        target = wanted.strip().lower()
        for calendar in calendars:
            if (calendar.get("name") or "").strip().lower() == target:
                return calendar
        logger.warning("Acuity calendar %r not found, using %r", wanted, calendars[0].get("name"))
        return calendars[0]

    async def _available_dates(
        self,
        access_token: str,
        appointment_type_id: str,
        calendar_id: str,
        month: str,
    ) -> Set[date]:
        for month_param in (month, f"{month}-01"):
            resp = await self._get(
                "/availability/dates",
                access_token,
                params={
                    "appointmentTypeID": appointment_type_id,
                    "calendarID": calendar_id,
                    "month": month_param,
                },
            )
            if not resp.is_success:
                logger.warning(
                    "Acuity availability/dates failed (%s): %s", month_param, resp.status_code
                )
                continue
            dates = _extract_dates(self._json(resp, "Acuity availability/dates failed"))
            if dates:
                return dates
        return set()

    async def _available_times(
        self,
        access_token: str,
        appointment_type_id: str,
        calendar_id: str,
        day: date,
    ) -> List[Any]:
        resp = await self._get(
            "/availability/times",
            access_token,
            params={
                "appointmentTypeID": appointment_type_id,
                "calendarID": calendar_id,
                "date": day.isoformat(),
            },
        )
        if not resp.is_success:
            logger.warning("Acuity availability/times failed (%s): %s", day, resp.status_code)
            return []

        data = self._json(resp, "Acuity availability/times failed")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("times"), list):
            return data["times"]
        return []

    async def _get(
        self,
        path: str,
        access_token: str,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            return await self.http.get(
                f"{_ACUITY_API}{path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_name, f"Acuity request failed: {exc}") from exc

    async def _token_request(self, form: Dict[str, str], message: str) -> Dict[str, Any]:
        form = {
            **form,
            "client_id": self.settings.acuity_client_id,
            "client_secret": self.settings.acuity_client_secret,
        }
        try:
            resp = await self.http.post(_ACUITY_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_name, f"{message}: {exc}") from exc
        if not resp.is_success:
            raise self._error(message, resp)

        data = self._json(resp, message)
        if not isinstance(data, dict) or "access_token" not in data:
            raise ProviderError(self.provider_name, f"{message}: no access_token", body=resp.text)
        return data


# ── Response parsing ────────────────────────────────────────────────────


def parse_time_entry(entry: Any) -> Optional[Tuple[str, Optional[datetime], Optional[str]]]:
    """
    Parse one entry of ``/availability/times``.

    Entries are either strings (``"2025-03-04T13:00:00-0800"`` or
    ``"1:30pm"``) or objects carrying a datetime and/or a time label.
    Returns ``(start_time "HH:MM", start_at, timezone)`` or None.
    """
    if isinstance(entry, str):
        if "T" in entry:
            start_time = _time_from_datetime(entry)
            if start_time is None:
                return None
            return start_time, _parse_datetime(entry), _offset_of(entry)
        start_time = parse_time_string(entry)
        return (start_time, None, None) if start_time else None

    if not isinstance(entry, dict):
        return None

    datetime_value = _first_string(entry, _DATETIME_KEYS)
    raw_time = _first_string(entry, _TIME_KEYS)
    if datetime_value is None and raw_time and "T" in raw_time:
        datetime_value = raw_time
        raw_time = None

    tz = _first_string(entry, _TIMEZONE_KEYS)
    if tz is None and datetime_value:
        tz = _offset_of(datetime_value)

    start_time = _time_from_datetime(datetime_value) if datetime_value else None
    if start_time is None and raw_time:
        start_time = parse_time_string(raw_time)
    if start_time is None:
        return None

    start_at = _parse_datetime(datetime_value) if datetime_value else None
    return start_time, start_at, tz


def parse_time_string(value: str) -> Optional[str]:
    """``"9"``, ``"9:30"``, ``"1:30 pm"``, ``"13:00:00"`` → ``"HH:MM"``."""
    match = _TIME_RE.match(value.strip().lower())
    if not match:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2)) if match.group(2) else 0
    meridiem = match.group(3)
    if meridiem == "pm" and hours < 12:
        hours += 12
    if meridiem == "am" and hours == 12:
        hours = 0
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def _extract_dates(data: Any) -> Set[date]:
    if isinstance(data, dict):
        data = data.get("dates")
    if not isinstance(data, list):
        return set()

    dates: Set[date] = set()
    for item in data:
        value = item
        if isinstance(item, dict):
            value = item.get("date") or item.get("day")
        if not isinstance(value, str):
            continue
        try:
            dates.add(date.fromisoformat(value[:10]))
        except ValueError:
            continue
    return dates


def _time_from_datetime(value: str) -> Optional[str]:
    match = _ISO_TIME_RE.search(value)
    return match.group(1) if match else None


def _offset_of(value: str) -> Optional[str]:
    match = _OFFSET_RE.search(value)
    return f"{match.group(1)}:{match.group(2)}" if match else None


def _parse_datetime(value: str) -> Optional[datetime]:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    normalized = _OFFSET_RE.sub(lambda m: f"{m.group(1)}:{m.group(2)}", normalized)
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def _first_string(entry: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str):
            return value
    return None


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None
