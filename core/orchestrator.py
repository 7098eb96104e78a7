"""
Availability orchestrator — pulls open slots from every connected provider.

Each provider runs independently (token → fetch → normalize → dedupe →
persist) and concurrently with the others; one provider failing is reported
in the result and does not affect the rest.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

from config.settings import Settings
from connectors.base import BaseConnector, ProviderError
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from core.normalization import (
    build_daily_summaries,
    build_hourly_buckets,
    dedupe_slots,
    fill_missing_days,
    to_availability_slot,
)
from core.slot_store import SlotStore
from utils.schemas import (
    AvailabilityPullResult,
    AvailabilitySlot,
    DailySummary,
    DateRange,
    OrchestratorOptions,
    ProviderSyncSummary,
)

logger = logging.getLogger(__name__)

NO_SOURCES_ERROR = "No booking sources connected"


class AvailabilityRangeError(ValueError):
    """Requested date range is inverted or too wide."""


@dataclass
class _ProviderPull:
    summary: ProviderSyncSummary
    slots: List[AvailabilitySlot] = field(default_factory=list)
    daily: List[DailySummary] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AvailabilityOrchestrator:
    def __init__(
        self,
        registry: ConnectorRegistry,
        tokens: TokenManager,
        slots: SlotStore,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.tokens = tokens
        self.slots = slots
        self.settings = settings
        self._clock = clock

    def resolve_range(self, start: Optional[date] = None, end: Optional[date] = None) -> DateRange:
        """Default is today plus ``availability_window_days``, end exclusive."""
        start = start or self._clock().date()
        end = end or start + timedelta(days=self.settings.availability_window_days)
        if start > end:
            raise AvailabilityRangeError("start must not be after end")
        if (end - start).days > self.settings.availability_max_window_days:
            raise AvailabilityRangeError(
                f"Date range may span at most {self.settings.availability_max_window_days} days"
            )
        return DateRange(start=start, end=end)

    async def pull(
        self,
        user_id: str,
        options: OrchestratorOptions,
        date_range: Optional[DateRange] = None,
    ) -> AvailabilityPullResult:
        date_range = date_range or self.resolve_range()
        fetched_at = self._clock()

        connected = set(await self.tokens.store.list_providers(user_id))
        connectors = [c for c in self.registry if c.provider_name in connected]

        if not connectors:
            logger.info("Availability pull for user %s: no providers connected", user_id)
            return AvailabilityPullResult(
                success=False,
                dry_run=options.dry_run,
                update_mode=options.update_mode,
                fetched_at=fetched_at,
                range=date_range,
                errors=[NO_SOURCES_ERROR],
            )

        logger.info(
            "Availability pull for user %s: %s, %s → %s (dry_run=%s, force=%s, update=%s)",
            user_id,
            [c.provider_name for c in connectors],
            date_range.start,
            date_range.end,
            options.dry_run,
            options.force_refresh,
            options.update_mode,
        )

        results = await asyncio.gather(
            *(self._pull_provider(user_id, c, date_range, options, fetched_at) for c in connectors),
            return_exceptions=True,
        )

        slots: List[AvailabilitySlot] = []
        daily: List[DailySummary] = []
        summaries: List[ProviderSyncSummary] = []
        errors: List[str] = []

        for connector, result in zip(connectors, results):
            if isinstance(result, Exception):
                message = str(result) or type(result).__name__
                if isinstance(result, ProviderError):
                    logger.warning("Provider %s failed: %s", connector.provider_name, message)
                else:
                    logger.error(
                        "Provider %s raised: %s", connector.provider_name, message, exc_info=result
                    )
                errors.append(f"{connector.display_name}: {message}")
                summaries.append(
                    ProviderSyncSummary(
                        provider=connector.provider_name, status="failed", error=message
                    )
                )
                continue

            summaries.append(result.summary)
            slots.extend(result.slots)
            daily.extend(result.daily)

        succeeded = [s for s in summaries if s.status == "success"]
        return AvailabilityPullResult(
            success=not errors,
            dry_run=options.dry_run,
            update_mode=options.update_mode,
            fetched_at=max((s.fetched_at for s in succeeded if s.fetched_at), default=fetched_at),
            cache_hit=bool(succeeded) and all(s.cache_hit for s in succeeded),
            range=date_range,
            total_slots=len(slots),
            total_estimated_revenue=round(sum(d.estimated_revenue for d in daily), 2),
            slots=slots,
            daily_summaries=daily,
            hourly_buckets=build_hourly_buckets(slots),
            providers=summaries,
            errors=errors,
        )

    async def _pull_provider(
        self,
        user_id: str,
        connector: BaseConnector,
        date_range: DateRange,
        options: OrchestratorOptions,
        fetched_at: datetime,
    ) -> _ProviderPull:
        provider = connector.provider_name

        if not options.force_refresh:
            cached = await self._from_store(user_id, provider, date_range, fetched_at)
            if cached is not None:
                return cached

        credential = await self.tokens.get_valid_credential(user_id, provider)
        if credential is None:
            raise ProviderError(provider, "Not connected or token refresh failed")

        payloads = await connector.fetch_slots(date_range, credential.access_token, credential)
        raw = [to_availability_slot(p, fetched_at) for p in payloads]
        raw = [s for s in raw if date_range.contains(s.slot_date)]
        deduped = _ordered(dedupe_slots(raw))
        daily = build_daily_summaries(deduped, fetched_at)

        written = 0
        if not options.dry_run:
            if options.update_mode:
                written = await self.slots.merge(user_id, provider, raw)
            else:
                written = await self.slots.replace(user_id, provider, date_range, raw)
            await self.slots.upsert_summaries(
                user_id, fill_missing_days(daily, provider, date_range, fetched_at)
            )

        logger.info(
            "Provider %s: %d raw / %d deduped slots, %d written",
            provider, len(raw), len(deduped), written,
        )
        return _ProviderPull(
            summary=ProviderSyncSummary(
                provider=provider,
                slots_fetched=len(deduped),
                slots_written=written,
                day_count=len(daily),
                estimated_revenue=round(sum(d.estimated_revenue for d in daily), 2),
                fetched_at=fetched_at,
            ),
            slots=deduped,
            daily=daily,
        )

    async def _from_store(
        self,
        user_id: str,
        provider: str,
        date_range: DateRange,
        now: datetime,
    ) -> Optional[_ProviderPull]:
        """Serve from storage when every day of the range was synced within the cache TTL."""
        if date_range.days == 0:
            return None
        coverage = await self.slots.sync_coverage(user_id, provider, date_range)
        if coverage.days < date_range.days or coverage.oldest is None:
            return None
        if now - coverage.oldest > timedelta(seconds=self.settings.availability_cache_ttl_seconds):
            return None
        latest = coverage.newest

        deduped = _ordered(dedupe_slots(await self.slots.load(user_id, provider, date_range)))
        daily = build_daily_summaries(deduped, latest)
        logger.debug("Provider %s served from store (fetched_at=%s)", provider, latest)
        return _ProviderPull(
            summary=ProviderSyncSummary(
                provider=provider,
                slots_fetched=len(deduped),
                day_count=len(daily),
                estimated_revenue=round(sum(d.estimated_revenue for d in daily), 2),
                cache_hit=True,
                fetched_at=latest,
            ),
            slots=deduped,
            daily=daily,
        )


def _ordered(slots: List[AvailabilitySlot]) -> List[AvailabilitySlot]:
    return sorted(slots, key=lambda s: (s.slot_date, s.start_time, s.calendar_id))
