"""
Candidate generator: turns a trip's places plus a user's ping history into
one VisitCandidate per (place, local date) with evidence inside the outer
radius.

Flow:
  1. Drop places without a coordinate; sort the rest by id.
  2. Split into fixed-size chunks (bounded by the statement parameter limit).
  3. A small pool of workers pulls chunks off an asyncio.Queue.
  4. Chunks at or above batched_query_threshold go through one batched
     query; if it fails the chunk is re-scanned place by place. Smaller
     chunks are scanned place by place directly.
  5. Each place's pings are folded into per-date candidates only once the
     whole place result is in hand, so a cancelled scan never emits a
     half-aggregated candidate.

A failing place query becomes a warning (PartialScanFailure) and the scan
continues. Cancellation is checked between chunks and before each query,
and an in-flight query is abandoned as soon as the signal fires.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from datetime import date
from typing import TypeVar

from services.timeline.visits.cancellation import CancellationSignal
from services.timeline.visits.engine_config import TierRadii, VisitEngineConfig
from services.timeline.visits.errors import PartialScanFailure, ScanCancelled
from services.timeline.visits.stores import PingStore
from services.timeline.visits.types import (
    DateWindow,
    PingHit,
    PlaceRecord,
    ScanResult,
    VisitCandidate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunk_places(places: list[PlaceRecord], chunk_size: int) -> list[list[PlaceRecord]]:
    return [places[i : i + chunk_size] for i in range(0, len(places), chunk_size)]


def aggregate_hits(
    place: PlaceRecord, hits: Iterable[PingHit], tiers: TierRadii
) -> list[VisitCandidate]:
    """Group one place's pings by local date and compute the per-date statistics."""
    by_date: dict[date, VisitCandidate] = {}
    distance_sums: dict[date, float] = {}

    for hit in sorted(hits, key=lambda h: (h.timestamp_utc, h.distance_meters)):
        if hit.distance_meters > tiers.outer:
            continue
        candidate = by_date.get(hit.local_date)
        if candidate is None:
            candidate = VisitCandidate(
                place=place,
                visit_date=hit.local_date,
                first_seen_utc=hit.timestamp_utc,
                last_seen_utc=hit.timestamp_utc,
                min_distance_meters=hit.distance_meters,
            )
            by_date[hit.local_date] = candidate
            distance_sums[hit.local_date] = 0.0

        candidate.first_seen_utc = min(candidate.first_seen_utc, hit.timestamp_utc)
        candidate.last_seen_utc = max(candidate.last_seen_utc, hit.timestamp_utc)
        candidate.min_distance_meters = min(candidate.min_distance_meters, hit.distance_meters)
        candidate.hits_total += 1
        distance_sums[hit.local_date] += hit.distance_meters

        tier = tiers.tier_of(hit.distance_meters)
        if tier == 1:
            candidate.hits_tier1 += 1
        elif tier == 2:
            candidate.hits_tier2 += 1
        elif tier == 3:
            candidate.hits_tier3 += 1

        if hit.is_user_invoked:
            candidate.has_user_checkin = True

    for day, candidate in by_date.items():
        candidate.avg_distance_meters = distance_sums[day] / candidate.hits_total

    return [by_date[day] for day in sorted(by_date)]


class CandidateGenerator:
    """
    Chunked, bounded-concurrency ping scan for one trip.

    Injected dependencies for testability:
      pings   — PingStore (asyncpg/PostGIS in production)
      config  — VisitEngineConfig
    """

    def __init__(self, pings: PingStore, config: VisitEngineConfig) -> None:
        self._pings = pings
        self._config = config

    async def generate(
        self,
        *,
        user_id: str,
        places: list[PlaceRecord],
        window: DateWindow,
        signal: CancellationSignal | None = None,
    ) -> ScanResult:
        signal = signal or CancellationSignal()
        tiers = self._config.tiers
        scannable = sorted((p for p in places if p.has_coordinate), key=lambda p: p.place_id)
        chunks = chunk_places(scannable, self._config.chunk_size)

        result = ScanResult()
        if not chunks:
            return result

        queue: asyncio.Queue[list[PlaceRecord]] = asyncio.Queue()
        for chunk in chunks:
            queue.put_nowait(chunk)

        worker_count = min(self._config.workers, len(chunks))
        logger.info(
            "Scanning %d places for user %s in %d chunks (%d workers, outer radius %.0fm)",
            len(scannable),
            user_id,
            len(chunks),
            worker_count,
            tiers.outer,
        )

        async def worker() -> None:
            while True:
                try:
                    chunk = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if signal.cancelled:
                    return
                await self._scan_chunk(user_id, chunk, window, tiers, signal, result)

        await asyncio.gather(*(worker() for _ in range(worker_count)))

        result.candidates.sort(key=lambda c: (c.place.place_id, c.visit_date))
        result.locations_scanned = sum(c.hits_total for c in result.candidates)
        result.truncated = result.places_scanned < len(scannable)
        if result.truncated:
            logger.info(
                "Scan for user %s stopped early (%s): %d of %d places scanned",
                user_id,
                signal.reason,
                result.places_scanned,
                len(scannable),
            )
        return result

    # ------------------------------------------------------------------
    # Chunk / place scanning
    # ------------------------------------------------------------------

    async def _scan_chunk(
        self,
        user_id: str,
        chunk: list[PlaceRecord],
        window: DateWindow,
        tiers: TierRadii,
        signal: CancellationSignal,
        result: ScanResult,
    ) -> None:
        if len(chunk) >= self._config.batched_query_threshold:
            try:
                by_place = await self._guarded(
                    self._pings.range_query_batch(user_id, chunk, tiers.outer, window),
                    signal,
                )
            except ScanCancelled:
                return
            except Exception as e:
                logger.warning(
                    "Batched query failed for %d places, falling back to per-place queries: %s",
                    len(chunk),
                    e,
                )
            else:
                for place in chunk:
                    result.candidates.extend(
                        aggregate_hits(place, by_place.get(place.place_id, []), tiers)
                    )
                result.places_scanned += len(chunk)
                return

        for place in chunk:
            try:
                hits = await self._guarded(
                    self._pings.range_query(user_id, place, tiers.outer, window),
                    signal,
                )
            except ScanCancelled:
                return
            except Exception as e:
                failure = PartialScanFailure(place.place_id, place.name, e)
                logger.warning("%s", failure)
                result.warnings.append(str(failure))
                result.places_scanned += 1
                continue

            result.candidates.extend(aggregate_hits(place, hits, tiers))
            result.places_scanned += 1

    async def _guarded(self, query: Awaitable[T], signal: CancellationSignal) -> T:
        """
        Await a store query under the per-query timeout, abandoning it as
        soon as the cancellation signal fires.
        """
        signal.raise_if_cancelled()

        query_task = asyncio.ensure_future(query)
        cancel_task = asyncio.ensure_future(signal.wait())
        timeout = self._config.query_timeout_s
        remaining = signal.remaining()
        deadline_bound = remaining is not None and remaining < timeout
        if deadline_bound:
            timeout = remaining

        try:
            done, _ = await asyncio.wait(
                {query_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()

        if query_task in done:
            return query_task.result()

        query_task.cancel()
        await asyncio.gather(query_task, return_exceptions=True)
        if deadline_bound:
            signal.cancel("deadline exceeded")
        signal.raise_if_cancelled()
        raise asyncio.TimeoutError(f"query exceeded {timeout:.1f}s")
