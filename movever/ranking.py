"""Candidate ranking: trips for a search filter, delivery requests for a trip.

Scores are a weighted sum of string similarity, route proximity, date, time,
capacity and verification signals. The raw sum orders results; the reported
score is capped for display.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models, schemas
from .config import RankingWeights, ReverseWeights
from .directory import IdentityDirectory
from .errors import NotFound
from .geo import Geocoder, LatLon, Router, point_to_route_km
from .scoring import date_proximity, space_compatibility, string_similarity, time_proximity

logger = logging.getLogger(__name__)


class GeoCache:
    """Per-call memo of geocoding and routing lookups.

    Lookups are stored as tasks so concurrent candidates asking for the same
    place share one round trip. Every lookup is bounded by `timeout`.
    """

    def __init__(self, geocoder: Geocoder, router: Router, timeout: float):
        self.geocoder = geocoder
        self.router = router
        self.timeout = timeout
        self._places: Dict[str, asyncio.Task] = {}
        self._routes: Dict[Tuple[LatLon, LatLon], asyncio.Task] = {}

    def _memo(self, table: dict, key, factory: Callable[[], Awaitable]) -> asyncio.Task:
        task = table.get(key)
        if task is None:
            task = asyncio.ensure_future(asyncio.wait_for(factory(), self.timeout))
            table[key] = task
        return task

    async def place(self, name: str) -> Optional[LatLon]:
        key = " ".join(name.lower().split())
        return await self._memo(self._places, key, lambda: self.geocoder.geocode(name))

    async def route(self, start: LatLon, end: LatLon) -> Optional[List[LatLon]]:
        return await self._memo(self._routes, (start, end), lambda: self.router.route(start, end))

    def close(self):
        for task in list(self._places.values()) + list(self._routes.values()):
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                # mark failures as retrieved; they were already logged by the caller
                task.exception()


class RankingEngine:
    def __init__(self, engine: AsyncEngine, geocoder: Geocoder, router: Router,
                 directory: IdentityDirectory, weights: RankingWeights = RankingWeights(),
                 reverse: ReverseWeights = ReverseWeights(), geo_timeout: float = 5.0):
        self.engine = engine
        self.geocoder = geocoder
        self.router = router
        self.directory = directory
        self.weights = weights
        self.reverse = reverse
        self.geo_timeout = geo_timeout

    # ---- trips for a filter ----

    async def search_trips(self, filt: schemas.SearchFilter) -> List[schemas.RankedTrip]:
        sel = select(models.trips).where(models.trips.c.status == models.TRIP_ACTIVE)
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            trips = [schemas.Trip.model_validate(dict(row._mapping)) for row in res]
        logger.info("search_trips: filter=%s candidates=%d", filt.model_dump(exclude_none=True), len(trips))
        return await self.rank_trips(trips, filt)

    async def rank_trips(self, trips: Sequence[schemas.Trip], filt: schemas.SearchFilter) -> List[schemas.RankedTrip]:
        verified = await self.directory.verified(t.traveler_id for t in trips)
        if filt.verified_only:
            trips = [t for t in trips if t.traveler_id in verified]

        cache = GeoCache(self.geocoder, self.router, self.geo_timeout)
        try:
            search_origin = await self._resolve_filter_place(cache, filt.origin)
            search_dest = await self._resolve_filter_place(cache, filt.destination)
            scored = await asyncio.gather(*[
                self._score_trip(t, filt, verified, cache, search_origin, search_dest) for t in trips
            ])
        finally:
            cache.close()

        w = self.weights
        results = [r for r in scored if r.raw_score >= w.min_score or r.match_reasons]
        results.sort(key=lambda r: (r.raw_score, r.trip.created_at, r.trip.id), reverse=True)
        return results

    async def _resolve_filter_place(self, cache: GeoCache, name: Optional[str]) -> Optional[LatLon]:
        if not name:
            return None
        try:
            coords = await cache.place(name)
        except Exception as e:
            logger.warning("geocode_failed: place=%s error=%r", name, e)
            return None
        logger.debug("search_place: place=%s coords=%s", name, coords)
        return coords

    async def _score_trip(self, trip: schemas.Trip, filt: schemas.SearchFilter, verified: Set[int],
                          cache: GeoCache, search_origin: Optional[LatLon],
                          search_dest: Optional[LatLon]) -> schemas.RankedTrip:
        w = self.weights
        score = 0.0
        reasons: List[str] = []

        origin_matched = dest_matched = False
        if filt.origin:
            sim = string_similarity(trip.origin, filt.origin)
            score += sim * w.origin
            if sim >= w.string_match_threshold:
                origin_matched = True
                reasons.append(f"Origin match: {trip.origin}")
        if filt.destination:
            sim = string_similarity(trip.destination, filt.destination)
            score += sim * w.destination
            if sim >= w.string_match_threshold:
                dest_matched = True
                reasons.append(f"Destination match: {trip.destination}")

        check_origin = search_origin is not None and not origin_matched
        check_dest = search_dest is not None and not dest_matched
        if check_origin or check_dest:
            try:
                route = await self._trip_route(trip, cache)
            except Exception as e:
                # degrade to text/date/capacity scoring for this candidate
                logger.warning("route_check_failed: trip=%s error=%r", trip.id, e)
                route = None
            if route:
                if check_origin:
                    dist = point_to_route_km(search_origin, route)
                    logger.debug("route_distance: trip=%s place=%s km=%.2f", trip.id, filt.origin, dist)
                    if dist <= w.route_radius_km:
                        score += w.route_boost
                        reasons.append(f"Pickup point on route ({filt.origin})")
                if check_dest:
                    dist = point_to_route_km(search_dest, route)
                    logger.debug("route_distance: trip=%s place=%s km=%.2f", trip.id, filt.destination, dist)
                    if dist <= w.route_radius_km:
                        score += w.route_boost
                        reasons.append(f"Dropoff point on route ({filt.destination})")

        if filt.date:
            date_val = date_proximity(trip.departure_date, filt.date, w.flex_days)
            score += date_val * w.date
            if date_val * w.date >= w.date_reason_threshold:
                reasons.append("Date within range")
            # time only counts once the day is already a near match
            if filt.time and date_val > w.time_date_gate:
                time_val = time_proximity(filt.time, trip.departure_time)
                score += time_val * w.time
                if time_val >= w.time_reason_threshold:
                    reasons.append("Time match")

        if filt.space:
            fit = space_compatibility(filt.space, trip.available_space)
            if fit.fits:
                score += fit.score * w.space
                reasons.append(f"Space: {trip.available_space}")

        if trip.traveler_id in verified:
            score += w.verified_bonus
            reasons.append("Verified traveler")

        return schemas.RankedTrip(
            trip=trip,
            relevance_score=round(min(score, w.report_cap), 2),
            raw_score=score,
            match_reasons=reasons,
        )

    async def _trip_route(self, trip: schemas.Trip, cache: GeoCache) -> Optional[List[LatLon]]:
        start = await cache.place(trip.origin)
        end = await cache.place(trip.destination)
        if start is None or end is None:
            logger.debug("route_skipped: trip=%s unresolved endpoint", trip.id)
            return None
        return await cache.route(start, end)

    # ---- delivery requests for a trip ----

    async def find_matches_for_trip(self, trip_id: int) -> List[schemas.RankedRequest]:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(models.trips).where(models.trips.c.id == trip_id))).first()
            if not row:
                raise NotFound(f"Trip {trip_id} not found")
            trip = schemas.Trip.model_validate(dict(row._mapping))
            res = await conn.execute(
                select(models.delivery_requests).where(models.delivery_requests.c.status == models.REQUEST_PENDING)
            )
            requests = [schemas.DeliveryRequest.model_validate(dict(r._mapping)) for r in res]
        return await self.rank_requests(trip, requests)

    async def rank_requests(self, trip: schemas.Trip,
                            requests: Sequence[schemas.DeliveryRequest]) -> List[schemas.RankedRequest]:
        verified = await self.directory.verified(r.business_id for r in requests)
        scored = [self._score_request(trip, r, verified) for r in requests]
        results = [r for r in scored if r.relevance_score >= self.reverse.min_score]
        results.sort(key=lambda r: (r.relevance_score, r.request.created_at, r.request.id), reverse=True)
        logger.info("find_matches_for_trip: trip=%s candidates=%d kept=%d", trip.id, len(requests), len(results))
        return results

    def _score_request(self, trip: schemas.Trip, req: schemas.DeliveryRequest,
                       verified: Set[int]) -> schemas.RankedRequest:
        w = self.reverse
        reasons: List[str] = []

        # an oversized package is a hard constraint, not a preference
        fit = space_compatibility(req.package_size, trip.available_space)
        if not fit.fits:
            return schemas.RankedRequest(request=req, relevance_score=0.0, match_reasons=[])

        origin_sim = string_similarity(req.origin, trip.origin)
        dest_sim = string_similarity(req.destination, trip.destination)
        score = origin_sim * w.origin + dest_sim * w.destination
        if origin_sim >= w.string_match_threshold:
            reasons.append("Origin match")
        if dest_sim >= w.string_match_threshold:
            reasons.append("Destination match")

        if req.delivery_date:
            date_val = date_proximity(req.delivery_date, trip.departure_date)
            score += date_val * w.date
            if date_val >= w.date_reason_threshold:
                reasons.append("Date compatible")

        score += fit.score * w.space
        reasons.append("Package fits")

        if req.business_id in verified:
            score += w.verified_bonus
            reasons.append("Verified business")

        return schemas.RankedRequest(request=req, relevance_score=round(score, 2), match_reasons=reasons)
