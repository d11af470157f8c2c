"""
Time-windowed deal cache with stale-while-revalidate reads.

get() never blocks on the network. An entry past its ttl is still returned,
flagged stale; the caller decides whether to refresh. refresh() coalesces:
while one refresh for a key is in flight, later callers await the same task.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from dealfinder.config import get_settings
from dealfinder.exceptions import CacheCorruptionError
from dealfinder.models.deal_cache_entry import DealCacheEntry
from dealfinder.services.flights import RouteKey
from dealfinder.utils import utcnow

logger = logging.getLogger(__name__)

Refresher = Callable[[], Awaitable[Any]]


def route_cache_key(route_key: RouteKey) -> str:
    return f"route:{route_key}"


def origin_cache_key(origin: str) -> str:
    return f"origin:{origin.strip().upper()}"


def alert_cache_key(alert_id) -> str:
    return f"alert:{alert_id}"


def origin_of_key(key: str) -> Optional[str]:
    kind, _, rest = key.partition(":")
    if kind == "route":
        return RouteKey.parse(rest).origin
    if kind == "origin":
        return rest.upper()
    return None


@dataclass
class CacheEntry:
    key: str
    payload: Any
    written_at: datetime
    ttl: timedelta
    origin: Optional[str] = None

    def is_stale(self, now: datetime) -> bool:
        return now - self.written_at > self.ttl

    def age(self, now: datetime) -> timedelta:
        return now - self.written_at


@dataclass(frozen=True)
class CacheRead:
    payload: Any
    stale: bool
    written_at: datetime


class DealCache:
    def __init__(self, default_ttl: Optional[int] = None, clock: Callable[[], datetime] = utcnow):
        settings = get_settings()
        self.default_ttl = timedelta(seconds=default_ttl or settings.deal_cache_ttl_seconds)
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[CacheRead]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._load(key)
            if entry is None:
                return None
            self._entries[key] = entry
        stale = entry.is_stale(self.clock())
        if stale:
            logger.debug(f"Serving stale cache entry {key} (age {entry.age(self.clock())})")
        return CacheRead(payload=entry.payload, stale=stale, written_at=entry.written_at)

    def put(
        self,
        key: str,
        payload: Any,
        ttl: Optional[Union[int, timedelta]] = None,
        origin: Optional[str] = None,
    ) -> CacheEntry:
        if ttl is None:
            ttl = self.default_ttl
        elif not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        entry = CacheEntry(
            key=key,
            payload=payload,
            written_at=self.clock(),
            ttl=ttl,
            origin=(origin.strip().upper() if origin else origin_of_key(key)),
        )
        self._entries[key] = entry
        self._store(entry)
        return entry

    def delete(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        removed = self._remove([key]) or removed
        return removed

    def invalidate(self, target: Union[RouteKey, str]) -> int:
        """Drop every entry for the origin of a route (RouteKey or "A-B") or a bare origin code."""
        if isinstance(target, RouteKey):
            origin = target.origin
        elif "-" in target:
            origin = RouteKey.parse(target).origin
        else:
            origin = target.strip().upper()

        keys = [k for k, e in self._entries.items() if e.origin == origin]
        for key in keys:
            del self._entries[key]
        dropped = max(len(keys), self._remove_origin(origin))
        if dropped:
            logger.info(f"Invalidated {dropped} cache entries for origin {origin}")
        return dropped

    def is_refreshing(self, key: str) -> bool:
        task = self._refreshing.get(key)
        return task is not None and not task.done()

    async def refresh(self, key: str, refresher: Refresher, ttl=None, origin: Optional[str] = None) -> Any:
        """Run refresher once per key at a time and store its result."""
        task = self._refreshing.get(key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run_refresh(key, refresher, ttl, origin))
            self._refreshing[key] = task
        else:
            logger.debug(f"Joining in-flight refresh for {key}")
        return await asyncio.shield(task)

    def refresh_in_background(self, key: str, refresher: Refresher, ttl=None, origin: Optional[str] = None) -> asyncio.Task:
        task = self._refreshing.get(key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run_refresh(key, refresher, ttl, origin))
            self._refreshing[key] = task
            task.add_done_callback(self._log_background_failure)
        return task

    async def _run_refresh(self, key: str, refresher: Refresher, ttl, origin: Optional[str]) -> Any:
        try:
            payload = await refresher()
            self.put(key, payload, ttl=ttl, origin=origin)
            return payload
        finally:
            self._refreshing.pop(key, None)

    @staticmethod
    def _log_background_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background cache refresh failed: {error}")

    def purge_expired(self, max_age: Optional[Union[int, timedelta]] = None) -> int:
        """Remove entries older than max_age (defaults to each entry's own ttl)."""
        now = self.clock()
        if max_age is not None and not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        expired = [
            k for k, e in self._entries.items()
            if now - e.written_at > (max_age if max_age is not None else e.ttl)
        ]
        for key in expired:
            del self._entries[key]
        purged = max(len(expired), self._remove_older_than(now, max_age))
        if purged:
            logger.info(f"Purged {purged} expired cache entries")
        return purged

    # Persistence hooks, no-ops for the in-memory cache
    def _load(self, key: str) -> Optional[CacheEntry]:
        return None

    def _store(self, entry: CacheEntry) -> None:
        pass

    def _remove(self, keys) -> bool:
        return False

    def _remove_origin(self, origin: str) -> int:
        return 0

    def _remove_older_than(self, now: datetime, max_age: Optional[timedelta]) -> int:
        return 0


class SqlDealCache(DealCache):
    """
    Cache backed by deal_cache_entries so warm entries survive a restart.

    Payloads are stored as JSON. A row that cannot be decoded is logged,
    deleted and treated as a miss.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        default_ttl: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self.session_factory = session_factory

    def _load(self, key: str) -> Optional[CacheEntry]:
        db: Session = self.session_factory()
        try:
            row = db.query(DealCacheEntry).filter(DealCacheEntry.cache_key == key).first()
            if row is None:
                return None
            try:
                payload = self._decode(row)
            except CacheCorruptionError as e:
                logger.warning(f"{e}; discarding")
                db.delete(row)
                db.commit()
                return None
            return CacheEntry(
                key=row.cache_key,
                payload=payload,
                written_at=row.written_at,
                ttl=timedelta(seconds=row.ttl_seconds),
                origin=row.origin,
            )
        finally:
            db.close()

    @staticmethod
    def _decode(row: DealCacheEntry) -> Any:
        try:
            return json.loads(row.payload)
        except (TypeError, ValueError) as e:
            raise CacheCorruptionError(row.cache_key, str(e)) from e

    def _store(self, entry: CacheEntry) -> None:
        db: Session = self.session_factory()
        try:
            row = db.query(DealCacheEntry).filter(DealCacheEntry.cache_key == entry.key).first()
            if row is None:
                row = DealCacheEntry(cache_key=entry.key)
                db.add(row)
            row.origin = entry.origin
            row.payload = json.dumps(entry.payload, default=str)
            row.written_at = entry.written_at
            row.ttl_seconds = int(entry.ttl.total_seconds())
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _remove(self, keys) -> bool:
        db: Session = self.session_factory()
        try:
            deleted = db.query(DealCacheEntry).filter(
                DealCacheEntry.cache_key.in_(list(keys))
            ).delete(synchronize_session=False)
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def _remove_origin(self, origin: str) -> int:
        db: Session = self.session_factory()
        try:
            deleted = db.query(DealCacheEntry).filter(
                DealCacheEntry.origin == origin
            ).delete(synchronize_session=False)
            db.commit()
            return deleted
        finally:
            db.close()

    def _remove_older_than(self, now: datetime, max_age: Optional[timedelta]) -> int:
        db: Session = self.session_factory()
        try:
            rows = db.query(DealCacheEntry).all()
            expired = [
                r for r in rows
                if now - r.written_at > (max_age if max_age is not None else timedelta(seconds=r.ttl_seconds))
            ]
            for row in expired:
                db.delete(row)
            db.commit()
            return len(expired)
        finally:
            db.close()
