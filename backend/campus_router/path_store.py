from __future__ import annotations

import copy
import json
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Protocol, get_args

import httpx
from pydantic import ValidationError

from .logging_utils import log_event
from .models import CampusPath, Coordinate, PathType, Waypoint
from .routing_errors import RoutingError
from .settings import Settings, settings

_PATHS_SELECT = (
    "path_id,path_name,path_type,is_active,"
    "waypoints(waypoint_id,sequence,latitude,longitude,is_accessible,notes)"
)
_MISSING_TABLE_CODES = frozenset({"PGRST205", "42P01"})
_PATH_TYPES = frozenset(get_args(PathType))


class PathStore(Protocol):
    # Monotonic token that changes whenever the underlying paths change; None if unknown.
    revision: str | None

    async def list_active_paths(self) -> list[CampusPath]: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# Row parsing and routability filtering
# ---------------------------------------------------------------------------


def _parse_waypoint(raw: object) -> Waypoint | None:
    if not isinstance(raw, dict):
        return None
    try:
        return Waypoint(
            id=raw.get("waypoint_id", raw.get("id")),
            sequence=int(raw["sequence"]),
            # Decimal columns arrive as strings.
            coord=Coordinate(lat=float(raw["latitude"]), lon=float(raw["longitude"])),
            accessible=raw.get("is_accessible") is not False,
            notes=raw.get("notes"),
        )
    except (KeyError, TypeError, ValueError, ValidationError):
        return None


def _parse_path(raw: object) -> CampusPath | None:
    if not isinstance(raw, dict):
        return None
    waypoints: list[Waypoint] = []
    seen: set[int] = set()
    for wp_raw in raw.get("waypoints") or ():
        wp = _parse_waypoint(wp_raw)
        if wp is None or wp.sequence in seen:
            continue
        seen.add(wp.sequence)
        waypoints.append(wp)
    path_type = str(raw.get("path_type", raw.get("type")) or "walkway").strip().lower()
    if path_type not in _PATH_TYPES:
        path_type = "path"
    try:
        return CampusPath(
            id=raw.get("path_id", raw.get("id")),
            name=str(raw.get("path_name", raw.get("name")) or ""),
            type=path_type,
            active=raw.get("is_active", raw.get("active", True)) is not False,
            waypoints=tuple(sorted(waypoints, key=lambda wp: wp.sequence)),
        )
    except ValidationError:
        return None


def paths_from_rows(rows: Iterable[object]) -> list[CampusPath]:
    """Parse store rows (``paths`` joined with ``waypoints``), skipping malformed ones."""
    out: list[CampusPath] = []
    skipped = 0
    for raw in rows:
        path = _parse_path(raw)
        if path is None:
            skipped += 1
            continue
        out.append(path)
    if skipped:
        log_event("path_rows_skipped", level=logging.WARNING, skipped=skipped)
    return out


def routable_path(path: CampusPath) -> CampusPath | None:
    """Drop an inactive path; otherwise keep only accessible waypoints, sorted by sequence.

    A removed waypoint with accessible neighbours on both sides leaves a break so the
    two remaining runs are never joined directly.
    """
    if not path.active:
        return None
    kept: list[Waypoint] = []
    breaks: set[int] = set(path.breaks)
    for wp in sorted(path.waypoints, key=lambda w: w.sequence):
        if wp.accessible:
            kept.append(wp)
        elif kept:
            breaks.add(kept[-1].sequence)
    kept_sequences = {wp.sequence for wp in kept}
    # A break after the last kept waypoint is meaningless.
    if kept:
        breaks.discard(kept[-1].sequence)
    return path.model_copy(
        update={
            "waypoints": tuple(kept),
            "breaks": tuple(sorted(b for b in breaks if b in kept_sequences)),
        }
    )


def routable_paths(paths: Iterable[CampusPath]) -> list[CampusPath]:
    out: list[CampusPath] = []
    for path in paths:
        kept = routable_path(path)
        if kept is not None and kept.waypoints:
            out.append(kept)
    return out


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class SupabasePathStore:
    """Reads paths through the hosted database's REST endpoint."""

    revision: str | None = None

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout_s = timeout_s
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 3.0)),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_active_paths(self) -> list[CampusPath]:
        if not self.base_url:
            raise RoutingError("store_unavailable", "path store URL is not configured")
        url = f"{self.base_url}/rest/v1/paths"
        headers = {"apikey": self._api_key, "Authorization": f"Bearer {self._api_key}"}
        params = {"select": _PATHS_SELECT, "is_active": "eq.true"}
        try:
            resp = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise RoutingError(
                "store_unavailable",
                f"path store unreachable: {type(e).__name__}: {e}",
            ) from e

        if resp.status_code >= 400:
            if _is_missing_table(resp):
                # Paths table not provisioned yet: behave as "no campus paths".
                log_event("path_store_missing_table", level=logging.WARNING, status=resp.status_code)
                return []
            raise RoutingError(
                "store_unavailable",
                f"path store HTTP {resp.status_code}",
                details={"status_code": resp.status_code},
            )

        try:
            rows = resp.json()
        except ValueError as e:
            raise RoutingError("store_unavailable", "path store returned invalid JSON") from e
        if not isinstance(rows, list):
            raise RoutingError("store_unavailable", "path store returned an unexpected payload")
        return routable_paths(paths_from_rows(rows))


def _is_missing_table(resp: httpx.Response) -> bool:
    try:
        data = resp.json()
    except ValueError:
        return False
    if not isinstance(data, dict):
        return False
    code = str(data.get("code") or "")
    message = str(data.get("message") or "")
    return code in _MISSING_TABLE_CODES or "schema cache" in message


class FixturePathStore:
    """In-memory paths for development and tests. Same filtering as the real store."""

    def __init__(self, paths: Sequence[CampusPath] | None = None) -> None:
        self._paths: list[CampusPath] = list(paths or ())
        self._revision = 1
        self.calls = 0

    @classmethod
    def from_rows(cls, rows: Iterable[object]) -> "FixturePathStore":
        return cls(paths_from_rows(rows))

    @classmethod
    def from_file(cls, path: str | Path) -> "FixturePathStore":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        rows = raw.get("paths", []) if isinstance(raw, dict) else raw
        return cls.from_rows(rows if isinstance(rows, list) else [])

    @property
    def revision(self) -> str | None:
        return str(self._revision)

    def replace(self, paths: Sequence[CampusPath]) -> None:
        self._paths = list(paths)
        self._revision += 1

    async def list_active_paths(self) -> list[CampusPath]:
        self.calls += 1
        return routable_paths(self._paths)

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Snapshot cache
# ---------------------------------------------------------------------------


@dataclass
class _SnapshotEntry:
    inserted_at: float
    paths: list[CampusPath]


class PathSnapshotCache:
    def __init__(self, *, ttl_s: int) -> None:
        self._ttl_s = max(0, int(ttl_s))
        self._lock = Lock()
        self._items: dict[str, _SnapshotEntry] = {}

        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self._ttl_s > 0

    def _is_expired(self, entry: _SnapshotEntry) -> bool:
        return (time.monotonic() - entry.inserted_at) > self._ttl_s

    def get(self, key: str) -> list[CampusPath] | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry):
                self._items.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return copy.copy(entry.paths)

    def set(self, key: str, paths: list[CampusPath]) -> None:
        with self._lock:
            # Only the newest revision is worth keeping.
            self._items.clear()
            self._items[key] = _SnapshotEntry(inserted_at=time.monotonic(), paths=list(paths))

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "ttl_s": self._ttl_s,
            }


class CachedPathStore:
    """Wraps a store with a short-lived snapshot cache keyed by its revision token."""

    def __init__(self, inner: PathStore, *, ttl_s: int) -> None:
        self.inner = inner
        self.cache = PathSnapshotCache(ttl_s=ttl_s)

    @property
    def revision(self) -> str | None:
        return self.inner.revision

    async def list_active_paths(self) -> list[CampusPath]:
        if not self.cache.enabled:
            return await self.inner.list_active_paths()
        key = self.inner.revision or "latest"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        paths = await self.inner.list_active_paths()
        self.cache.set(key, paths)
        return paths

    async def aclose(self) -> None:
        await self.inner.aclose()


def build_path_store(config: Settings | None = None) -> PathStore:
    cfg = config or settings
    store: PathStore
    if cfg.path_store == "fixture":
        store = FixturePathStore.from_file(cfg.path_fixture_file) if cfg.path_fixture_file else FixturePathStore()
    else:
        store = SupabasePathStore(
            base_url=cfg.supabase_url,
            api_key=cfg.supabase_anon_key,
            timeout_s=cfg.path_store_timeout_ms / 1000.0,
        )
    if cfg.path_snapshot_ttl_s > 0:
        return CachedPathStore(store, ttl_s=cfg.path_snapshot_ttl_s)
    return store


async def has_campus_paths(store: PathStore) -> bool:
    try:
        return bool(await store.list_active_paths())
    except RoutingError:
        return False

