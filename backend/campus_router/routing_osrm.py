from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Final
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from .deadline import RequestDeadline
from .geo import dedup_vertices, distance_km, polyline_length_km, walking_minutes
from .logging_utils import log_event
from .models import Coordinate, RouteLeg
from .routing_errors import RoutingError
from .settings import Settings, _running_in_docker, settings


class OSRMError(RoutingError):
    pass


_NO_ROUTE_CODES: Final[frozenset[str]] = frozenset({"NoRoute", "NoSegment"})
_LOCALHOST_HOSTS: Final[set[str]] = {"localhost", "127.0.0.1"}
# A provider endpoint within this distance of the requested one is replaced, not extended.
ENDPOINT_SNAP_KM: Final[float] = 0.005
MAX_ATTEMPTS: Final[int] = 2


def _error_reply(resp: httpx.Response) -> tuple[str | None, str]:
    """OSRM error code (if the body carries one) and a one-line description of the reply."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and (data.get("code") or data.get("message")):
        code = str(data["code"]) if data.get("code") else None
        parts = [p for p in (code, data.get("message")) if p]
        return code, f"OSRM {resp.status_code}: " + " - ".join(str(p) for p in parts)

    text = " ".join((resp.text or "").split())
    if not text:
        return None, f"OSRM {resp.status_code}: empty reply"
    return None, f"OSRM {resp.status_code}: {text[:200]}"


def _describe(exc: BaseException) -> str:
    # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else f"{type(exc).__name__}: {exc!r}"


def _connection_hint(base_url: str) -> str:
    host = urlparse(base_url).hostname or ""
    if _running_in_docker() and host in _LOCALHOST_HOSTS:
        return (
            " Hint: inside the container `localhost` is the router itself; "
            "with docker-compose use OSRM_BASE_URL=http://osrm:5000."
        )
    if not _running_in_docker() and host == "osrm":
        return (
            " Hint: `osrm` only resolves inside docker-compose; "
            "on the host use OSRM_BASE_URL=http://localhost:5000."
        )
    return ""


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) and out >= 0.0 else None


def pin_endpoints(
    coords: list[Coordinate],
    start: Coordinate,
    end: Coordinate,
    *,
    snap_km: float = ENDPOINT_SNAP_KM,
) -> tuple[list[Coordinate], float]:
    """Make the polyline begin at start and finish at end.

    Returns the new coordinates and the length (km) of any segment that had to be added.
    Vertices left within 1 m of a pinned endpoint are dropped.
    """
    out = dedup_vertices(list(coords))
    extend_start = distance_km(out[0], start) > snap_km
    if extend_start:
        out.insert(0, start)
    else:
        out[0] = start
    extend_end = len(out) == 1 or distance_km(out[-1], end) > snap_km
    if extend_end:
        out.append(end)
    else:
        out[-1] = end
    out = dedup_vertices(out)
    added_km = 0.0
    if len(out) > 1:
        if extend_start:
            added_km += distance_km(out[0], out[1])
        if extend_end:
            added_km += distance_km(out[-2], out[-1])
    return out, added_km


def route_leg_from_osrm(
    route: Any,
    start: Coordinate,
    end: Coordinate,
    *,
    pace_km_per_min: float,
) -> RouteLeg:
    geometry = route.get("geometry") if isinstance(route, dict) else None
    raw_coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
    if not isinstance(raw_coords, list) or not raw_coords:
        raise OSRMError("service_error", "OSRM route has no geometry")
    try:
        coords = [Coordinate(lat=float(point[1]), lon=float(point[0])) for point in raw_coords]
    except (TypeError, ValueError, IndexError, ValidationError) as e:
        raise OSRMError("service_error", "OSRM route geometry is malformed") from e

    coords, added_km = pin_endpoints(coords, start, end)
    provider_distance_m = _as_float(route.get("distance"))
    provider_duration_s = _as_float(route.get("duration"))

    if provider_distance_m is not None:
        distance = provider_distance_m / 1000.0 + added_km
    else:
        distance = polyline_length_km(coords)
    if provider_duration_s is not None:
        duration = int(math.ceil(provider_duration_s / 60.0 + added_km / pace_km_per_min))
    else:
        duration = walking_minutes(distance, pace_km_per_min)

    return RouteLeg(
        coords=coords,
        distance_km=distance,
        duration_min=duration,
        origin="EXTERNAL",
        provider_distance_km=None if provider_distance_m is None else provider_distance_m / 1000.0,
        provider_duration_s=provider_duration_s,
    )


def _leg_from_response(
    resp: httpx.Response,
    start: Coordinate,
    end: Coordinate,
    *,
    pace_km_per_min: float,
) -> RouteLeg:
    if resp.status_code >= 400:
        code, description = _error_reply(resp)
        details = {"status_code": resp.status_code, "osrm_code": code}
        if code in _NO_ROUTE_CODES:
            raise OSRMError("no_route", description, details=details)
        raise OSRMError("service_error", description, details=details)

    try:
        data = resp.json()
    except ValueError as e:
        raise OSRMError("service_error", "OSRM returned invalid JSON") from e
    if not isinstance(data, dict):
        raise OSRMError("service_error", "OSRM returned an unexpected payload")

    code = data.get("code")
    if code in _NO_ROUTE_CODES:
        raise OSRMError("no_route", f"OSRM error code={code} message={data.get('message')}")
    if code is not None and code != "Ok":
        raise OSRMError("service_error", f"OSRM error code={code} message={data.get('message')}")

    routes = data.get("routes")
    if not isinstance(routes, list) or not routes:
        raise OSRMError("no_route", "OSRM returned no routes")
    return route_leg_from_osrm(routes[0], start, end, pace_km_per_min=pace_km_per_min)


class OSRMClient:
    def __init__(
        self,
        *,
        base_url: str,
        profile: str = "foot",
        timeout_ms: int | None = None,
        walking_pace_km_per_min: float | None = None,
        client: httpx.AsyncClient | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or settings
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout_ms = int(cfg.external_timeout_ms if timeout_ms is None else timeout_ms)
        self.walking_pace_km_per_min = (
            cfg.walking_pace_km_per_min if walking_pace_km_per_min is None else walking_pace_km_per_min
        )

        # trust_env=False keeps proxy env vars away from localhost / docker service names.
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_ms / 1000.0, connect=min(self.timeout_ms / 1000.0, 3.0)),
            trust_env=False,
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def route_url(self, start: Coordinate, end: Coordinate) -> str:
        coords = f"{start.lon},{start.lat};{end.lon},{end.lat}"
        return f"{self.base_url}/route/v1/{self.profile}/{coords}"

    async def route_external(
        self,
        start: Coordinate,
        end: Coordinate,
        *,
        deadline: RequestDeadline | None = None,
    ) -> RouteLeg:
        """Walking route from the OSRM-style service, pinned to the exact endpoints.

        One retry on transport errors while the call budget lasts. Raises ``OSRMError``
        with ``timeout``, ``no_route``, ``service_error`` or ``cancelled``.
        """
        url = self.route_url(start, end)
        params = {"overview": "full", "geometries": "geojson"}
        budget = RequestDeadline.from_ms(self.timeout_ms)
        if deadline is not None:
            budget = deadline.capped(self.timeout_ms)

        last_err: BaseException | None = None
        attempts = 0
        while attempts < MAX_ATTEMPTS:
            if deadline is not None and deadline.expired:
                raise OSRMError(
                    "cancelled",
                    "request deadline expired before OSRM call",
                    details={"attempts": attempts},
                )
            remaining_s = budget.remaining_s()
            if remaining_s <= 0.0:
                break
            attempts += 1
            try:
                resp = await asyncio.wait_for(
                    self._client.get(url, params=params, timeout=remaining_s),
                    timeout=remaining_s,
                )
            except (httpx.TransportError, asyncio.TimeoutError) as e:
                last_err = e
                log_event(
                    "osrm_attempt_failed",
                    level=logging.WARNING,
                    attempt=attempts,
                    error=_describe(e),
                    remaining_ms=round(budget.remaining_ms(), 1),
                )
                continue
            return _leg_from_response(resp, start, end, pace_km_per_min=self.walking_pace_km_per_min)

        timed_out = last_err is None or isinstance(last_err, (httpx.TimeoutException, asyncio.TimeoutError))
        detail = "call budget exhausted" if last_err is None else _describe(last_err)
        raise OSRMError(
            "timeout" if timed_out else "service_error",
            f"OSRM request failed after {attempts} attempt(s) (base={self.base_url}): "
            f"{detail}{_connection_hint(self.base_url)}",
            details={"attempts": attempts},
        )
