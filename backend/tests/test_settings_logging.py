from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

import campus_router.logging_utils as logging_utils
from campus_router.hybrid_router import bounds_from_settings
from campus_router.routing_errors import FROZEN_REASON_CODES, RoutingError, normalize_reason_code
from campus_router.settings import Settings


def test_settings_defaults() -> None:
    cfg = Settings()
    assert cfg.junction_radius_km == pytest.approx(0.008)
    assert cfg.snap_limit_km == pytest.approx(0.5)
    assert cfg.external_timeout_ms == 4000
    assert cfg.request_deadline_ms == 8000
    assert cfg.walking_pace_km_per_min == pytest.approx(0.083)
    assert cfg.osrm_profile == "foot"
    assert cfg.path_snapshot_ttl_s == 0
    assert cfg.path_store_timeout_ms == 5000


def test_settings_read_environment(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("SNAP_LIMIT_KM", "0.25")
    monkeypatch.setenv("PATH_STORE", "fixture")
    monkeypatch.setenv("OSRM_PROFILE", "  walking ")
    cfg = Settings()
    assert cfg.snap_limit_km == pytest.approx(0.25)
    assert cfg.path_store == "fixture"
    assert cfg.osrm_profile == "walking"


def test_settings_reject_inverted_campus_rectangle(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("CAMPUS_SOUTH_LAT", "11.30")
    with pytest.raises(ValidationError):
        Settings()


def test_settings_cap_snapshot_ttl(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("PATH_SNAPSHOT_TTL_S", "60")
    with pytest.raises(ValidationError):
        Settings()


def test_bounds_from_settings_uses_configured_rectangle() -> None:
    bounds = bounds_from_settings(Settings())
    assert (bounds.north_lat, bounds.south_lat) == (11.2500, 11.2380)
    assert (bounds.east_lon, bounds.west_lon) == (125.0080, 124.9960)


def test_reason_codes_are_normalised() -> None:
    assert normalize_reason_code(" Timeout ") == "timeout"
    assert normalize_reason_code("something_else") == "service_error"
    assert normalize_reason_code("", default="no_route") == "no_route"
    err = RoutingError("NOT_A_CODE", "boom")
    assert err.reason_code == "service_error"
    assert str(err) == "boom"
    assert "snap_too_far" in FROZEN_REASON_CODES


def test_log_event_emits_structured_record() -> None:
    records: list[logging.LogRecord] = []

    class _Capture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging_utils.get_logger()
    handler = _Capture()
    logger.addHandler(handler)
    try:
        logging_utils.log_event("route_completed", kind="CAMPUS_ONLY", distance_km=0.19)
        logging_utils.log_event("osrm_attempt_failed", level=logging.WARNING, attempt=1)
    finally:
        logger.removeHandler(handler)

    assert [r.getMessage() for r in records] == ["route_completed", "osrm_attempt_failed"]
    assert records[0].event == "route_completed"  # type: ignore[attr-defined]
    assert records[0].kind == "CAMPUS_ONLY"  # type: ignore[attr-defined]
    assert records[1].levelno == logging.WARNING
    assert logger.name == "campus_router"
    assert logger.propagate is False
