from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "store_unavailable",
        "graph_empty",
        "snap_too_far",
        "unreachable",
        "timeout",
        "no_route",
        "service_error",
        "cancelled",
    }
)


@dataclass
class RoutingError(RuntimeError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.reason_code = normalize_reason_code(self.reason_code)

    def __str__(self) -> str:
        return self.message


def normalize_reason_code(reason_code: str, *, default: str = "service_error") -> str:
    code = str(reason_code or "").strip().lower()
    if code in FROZEN_REASON_CODES:
        return code
    return default
