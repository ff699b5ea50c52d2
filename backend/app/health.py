"""Health check reporting configuration state of the upstream integrations."""

from __future__ import annotations

from datetime import datetime, timezone

from .logging_config import SERVICE_NAME
from .schemas import HealthResponse
from .settings import Settings


class HealthChecker:
    """
    Reports which upstreams are usable without calling them.

    The completion service is optional: when it is missing the normalizer runs
    in fallback mode, which is still healthy.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def checks(self) -> dict[str, str]:
        return {
            "places": "configured" if self._settings.places_configured else "missing",
            "llm": "configured" if self._settings.llm_configured else "fallback",
        }

    def check_all(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            timestamp=datetime.now(timezone.utc).isoformat(),
            checks=self.checks(),
        )
