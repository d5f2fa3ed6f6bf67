"""Configuration helpers for the review funnel backend."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping

from dotenv import load_dotenv

ENV_PREFIX = "REVIEW_FUNNEL_"

DEFAULT_SESSION_TTL_SECONDS = 30 * 60
DEFAULT_SUBMIT_DELAY_SECONDS = 1.5
DEFAULT_MAX_BROWSER_SESSIONS = 10_000
DEFAULT_FALLBACK_COORDINATES = (37.422, -122.084)

load_dotenv(override=False)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the funnel and the AI collaborator.

    Only OpenAI is wired up; without a key every AI panel degrades to its
    placeholder text instead of failing.
    """

    openai_api_key: str | None = None
    draft_model: str = "gpt-4o-mini"
    insight_model: str = "gpt-4o"
    search_model: str = "gpt-4o-mini-search-preview"
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    submit_delay_seconds: float = DEFAULT_SUBMIT_DELAY_SECONDS
    max_browser_sessions: int = DEFAULT_MAX_BROWSER_SESSIONS
    fallback_latitude: float = DEFAULT_FALLBACK_COORDINATES[0]
    fallback_longitude: float = DEFAULT_FALLBACK_COORDINATES[1]
    public_base_url: str = "http://localhost:3000/"
    log_level: str = "INFO"

    @property
    def has_ai_credentials(self) -> bool:
        """True when the AI collaborator can actually be called."""

        return bool(self.openai_api_key)

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_seconds * 1000

    @property
    def fallback_coordinates(self) -> tuple[float, float]:
        return (self.fallback_latitude, self.fallback_longitude)


def _read_number(
    environ: Mapping[str, str],
    name: str,
    default: float,
    cast=float,
    allow_negative: bool = False,
):
    """Parse a numeric ``REVIEW_FUNNEL_*`` variable, keeping *default* on bad input."""

    raw = environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, raw)
        return default
    if value < 0 and not allow_negative:
        logger.warning("Ignoring negative %s%s=%r", ENV_PREFIX, name, raw)
        return default
    return value


def _read_text(environ: Mapping[str, str], name: str, default: str) -> str:
    raw = environ.get(f"{ENV_PREFIX}{name}")
    return raw.strip() if raw and raw.strip() else default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read environment variables and return cached settings."""

    environ = os.environ
    defaults = Settings()
    return Settings(
        openai_api_key=environ.get("OPENAI_API_KEY") or None,
        draft_model=_read_text(environ, "DRAFT_MODEL", defaults.draft_model),
        insight_model=_read_text(environ, "INSIGHT_MODEL", defaults.insight_model),
        search_model=_read_text(environ, "SEARCH_MODEL", defaults.search_model),
        session_ttl_seconds=_read_number(
            environ, "SESSION_TTL_SECONDS", defaults.session_ttl_seconds, cast=int
        ),
        submit_delay_seconds=_read_number(environ, "SUBMIT_DELAY_SECONDS", defaults.submit_delay_seconds),
        max_browser_sessions=_read_number(
            environ, "MAX_BROWSER_SESSIONS", defaults.max_browser_sessions, cast=int
        ),
        fallback_latitude=_read_number(
            environ, "FALLBACK_LAT", defaults.fallback_latitude, allow_negative=True
        ),
        fallback_longitude=_read_number(
            environ, "FALLBACK_LNG", defaults.fallback_longitude, allow_negative=True
        ),
        public_base_url=_read_text(environ, "PUBLIC_BASE_URL", defaults.public_base_url),
        log_level=_read_text(environ, "LOG_LEVEL", defaults.log_level).upper(),
    )
