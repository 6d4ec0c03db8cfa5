from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_EXTERNAL_URL = (
    "https://site.api.espn.com/apis/fitt/v3/sports/{sport}/recruiting/rankings/{season}?limit={limit}"
)
DEFAULT_EXTERNAL_STATE_URL = (
    "https://site.api.espn.com/apis/fitt/v3/sports/{sport}/recruiting/state-rankings/{season}"
)


def _resolve_home() -> Path:
    override = os.getenv("RANKINGS_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _default_database_url() -> str:
    override = os.getenv("RANKINGS_DATABASE_URL", "").strip()
    if override:
        return override
    return f"sqlite:///{_resolve_home() / 'data' / 'rankings.db'}"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    database_url: str = Field(default_factory=_default_database_url)
    sqlite_busy_timeout_ms: int = 15_000

    external_source_name: str = "espn"
    external_source_url: str = Field(
        default_factory=lambda: os.getenv("RANKINGS_EXTERNAL_URL", "").strip() or DEFAULT_EXTERNAL_URL
    )
    # Empty disables the second request.
    external_state_source_url: str = Field(
        default_factory=lambda: os.getenv("RANKINGS_EXTERNAL_STATE_URL", DEFAULT_EXTERNAL_STATE_URL).strip()
    )
    external_fetch_timeout: float = Field(default_factory=lambda: _env_float("RANKINGS_FETCH_TIMEOUT", 30.0))
    external_page_limit: int = 300
    user_agent: str = "RankingsBot/1.0 (+https://rankings.local)"

    # Composite score: equal-weight metric mean plus a capped course bonus.
    course_bonus_per_course: float = 2.0
    course_bonus_cap: float = 10.0
    score_precision: int = 1

    def external_urls(self, sport: str, season: int) -> list[str]:
        """Every feed endpoint for one import: the top-N board, then the state boards if set."""
        templates = [self.external_source_url, self.external_state_source_url]
        return [self._format_url(t, sport, season) for t in templates if t]

    def _format_url(self, template: str, sport: str, season: int) -> str:
        return template.format(sport=sport.lower(), season=season, limit=self.external_page_limit)


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from the environment, layered over an optional YAML file."""
    config_path = os.getenv("RANKINGS_CONFIG", "").strip()
    overrides = load_yaml(Path(config_path).expanduser()) if config_path else {}
    known = {k: v for k, v in overrides.items() if k in Settings.model_fields}
    # Environment variables win over the file.
    if os.getenv("RANKINGS_DATABASE_URL", "").strip():
        known.pop("database_url", None)
    if os.getenv("RANKINGS_EXTERNAL_URL", "").strip():
        known.pop("external_source_url", None)
    if "RANKINGS_EXTERNAL_STATE_URL" in os.environ:
        known.pop("external_state_source_url", None)
    if os.getenv("RANKINGS_FETCH_TIMEOUT", "").strip():
        known.pop("external_fetch_timeout", None)
    return Settings(**known)
