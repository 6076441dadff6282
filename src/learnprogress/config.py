"""Runtime settings for the progression engine."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "LEARNPROGRESS_"
DEFAULT_DB_PATH = Path.home() / ".learnprogress" / "progress.db"
DEFAULT_API_URL = "https://api.swiftquantum.app"
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class EngineConfig:
    """Settings resolved once at startup.

    `timezone` fixes the calendar used for every streak and daily-challenge day
    boundary. `api_base_url=None` runs fully offline.
    """

    db_path: Path | str = DEFAULT_DB_PATH
    api_base_url: str | None = DEFAULT_API_URL
    api_token: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    timezone: str = "UTC"
    report_completions: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Build settings from `LEARNPROGRESS_*` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        db_path = get("DB_PATH")
        api_url = get("API_URL")
        timeout = get("TIMEOUT")
        offline = (get("OFFLINE") or "").lower() in {"1", "true", "yes"}
        try:
            timeout_seconds = float(timeout) if timeout is not None else DEFAULT_TIMEOUT_SECONDS
        except ValueError as exc:
            raise ValueError(f"{ENV_PREFIX}TIMEOUT must be a number, got {timeout!r}.") from exc
        return cls(
            db_path=Path(db_path).expanduser() if db_path is not None else DEFAULT_DB_PATH,
            api_base_url=None if offline else (api_url or DEFAULT_API_URL),
            api_token=get("API_TOKEN"),
            timeout_seconds=timeout_seconds,
            timezone=get("TIMEZONE") or "UTC",
            report_completions=not offline,
        )

    @property
    def offline(self) -> bool:
        """Return whether no remote API is configured."""
        return self.api_base_url is None
