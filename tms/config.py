from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

LOGGER = logging.getLogger("tms.config")

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    """Process-level settings read once from the environment."""

    state_path: Path = Path("tms.state.json")
    webhook_token: Optional[str] = None
    runner_api_token: Optional[str] = None
    webhook_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    auto_start: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            state_path=Path(env.get("TMS_STATE_PATH") or "tms.state.json"),
            webhook_token=env.get("TMS_WEBHOOK_TOKEN") or None,
            runner_api_token=env.get("TMS_RUNNER_API_TOKEN") or None,
            webhook_base_url=(env.get("TMS_WEBHOOK_BASE_URL") or "http://localhost:8000").rstrip("/"),
            log_level=(env.get("TMS_LOG_LEVEL") or "INFO").upper(),
            auto_start=_flag(env.get("TMS_AUTO_START"), True),
            host=env.get("TMS_HOST") or "0.0.0.0",
            port=int(env.get("TMS_PORT") or 8000),
        )

    @property
    def webhook_auth_enabled(self) -> bool:
        return bool(self.webhook_token)

    def warn_if_permissive(self) -> None:
        if not self.webhook_auth_enabled:
            LOGGER.warning(
                "TMS_WEBHOOK_TOKEN is not set; webhook bearer-token checks are DISABLED "
                "and any caller can report execution results"
            )
