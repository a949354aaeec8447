"""
Configuration - Settings read from the environment.

Variables:
    STAGEFLOW_ENV               development | production (default: development)
    STAGEFLOW_DATA_DIR          Snapshot directory; unset keeps boards in memory only
    STAGEFLOW_DEFAULT_BOARD     Board used when a request names none (default: sales)
    STAGEFLOW_STAGE_CARD_LIMIT  Max cards per stage in a full-board read (default: 50)
    STAGEFLOW_SUBSCRIBER_QUEUE  Buffered events per subscriber (default: 256)
    STAGEFLOW_LOG_LEVEL         Logging level for `stageflow serve` (default: INFO)
    ALLOWED_ORIGINS             Comma-separated CORS origins (default: *)
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field

from .engine_core.state import DEFAULT_BOARD_KEY


@dataclass
class Settings:
    env: str = "development"
    data_dir: str | None = None
    default_board: str = DEFAULT_BOARD_KEY
    stage_card_limit: int = 50
    subscriber_queue: int = 256
    log_level: str = "INFO"
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        return cls(
            env=env.get("STAGEFLOW_ENV", "development"),
            data_dir=env.get("STAGEFLOW_DATA_DIR") or None,
            default_board=env.get("STAGEFLOW_DEFAULT_BOARD", DEFAULT_BOARD_KEY),
            stage_card_limit=int(env.get("STAGEFLOW_STAGE_CARD_LIMIT", "50")),
            subscriber_queue=int(env.get("STAGEFLOW_SUBSCRIBER_QUEUE", "256")),
            log_level=env.get("STAGEFLOW_LOG_LEVEL", "INFO").upper(),
            allowed_origins=[
                origin.strip()
                for origin in env.get("ALLOWED_ORIGINS", "*").split(",")
                if origin.strip()
            ],
        )

    @property
    def is_production(self) -> bool:
        return self.env == "production"
