"""
Runtime configuration for stepkeeper.

Values come from ``STEPKEEPER_*`` environment variables (a local ``.env``
file is honoured). ``CONFIG`` is the process-wide default; components accept
an explicit ``RecoverySettings`` so tests can pass their own.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

ENV_PREFIX = "STEPKEEPER_"

DATA_DIR = Path(os.environ.get(f"{ENV_PREFIX}DATA_DIR", ".stepkeeper"))


class RecoverySettings(BaseModel):
    """Tunables for the background-recovery core."""

    data_dir: Path = DATA_DIR
    next_up_lead_ms: int = Field(default=5_000, ge=0)
    stale_after_ms: int = Field(default=12 * 60 * 60 * 1000, gt=0)
    effect_max_retries: int = Field(default=3, ge=0)
    effect_backoff_seconds: float = Field(default=0.5, ge=0)
    tick_interval_seconds: float = Field(default=0.25, gt=0)
    log_level: str = Field(default_factory=lambda: os.environ.get("LOGURU_LEVEL", "INFO"))

    @classmethod
    def from_env(cls) -> "RecoverySettings":
        """Build settings from environment variables, ignoring unset ones."""
        values = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)

    def reload(self) -> None:
        """Re-read the environment in place."""
        fresh = self.from_env()
        for name in type(self).model_fields:
            setattr(self, name, getattr(fresh, name))

    @property
    def state_dir(self) -> Path:
        return Path(self.data_dir) / "state"


CONFIG = RecoverySettings.from_env()
