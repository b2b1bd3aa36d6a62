# shared/settings.py

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Budget defaults applied to every task unless a caller overrides them
    AGENT_MAX_STEPS: int = 10
    AGENT_MAX_TOKENS: int = 200_000
    AGENT_MAX_COST_USD: float = 0.50
    AGENT_MAX_DURATION_SECONDS: float = 300.0

    # Loop behaviour
    AGENT_MAX_RETRIES: int = 3
    AGENT_CHECKPOINT_INTERVAL: int = 5  # 0 disables checkpoints
    AGENT_LOG_DIR: str = "logs"
    AGENT_FILE_LOGGING: bool = False

    # Human approval
    APPROVAL_TIMEOUT_SECONDS: float = 300.0

    # Result cache
    CACHE_DEFAULT_TTL_SECONDS: float | None = 3600.0
    CACHE_SIMILARITY_THRESHOLD: float | None = None  # None disables semantic lookup in the loop
    CACHE_SEMANTIC_ENABLED: bool = False
    CACHE_EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"

    # Planner LLM
    PLANNER_MODEL: str = "gpt-5-mini"
    PLANNER_LLM_ENABLED: bool = True
    PLANNER_REASONING_EFFORT: str = "medium"

    # Permission policy, JSON object of tool name -> rule
    PERMISSION_POLICY_FILE: str = ""

    @field_validator("AGENT_MAX_RETRIES", "AGENT_CHECKPOINT_INTERVAL", "AGENT_MAX_STEPS")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("CACHE_SIMILARITY_THRESHOLD")
    @classmethod
    def threshold_in_range(cls, v: float | None) -> float | None:
        if v is not None and not (0.0 <= v <= 1.0):
            raise ValueError("similarity threshold must be between 0 and 1")
        return v

    def load_permission_policy(self) -> Dict[str, Any]:
        """Raw policy mapping from ``PERMISSION_POLICY_FILE`` (empty when unset)."""
        if not self.PERMISSION_POLICY_FILE:
            return {}
        path = Path(self.PERMISSION_POLICY_FILE).expanduser()
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Permission policy in {path} must be a JSON object.")
        return data

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
