from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from shared.run_context import RUN_LOG_ID

logger = logging.getLogger(__name__)

RATES_PER_TOKEN: Dict[str, Dict[str, float]] = {
    "o4-mini": {
        "input_new": 1.10 / 1_000_000.0,
        "input_cached": 0.275 / 1_000_000.0,
        "output": 4.40 / 1_000_000.0,
    },
    "gpt-5-mini": {
        "input_new": 0.25 / 1_000_000.0,
        "input_cached": 0.025 / 1_000_000.0,
        "output": 2.00 / 1_000_000.0,
    },
    "gpt-5-nano": {
        "input_new": 0.05 / 1_000_000.0,
        "input_cached": 0.005 / 1_000_000.0,
        "output": 0.4 / 1_000_000.0,
    },
}


@dataclass(frozen=True)
class PricedUsage:
    input_cached: int = 0
    input_new: int = 0
    output: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_cached + self.input_new + self.output


def _get_attr(obj: Any, name: str, default: Any = 0) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _rates_for(model: str) -> Optional[Dict[str, float]]:
    rates = RATES_PER_TOKEN.get(model)
    if rates is not None:
        return rates
    # Dated snapshots ("gpt-5-mini-2025-08-07") share the base model's price.
    for name in sorted(RATES_PER_TOKEN, key=len, reverse=True):
        if model.startswith(name):
            return RATES_PER_TOKEN[name]
    return None


def extract_usage(response: Any) -> tuple[int, int, int]:
    """Return ``(cached, new_input, output)`` token counts from an SDK response."""
    usage = _get_attr(response, "usage", None)
    if usage is None and hasattr(response, "model_dump"):
        usage = response.model_dump().get("usage")
    if usage is None:
        return 0, 0, 0

    input_total = _get_attr(usage, "input_tokens", 0) or _get_attr(usage, "prompt_tokens", 0)
    output = _get_attr(usage, "output_tokens", 0) or _get_attr(usage, "completion_tokens", 0)
    details = _get_attr(usage, "input_tokens_details", None) or _get_attr(
        usage, "prompt_tokens_details", None
    )
    cached = _get_attr(details, "cached_tokens", 0)
    input_new = max(int(input_total or 0) - int(cached or 0), 0)
    return int(cached or 0), input_new, int(output or 0)


def price_response(model: str, response: Any) -> PricedUsage:
    """Token counts and USD cost of one model response (zero cost for unpriced models)."""
    cached, new_input, output = extract_usage(response)
    rates = _rates_for(model)
    if rates is None:
        logger.debug("No pricing for model %s; recording zero cost.", model)
        cost = 0.0
    else:
        cost = (
            cached * rates["input_cached"]
            + new_input * rates["input_new"]
            + output * rates["output"]
        )
    return PricedUsage(input_cached=cached, input_new=new_input, output=output, cost_usd=cost)


class TokenCostTracker:
    """Process-wide running totals, optionally appended to a JSONL file."""

    def __init__(self, log_path: str | Path | None = None) -> None:
        self.lock = threading.Lock()
        self.total_tokens = 0
        self.total_cost_usd = 0.0
        self.calls = 0
        self.log_path = Path(log_path) if log_path else None

    def record(self, model: str, source: str, priced: PricedUsage) -> None:
        with self.lock:
            self.calls += 1
            self.total_tokens += priced.total_tokens
            self.total_cost_usd += priced.cost_usd
            entry = {
                "type": "call",
                "ts": datetime.now(timezone.utc).isoformat(),
                "pid": os.getpid(),
                "run_id": RUN_LOG_ID.get(),
                "model": model,
                "source": source,
                "tokens": {
                    "input_cached": priced.input_cached,
                    "input_new": priced.input_new,
                    "output": priced.output,
                },
                "cost_usd": round(priced.cost_usd, 8),
                "totals_after": {
                    "tokens": self.total_tokens,
                    "cost_usd": round(self.total_cost_usd, 8),
                },
            }
            if self.log_path is not None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "a", encoding="utf-8") as fp:
                    fp.write(json.dumps(entry, ensure_ascii=False) + "\n")
        logger.info(
            "[TOKENS] model=%s src=%s cached=%s new=%s out=%s cost=$%.6f (run_total=$%.6f)",
            model,
            source,
            priced.input_cached,
            priced.input_new,
            priced.output,
            priced.cost_usd,
            self.total_cost_usd,
        )

    def summary(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "calls": self.calls,
                "tokens": self.total_tokens,
                "cost_usd_total": round(self.total_cost_usd, 8),
            }


TOKEN_TRACKER = TokenCostTracker()


__all__ = [
    "PricedUsage",
    "RATES_PER_TOKEN",
    "TOKEN_TRACKER",
    "TokenCostTracker",
    "extract_usage",
    "price_response",
]
