"""Command parser for planner LLM output."""

from __future__ import annotations

import json
import re
from typing import Any, Dict

from .types import Decision

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_planner_command(text: str) -> Dict[str, Any]:
    """
    Parse planner LLM output into a validated command dict.

    Expected format (JSON):
        {"type": "tool", "tool": "...", "params": {...}, "reasoning": "..."}
        {"type": "finish", "answer": "...", "reasoning": "..."}
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("Planner response was empty.")
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        command = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("Planner response must be valid JSON.") from exc

    if not isinstance(command, dict):
        raise ValueError("Planner response must be a JSON object.")

    cmd_type = command.get("type")
    if cmd_type not in _VALIDATORS:
        raise ValueError("Planner response missing 'type' or unsupported command.")
    reasoning = command.get("reasoning", "")
    _require(isinstance(reasoning, str), "Planner command 'reasoning' must be a string.")
    command["reasoning"] = reasoning.strip()
    _VALIDATORS[cmd_type](command)
    return command


def parse_planner_decision(text: str) -> Decision:
    """Parse planner output straight into a :class:`Decision` (zero usage)."""
    command = parse_planner_command(text)
    if command["type"] == "finish":
        return Decision.finish(command["answer"])
    return Decision.call(command["tool"], command["params"], command["reasoning"])


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


def _validate_tool(command: Dict[str, Any]) -> None:
    tool = command.get("tool")
    _require(isinstance(tool, str) and tool.strip(), "Tool command requires non-empty 'tool'.")
    params = command.get("params")
    if params is None:
        params = {}
    _require(isinstance(params, dict), "Tool command 'params' must be an object.")
    command["tool"] = tool.strip()
    command["params"] = params


def _validate_finish(command: Dict[str, Any]) -> None:
    answer = command.get("answer")
    _require(isinstance(answer, str), "Finish command requires an 'answer' string.")


_VALIDATORS = {
    "tool": _validate_tool,
    "finish": _validate_finish,
}


__all__ = ["parse_planner_command", "parse_planner_decision"]
