"""Usage and completion-signal extraction from agent stream-json output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from chadgi.orchestrator.models import AgentSignal

_TOTAL_COST = re.compile(r'"total_cost_usd"\s*:\s*([\d.]+)', re.IGNORECASE)
_INPUT_TOKENS = re.compile(r'"input_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r'"output_tokens"\s*:\s*(\d+)', re.IGNORECASE)


@dataclass(slots=True)
class AgentUsage:
    """Best-effort usage and text extracted from one agent invocation."""

    text: str
    cost_usd: float
    input_tokens: int
    output_tokens: int
    usage_source: str


def parse_stream_output(stdout: str) -> AgentUsage:
    """Parse newline-delimited stream-json; fall back to regex scan for plain output."""

    texts: list[str] = []
    cost: float | None = None
    input_tokens = 0
    output_tokens = 0
    structured = False

    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue
        structured = True
        event_type = event.get("type")
        if event_type == "assistant":
            texts.extend(_assistant_texts(event))
        elif event_type == "result":
            raw_cost = event.get("total_cost_usd")
            if isinstance(raw_cost, int | float):
                cost = float(raw_cost)
            result_text = event.get("result")
            if isinstance(result_text, str) and result_text:
                texts.append(result_text)
            usage = event.get("usage")
            if isinstance(usage, dict):
                input_tokens = _as_int(usage.get("input_tokens"))
                output_tokens = _as_int(usage.get("output_tokens"))

    if structured:
        return AgentUsage(
            text="\n".join(texts),
            cost_usd=cost or 0.0,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            usage_source="stream_json",
        )

    return AgentUsage(
        text=stdout,
        cost_usd=_extract_float(_TOTAL_COST, stdout) or 0.0,
        input_tokens=_extract_int(_INPUT_TOKENS, stdout),
        output_tokens=_extract_int(_OUTPUT_TOKENS, stdout),
        usage_source="text",
    )


def detect_signal(
    *,
    exit_code: int,
    text: str,
    completion_promise: str,
    ready_promise: str,
) -> AgentSignal:
    """Map exit status plus ``<promise>`` markers to a completion signal."""

    if exit_code != 0:
        return AgentSignal.HARD_FAILURE
    if f"<promise>{completion_promise}</promise>" in text:
        return AgentSignal.COMPLETE
    if f"<promise>{ready_promise}</promise>" in text:
        return AgentSignal.READY_FOR_PR
    return AgentSignal.NEEDS_MORE_WORK


def _assistant_texts(event: dict[str, object]) -> list[str]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [content]
    if not isinstance(content, list):
        return []
    return [
        item["text"]
        for item in content
        if isinstance(item, dict)
        and item.get("type") == "text"
        and isinstance(item.get("text"), str)
    ]


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    return 0


def _extract_int(pattern: re.Pattern[str], text: str) -> int:
    match = pattern.search(text)
    if match is None:
        return 0
    return int(match.group(1))


def _extract_float(pattern: re.Pattern[str], text: str) -> float | None:
    match = pattern.search(text)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None
