"""
Language-model assistance: summarize captured output and turn plain requests
into shell commands.

The model is any ``TextGenerator``. Nothing here knows about a particular
provider; tests use ``MockTextGenerator``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .errors import BridgeError, describe_error
from .interfaces import ClockInterface, TextGenerator

log = logging.getLogger(__name__)

DEFAULT_QUERY = "a concise summary"
NOT_FOUND = "Information not found in the provided output."
DEFAULT_SETTLE_S = 0.8


@dataclass(frozen=True)
class SummaryResult:
    text: str
    line_count: int
    start: int


@dataclass(frozen=True)
class PromptResult:
    request: str
    command: Optional[str]
    description: str
    lines: List[str]
    summary: str


def analyser_prompt(query: str, lines: List[str]) -> str:
    snippet = "\n".join(lines)
    return (
        "You are a strict log-analyser.\n"
        "Answer the user's query **only** with facts you can derive\n"
        "from the lines below. If the answer is not present, reply\n"
        f'"{NOT_FOUND}"\n'
        "\n"
        f"User query: {query}\n"
        "\n"
        "Log snippet:\n"
        f"```\n{snippet}\n```"
    )


def _generate(generator: TextGenerator, prompt: str, purpose: str) -> str:
    try:
        return generator.generate(prompt)
    except BridgeError:
        raise
    except Exception as e:
        log.error("Text generator failed during %s: %s", purpose, e)
        raise BridgeError(f"{purpose} failed: {describe_error(e)}") from e


def parse_summarize_args(text: str) -> Tuple[Optional[int], str]:
    """Split ``"[start] [query]"``; a leading integer is the start index."""
    text = (text or "").strip()
    start = None
    match = re.match(r"^(-?\d+)(?:\s+|$)", text)
    if match:
        start = int(match.group(1))
        text = text[match.end():].strip()
    return start, text or DEFAULT_QUERY


def summarize(
    session,
    generator: TextGenerator,
    query: Optional[str] = None,
    start: Optional[int] = None,
) -> SummaryResult:
    """Answer a question about the buffered lines from ``start`` (or the last command) on."""
    lines = session.buffer.snapshot()
    index = session.last_command_fence if start is None else start
    if index < 0 or index >= len(lines):
        index = 0
    window = lines[index:]
    text = _generate(generator, analyser_prompt(query or DEFAULT_QUERY, window), "summarize")
    log.debug("Summarized %d lines from index %d", len(window), index)
    return SummaryResult(text=text.strip(), line_count=len(window), start=index)


# -- command suggestion -------------------------------------------------------

def command_prompt(request: str) -> str:
    return "\n".join([
        "You are an expert Linux shell assistant running on an embedded device.",
        "Translate the following natural language request into a **single** safe POSIX-compatible shell command.",
        "Return a JSON object that matches the given schema and do **not** include any extra keys or comments.",
        'Schema: {"command": "<shell command>", "description": "<one short sentence>"}',
        "",
        f'Request: "{request}"',
    ])


_HEURISTICS: List[Tuple[Callable[[str], bool], str, str]] = [
    (lambda r: "usb" in r, "lsusb", "List USB devices"),
    (lambda r: "cpu" in r and "usage" in r, "top -bn1 | head -n 20", "Show CPU usage"),
    (lambda r: "disk" in r and ("space" in r or "usage" in r), "df -h", "Show disk usage"),
    (lambda r: "memory" in r and "usage" in r, "free -h", "Show memory usage"),
    (lambda r: "process" in r and "list" in r, "ps aux", "List running processes"),
]


def heuristic_command(request: str) -> Optional[Tuple[str, str]]:
    lowered = request.lower()
    for matches, command, description in _HEURISTICS:
        if matches(lowered):
            return command, description
    return None


def _decode_suggestion(reply: str) -> Optional[Tuple[str, str]]:
    """Find the first JSON object in a reply that may be fenced or chatty."""
    text = re.sub(r"```(?:json)?", "", reply or "")
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            command = str(obj.get("command") or "").strip()
            if command:
                return command, str(obj.get("description") or "").strip()
        idx = text.find("{", idx + 1)
    return None


def suggest_command(request: str, generator: Optional[TextGenerator] = None) -> Optional[Tuple[str, str]]:
    """Return ``(command, description)`` for a plain-language request, or None."""
    if generator is not None:
        try:
            suggestion = _decode_suggestion(generator.generate(command_prompt(request)))
        except Exception as e:
            log.warning("Command suggestion failed, trying heuristics: %s", e)
            suggestion = None
        if suggestion:
            return suggestion
    return heuristic_command(request)


def output_prompt(lines: List[str]) -> str:
    return (
        "Provide a concise, user-friendly summary of the following command output.\n"
        "Focus on the key information the user asked for and avoid raw logs.\n"
        "\nOUTPUT:\n" + "\n".join(lines)
    )


def prompt(
    session,
    request: str,
    generator: Optional[TextGenerator],
    settle_s: float = DEFAULT_SETTLE_S,
    clock: Optional[ClockInterface] = None,
) -> PromptResult:
    """
    Turn a request into a command, run it, and summarize what came back.

    Without a generator only the keyword heuristics are tried and the
    captured lines are returned unsummarized. Raises BridgeError when no
    command can be found for the request.
    """
    suggestion = suggest_command(request, generator)
    if suggestion is None:
        raise BridgeError(f"no command found for request: {request}")
    command, description = suggestion

    if clock is None:
        from .implementations import RealClock
        clock = RealClock()
    session.send(command)
    clock.sleep(settle_s)

    lines = session.logs_since_last_command()
    summary = ""
    if lines and generator is not None:
        summary = _generate(generator, output_prompt(lines), "summarize output").strip()
    log.info("Prompt %r ran %r and captured %d lines", request, command, len(lines))
    return PromptResult(request=request, command=command, description=description, lines=lines, summary=summary)
