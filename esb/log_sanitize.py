"""
Console text sanitization helpers.

Goals:
- Keep captured lines grep-friendly even if the device emits control bytes.
- Strip ANSI color codes and cursor movement (shell prompts are full of them).
- Never touch line breaks; line splitting is the buffer's job.
"""

from __future__ import annotations

import re
from typing import Final

ANSI_ESCAPE: Final = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

# C0 controls other than tab, LF and CR, plus DEL.
_CONTROL_CHARS: Final = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_DEFAULT_MAX_CHARS: Final[int] = 20_000


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return ANSI_ESCAPE.sub("", text)


def sanitize_console_text(text: str) -> str:
    """
    Clean decoded console text before it reaches the line buffer.

    - Strips ANSI escape sequences.
    - Drops NUL, BEL, backspace and other C0 controls.
    - Keeps tabs and line breaks as they are.
    """
    return _CONTROL_CHARS.sub("", strip_ansi(text))


def sanitize_line(line: str, *, max_chars: int = _DEFAULT_MAX_CHARS) -> str:
    """
    Make a single line safe for a log file.

    Control characters are escaped rather than dropped so binary noise stays
    visible, and very long lines are truncated.
    """
    line = strip_ansi(line).rstrip("\r\n").replace("\x00", "")
    out: list[str] = []
    for ch in line:
        if ch == "\t" or ch.isprintable():
            out.append(ch)
            continue
        out.append(f"\\x{ord(ch):02x}")

    sanitized = "".join(out)
    if max_chars > 0 and len(sanitized) > max_chars:
        sanitized = sanitized[:max_chars] + "...[truncated]"
    return sanitized
