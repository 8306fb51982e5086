"""
Probe contract and the Report it produces.

A probe is a pair of pure functions around one framed request: build a shell
script from options, then turn the script's output into a Report. Parsing is
best-effort: the remote shell may lack tools or permissions, so a payload that
cannot be understood yields a degraded Report rather than an exception.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ProbeParseError, describe_error

log = logging.getLogger(__name__)

COMMON_OPTIONS: Dict[str, Any] = {
    "json": False,
    "summary": False,
    "debug": False,
}

_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n", ""}


@dataclass(frozen=True)
class Report:
    """Immutable result of one probe run."""

    probe: str
    data: Dict[str, Any]
    markdown: str
    summary: str
    degraded: bool = False
    warnings: Tuple[str, ...] = ()
    raw: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)
    debug: bool = False

    def with_meta(self, meta: Dict[str, Any]) -> "Report":
        return replace(self, meta=dict(meta))

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "probe": self.probe,
            "data": self.data,
            "degraded": self.degraded,
            "warnings": list(self.warnings),
            "meta": self.meta,
        }
        if self.debug:
            out["raw"] = self.raw
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, default=str)

    def to_summary(self) -> str:
        if self.degraded and self.warnings:
            return f"{self.summary} (degraded: {self.warnings[0]})"
        return self.summary

    def to_markdown(self) -> str:
        parts = [self.markdown.rstrip()]
        if self.warnings:
            parts.append("**Warnings**\n" + "\n".join(f"- {w}" for w in self.warnings))
        if self.debug:
            parts.append("**Debug Raw Payload**\n```\n" + self.raw.strip() + "\n```")
            if self.meta:
                parts.append("**Framing**\n```\n" + json.dumps(self.meta, sort_keys=True) + "\n```")
        return "\n\n".join(p for p in parts if p)


def coerce_option(name: str, value: Any, default: Any) -> Any:
    """Convert a CLI-style string to the type of the option's default."""
    if not isinstance(value, str) or default is None or isinstance(default, str):
        return value
    if isinstance(default, bool):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"option {name!r} expects a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"option {name!r} expects an integer, got {value!r}") from None
    if isinstance(default, float):
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"option {name!r} expects a number, got {value!r}") from None
    return value


class Probe(ABC):
    """
    Base class for diagnostic probes.

    Subclasses set ``name``, ``description``, ``default_timeout_ms`` and the
    probe-specific ``defaults``, and implement ``build_script``, ``extract``,
    ``render_markdown`` and ``render_summary``. Probes that need help picking
    their payload out of echoed output set ``min_score`` above zero and
    override ``score``.
    """

    name: str = ""
    description: str = ""
    default_timeout_ms: int = 15_000
    min_score: int = 0
    defaults: Dict[str, Any] = {}

    # -- options ------------------------------------------------------------

    def normalize_options(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        known = {**COMMON_OPTIONS, **self.defaults}
        merged = dict(known)
        for key, value in (options or {}).items():
            key = key.replace("-", "_")
            if key not in known:
                raise ValueError(
                    f"unknown option {key!r} for probe {self.name}; "
                    f"known: {', '.join(sorted(known))}"
                )
            merged[key] = coerce_option(key, value, known[key])
        self.validate(merged)
        return merged

    def validate(self, options: Dict[str, Any]) -> None:
        """Raise ValueError for option values the probe cannot use."""

    def timeout_ms(self, options: Dict[str, Any]) -> int:
        return self.default_timeout_ms

    # -- selection ----------------------------------------------------------

    def score(self, payload: str) -> int:
        return 0

    # -- script and parsing -------------------------------------------------

    @abstractmethod
    def build_script(self, options: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def extract(self, payload: str, options: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
        """Pull structured data out of the payload. Raise ProbeParseError if nothing usable."""
        pass

    @abstractmethod
    def render_markdown(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def render_summary(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        pass

    def parse(self, payload: str, options: Optional[Dict[str, Any]] = None) -> Report:
        """Turn a payload into a Report. Never raises for malformed payloads."""
        options = self.normalize_options(options)
        warnings: List[str] = []
        try:
            data = self.extract(payload, options, warnings)
            markdown = self.render_markdown(data, options)
            summary = self.render_summary(data, options)
        except (ProbeParseError, ValueError, IndexError, KeyError, TypeError) as e:
            log.warning("Probe %s produced a degraded report: %s", self.name, e)
            return self.degraded(payload, options, describe_error(e), warnings)
        return Report(
            probe=self.name,
            data=data,
            markdown=markdown,
            summary=summary,
            warnings=tuple(warnings),
            raw=payload,
            debug=bool(options.get("debug")),
        )

    def degraded(
        self,
        payload: str,
        options: Dict[str, Any],
        reason: str,
        warnings: Optional[List[str]] = None,
    ) -> Report:
        warnings = list(warnings or [])
        warnings.insert(0, reason)
        excerpt = "\n".join(payload.strip().splitlines()[:20])
        markdown = f"**{self.description or self.name}**\n\nCould not interpret the device output."
        if excerpt:
            markdown += "\n\n```\n" + excerpt + "\n```"
        return Report(
            probe=self.name,
            data={},
            markdown=markdown,
            summary=f"{self.name}: no usable output",
            degraded=True,
            warnings=tuple(warnings),
            raw=payload,
            debug=bool(options.get("debug")),
        )


def sections(payload: str, tags: List[str]) -> Dict[str, List[str]]:
    """
    Split a payload on ``---TAG---`` lines.

    Lines before the first known tag are returned under ``""``. A tag seen
    more than once keeps its last block.
    """
    out: Dict[str, List[str]] = {"": []}
    current = ""
    wanted = {f"---{t}---": t for t in tags}
    for raw in payload.splitlines():
        line = raw.rstrip("\r")
        tag = wanted.get(line.strip())
        if tag is not None:
            current = tag
            out[current] = []
            continue
        out.setdefault(current, []).append(line)
    return out
