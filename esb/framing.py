"""
Framed script execution over an unframed text stream.

A script is wrapped in a heredoc that prints a unique start token, runs the
script, and prints a matching end token. The stream is then watched until a
start/end pair can be trusted to delimit the script's own output.

Serial consoles echo everything they receive, so the tokens normally show up
twice: first inside the echoed heredoc (``echo __ESB_START_x__``) and then as
real output. Selection rules, in order:

1. If a scorer is given, the best candidate scoring at least ``min_score``
   wins; ties go to the later pair.
2. With two or more complete pairs, the last pair wins.
3. With exactly one pair, it is accepted when the transport does not echo,
   or when its start token is printed output rather than the echoed
   ``echo <token>`` line. Consoles that are configured not to echo still
   advertise echo, so the line itself decides.

At the deadline, no complete pair means ``FramedTimeout``; pairs that were
never trusted mean ``AmbiguousPayload``.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import AmbiguousPayload, FramedTimeout
from .interfaces import ClockInterface, Transport
from .line_buffer import LineRingBuffer

log = logging.getLogger(__name__)

MARKER_ALPHABET = string.ascii_lowercase + string.digits
MARKER_LENGTH = 8
DEFAULT_TIMEOUT_MS = 15_000
DEFAULT_POLL_INTERVAL_S = 0.15

Scorer = Callable[[str], int]


class RequestState(Enum):
    """Lifecycle of a framed request."""
    IDLE = "idle"
    SENT = "sent"
    POLLING = "polling"
    MATCHED = "matched"
    TIMED_OUT = "timed_out"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class CorrelationMarker:
    """Random id shared by the start and end tokens of one request."""

    id: str

    @classmethod
    def generate(cls, length: int = MARKER_LENGTH) -> "CorrelationMarker":
        return cls("".join(secrets.choice(MARKER_ALPHABET) for _ in range(length)))

    @property
    def start_token(self) -> str:
        return f"__ESB_START_{self.id}__"

    @property
    def end_token(self) -> str:
        return f"__ESB_END_{self.id}__"

    @property
    def heredoc_tag(self) -> str:
        return f"ESB_EOF_{self.id}"


def wrap_script(script: str, marker: CorrelationMarker, shell: str = "bash") -> str:
    """Wrap a script so the remote shell runs it as one unit between markers."""
    body = script.rstrip("\n")
    tag = marker.heredoc_tag
    return (
        f"{shell} <<'{tag}'\n"
        f"echo {marker.start_token}\n"
        f"{body}\n"
        f"echo {marker.end_token}\n"
        f"{tag}\n"
    )


@dataclass(frozen=True)
class Candidate:
    """Text between one end token and the nearest start token before it."""

    start: int
    end: int
    content: str
    pair_no: int
    score: Optional[int] = None
    #: The start token sits in an ``echo <token>`` command line.
    echoed: bool = False


@dataclass(frozen=True)
class MarkerScan:
    candidates: List[Candidate]
    starts: int
    ends: int


def _occurrences(text: str, token: str) -> List[int]:
    found = []
    idx = text.find(token)
    while idx != -1:
        found.append(idx)
        idx = text.find(token, idx + len(token))
    return found


def _strip_frame_breaks(content: str) -> str:
    if content.startswith("\r\n"):
        content = content[2:]
    elif content.startswith("\n"):
        content = content[1:]
    if content.endswith("\n"):
        content = content[:-1]
    return content


def _is_echoed(text: str, pos: int) -> bool:
    """True when the token at ``pos`` follows an ``echo`` word on its line."""
    line_start = text.rfind("\n", 0, pos) + 1
    prefix = text[line_start:pos].rstrip()
    return prefix.endswith("echo")


def scan_markers(text: str, marker: CorrelationMarker) -> MarkerScan:
    """Pair every end token with the nearest start token that precedes it."""
    starts = _occurrences(text, marker.start_token)
    ends = _occurrences(text, marker.end_token)
    candidates: List[Candidate] = []
    for pair_no, end in enumerate(ends, start=1):
        start = -1
        for s in starts:
            if s < end:
                start = s
            else:
                break
        if start < 0:
            continue
        content = text[start + len(marker.start_token):end]
        candidates.append(Candidate(
            start=start,
            end=end,
            content=_strip_frame_breaks(content),
            pair_no=pair_no,
            echoed=_is_echoed(text, start),
        ))
    return MarkerScan(candidates=candidates, starts=len(starts), ends=len(ends))


def select_candidate(
    scan: MarkerScan,
    *,
    expect_echo: bool,
    scorer: Optional[Scorer] = None,
    min_score: int = 0,
) -> Optional[Candidate]:
    """Pick the trusted payload candidate, or None to keep waiting."""
    candidates = scan.candidates
    if not candidates:
        return None

    if scorer is not None:
        candidates = [replace(c, score=scorer(c.content)) for c in candidates]
        qualified = [c for c in candidates if c.score >= min_score]
        if qualified:
            return max(qualified, key=lambda c: (c.score, c.end))

    if len(candidates) >= 2:
        return candidates[-1]
    if not expect_echo or not candidates[0].echoed:
        return candidates[0]
    return None


@dataclass(frozen=True)
class FramedResult:
    """Payload of a matched request plus how it was chosen."""

    payload: str
    marker: CorrelationMarker
    pair_no: int
    candidates: int
    starts: int
    ends: int
    score: Optional[int]
    elapsed_ms: int

    def meta(self) -> Dict[str, Any]:
        return {
            "marker": self.marker.id,
            "pair_no": self.pair_no,
            "candidates": self.candidates,
            "starts": self.starts,
            "ends": self.ends,
            "score": self.score,
            "elapsed_ms": self.elapsed_ms,
        }


class FramedRequest:
    """
    One script run: send once, then watch the buffer until a trusted pair
    appears or the deadline passes.

    The fence is taken before transmitting because some transports deliver
    their whole output from inside ``send()``.
    """

    def __init__(
        self,
        transport: Transport,
        buffer: LineRingBuffer,
        script: str,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        shell: str = "bash",
        scorer: Optional[Scorer] = None,
        min_score: int = 0,
        marker: Optional[CorrelationMarker] = None,
        clock: Optional[ClockInterface] = None,
    ):
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if clock is None:
            from .implementations import RealClock
            clock = RealClock()
        self._transport = transport
        self._buffer = buffer
        self._script = script
        self._timeout_s = timeout_ms / 1000.0
        self._poll_interval_s = poll_interval_s
        self._shell = shell
        self._scorer = scorer
        self._min_score = min_score
        self._clock = clock
        self.marker = marker or CorrelationMarker.generate()
        self.state = RequestState.IDLE

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    @property
    def poll_interval_s(self) -> float:
        return self._poll_interval_s

    def run(self) -> FramedResult:
        if self.state is not RequestState.IDLE:
            raise RuntimeError("a FramedRequest can only run once")

        mark = self._buffer.mark()
        started = self._clock.monotonic()
        deadline = started + self._timeout_s
        expect_echo = self._transport.echoes

        self._transport.send(wrap_script(self._script, self.marker, self._shell))
        self.state = RequestState.SENT
        log.debug("Sent framed script %s via %s", self.marker.id, self._transport.name)

        self.state = RequestState.POLLING
        while True:
            seen = self._buffer.appended
            text = "\n".join(self._buffer.since_mark(mark))
            scan = scan_markers(text, self.marker)
            chosen = select_candidate(
                scan,
                expect_echo=expect_echo,
                scorer=self._scorer,
                min_score=self._min_score,
            )
            if chosen is not None:
                self.state = RequestState.MATCHED
                elapsed_ms = int((self._clock.monotonic() - started) * 1000)
                log.info(
                    "Framed request %s matched pair %d of %d in %d ms",
                    self.marker.id, chosen.pair_no, len(scan.candidates), elapsed_ms,
                )
                return FramedResult(
                    payload=chosen.content,
                    marker=self.marker,
                    pair_no=chosen.pair_no,
                    candidates=len(scan.candidates),
                    starts=scan.starts,
                    ends=scan.ends,
                    score=chosen.score,
                    elapsed_ms=elapsed_ms,
                )

            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                break
            self._buffer.wait_for_append(seen, timeout=min(self._poll_interval_s, remaining))

        elapsed_ms = int((self._clock.monotonic() - started) * 1000)
        if scan.candidates:
            self.state = RequestState.AMBIGUOUS
            log.warning(
                "Framed request %s saw %d marker pair(s) but none looked like device output",
                self.marker.id, len(scan.candidates),
            )
            raise AmbiguousPayload(
                f"{len(scan.candidates)} marker pair(s) seen for {self.marker.id} after "
                f"{elapsed_ms} ms, none trusted (only the echoed copy arrived?)",
                marker_id=self.marker.id,
                candidates=len(scan.candidates),
            )

        self.state = RequestState.TIMED_OUT
        log.warning("Framed request %s timed out after %d ms", self.marker.id, elapsed_ms)
        raise FramedTimeout(
            f"no output for {self.marker.id} within {self._timeout_s:g}s "
            f"(start markers seen: {scan.starts}, end markers seen: {scan.ends})",
            marker_id=self.marker.id,
            elapsed_ms=elapsed_ms,
        )
