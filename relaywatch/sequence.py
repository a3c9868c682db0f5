"""
Packet sequence extraction from submission receipts.

Nodes report the outcome of a broadcast as free-form diagnostic text whose
shape differs between SDK versions. The extractor tries a ranked list of
patterns, most specific first, then falls back to guessing the first small
positive integer in the text. It never raises; 0 means nothing was found.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from relaywatch.models import SEQUENCE_UNKNOWN
from relaywatch.observability import RelayLayer, RelayLogger, get_logger

# Upper bound (exclusive) for the integer-scan guess.
GUESS_CEILING = 1_000_000

INTEGER_SCAN = "integer_scan"


@dataclass(frozen=True)
class SequencePattern:
    """One extraction rule; `attempt` returns the sequence or None."""
    name: str
    regex: "re.Pattern[str]"

    def attempt(self, text: str) -> Optional[int]:
        match = self.regex.search(text)
        if match is None:
            return None
        value = int(match.group(1))
        # packet sequences start at 1
        return value if value > 0 else None


DEFAULT_PATTERNS: Tuple[SequencePattern, ...] = (
    SequencePattern("event_attribute", re.compile(r'"packet_sequence","value":"(\d+)"')),
    SequencePattern("json_packet_sequence", re.compile(r'"packet_sequence":"(\d+)"')),
    SequencePattern("keyvalue_packet_sequence", re.compile(r'packet_sequence:\s*"?(\d+)"?')),
    SequencePattern("json_sequence", re.compile(r'"sequence":"(\d+)"')),
    SequencePattern("keyvalue_sequence", re.compile(r'sequence:\s*"?(\d+)"?')),
    SequencePattern("send_packet_event", re.compile(r'send_packet.*?packet_sequence[":=]\s*"?(\d+)"?')),
)

_INTEGER = re.compile(r"\d+")


class SequenceExtractor:
    """Ranked pattern cascade with an integer-scan last resort."""

    def __init__(
        self,
        patterns: Sequence[SequencePattern] = DEFAULT_PATTERNS,
        logger: Optional[RelayLogger] = None,
    ):
        self.patterns: List[SequencePattern] = list(patterns)
        self._log = logger or get_logger("extractor", RelayLayer.SEQUENCE)

    def extract(self, raw_log: Any) -> int:
        return self.extract_detailed(raw_log)[0]

    def extract_detailed(self, raw_log: Any) -> Tuple[int, Optional[str]]:
        """Return (sequence, name of the rule that produced it)."""
        if not isinstance(raw_log, str) or not raw_log:
            self._log.warning("Receipt has no diagnostic text", log_type=type(raw_log).__name__)
            return SEQUENCE_UNKNOWN, None

        for pattern in self.patterns:
            sequence = pattern.attempt(raw_log)
            if sequence is not None:
                self._log.debug("Packet sequence matched", pattern=pattern.name, sequence=sequence)
                return sequence, pattern.name

        for token in _INTEGER.findall(raw_log):
            value = int(token)
            if 0 < value < GUESS_CEILING:
                self._log.warning(
                    "Using guessed packet sequence from integer scan",
                    sequence=value,
                    log_length=len(raw_log),
                )
                return value, INTEGER_SCAN

        self._log.error(
            "Failed to extract packet sequence",
            error_code="EXTRACTION_FAILED",
            log_length=len(raw_log),
        )
        return SEQUENCE_UNKNOWN, None


def sequence_from_events(events: Iterable[Any]) -> Optional[int]:
    """Read `send_packet.packet_sequence` from structured receipt events."""
    for event in events:
        if getattr(event, "type", None) != "send_packet":
            continue
        value = event.get("packet_sequence")
        if value and value.isdigit() and int(value) > 0:
            return int(value)
    return None
