"""
Failure taxonomy for the probe engine.

Each failure is converted into an explicit result value where it occurs;
none of these exceptions escapes the submission call, the waiting loop or
the store. They exist so the place that detects a failure can raise it
internally and the boundary can classify what it caught.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Why a probe did not produce a successful observation."""
    SUBMISSION = "submission_failed"
    EXTRACTION = "extraction_failed"
    TIMEOUT = "acknowledgement_timeout"


class RelayWatchError(Exception):
    """Base class for engine errors."""

    kind: Optional[FailureKind] = None


class SubmissionError(RelayWatchError):
    """The source ledger rejected the probe or the broadcast failed."""

    kind = FailureKind.SUBMISSION

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ExtractionFailure(RelayWatchError):
    """No packet sequence could be recovered from a receipt."""

    kind = FailureKind.EXTRACTION


class AcknowledgementTimeout(RelayWatchError):
    """No delivery was detected before the wait budget ran out."""

    kind = FailureKind.TIMEOUT

    def __init__(self, sequence_id: int, timeout_ms: int):
        super().__init__(f"No acknowledgement for sequence {sequence_id} within {timeout_ms}ms")
        self.sequence_id = sequence_id
        self.timeout_ms = timeout_ms


class QueryTransientFailure(RelayWatchError):
    """A single ledger query failed; the current poll tick is abandoned."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class PersistenceFailure(RelayWatchError):
    """Reading or writing a persisted file failed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
