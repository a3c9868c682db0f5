"""
Observation log persistence.

The store owns the in-memory observation list and mirrors it to a JSON file
as a whole snapshot on every save (temporary sibling file, then an atomic
replace). Reads validate each record against a JSON Schema. Nothing here
raises to the caller: a missing file is an empty log, a corrupt file is an
empty log plus a warning, and a failed write is logged and reported as False.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from jsonschema import Draft202012Validator

from relaywatch.errors import PersistenceFailure
from relaywatch.models import RelayerMetrics, RelayObservation
from relaywatch.observability import RelayLayer, RelayLogger, get_logger

_NULLABLE_STRING = {"type": ["string", "null"]}

OBSERVATION_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Relay observation log",
    "type": "array",
    "items": {
        "type": "object",
        "required": ["test_time", "source_tx_hash", "sequence_id", "success", "latency_ms"],
        "properties": {
            "test_time": {"type": "string", "minLength": 1},
            "source_tx_hash": {"type": "string"},
            "sequence_id": {"type": "integer", "minimum": 0},
            "success": {"type": "boolean"},
            "latency_ms": {"type": "integer"},
            "target_tx_hash": _NULLABLE_STRING,
            "relay_address": _NULLABLE_STRING,
            "relay_label": _NULLABLE_STRING,
            "error_message": _NULLABLE_STRING,
            "amount": _NULLABLE_STRING,
            "failure_kind": _NULLABLE_STRING,
        },
    },
}

_validator = Draft202012Validator(OBSERVATION_SCHEMA)


def validate_observations(data: Any) -> List[str]:
    """Return schema violations (empty if valid)."""
    return [f"{error.json_path}: {error.message}" for error in _validator.iter_errors(data)]


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temporary sibling, then replace the target in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class TestLogStore:
    """Single-writer owner of the observation log and the metrics file."""

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        log_file: Union[str, Path] = "relayer-test-logs.json",
        metrics_file: Union[str, Path] = "relayer-metrics.json",
        logger: Optional[RelayLogger] = None,
    ):
        self.log_file = Path(log_file)
        self.metrics_file = Path(metrics_file)
        self._log = logger or get_logger("store", RelayLayer.STORE)
        self._observations: List[RelayObservation] = []

    @property
    def observations(self) -> List[RelayObservation]:
        return list(self._observations)

    def load(self) -> List[RelayObservation]:
        """Replace the in-memory log with the persisted one and return it."""
        self._observations = self._read()
        return self.observations

    def append(self, observation: RelayObservation) -> None:
        self._observations.append(observation)

    def save(self, log: Optional[Sequence[RelayObservation]] = None) -> bool:
        """Persist `log` (default: the in-memory log) as one snapshot."""
        records = list(self._observations if log is None else log)
        try:
            write_json_atomic(self.log_file, [o.to_dict() for o in records])
        except OSError as e:
            failure = PersistenceFailure(str(self.log_file), str(e))
            self._log.error(str(failure), error_code="LOG_WRITE_FAILED")
            return False
        self._log.debug("Observation log saved", path=str(self.log_file), records=len(records))
        return True

    def save_metrics(self, metrics: Sequence[RelayerMetrics]) -> bool:
        try:
            write_json_atomic(self.metrics_file, [m.to_dict() for m in metrics])
        except OSError as e:
            failure = PersistenceFailure(str(self.metrics_file), str(e))
            self._log.error(str(failure), error_code="METRICS_WRITE_FAILED")
            return False
        self._log.debug("Metrics saved", path=str(self.metrics_file), relayers=len(metrics))
        return True

    def _read(self) -> List[RelayObservation]:
        if not self.log_file.exists():
            self._log.info("No observation log yet, starting empty", path=str(self.log_file))
            return []

        try:
            with open(self.log_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self._log.warning(
                "Observation log unreadable, starting empty",
                path=str(self.log_file),
                reason=str(e),
            )
            return []

        errors = validate_observations(data)
        if errors:
            self._log.warning(
                "Observation log failed validation, starting empty",
                path=str(self.log_file),
                errors=errors[:5],
            )
            return []

        try:
            observations = [RelayObservation.from_dict(record) for record in data]
        except (KeyError, TypeError, ValueError) as e:
            self._log.warning(
                "Observation log has malformed records, starting empty",
                path=str(self.log_file),
                reason=str(e),
            )
            return []

        self._log.info("Observation log loaded", path=str(self.log_file), records=len(observations))
        return observations
