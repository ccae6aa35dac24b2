"""
Strategic Partner Estimator - Resume Cache
===========================================
Persists completed scenario outputs per analysis so a failed or abandoned run
can resume without repeating remote work.

Layout of the stored state (one document, keyed by STORAGE_KEY on disk):

    {
      "<analysis id>": {
        "completed": {"scenario1_full": {...}, "scenario3_max": {...}},
        "timestamp": 1760000000000
      }
    }

The cache only grows during a run. It is cleared for an analysis only after
that analysis completed successfully, and entries older than the TTL are
dropped the next time they are read.
"""

import json
import logging
import os
import re
import tempfile
import time
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from estimator_constants import RESUME_TTL_MS, STORAGE_KEY, RangePart
from models import CacheEntry, ScenarioOutput, UserInputs

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def generate_analysis_id(inputs: UserInputs, suffix: str = "") -> str:
    """
    Deterministic id for an analysis.

    Identical inputs produce the same id, which is what lets a retry or a
    later run pick up cached partial results.
    """
    raw = (
        f"{inputs.name}_{_format_amount(inputs.income)}_"
        f"{inputs.state}_{inputs.filing_status.value}{suffix}"
    )
    return re.sub(r"\s+", "_", raw)


def cache_key(scenario_number: int, part: RangePart) -> str:
    return f"scenario{scenario_number}_{RangePart(part).value}"


# =============================================================================
# BASE CACHE
# =============================================================================

class ResumeCache:
    """
    Keyed store of completed scenario units with a time-based expiry.

    Subclasses provide storage through _read_state / _write_state.
    """

    def __init__(self, ttl_ms: float = RESUME_TTL_MS, clock: Optional[Callable[[], float]] = None):
        self.ttl_ms = ttl_ms
        self.clock = clock or _now_ms

    def _read_state(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _write_state(self, state: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _load_entry(self, state: Dict[str, Any], analysis_id: str) -> Optional[CacheEntry]:
        raw = state.get(analysis_id)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry for {analysis_id}: {e}")
            return None

    def get(self, analysis_id: str) -> Dict[str, ScenarioOutput]:
        """
        Completed units for an analysis.

        Returns an empty mapping when nothing is stored. A stale entry is
        deleted as a side effect and also reads as empty.
        """
        state = self._read_state()
        entry = self._load_entry(state, analysis_id)
        if entry is None:
            return {}

        age = self.clock() - entry.timestamp
        if age > self.ttl_ms:
            logger.debug(f"Stored analysis state for {analysis_id} is too old, discarding")
            self.clear(analysis_id)
            return {}

        return dict(entry.completed)

    def put(
        self,
        analysis_id: str,
        scenario_number: int,
        part: RangePart,
        result: ScenarioOutput,
    ) -> None:
        """Record one completed unit and refresh the entry's timestamp."""
        state = self._read_state()
        entry = self._load_entry(state, analysis_id) or CacheEntry(timestamp=self.clock())

        key = cache_key(scenario_number, part)
        entry.completed[key] = result
        entry.timestamp = self.clock()

        state[analysis_id] = entry.model_dump(mode="json", by_alias=True)
        self._write_state(state)
        logger.info(f"Saved {key} for {analysis_id}")

    def clear(self, analysis_id: str) -> None:
        state = self._read_state()
        if analysis_id not in state:
            return
        del state[analysis_id]
        self._write_state(state)
        logger.info(f"Cleared analysis state for {analysis_id}")

    def __contains__(self, analysis_id: str) -> bool:
        return analysis_id in self._read_state()


# =============================================================================
# BACKENDS
# =============================================================================

class InMemoryResumeCache(ResumeCache):
    """Process-local cache. Used by tests and as the API default."""

    def __init__(self, ttl_ms: float = RESUME_TTL_MS, clock: Optional[Callable[[], float]] = None):
        super().__init__(ttl_ms=ttl_ms, clock=clock)
        self._state: Dict[str, Any] = {}

    def _read_state(self) -> Dict[str, Any]:
        # Round-trip through JSON so callers never share mutable state with the store
        return json.loads(json.dumps(self._state))

    def _write_state(self, state: Dict[str, Any]) -> None:
        self._state = json.loads(json.dumps(state))


class FileResumeCache(ResumeCache):
    """
    Durable cache backed by a single JSON file.

    Storage problems are logged and treated as an empty store: losing resume
    data only costs a slower next run, it never fails the current one.
    """

    def __init__(
        self,
        path: str,
        ttl_ms: float = RESUME_TTL_MS,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(ttl_ms=ttl_ms, clock=clock)
        self.path = path

    def _read_state(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read resume cache {self.path}: {e}")
            return {}
        state = document.get(STORAGE_KEY, {}) if isinstance(document, dict) else {}
        return state if isinstance(state, dict) else {}

    def _write_state(self, state: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".resume-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({STORAGE_KEY: state}, f)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            logger.warning(f"Failed to write resume cache {self.path}: {e}")
        finally:
            # Temp file is only left behind when the replace did not happen
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)
