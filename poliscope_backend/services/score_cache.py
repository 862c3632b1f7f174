"""Process-wide score cache keyed by statement fingerprint."""

import dataclasses
import logging
from typing import Dict, Iterable, List, Optional

from poliscope_backend.domain import Score

logger = logging.getLogger("poliscope_backend")


class ScoreCache:
    """
    Explicit score store injected into the scoring client.

    Entries never expire on their own. A model-version bump only flags
    entries stale; removal happens through invalidate() or purge_stale().
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Score] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def get(self, fingerprint: str) -> Optional[Score]:
        return self._entries.get(fingerprint)

    def put(self, score: Score) -> Score:
        """Store a score unless a fresh one is already cached; returns the cached entry."""
        existing = self._entries.get(score.statement_id)
        if existing is not None and not existing.stale:
            return existing
        self._entries[score.statement_id] = score
        return score

    def invalidate(self, fingerprint: str) -> bool:
        return self._entries.pop(fingerprint, None) is not None

    def mark_model_version(self, model_version: str) -> int:
        """Flag every entry produced by a different model version as stale."""
        flagged = 0
        for fingerprint, score in list(self._entries.items()):
            if score.model_version != model_version and not score.stale:
                self._entries[fingerprint] = dataclasses.replace(score, stale=True)
                flagged += 1
        if flagged:
            logger.info("[SCORE CACHE] Marked %d entries stale (current model %s)", flagged, model_version)
        return flagged

    def purge_stale(self) -> int:
        stale = [fp for fp, score in self._entries.items() if score.stale]
        for fingerprint in stale:
            del self._entries[fingerprint]
        return len(stale)

    def warm(self, scores: Iterable[Score]) -> int:
        loaded = 0
        for score in scores:
            if score.statement_id not in self._entries:
                self._entries[score.statement_id] = score
                loaded += 1
        return loaded

    def stale_fingerprints(self) -> List[str]:
        return [fp for fp, score in self._entries.items() if score.stale]
