"""
Deterministic aggregate math for debates.

Running sums are kept as integers in fixed-point hundredths. Integer
addition is associative and commutative, so incremental updates, merges
(direct addition of two totals) and from-scratch recomputation agree
exactly whatever order statements arrived in.
"""

from bisect import bisect_left, bisect_right, insort
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from poliscope_backend.domain import (
    EMOTIONS,
    IDEOLOGY_BUCKETS,
    Aggregate,
    Momentum,
    Score,
    Stakeholder,
    Statement,
    Urgency,
)
from poliscope_backend.services.embedding_service import tokenize
from poliscope_backend.services.pipeline_config import PipelineConfig

SCALE = 100
MAX_STAKEHOLDERS = 10
UNTITLED = "Untitled debate"

URGENCY_CRITICAL_INTENSITY = 75.0
URGENCY_HIGH_INTENSITY = 60.0
URGENCY_MEDIUM_INTENSITY = 35.0


def to_fixed(value: float) -> int:
    return int(round(value * SCALE))


def ideology_bucket(score: Score, center_band: float) -> str:
    position = (score.ideology.economic + score.ideology.social) / 2
    if position < -center_band:
        return "left"
    if position > center_band:
        return "right"
    return "center"


def _decrement(counter: Counter, key, amount: int = 1) -> None:
    remaining = counter[key] - amount
    if remaining > 0:
        counter[key] = remaining
    else:
        del counter[key]


@dataclass
class RunningTotals:
    """Sums and counts for one debate; exact under add, remove and combine."""

    center_band: float = 20.0
    count: int = 0
    buckets: Counter = field(default_factory=Counter)
    economic_sum: int = 0
    social_sum: int = 0
    emotion_sums: Dict[str, int] = field(default_factory=lambda: {name: 0 for name in EMOTIONS})
    fallacies: Counter = field(default_factory=Counter)
    author_buckets: Counter = field(default_factory=Counter)  # (name, affiliation, bucket) -> n
    regions: Counter = field(default_factory=Counter)
    terms: Counter = field(default_factory=Counter)
    timestamps: List[datetime] = field(default_factory=list)  # kept sorted

    def _apply(self, statement: Statement, score: Score, sign: int) -> None:
        bucket = ideology_bucket(score, self.center_band)
        emotions = {"anger": score.emotions.anger, "fear": score.emotions.fear, "hope": score.emotions.hope}

        self.count += sign
        self.economic_sum += sign * to_fixed(score.ideology.economic)
        self.social_sum += sign * to_fixed(score.ideology.social)
        for name in EMOTIONS:
            self.emotion_sums[name] += sign * to_fixed(emotions[name])

        if sign > 0:
            self.buckets[bucket] += 1
            for fallacy in score.fallacies:
                self.fallacies[fallacy.type] += 1
            if statement.author.name:
                self.author_buckets[(statement.author.name, statement.author.affiliation, bucket)] += 1
            if statement.region:
                self.regions[statement.region] += 1
            self.terms.update(set(tokenize(statement.text)))
            insort(self.timestamps, statement.occurred_at)
        else:
            _decrement(self.buckets, bucket)
            for fallacy in score.fallacies:
                _decrement(self.fallacies, fallacy.type)
            if statement.author.name:
                _decrement(self.author_buckets, (statement.author.name, statement.author.affiliation, bucket))
            if statement.region:
                _decrement(self.regions, statement.region)
            for term in set(tokenize(statement.text)):
                _decrement(self.terms, term)
            index = bisect_left(self.timestamps, statement.occurred_at)
            if index < len(self.timestamps) and self.timestamps[index] == statement.occurred_at:
                del self.timestamps[index]

    def add(self, statement: Statement, score: Score) -> None:
        self._apply(statement, score, 1)

    def remove(self, statement: Statement, score: Score) -> None:
        self._apply(statement, score, -1)

    def combine(self, other: "RunningTotals") -> "RunningTotals":
        """Totals of the union of two disjoint member sets."""
        if other.center_band != self.center_band:
            raise ValueError("cannot combine totals built with different center bands")
        merged = RunningTotals(center_band=self.center_band)
        merged.count = self.count + other.count
        merged.buckets = self.buckets + other.buckets
        merged.economic_sum = self.economic_sum + other.economic_sum
        merged.social_sum = self.social_sum + other.social_sum
        merged.emotion_sums = {name: self.emotion_sums[name] + other.emotion_sums[name] for name in EMOTIONS}
        merged.fallacies = self.fallacies + other.fallacies
        merged.author_buckets = self.author_buckets + other.author_buckets
        merged.regions = self.regions + other.regions
        merged.terms = self.terms + other.terms
        merged.timestamps = sorted(self.timestamps + other.timestamps)
        return merged

    def copy(self) -> "RunningTotals":
        return RunningTotals(center_band=self.center_band).combine(self)


def totals_from_members(members: Iterable[Tuple[Statement, Score]], center_band: float) -> RunningTotals:
    totals = RunningTotals(center_band=center_band)
    for statement, score in members:
        totals.add(statement, score)
    return totals


def ideology_percentages(buckets: Counter, count: int) -> Dict[str, int]:
    """Largest-remainder rounding so the three buckets sum to exactly 100."""
    if count <= 0:
        return {name: 0 for name in IDEOLOGY_BUCKETS}

    floors = {}
    remainders = []
    for index, name in enumerate(IDEOLOGY_BUCKETS):
        scaled = buckets.get(name, 0) * 100
        floors[name] = scaled // count
        remainders.append((-(scaled % count), index, name))

    shortfall = 100 - sum(floors.values())
    for _, _, name in sorted(remainders)[:shortfall]:
        floors[name] += 1
    return floors


def compute_momentum(
    timestamps: List[datetime],
    window: timedelta,
    change: float,
) -> Momentum:
    """
    Compare activity in the trailing window against the window before it.

    The reference point is the latest member timestamp, so the result depends
    only on the members, never on the wall clock.
    """
    if not timestamps:
        return Momentum.STABLE

    reference = timestamps[-1]
    recent_start = reference - window
    prior_start = reference - 2 * window

    recent = len(timestamps) - bisect_right(timestamps, recent_start)
    prior = bisect_right(timestamps, recent_start) - bisect_right(timestamps, prior_start)

    if recent > prior * (1 + change):
        return Momentum.RISING
    if recent < prior * (1 - change):
        return Momentum.DECLINING
    return Momentum.STABLE


def compute_urgency(emotional_profile: Dict[str, float], momentum: Momentum) -> Urgency:
    intensity = max(emotional_profile.get("anger", 0.0), emotional_profile.get("fear", 0.0))
    rising = momentum == Momentum.RISING
    if rising and intensity >= URGENCY_CRITICAL_INTENSITY:
        return Urgency.CRITICAL
    if intensity >= URGENCY_HIGH_INTENSITY or rising:
        return Urgency.HIGH
    if intensity >= URGENCY_MEDIUM_INTENSITY:
        return Urgency.MEDIUM
    return Urgency.LOW


def _mean(total: int, count: int) -> float:
    if count <= 0:
        return 0.0
    return round(total / (count * SCALE), 2)


def _stakeholders(author_buckets: Counter) -> Tuple[Stakeholder, ...]:
    per_author: Dict[Tuple[str, Optional[str]], Counter] = {}
    for (name, affiliation, bucket), n in author_buckets.items():
        per_author.setdefault((name, affiliation), Counter())[bucket] += n

    ranked = []
    for (name, affiliation), buckets in per_author.items():
        dominant = min(IDEOLOGY_BUCKETS, key=lambda b: (-buckets.get(b, 0), IDEOLOGY_BUCKETS.index(b)))
        ranked.append((-sum(buckets.values()), name, affiliation or "", Stakeholder(name, affiliation, dominant)))
    ranked.sort(key=lambda item: item[:3])
    return tuple(item[3] for item in ranked[:MAX_STAKEHOLDERS])


def build_aggregate(totals: RunningTotals, config: PipelineConfig) -> Aggregate:
    count = totals.count
    emotional_profile = {name: _mean(totals.emotion_sums[name], count) for name in EMOTIONS}
    momentum = compute_momentum(totals.timestamps, config.momentum_window, config.momentum_change)

    return Aggregate(
        statement_count=count,
        ideology_breakdown=ideology_percentages(totals.buckets, count),
        spectrum_position={
            "economic": _mean(totals.economic_sum, count),
            "social": _mean(totals.social_sum, count),
        },
        emotional_profile=emotional_profile,
        momentum=momentum,
        fallacy_histogram=dict(sorted(totals.fallacies.items())),
        participants=len({(name, affiliation) for name, affiliation, _ in totals.author_buckets}),
        stakeholders=_stakeholders(totals.author_buckets),
        regions=tuple(sorted(totals.regions)),
        urgency=compute_urgency(emotional_profile, momentum),
    )


def compute_aggregate(members: Iterable[Tuple[Statement, Score]], config: PipelineConfig) -> Aggregate:
    """Aggregate recomputed from scratch; equals the incrementally maintained one."""
    return build_aggregate(totals_from_members(members, config.center_band), config)


def derive_title(totals: RunningTotals, terms: int = 4) -> str:
    if not totals.terms:
        return UNTITLED
    top = sorted(totals.terms.items(), key=lambda item: (-item[1], item[0]))[:max(1, terms)]
    return " ".join(term.capitalize() if not term.isupper() else term for term, _ in top)
