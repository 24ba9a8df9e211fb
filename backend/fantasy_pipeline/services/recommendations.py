"""Roster recommendations: start/bench verdicts and waiver-wire adds.

Both kinds are derived from the weighted scores that league-calcs stores for
the latest completed week and look ahead to the following week (the lineup
week). Nothing here is a source of truth; the read model is rebuilt from the
metric rows on every request or refresh job.

Add suggestions:
- A candidate is eligible when nobody in the league rosters them, their
  injury status is not an unavailable one, and they are not on bye in the
  lineup week.
- Every (rostered, candidate) pair at the same position where the candidate
  scores strictly higher produces one suggestion; the result is sorted by
  score delta, biggest upgrade first.

Start/bench verdicts:
- Players are ranked by score within their position; the top N (the league's
  starting slots) should start. A player whose slot disagrees with that gets
  a verdict against the player they would swap with.
- Injured or bye-week players in a starting slot are always benched.
- Flex slots are filled from the remaining healthy RB/WR/TE players.

Players without a score are left out rather than failing the response.
"""

import json
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from fantasy_pipeline.db import Database
from fantasy_pipeline.services.aggregation import is_inconsistent
from fantasy_pipeline.services.scoring import (
    FACTOR_LABELS,
    ScoringPolicy,
    factor_edges,
    scoring_inputs,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Types
    "RosteredPlayer",
    "CandidatePlayer",
    "Confidence",
    "Verdict",
    "AddRecommendation",
    "StartBenchVerdict",
    "PlayerRecommendations",
    # Constants
    "UNAVAILABLE_INJURY_STATUSES",
    "BENCH_SLOTS",
    "FLEX_SLOTS",
    "FLEX_ELIGIBLE_POSITIONS",
    "DEFAULT_STARTING_SLOTS",
    # Eligibility
    "is_unavailable",
    "filter_eligible_candidates",
    # Scoring comparisons
    "improvement_percent",
    "add_confidence",
    "start_bench_confidence",
    # Reasons
    "generate_add_reason",
    # Builders
    "build_add_recommendations",
    "build_start_bench_verdicts",
    "build_recommendation_map",
    # Service class
    "RecommendationsService",
]

# =============================================================================
# Constants
# =============================================================================

UNAVAILABLE_INJURY_STATUSES = frozenset({"O", "IR", "PUP-R", "D", "SUSP", "NFI-R", "IR-R"})
BENCH_SLOTS = frozenset({"BN", "BENCH", "IR"})
FLEX_SLOTS = frozenset({"W/R/T", "W/R", "W/T", "FLEX"})
FLEX_ELIGIBLE_POSITIONS = frozenset({"RB", "WR", "TE"})

DEFAULT_STARTING_SLOTS: dict[str, int] = {
    "QB": 1,
    "RB": 2,
    "WR": 2,
    "TE": 1,
    "K": 1,
    "DEF": 1,
}
DEFAULT_FLEX_SLOTS = 1

# Confidence tiers by percentage score gap
STRONG_GAP_PERCENT = 25.0
GOOD_GAP_PERCENT = 10.0

# Below these recent means the reason calls the player out as underperforming
RB_UNDERPERFORMING_MEAN = 8.0
WR_UNDERPERFORMING_MEAN = 6.0

# =============================================================================
# Types
# =============================================================================


@dataclass(slots=True)
class RosteredPlayer:
    """A player on the user's team, with this week's weighted score."""

    player_id: str
    name: str
    position: str
    team: str | None
    slot: str
    weighted_score: float | None
    recent_mean: float | None = None
    recent_std: float | None = None
    injury_status: str | None = None
    bye_week: int | None = None
    team_id: str | None = None
    factors: dict[str, float] = field(default_factory=dict)

    @property
    def is_benched(self) -> bool:
        return self.slot.upper() in BENCH_SLOTS

    @property
    def is_flex(self) -> bool:
        return self.slot.upper() in FLEX_SLOTS


@dataclass(slots=True)
class CandidatePlayer:
    """A player not on the user's roster."""

    player_id: str
    name: str
    position: str
    team: str | None
    weighted_score: float | None
    recent_mean: float | None = None
    recent_std: float | None = None
    injury_status: str | None = None
    bye_week: int | None = None
    factors: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class Confidence:
    level: int  # 1 (lean) to 3 (strong)
    label: str


class Verdict(StrEnum):
    START = "START"
    BENCH = "BENCH"


@dataclass(slots=True)
class AddRecommendation:
    """Pick up ``candidate`` in place of ``rostered``."""

    rostered_player_id: str
    rostered_name: str
    candidate_player_id: str
    candidate_name: str
    position: str
    rostered_score: float
    candidate_score: float
    delta: float
    improvement_percent: float
    confidence: Confidence
    reason: str


@dataclass(slots=True)
class StartBenchVerdict:
    player_id: str
    verdict: Verdict
    confidence: Confidence
    reason: str
    weighted_score: float
    comparison_name: str
    comparison_score: float


@dataclass(slots=True)
class PlayerRecommendations:
    """Read-model entry for one rostered player."""

    player_id: str
    start_bench: StartBenchVerdict | None = None
    add_upgrades: list[AddRecommendation] = field(default_factory=list)


# =============================================================================
# Eligibility
# =============================================================================


def is_unavailable(injury_status: str | None) -> bool:
    return (injury_status or "").upper() in UNAVAILABLE_INJURY_STATUSES


def filter_eligible_candidates(
    candidates: Iterable[CandidatePlayer],
    league_rostered_ids: set[str],
    lineup_week: int,
) -> list[CandidatePlayer]:
    """Candidates that could actually be picked up and played."""
    return [
        c
        for c in candidates
        if c.player_id not in league_rostered_ids
        and not is_unavailable(c.injury_status)
        and c.bye_week != lineup_week
        and c.weighted_score is not None
    ]


# =============================================================================
# Scoring comparisons
# =============================================================================


def improvement_percent(new_score: float, base_score: float) -> float:
    """Percent improvement of ``new_score`` over ``base_score``.

    A non-positive base has no meaningful ratio: any positive new score
    counts as a 100% improvement.
    """
    if base_score > 0:
        return (new_score - base_score) / base_score * 100
    return 100.0 if new_score > 0 else 0.0


def add_confidence(candidate_score: float, rostered_score: float) -> Confidence:
    improvement = improvement_percent(candidate_score, rostered_score)
    if improvement >= STRONG_GAP_PERCENT:
        return Confidence(3, "Strong Upgrade")
    if improvement >= GOOD_GAP_PERCENT:
        return Confidence(2, "Good Upgrade")
    return Confidence(1, "Slight Upgrade")


def start_bench_confidence(
    player_score: float, comparison_score: float, verdict: Verdict
) -> Confidence:
    """Tier the gap between a player and the baseline they are compared to."""
    gap = abs(player_score - comparison_score)
    percent = gap / max(player_score, comparison_score, 1.0) * 100
    word = "Start" if verdict is Verdict.START else "Bench"
    if percent >= STRONG_GAP_PERCENT:
        return Confidence(3, f"Must {word}")
    if percent >= GOOD_GAP_PERCENT:
        return Confidence(2, f"Strong {word}")
    return Confidence(1, f"Lean {word}")


# =============================================================================
# Reasons
# =============================================================================


def _edges_phrase(ahead: Mapping[str, float], behind: Mapping[str, float]) -> str:
    """Labelled top factor gaps, e.g. ``Workload (+0.42), Matchup (+0.10)``."""
    return ", ".join(
        f"{FACTOR_LABELS.get(factor, factor)} (+{gap:.2f})"
        for factor, gap in factor_edges(ahead, behind)
    )


def _position_context(position: str, rostered: RosteredPlayer) -> str:
    mean = rostered.recent_mean
    if position == "QB":
        return "Consider upgrading your QB depth."
    if position == "RB":
        if mean is not None and mean < RB_UNDERPERFORMING_MEAN:
            return f"{rostered.name} has been underperforming at RB."
        return "This RB could provide better production."
    if position == "WR":
        if mean is not None and mean < WR_UNDERPERFORMING_MEAN:
            return f"{rostered.name} hasn't seen much production at WR."
        return "This WR offers more upside."
    if position == "TE":
        return "TE is a thin position - consider this upgrade."
    if position == "K":
        return "Kicker streaming can boost your weekly ceiling."
    if position == "DEF":
        return "Consider streaming this defense for a better matchup."
    return ""


def generate_add_reason(candidate: CandidatePlayer, rostered: RosteredPlayer) -> str:
    """Deterministic explanation for an add suggestion."""
    candidate_score = candidate.weighted_score or 0.0
    rostered_score = rostered.weighted_score or 0.0
    delta = candidate_score - rostered_score
    percent = improvement_percent(candidate_score, rostered_score)

    parts = [
        f"{candidate.name} ({candidate.team}) outscores {rostered.name} ({rostered.team}): "
        f"{candidate_score:.2f} vs {rostered_score:.2f} (+{delta:.2f}, {percent:.0f}% better).",
        _position_context(candidate.position, rostered),
    ]
    if rostered.is_benched:
        parts.append(f"{rostered.name} is currently on your bench.")
    if is_inconsistent(rostered.recent_mean, rostered.recent_std):
        parts.append(f"{rostered.name} has been inconsistent recently (high variance).")
    edges = _edges_phrase(candidate.factors, rostered.factors)
    if edges:
        parts.append(f"Biggest edges: {edges}.")
    return " ".join(p for p in parts if p)


def _rank_reason(
    player: RosteredPlayer, ranked: list[RosteredPlayer], rank: int, slots: int, label: str
) -> str:
    score = player.weighted_score or 0.0
    if rank < slots:
        reason = (
            f"Ranked #{rank + 1} of {len(ranked)} {label} with weighted score "
            f"{score:.2f} (top {slots} should start)."
        )
        if rank + 1 < len(ranked):
            worse = ranked[rank + 1]
            reason += f" Better than {worse.name} ({score:.2f} vs {worse.weighted_score:.2f})."
            edges = _edges_phrase(player.factors, worse.factors)
            if edges:
                reason += f" Leads on {edges}."
        return reason

    better = ranked[slots - 1] if slots > 0 else None
    reason = (
        f"Ranked #{rank + 1} of {len(ranked)} {label} with weighted score "
        f"{score:.2f} (only top {slots} should start)."
    )
    if better is not None:
        reason += f" Worse than {better.name} ({score:.2f} vs {better.weighted_score:.2f})."
        edges = _edges_phrase(better.factors, player.factors)
        if edges:
            reason += f" {better.name} leads on {edges}."
    return reason


# =============================================================================
# Builders
# =============================================================================


def build_add_recommendations(
    rostered: Iterable[RosteredPlayer],
    eligible_candidates: Iterable[CandidatePlayer],
) -> list[AddRecommendation]:
    """One suggestion per same-position pair where the candidate scores higher.

    Candidates must already be filtered for eligibility. Rostered players
    without a score are skipped. Sorted by delta, descending.
    """
    by_position: dict[str, list[tuple[CandidatePlayer, float]]] = defaultdict(list)
    for candidate in eligible_candidates:
        if candidate.weighted_score is not None:
            by_position[candidate.position].append((candidate, candidate.weighted_score))

    recommendations: list[AddRecommendation] = []
    for player in rostered:
        if player.weighted_score is None:
            continue
        for candidate, candidate_score in by_position.get(player.position, []):
            if candidate_score <= player.weighted_score:
                continue
            delta = candidate_score - player.weighted_score
            recommendations.append(
                AddRecommendation(
                    rostered_player_id=player.player_id,
                    rostered_name=player.name,
                    candidate_player_id=candidate.player_id,
                    candidate_name=candidate.name,
                    position=player.position,
                    rostered_score=player.weighted_score,
                    candidate_score=candidate_score,
                    delta=round(delta, 3),
                    improvement_percent=round(
                        improvement_percent(candidate_score, player.weighted_score), 1
                    ),
                    confidence=add_confidence(candidate_score, player.weighted_score),
                    reason=generate_add_reason(candidate, player),
                )
            )

    recommendations.sort(key=lambda r: r.delta, reverse=True)
    return recommendations


def _verdict(
    player: RosteredPlayer,
    verdict: Verdict,
    reason: str,
    comparison: RosteredPlayer | None,
    fallback_name: str,
    fallback_score: float,
) -> StartBenchVerdict:
    score = player.weighted_score or 0.0
    comparison_score = (
        comparison.weighted_score or 0.0 if comparison is not None else fallback_score
    )
    return StartBenchVerdict(
        player_id=player.player_id,
        verdict=verdict,
        confidence=start_bench_confidence(score, comparison_score, verdict),
        reason=reason,
        weighted_score=score,
        comparison_name=comparison.name if comparison is not None else fallback_name,
        comparison_score=comparison_score,
    )


def build_start_bench_verdicts(
    rostered: Iterable[RosteredPlayer],
    lineup_week: int,
    starting_slots: Mapping[str, int] | None = None,
    flex_slots: int = DEFAULT_FLEX_SLOTS,
) -> dict[str, StartBenchVerdict]:
    """Verdicts for players whose slot disagrees with their rank.

    Args:
        rostered: One team's roster.
        lineup_week: Week the lineup is being set for (bye check).
        starting_slots: Position -> starters, league roster settings.
        flex_slots: Number of RB/WR/TE flex slots.

    Returns:
        Player id -> verdict. Players needing no change are absent.
    """
    slots_by_position = dict(starting_slots or DEFAULT_STARTING_SLOTS)
    scored = [p for p in rostered if p.weighted_score is not None]

    def unavailable(p: RosteredPlayer) -> bool:
        return is_unavailable(p.injury_status) or p.bye_week == lineup_week

    verdicts: dict[str, StartBenchVerdict] = {}
    filling_position_slots: set[str] = set()

    groups: dict[str, list[RosteredPlayer]] = defaultdict(list)
    for player in scored:
        groups[player.position].append(player)

    for position, players in groups.items():
        ranked = sorted(players, key=lambda p: p.weighted_score or 0.0, reverse=True)
        slots = slots_by_position.get(position, 0)
        healthy = [p for p in ranked if not unavailable(p)]

        for rank, player in enumerate(ranked):
            if player.is_flex:
                continue
            starting_now = not player.is_benched
            should_start = rank < slots

            if should_start and not unavailable(player):
                filling_position_slots.add(player.player_id)

            if starting_now and unavailable(player):
                replacement = next((p for p in healthy if p.player_id != player.player_id), None)
                why = "is on bye" if player.bye_week == lineup_week else "is injured"
                verdicts[player.player_id] = _verdict(
                    player,
                    Verdict.BENCH,
                    f"{player.name} {why} and should not be started. "
                    f"Weighted score: {player.weighted_score:.2f}.",
                    replacement,
                    "any healthy player",
                    100.0,
                )
                continue

            if starting_now != should_start:
                if should_start:
                    comparison = ranked[slots] if slots < len(ranked) else None
                    verdict = Verdict.START
                else:
                    comparison = ranked[slots - 1] if slots > 0 else None
                    verdict = Verdict.BENCH
                verdicts[player.player_id] = _verdict(
                    player,
                    verdict,
                    _rank_reason(player, ranked, rank, slots, f"{position}s"),
                    comparison,
                    "starter" if should_start else "bench",
                    0.0,
                )

    if flex_slots > 0:
        flex_pool = sorted(
            (
                p
                for p in scored
                if p.position in FLEX_ELIGIBLE_POSITIONS
                and p.player_id not in filling_position_slots
                and p.player_id not in verdicts
                and not unavailable(p)
            ),
            key=lambda p: p.weighted_score or 0.0,
            reverse=True,
        )
        for rank, player in enumerate(flex_pool):
            starting_now = not player.is_benched
            should_start = rank < flex_slots
            if starting_now == should_start:
                continue
            if should_start:
                comparison = flex_pool[flex_slots] if flex_slots < len(flex_pool) else None
            else:
                comparison = flex_pool[flex_slots - 1]
            verdict = Verdict.START if should_start else Verdict.BENCH
            verdicts[player.player_id] = _verdict(
                player,
                verdict,
                _rank_reason(player, flex_pool, rank, flex_slots, "flex-eligible players"),
                comparison,
                "flex starter" if should_start else "flex bench",
                0.0,
            )

        for player in scored:
            if player.is_flex and unavailable(player) and player.player_id not in verdicts:
                verdicts[player.player_id] = _verdict(
                    player,
                    Verdict.BENCH,
                    f"{player.name} is unavailable this week and should not be "
                    f"in the flex slot. Weighted score: {player.weighted_score:.2f}.",
                    flex_pool[0] if flex_pool else None,
                    "any healthy player",
                    100.0,
                )

    return verdicts


def build_recommendation_map(
    rostered: list[RosteredPlayer],
    candidates: Iterable[CandidatePlayer],
    league_rostered_ids: set[str],
    week: int,
    starting_slots: Mapping[str, int] | None = None,
    flex_slots: int = DEFAULT_FLEX_SLOTS,
) -> dict[str, PlayerRecommendations]:
    """Rostered player id -> {start_bench, add_upgrades}.

    Args:
        rostered: The user's roster with scores for ``week``.
        candidates: Scored players of the league/week (rostered ones are
            filtered out here).
        league_rostered_ids: Every player rostered by any team in the league.
        week: Latest scored week; suggestions target ``week + 1``.
        starting_slots: League starting slots per position.
        flex_slots: League flex slots.
    """
    lineup_week = week + 1
    eligible = filter_eligible_candidates(candidates, league_rostered_ids, lineup_week)
    adds = build_add_recommendations(rostered, eligible)
    verdicts = build_start_bench_verdicts(rostered, lineup_week, starting_slots, flex_slots)

    result: dict[str, PlayerRecommendations] = {}
    for add in adds:
        entry = result.setdefault(
            add.rostered_player_id, PlayerRecommendations(add.rostered_player_id)
        )
        entry.add_upgrades.append(add)
    for player_id, verdict in verdicts.items():
        entry = result.setdefault(player_id, PlayerRecommendations(player_id))
        entry.start_bench = verdict
    return result


# =============================================================================
# Service
# =============================================================================


def _as_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _starting_slots(roster_positions: Any) -> tuple[dict[str, int], int]:
    """Split stored roster settings into per-position and flex slot counts."""
    if not roster_positions:
        return dict(DEFAULT_STARTING_SLOTS), DEFAULT_FLEX_SLOTS
    positions: dict[str, int] = {}
    flex = 0
    for slot, count in dict(roster_positions).items():
        slot_upper = str(slot).upper()
        if slot_upper in BENCH_SLOTS:
            continue
        if slot_upper in FLEX_SLOTS:
            flex += int(count)
        else:
            positions[slot_upper] = int(count)
    return positions, flex


class RecommendationsService:
    """Loads a league's metric rows and builds the recommendation read model."""

    def __init__(self, db: Database, policy: ScoringPolicy | None = None):
        self.db = db
        self.policy = policy or ScoringPolicy()

    async def get_recommendations(
        self, league_id: str, user_id: str, season_year: int, week: int
    ) -> dict[str, PlayerRecommendations]:
        async with self.db.connection() as conn:
            settings_row = await conn.fetchrow(
                "SELECT roster_positions FROM leagues WHERE id = $1", league_id
            )
            rows = await conn.fetch(
                """
                SELECT p.id AS player_id, p.name, p.position, p.team, p.bye_week,
                       lc.weighted_score, lc.recent_mean, lc.recent_std,
                       lc.recent_mean_norm, lc.recent_std_norm, lc.opponent_difficulty,
                       lc.efficiency_norm,
                       inj.status AS injury_status,
                       re.slot, t.user_id
                FROM league_calcs lc
                JOIN players p ON p.id = lc.player_id
                LEFT JOIN roster_entries re
                       ON re.player_id = p.id AND re.league_id = lc.league_id
                LEFT JOIN teams t ON t.id = re.team_id
                LEFT JOIN LATERAL (
                    SELECT status FROM player_injuries pi
                    WHERE pi.player_id = p.id AND pi.season_year = lc.season_year
                    ORDER BY pi.report_date DESC
                    LIMIT 1
                ) inj ON TRUE
                WHERE lc.league_id = $1 AND lc.season_year = $2 AND lc.week = $3
                """,
                league_id,
                season_year,
                week,
            )

        rostered: list[RosteredPlayer] = []
        candidates: list[CandidatePlayer] = []
        league_rostered_ids: set[str] = set()

        for row in rows:
            player_id = str(row["player_id"])
            score = _as_float(row["weighted_score"])
            efficiency = row["efficiency_norm"]
            if isinstance(efficiency, str):
                efficiency = json.loads(efficiency)
            factors = self.policy.score_breakdown(
                row["position"],
                scoring_inputs(
                    _as_float(row["recent_mean_norm"]),
                    _as_float(row["recent_std_norm"]),
                    _as_float(row["opponent_difficulty"]),
                    {k: _as_float(v) for k, v in (efficiency or {}).items()},
                ),
            )
            common = {
                "player_id": player_id,
                "name": row["name"],
                "position": row["position"],
                "team": row["team"],
                "weighted_score": score,
                "recent_mean": row["recent_mean"],
                "recent_std": row["recent_std"],
                "injury_status": row["injury_status"],
                "bye_week": row["bye_week"],
                "factors": factors,
            }
            if row["slot"] is not None:
                league_rostered_ids.add(player_id)
                if row["user_id"] == user_id:
                    rostered.append(RosteredPlayer(slot=row["slot"], **common))
            else:
                candidates.append(CandidatePlayer(**common))

        if not rostered:
            logger.info(f"No scored roster for user {user_id} in league {league_id} week {week}")
            return {}

        roster_positions = settings_row["roster_positions"] if settings_row else None
        if isinstance(roster_positions, str):
            roster_positions = json.loads(roster_positions)
        positions, flex = _starting_slots(roster_positions)
        return build_recommendation_map(
            rostered, candidates, league_rostered_ids, week, positions, flex
        )
