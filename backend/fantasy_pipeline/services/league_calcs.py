"""Per-league player calculations: recent form, matchup and weighted score.

For one league and week:

1. ``calculate_weekly_fantasy_points`` (storage procedure) applies the
   league's scoring settings to the stored stat lines.
2. Trailing points over the recent window give ``recent_mean`` and
   ``recent_std``; both are z-scored within each position.
3. Efficiency metrics come pre-normalized from ``player_stats``.
4. ``opponent_difficulty`` is the next opponent's normalized points-against
   for the player's position, from ``defense_points_against``.
5. ``ScoringPolicy`` combines the inputs into ``weighted_score``.

Rows are upserted on (league_id, player_id, season_year, week).
"""

import json
import logging
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field

from fantasy_pipeline.db import Database
from fantasy_pipeline.services.aggregation import (
    NormalizationMethod,
    normalize_population,
    recent_stats,
)
from fantasy_pipeline.services.batching import gather_in_batches
from fantasy_pipeline.services.defense_points_against import POSITIONS, norm_column
from fantasy_pipeline.services.scoring import ScoringPolicy, scoring_inputs

logger = logging.getLogger(__name__)

RECENT_WEEKS = 3

UPSERT_SQL = """
    INSERT INTO league_calcs (
        league_id, player_id, season_year, week, position, fantasy_points,
        recent_mean, recent_std, recent_mean_norm, recent_std_norm,
        opponent_difficulty, efficiency_norm, weighted_score, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, NOW())
    ON CONFLICT (league_id, player_id, season_year, week) DO UPDATE SET
        position = EXCLUDED.position,
        fantasy_points = EXCLUDED.fantasy_points,
        recent_mean = EXCLUDED.recent_mean,
        recent_std = EXCLUDED.recent_std,
        recent_mean_norm = EXCLUDED.recent_mean_norm,
        recent_std_norm = EXCLUDED.recent_std_norm,
        opponent_difficulty = EXCLUDED.opponent_difficulty,
        efficiency_norm = EXCLUDED.efficiency_norm,
        weighted_score = EXCLUDED.weighted_score,
        updated_at = NOW()
"""


@dataclass(slots=True)
class PlayerWeekInputs:
    """Everything league-calcs needs about one player for one week."""

    position: str
    team: str | None
    fantasy_points: float | None
    trailing_points: list[float | None] = field(default_factory=list)
    efficiency_norm: dict[str, float | None] = field(default_factory=dict)
    opponent_difficulty: float | None = None


@dataclass(slots=True)
class LeagueCalcRow:
    league_id: str
    player_id: str
    season_year: int
    week: int
    position: str
    fantasy_points: float | None
    recent_mean: float | None
    recent_std: float | None
    recent_mean_norm: float | None = None
    recent_std_norm: float | None = None
    opponent_difficulty: float | None = None
    efficiency_norm: dict[str, float | None] = field(default_factory=dict)
    weighted_score: float | None = None

    def as_record(self) -> tuple:
        return (
            self.league_id,
            self.player_id,
            self.season_year,
            self.week,
            self.position,
            self.fantasy_points,
            self.recent_mean,
            self.recent_std,
            self.recent_mean_norm,
            self.recent_std_norm,
            self.opponent_difficulty,
            json.dumps(self.efficiency_norm),
            self.weighted_score,
        )


def opponent_map(matchups: list[tuple[str, str]]) -> dict[str, str]:
    """Team -> opponent from (home, away) pairs."""
    opponents: dict[str, str] = {}
    for home, away in matchups:
        opponents[home] = away
        opponents[away] = home
    return opponents


def opponent_difficulty(
    position: str,
    team: str | None,
    opponents: Mapping[str, str],
    defense_norms: Mapping[str, Mapping[str, float | None]],
) -> float | None:
    """Normalized points the next opponent allows to ``position``.

    None for defenses, teams on bye and opponents without a stored row.
    """
    pos = position.lower()
    if pos not in POSITIONS or not team:
        return None
    opponent = opponents.get(team)
    if opponent is None:
        return None
    return defense_norms.get(opponent, {}).get(pos)


def build_league_calc_rows(
    league_id: str,
    season_year: int,
    week: int,
    players: Mapping[str, PlayerWeekInputs],
    policy: ScoringPolicy,
) -> list[LeagueCalcRow]:
    """Compute normalized inputs and weighted scores for one league/week."""
    rows: dict[str, LeagueCalcRow] = {}
    by_position: dict[str, list[str]] = defaultdict(list)

    for player_id in sorted(players):
        inputs = players[player_id]
        mean, std = recent_stats(inputs.trailing_points)
        rows[player_id] = LeagueCalcRow(
            league_id=league_id,
            player_id=player_id,
            season_year=season_year,
            week=week,
            position=inputs.position,
            fantasy_points=inputs.fantasy_points,
            recent_mean=mean,
            recent_std=std,
            opponent_difficulty=inputs.opponent_difficulty,
            efficiency_norm=dict(inputs.efficiency_norm),
        )
        by_position[inputs.position].append(player_id)

    for position, player_ids in by_position.items():
        normalized = normalize_population(
            {
                pid: {"recent_mean": rows[pid].recent_mean, "recent_std": rows[pid].recent_std}
                for pid in player_ids
            },
            {
                "recent_mean": NormalizationMethod.Z_SCORE,
                "recent_std": NormalizationMethod.Z_SCORE,
            },
        )
        for pid in player_ids:
            row = rows[pid]
            row.recent_mean_norm = normalized[pid]["recent_mean"]
            row.recent_std_norm = normalized[pid]["recent_std"]
            row.weighted_score = policy.weighted_score(
                position,
                scoring_inputs(
                    row.recent_mean_norm,
                    row.recent_std_norm,
                    row.opponent_difficulty,
                    row.efficiency_norm,
                ),
            )

    return list(rows.values())


class LeagueCalcsService:
    """Runs league calculations for every league of a season."""

    def __init__(
        self,
        db: Database,
        policy: ScoringPolicy | None = None,
        league_batch_size: int = 3,
    ):
        self.db = db
        self.policy = policy or ScoringPolicy()
        self.league_batch_size = league_batch_size

    async def _league_ids(self, season_year: int) -> list[str]:
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                "SELECT id FROM leagues WHERE season_year = $1 ORDER BY id", season_year
            )
        return [str(row["id"]) for row in rows]

    async def _efficiency_norms(
        self, season_year: int, week: int
    ) -> dict[str, dict[str, float | None]]:
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT player_id, efficiency_3wk_avg_norm
                FROM player_stats
                WHERE season_year = $1 AND week = $2 AND source = 'actual'
                """,
                season_year,
                week,
            )
        norms = {}
        for row in rows:
            value = row["efficiency_3wk_avg_norm"]
            if isinstance(value, str):
                value = json.loads(value)
            norms[str(row["player_id"])] = value or {}
        return norms

    async def _opponents(self, season_year: int, week: int) -> dict[str, str]:
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT home_team, away_team FROM nfl_matchups
                WHERE season_year = $1 AND week = $2
                """,
                season_year,
                week,
            )
        return opponent_map([(row["home_team"], row["away_team"]) for row in rows])

    async def _defense_norms(
        self, league_id: str, season_year: int, week: int
    ) -> dict[str, dict[str, float | None]]:
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT defense_id, {", ".join(norm_column(p) for p in POSITIONS)}
                FROM defense_points_against
                WHERE league_id = $1 AND season_year = $2 AND week = $3
                """,
                league_id,
                season_year,
                week,
            )
        return {
            str(row["defense_id"]): {p: row[norm_column(p)] for p in POSITIONS} for row in rows
        }

    async def _trailing_points(
        self, league_id: str, season_year: int, week: int
    ) -> dict[str, PlayerWeekInputs]:
        first_week = max(1, week - RECENT_WEEKS + 1)
        async with self.db.connection() as conn:
            await conn.execute(
                "SELECT calculate_weekly_fantasy_points($1, $2, $3)",
                league_id,
                season_year,
                week,
            )
            rows = await conn.fetch(
                """
                SELECT lp.player_id, lp.week, lp.fantasy_points, p.position, p.team
                FROM league_player_points lp
                JOIN players p ON p.id = lp.player_id
                WHERE lp.league_id = $1 AND lp.season_year = $2
                  AND lp.week >= $3 AND lp.week <= $4
                ORDER BY lp.player_id, lp.week
                """,
                league_id,
                season_year,
                first_week,
                week,
            )

        players: dict[str, PlayerWeekInputs] = {}
        for row in rows:
            player_id = str(row["player_id"])
            entry = players.setdefault(
                player_id,
                PlayerWeekInputs(position=row["position"], team=row["team"], fantasy_points=None),
            )
            points = float(row["fantasy_points"]) if row["fantasy_points"] is not None else None
            entry.trailing_points.append(points)
            if row["week"] == week:
                entry.fantasy_points = points
        # Only players who appeared in the scored week are ranked for it
        return {pid: p for pid, p in players.items() if p.fantasy_points is not None}

    async def calculate_league(
        self,
        league_id: str,
        season_year: int,
        week: int,
        efficiency: Mapping[str, dict[str, float | None]],
        opponents: Mapping[str, str],
    ) -> list[LeagueCalcRow]:
        players = await self._trailing_points(league_id, season_year, week)
        if not players:
            logger.info(f"No fantasy points for league {league_id} week {week}")
            return []

        defense_norms = await self._defense_norms(league_id, season_year, week)
        for player_id, inputs in players.items():
            inputs.efficiency_norm = dict(efficiency.get(player_id, {}))
            inputs.opponent_difficulty = opponent_difficulty(
                inputs.position, inputs.team, opponents, defense_norms
            )

        rows = build_league_calc_rows(league_id, season_year, week, players, self.policy)
        async with self.db.connection() as conn:
            await conn.executemany(UPSERT_SQL, [row.as_record() for row in rows])
        logger.info(f"League {league_id} week {week}: stored {len(rows)} player calcs")
        return rows

    async def run_week(self, season_year: int, week: int) -> int:
        """Calculate every league for ``week``. Returns rows written."""
        league_ids = await self._league_ids(season_year)
        efficiency = await self._efficiency_norms(season_year, week)
        opponents = await self._opponents(season_year, week + 1)

        results = await gather_in_batches(
            league_ids,
            self.league_batch_size,
            lambda league_id: self.calculate_league(
                league_id, season_year, week, efficiency, opponents
            ),
            label="league",
        )
        return sum(len(rows) for rows in results)
