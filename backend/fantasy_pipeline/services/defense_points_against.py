"""Fantasy points allowed by each defense, per opposing position.

For every league of the season and a given week:

1. Raw per-position totals come from the storage procedure
   ``get_defense_totals_by_position`` (points scored against each defense by
   opposing QBs, RBs, WRs, TEs and Ks under the league's scoring).
2. Each defense's rolling 3-week average is built from its stored rows for
   the prior window plus the current week.
3. Rolling averages are z-scored per position across the league's defenses
   for that week.
4. Rows are upserted on (league_id, defense_id, season_year, week), so
   re-running a week overwrites instead of duplicating.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

import asyncpg

from fantasy_pipeline.db import Database
from fantasy_pipeline.services.aggregation import (
    NormalizationMethod,
    normalize_population,
    prior_window,
    rolling_average,
)
from fantasy_pipeline.services.batching import gather_in_batches

logger = logging.getLogger(__name__)

POSITIONS = ("qb", "rb", "wr", "te", "k")


def raw_column(position: str) -> str:
    return f"{position}_pts_against"


def rolling_column(position: str) -> str:
    return f"{position}_rolling_3_week_avg"


def norm_column(position: str) -> str:
    return f"{position}_rolling_3_wk_avg_norm"


UPSERT_COLUMNS = (
    ["league_id", "defense_id", "season_year", "week"]
    + [raw_column(p) for p in POSITIONS]
    + [rolling_column(p) for p in POSITIONS]
    + [norm_column(p) for p in POSITIONS]
)

UPSERT_SQL = f"""
    INSERT INTO defense_points_against ({", ".join(UPSERT_COLUMNS)}, updated_at)
    VALUES ({", ".join(f"${i}" for i in range(1, len(UPSERT_COLUMNS) + 1))}, NOW())
    ON CONFLICT (league_id, defense_id, season_year, week) DO UPDATE SET
        {", ".join(f"{c} = EXCLUDED.{c}" for c in UPSERT_COLUMNS[4:])},
        updated_at = NOW()
"""


@dataclass(slots=True)
class DefensePointsAgainstRow:
    """One (league, defense, season, week) metric row."""

    league_id: str
    defense_id: str
    season_year: int
    week: int
    points_against: dict[str, float | None] = field(default_factory=dict)
    rolling_avg: dict[str, float | None] = field(default_factory=dict)
    rolling_avg_norm: dict[str, float | None] = field(default_factory=dict)

    def as_record(self) -> tuple:
        """Values in ``UPSERT_COLUMNS`` order."""
        return (
            self.league_id,
            self.defense_id,
            self.season_year,
            self.week,
            *(self.points_against.get(p) for p in POSITIONS),
            *(self.rolling_avg.get(p) for p in POSITIONS),
            *(self.rolling_avg_norm.get(p) for p in POSITIONS),
        )


def build_league_rows(
    league_id: str,
    season_year: int,
    week: int,
    totals: Mapping[str, Mapping[str, float | None]],
    prior: Mapping[str, list[Mapping[str, float | None]]],
) -> list[DefensePointsAgainstRow]:
    """Build rolling and normalized rows for one league/week.

    Args:
        league_id: League the rows belong to.
        season_year: Season.
        week: Current week.
        totals: Defense id -> position -> raw points allowed this week.
        prior: Defense id -> stored raw rows for the prior window.

    Returns:
        One row per defense in ``totals``, sorted by defense id.
    """
    rows: dict[str, DefensePointsAgainstRow] = {}
    for defense_id in sorted(totals):
        current = totals[defense_id]
        history = prior.get(defense_id, [])
        rows[defense_id] = DefensePointsAgainstRow(
            league_id=league_id,
            defense_id=defense_id,
            season_year=season_year,
            week=week,
            points_against={p: current.get(p) for p in POSITIONS},
            rolling_avg={
                p: rolling_average(current.get(p), (h.get(p) for h in history))
                for p in POSITIONS
            },
        )

    normalized = normalize_population(
        {defense_id: row.rolling_avg for defense_id, row in rows.items()},
        {p: NormalizationMethod.Z_SCORE for p in POSITIONS},
    )
    for defense_id, row in rows.items():
        row.rolling_avg_norm = normalized[defense_id]

    return list(rows.values())


class DefensePointsAgainstService:
    """Computes and stores defense points-against metrics."""

    def __init__(
        self,
        db: Database,
        league_batch_size: int = 3,
        entity_batch_size: int = 10,
    ):
        self.db = db
        self.league_batch_size = league_batch_size
        self.entity_batch_size = entity_batch_size

    async def league_ids(self, season_year: int, user_id: str | None = None) -> list[str]:
        """Leagues of the season, optionally only those the user plays in."""
        async with self.db.connection() as conn:
            if user_id:
                rows = await conn.fetch(
                    """
                    SELECT DISTINCT l.id
                    FROM leagues l
                    JOIN teams t ON t.league_id = l.id
                    WHERE l.season_year = $1 AND t.user_id = $2
                    ORDER BY l.id
                    """,
                    season_year,
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT id FROM leagues WHERE season_year = $1 ORDER BY id",
                    season_year,
                )
        return [str(row["id"]) for row in rows]

    async def _position_totals(
        self, league_id: str, season_year: int, week: int
    ) -> dict[str, dict[str, float | None]]:
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM get_defense_totals_by_position($1, $2, $3)",
                league_id,
                season_year,
                week,
            )
        return {
            str(row["defense_id"]): {
                p: (float(row[f"{p}_pts"]) if row[f"{p}_pts"] is not None else None)
                for p in POSITIONS
            }
            for row in rows
        }

    async def _prior_points(
        self, league_id: str, defense_id: str, season_year: int, week: int
    ) -> list[dict[str, float | None]]:
        window = prior_window(week)
        if not window:
            return []

        async with self.db.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT week, {", ".join(raw_column(p) for p in POSITIONS)}
                FROM defense_points_against
                WHERE league_id = $1 AND defense_id = $2 AND season_year = $3
                  AND week >= $4 AND week <= $5
                ORDER BY week
                """,
                league_id,
                defense_id,
                season_year,
                window.start,
                window.stop - 1,
            )
        return [{p: row[raw_column(p)] for p in POSITIONS} for row in rows]

    async def _upsert(self, rows: list[DefensePointsAgainstRow]) -> None:
        if not rows:
            return
        async with self.db.connection() as conn:
            await conn.executemany(UPSERT_SQL, [row.as_record() for row in rows])

    async def sync_league_week(
        self, league_id: str, season_year: int, week: int
    ) -> list[DefensePointsAgainstRow]:
        """Compute and store one league's rows for a week."""
        totals = await self._position_totals(league_id, season_year, week)
        if not totals:
            logger.info(f"No defense totals for league {league_id} week {week}")
            return []

        async def load_prior(defense_id: str) -> tuple[str, list[dict[str, float | None]]]:
            return defense_id, await self._prior_points(
                league_id, defense_id, season_year, week
            )

        loaded = await gather_in_batches(
            sorted(totals), self.entity_batch_size, load_prior, label="defense"
        )
        prior = dict(loaded)

        # Defenses whose history failed to load are left out of this run
        rows = build_league_rows(
            league_id,
            season_year,
            week,
            {d: totals[d] for d in prior},
            prior,
        )
        await self._upsert(rows)
        logger.info(f"League {league_id} week {week}: stored {len(rows)} defense rows")
        return rows

    async def sync_week(
        self, season_year: int, week: int, user_id: str | None = None
    ) -> int:
        """Sync every league for a week. Returns the number of rows written."""
        league_ids = await self.league_ids(season_year, user_id)
        logger.info(
            f"Syncing defense points against for {len(league_ids)} leagues, "
            f"season {season_year} week {week}"
        )

        results = await gather_in_batches(
            league_ids,
            self.league_batch_size,
            lambda league_id: self.sync_league_week(league_id, season_year, week),
            label="league",
        )
        return sum(len(rows) for rows in results)

    async def sync_all_weeks(
        self, season_year: int, up_to_week: int, user_id: str | None = None
    ) -> dict[int, int]:
        """Backfill weeks 1..up_to_week in order (earlier weeks feed later windows).

        Returns:
            Week -> rows written. A week that fails is logged and recorded as 0.
        """
        written: dict[int, int] = {}
        for week in range(1, up_to_week + 1):
            try:
                written[week] = await self.sync_week(season_year, week, user_id)
            except (asyncpg.PostgresError, OSError) as e:
                logger.error(f"Backfill of week {week} failed: {type(e).__name__}: {e}")
                written[week] = 0
        return written
