"""Weekly player stat lines and their efficiency metrics.

Stats are fetched in groups of player keys, mapped to named columns by the
decoding boundary, and stored per (player, season, week, source). Each row
also carries:

- ``efficiency``: raw position metrics for that week
- ``efficiency_3wk_avg``: rolling average of each metric over the window
- ``efficiency_3wk_avg_norm``: the rolling averages min-max scaled across all
  players of the same position for the week
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
    prior_window,
    rolling_average,
)
from fantasy_pipeline.services.batching import gather_in_batches
from fantasy_pipeline.services.credentials import Credential
from fantasy_pipeline.services.provider_client import ProviderClient
from fantasy_pipeline.services.provider_models import (
    ProviderPlayerStats,
    decode_player_stats,
)
from fantasy_pipeline.services.scoring import compute_efficiency, efficiency_metrics

logger = logging.getLogger(__name__)

PLAYER_KEYS_PER_REQUEST = 25
STATS_SOURCE = "actual"

UPSERT_SQL = """
    INSERT INTO player_stats (
        player_id, season_year, week, source,
        raw_stats, efficiency, efficiency_3wk_avg, efficiency_3wk_avg_norm, updated_at
    )
    VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8::jsonb, NOW())
    ON CONFLICT (player_id, season_year, week, source) DO UPDATE SET
        raw_stats = EXCLUDED.raw_stats,
        efficiency = EXCLUDED.efficiency,
        efficiency_3wk_avg = EXCLUDED.efficiency_3wk_avg,
        efficiency_3wk_avg_norm = EXCLUDED.efficiency_3wk_avg_norm,
        updated_at = NOW()
"""


@dataclass(slots=True)
class PlayerStatsRow:
    player_id: str
    position: str
    season_year: int
    week: int
    raw_stats: dict[str, float] = field(default_factory=dict)
    efficiency: dict[str, float | None] = field(default_factory=dict)
    efficiency_3wk_avg: dict[str, float | None] = field(default_factory=dict)
    efficiency_3wk_avg_norm: dict[str, float | None] = field(default_factory=dict)

    def as_record(self) -> tuple:
        return (
            self.player_id,
            self.season_year,
            self.week,
            STATS_SOURCE,
            json.dumps(self.raw_stats),
            json.dumps(self.efficiency),
            json.dumps(self.efficiency_3wk_avg),
            json.dumps(self.efficiency_3wk_avg_norm),
        )


def stats_url(player_keys: list[str], week: int) -> str:
    return f"players;player_keys={','.join(player_keys)}/stats;type=week;week={week}?format=json"


def build_stats_rows(
    season_year: int,
    week: int,
    stat_lines: Mapping[str, tuple[str, Mapping[str, float]]],
    prior_efficiency: Mapping[str, list[Mapping[str, float | None]]],
) -> list[PlayerStatsRow]:
    """Efficiency, rolling averages and per-position normalization for one week.

    Args:
        season_year: Season.
        week: Week of the stat lines.
        stat_lines: Player id -> (position, raw stats).
        prior_efficiency: Player id -> stored raw efficiency for prior weeks.

    Returns:
        One row per player, sorted by player id.
    """
    rows: list[PlayerStatsRow] = []
    by_position: dict[str, dict[str, PlayerStatsRow]] = defaultdict(dict)

    for player_id in sorted(stat_lines):
        position, stats = stat_lines[player_id]
        efficiency = compute_efficiency(position, stats)
        history = prior_efficiency.get(player_id, [])
        row = PlayerStatsRow(
            player_id=player_id,
            position=position,
            season_year=season_year,
            week=week,
            raw_stats=dict(stats),
            efficiency=efficiency,
            efficiency_3wk_avg={
                metric: rolling_average(value, (h.get(metric) for h in history))
                for metric, value in efficiency.items()
            },
        )
        rows.append(row)
        by_position[position][player_id] = row

    for position, players in by_position.items():
        metrics = efficiency_metrics(position)
        if not metrics:
            continue
        normalized = normalize_population(
            {pid: row.efficiency_3wk_avg for pid, row in players.items()},
            {m: NormalizationMethod.MIN_MAX for m in metrics},
        )
        for pid, row in players.items():
            row.efficiency_3wk_avg_norm = normalized[pid]

    return rows


class PlayerStatsService:
    """Fetches and stores weekly stats for every known player."""

    def __init__(
        self,
        db: Database,
        provider: ProviderClient,
        entity_batch_size: int = 10,
    ):
        self.db = db
        self.provider = provider
        self.entity_batch_size = entity_batch_size

    async def _players(self) -> dict[str, tuple[str, str]]:
        """Provider key -> (player id, position)."""
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, provider_player_key, position
                FROM players
                WHERE provider_player_key IS NOT NULL
                ORDER BY provider_player_key
                """
            )
        return {
            row["provider_player_key"]: (str(row["id"]), row["position"]) for row in rows
        }

    async def _fetch(
        self, credential: Credential, player_keys: list[str], week: int
    ) -> list[ProviderPlayerStats]:
        payload = await self.provider.get_json(credential, stats_url(player_keys, week))
        return decode_player_stats(payload)

    async def _prior_efficiency(
        self, player_ids: list[str], season_year: int, week: int
    ) -> dict[str, list[dict[str, float | None]]]:
        window = prior_window(week)
        if not window or not player_ids:
            return {}
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT player_id, efficiency
                FROM player_stats
                WHERE player_id = ANY($1::text[]) AND season_year = $2
                  AND week >= $3 AND week <= $4 AND source = $5
                ORDER BY week
                """,
                player_ids,
                season_year,
                window.start,
                window.stop - 1,
                STATS_SOURCE,
            )
        prior: dict[str, list[dict[str, float | None]]] = defaultdict(list)
        for row in rows:
            efficiency = row["efficiency"]
            if isinstance(efficiency, str):
                efficiency = json.loads(efficiency)
            prior[str(row["player_id"])].append(efficiency or {})
        return prior

    async def sync_week(self, credential: Credential, season_year: int, week: int) -> int:
        """Fetch, compute and upsert one week. Returns rows written."""
        players = await self._players()
        if not players:
            logger.warning("No players with provider keys; run sync-players first")
            return 0

        keys = list(players)
        chunks = [
            keys[i : i + PLAYER_KEYS_PER_REQUEST]
            for i in range(0, len(keys), PLAYER_KEYS_PER_REQUEST)
        ]
        fetched = await gather_in_batches(
            chunks,
            self.entity_batch_size,
            lambda chunk: self._fetch(credential, chunk, week),
            label="player stats request",
        )

        stat_lines: dict[str, tuple[str, dict[str, float]]] = {}
        for batch in fetched:
            for line in batch:
                known = players.get(line.player_key)
                if known is None:
                    continue
                player_id, position = known
                stat_lines[player_id] = (position, line.stats)

        if not stat_lines:
            logger.info(f"No stat lines for week {week}")
            return 0

        prior = await self._prior_efficiency(list(stat_lines), season_year, week)
        rows = build_stats_rows(season_year, week, stat_lines, prior)

        async with self.db.connection() as conn:
            await conn.executemany(UPSERT_SQL, [row.as_record() for row in rows])

        logger.info(f"Stored {len(rows)} player stat rows for season {season_year} week {week}")
        return len(rows)
