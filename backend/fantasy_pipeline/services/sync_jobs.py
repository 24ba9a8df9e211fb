"""Sync functions registered with the worker.

Each function pulls from the provider through ``ProviderClient``, decodes
through ``provider_models`` and upserts to storage. Work inside a job fans
out in fixed-width batches; a failing league or team is logged and left out
of the result rather than failing the whole job.
"""

import dataclasses
import json
import logging
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

from fantasy_pipeline.registry import SyncRegistry, SyncResult
from fantasy_pipeline.services.batching import gather_in_batches
from fantasy_pipeline.services.credentials import Credential
from fantasy_pipeline.services.defense_points_against import DefensePointsAgainstService
from fantasy_pipeline.services.league_calcs import LeagueCalcsService
from fantasy_pipeline.services.player_stats import PlayerStatsService
from fantasy_pipeline.services.provider_models import (
    ProviderTeam,
    decode_injuries,
    decode_league_players,
    decode_league_roster_positions,
    decode_league_teams,
    decode_league_transactions,
    decode_schedule,
    decode_team_roster,
    decode_user_leagues,
)
from fantasy_pipeline.services.recommendations import RecommendationsService

if TYPE_CHECKING:
    from fantasy_pipeline.worker import WorkerContext

logger = logging.getLogger(__name__)

REGULAR_SEASON_WEEKS = 18
SEASON_START_MONTH = 9


def current_nfl_week(today: date | None = None) -> int:
    """Weeks elapsed since September 1st, clamped to the regular season."""
    today = today or datetime.now(UTC).date()
    season_start = date(today.year, SEASON_START_MONTH, 1)
    if today < season_start:
        return 1
    week = (today - season_start).days // 7 + 1
    return max(1, min(week, REGULAR_SEASON_WEEKS))


async def _user_leagues(ctx: "WorkerContext", user_id: str) -> list[tuple[str, str]]:
    """(league id, provider league key) for leagues the user has a team in."""
    async with ctx.db.connection() as conn:
        rows = await conn.fetch(
            """
            SELECT DISTINCT l.id, l.provider_league_key
            FROM leagues l
            JOIN teams t ON t.league_id = l.id
            WHERE l.season_year = $1 AND t.user_id = $2
            ORDER BY l.id
            """,
            ctx.season_year,
            user_id,
        )
    return [(str(row["id"]), row["provider_league_key"]) for row in rows]


# =============================================================================
# Master data
# =============================================================================


class SyncPlayers:
    """Player master data, paged from one of the credential owner's leagues."""

    name = "sync-players"
    requires_week = False
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        leagues = await _user_leagues(ctx, user_id or credential.user_id or "")
        if not leagues:
            logger.warning("No league available to list players from")
            return SyncResult(0, {"reason": "no league"})

        _, league_key = leagues[0]
        players = await ctx.provider.paginate(
            credential,
            lambda start, count: (
                f"league/{league_key}/players;start={start};count={count}?format=json"
            ),
            decode_league_players,
        )

        async with ctx.db.connection() as conn:
            await conn.executemany(
                """
                INSERT INTO players (provider_player_key, name, position, team, status, bye_week,
                                     updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, NOW())
                ON CONFLICT (provider_player_key) DO UPDATE SET
                    name = EXCLUDED.name,
                    position = EXCLUDED.position,
                    team = EXCLUDED.team,
                    status = EXCLUDED.status,
                    bye_week = EXCLUDED.bye_week,
                    updated_at = NOW()
                """,
                [
                    (p.player_key, p.name, p.position, p.team, p.status, p.bye_week)
                    for p in players
                ],
            )
        logger.info(f"Synced {len(players)} players from league {league_key}")
        return SyncResult(len(players), {"league_key": league_key})


class SyncInjuries:
    name = "sync-injuries"
    requires_week = False
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        injuries = await ctx.provider.paginate(
            credential,
            lambda start, count: (
                f"players;game_keys=nfl;out=injury_status;start={start};count={count}"
                "?format=json"
            ),
            decode_injuries,
        )
        report_date = datetime.now(UTC).date()

        async with ctx.db.connection() as conn:
            await conn.executemany(
                """
                INSERT INTO player_injuries (player_id, season_year, report_date, status, note)
                SELECT id, $2, $3, $4, $5 FROM players WHERE provider_player_key = $1
                ON CONFLICT (player_id, season_year, report_date) DO UPDATE SET
                    status = EXCLUDED.status,
                    note = EXCLUDED.note
                """,
                [
                    (i.player_key, ctx.season_year, report_date, i.status, i.note)
                    for i in injuries
                ],
            )
        logger.info(f"Synced {len(injuries)} injury reports")
        return SyncResult(len(injuries))


class SyncPlayerStats:
    name = "sync-player-stats"
    requires_week = True
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        service = PlayerStatsService(
            ctx.db, ctx.provider, entity_batch_size=ctx.settings.entity_batch_size
        )
        written = await service.sync_week(credential, ctx.season_year, week)
        return SyncResult(written, {"week": week})


class SyncNflMatchups:
    """Regular-season schedule from the public scoreboard feed."""

    name = "sync-nfl-matchups"
    requires_week = False
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        season = ctx.season_year
        payload = await ctx.provider.get_json(
            None,
            ctx.settings.schedule_api_url,
            params={"limit": 1000, "seasontype": 2, "dates": f"{season}0901-{season + 1}0131"},
        )
        matchups = decode_schedule(payload)

        async with ctx.db.connection() as conn:
            await conn.executemany(
                """
                INSERT INTO nfl_matchups (season_year, week, home_team, away_team)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (season_year, week, home_team) DO UPDATE SET
                    away_team = EXCLUDED.away_team
                """,
                [(season, m.week, m.home_team, m.away_team) for m in matchups],
            )
        logger.info(f"Synced {len(matchups)} NFL matchups for {season}")
        return SyncResult(len(matchups))


# =============================================================================
# League data
# =============================================================================


class SyncLeagueData:
    """Leagues, teams, roster settings and rosters for one user."""

    name = "sync-league-data"
    requires_week = False
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        owner = user_id or credential.user_id
        payload = await ctx.provider.get_json(
            credential, "users;use_login=1/games;game_keys=nfl/leagues?format=json"
        )
        leagues = [
            league
            for league in decode_user_leagues(payload)
            if league.season in (None, ctx.season_year)
        ]
        logger.info(f"Syncing {len(leagues)} leagues for user {owner}")

        results = await gather_in_batches(
            leagues,
            ctx.settings.league_batch_size,
            lambda league: self._sync_league(ctx, credential, league, owner),
            label="league",
        )
        return SyncResult(
            sum(results), {"leagues": len(results), "failed": len(leagues) - len(results)}
        )

    async def _sync_league(self, ctx, credential: Credential, league, owner: str | None) -> int:
        settings_payload = await ctx.provider.get_json(
            credential, f"league/{league.league_key}/settings?format=json"
        )
        roster_positions = decode_league_roster_positions(settings_payload)

        async with ctx.db.connection() as conn:
            league_id = await conn.fetchval(
                """
                INSERT INTO leagues (provider_league_key, name, season_year, num_teams,
                                     current_week, roster_positions, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, NOW())
                ON CONFLICT (provider_league_key) DO UPDATE SET
                    name = EXCLUDED.name,
                    num_teams = EXCLUDED.num_teams,
                    current_week = EXCLUDED.current_week,
                    roster_positions = EXCLUDED.roster_positions,
                    updated_at = NOW()
                RETURNING id
                """,
                league.league_key,
                league.name,
                league.season or ctx.season_year,
                league.num_teams,
                league.current_week,
                json.dumps(roster_positions),
            )

        teams_payload = await ctx.provider.get_json(
            credential, f"league/{league.league_key}/teams?format=json"
        )
        teams = decode_league_teams(teams_payload)

        synced = await gather_in_batches(
            teams,
            ctx.settings.entity_batch_size,
            lambda team: self._sync_team(ctx, credential, str(league_id), team, owner),
            label="team",
        )
        return sum(synced)

    async def _sync_team(
        self, ctx, credential: Credential, league_id: str, team: ProviderTeam, owner: str | None
    ) -> int:
        payload = await ctx.provider.get_json(
            credential, f"team/{team.team_key}/roster/players?format=json"
        )
        roster = decode_team_roster(payload)

        async with ctx.db.connection() as conn:
            async with conn.transaction():
                team_id = await conn.fetchval(
                    """
                    INSERT INTO teams (provider_team_key, league_id, name, user_id, updated_at)
                    VALUES ($1, $2, $3, $4, NOW())
                    ON CONFLICT (provider_team_key) DO UPDATE SET
                        name = EXCLUDED.name,
                        user_id = COALESCE(EXCLUDED.user_id, teams.user_id),
                        updated_at = NOW()
                    RETURNING id
                    """,
                    team.team_key,
                    league_id,
                    team.name,
                    owner if team.is_owned_by_current_login else None,
                )
                await conn.execute("DELETE FROM roster_entries WHERE team_id = $1", team_id)
                await conn.executemany(
                    """
                    INSERT INTO roster_entries (team_id, league_id, player_id, slot)
                    SELECT $1, $2, id, $4 FROM players WHERE provider_player_key = $3
                    """,
                    [(team_id, league_id, entry.player_key, entry.slot) for entry in roster],
                )
        return len(roster)


class SyncTransactions:
    """League transactions; newly seen adds and drops are applied to rosters."""

    name = "sync-transactions"
    requires_week = False
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        leagues = await _user_leagues(ctx, user_id or credential.user_id or "")
        results = await gather_in_batches(
            leagues,
            ctx.settings.league_batch_size,
            lambda league: self._sync_league(ctx, credential, *league),
            label="league",
        )
        return SyncResult(sum(results), {"leagues": len(results)})

    async def _sync_league(self, ctx, credential: Credential, league_id: str, league_key: str) -> int:
        payload = await ctx.provider.get_json(
            credential, f"league/{league_key}/transactions?format=json"
        )
        transactions = sorted(
            decode_league_transactions(payload),
            key=lambda t: t.timestamp or datetime.min.replace(tzinfo=UTC),
        )

        new_count = 0
        async with ctx.db.connection() as conn:
            for transaction in transactions:
                async with conn.transaction():
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO transactions (provider_transaction_key, league_id, type,
                                                  status, occurred_at, moves)
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                        ON CONFLICT (provider_transaction_key) DO UPDATE SET
                            status = EXCLUDED.status
                        RETURNING (xmax = 0)
                        """,
                        transaction.transaction_key,
                        league_id,
                        transaction.transaction_type,
                        transaction.status,
                        transaction.timestamp,
                        json.dumps([dataclasses.asdict(m) for m in transaction.moves]),
                    )
                    if not inserted or transaction.status != "successful":
                        continue
                    new_count += 1
                    for move in transaction.moves:
                        await self._apply_move(conn, league_id, move)

        logger.info(f"League {league_key}: {new_count} new transactions applied")
        return new_count

    async def _apply_move(self, conn, league_id: str, move) -> None:
        if move.move_type == "drop" and move.source_team_key:
            await conn.execute(
                """
                DELETE FROM roster_entries re
                USING teams t, players p
                WHERE re.team_id = t.id AND re.player_id = p.id
                  AND t.provider_team_key = $1 AND p.provider_player_key = $2
                """,
                move.source_team_key,
                move.player_key,
            )
        elif move.move_type == "add" and move.destination_team_key:
            await conn.execute(
                """
                INSERT INTO roster_entries (team_id, league_id, player_id, slot)
                SELECT t.id, $3, p.id, 'BN'
                FROM teams t, players p
                WHERE t.provider_team_key = $1 AND p.provider_player_key = $2
                ON CONFLICT (team_id, player_id) DO NOTHING
                """,
                move.destination_team_key,
                move.player_key,
                league_id,
            )


# =============================================================================
# Metrics
# =============================================================================


class SyncDefensePointsAgainst:
    name = "sync-defense-points-against"
    requires_week = True
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        service = DefensePointsAgainstService(
            ctx.db,
            league_batch_size=ctx.settings.league_batch_size,
            entity_batch_size=ctx.settings.entity_batch_size,
        )
        written = await service.sync_week(ctx.season_year, week, user_id)
        return SyncResult(written, {"week": week})


class LeagueCalcs:
    name = "league-calcs"
    requires_week = True
    requires_user = False

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        service = LeagueCalcsService(ctx.db, league_batch_size=ctx.settings.league_batch_size)
        written = await service.run_week(ctx.season_year, week)
        return SyncResult(written, {"week": week})


class RefreshRecommendations:
    """Store a recommendation snapshot for each of the user's leagues."""

    name = "refresh-recommendations"
    requires_week = True
    requires_user = True

    async def run(self, ctx, credential, week, user_id) -> SyncResult:
        service = RecommendationsService(ctx.db)
        leagues = await _user_leagues(ctx, user_id)

        stored = 0
        for league_id, _ in leagues:
            recommendations = await service.get_recommendations(
                league_id, user_id, ctx.season_year, week
            )
            snapshot = {pid: dataclasses.asdict(r) for pid, r in recommendations.items()}
            async with ctx.db.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO recommendation_snapshots (league_id, user_id, week, payload,
                                                          updated_at)
                    VALUES ($1, $2, $3, $4::jsonb, NOW())
                    ON CONFLICT (league_id, user_id, week) DO UPDATE SET
                        payload = EXCLUDED.payload,
                        updated_at = NOW()
                    """,
                    league_id,
                    user_id,
                    week,
                    json.dumps(snapshot),
                )
            stored += 1
        return SyncResult(stored, {"week": week})


def build_default_registry() -> SyncRegistry:
    """Registry with every built-in sync function, frozen."""
    registry = SyncRegistry()
    for function in (
        SyncPlayers(),
        SyncInjuries(),
        SyncPlayerStats(),
        SyncNflMatchups(),
        SyncLeagueData(),
        SyncTransactions(),
        SyncDefensePointsAgainst(),
        LeagueCalcs(),
        RefreshRecommendations(),
    ):
        registry.register(function)
    return registry.freeze()
