"""Decoding boundary for provider payloads.

The provider nests entities inside objects keyed ``"0"``, ``"1"``, ... and
splits single entities across lists of one-key fragments. All of that
shape-handling lives here; the rest of the package only sees the typed
records below. Entries that cannot be decoded are skipped and logged.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


class ProviderError(ValueError):
    """Raised when a provider payload is missing its expected envelope."""


# Provider stat ids mapped to column names
STAT_IDS: dict[int, str] = {
    1: "passes_attempted",
    2: "completions",
    4: "passing_yards",
    5: "passing_touchdowns",
    6: "interceptions",
    8: "rushing_attempts",
    9: "rushing_yards",
    10: "rushing_touchdowns",
    11: "receptions",
    12: "receiving_yards",
    13: "receiving_touchdowns",
    15: "return_touchdowns",
    16: "two_point_conversions",
    18: "fumbles_lost",
    19: "fg_made_0_19",
    20: "fg_made_20_29",
    21: "fg_made_30_39",
    22: "fg_made_40_49",
    23: "fg_made_50_plus",
    24: "fg_missed_0_19",
    25: "fg_missed_20_29",
    26: "fg_missed_30_39",
    27: "fg_missed_40_49",
    28: "fg_missed_50_plus",
    29: "pat_made",
    30: "pat_missed",
    31: "points_allowed",
    32: "sacks",
    33: "defensive_int",
    34: "fumble_recoveries",
    35: "defensive_touchdowns",
    36: "safeties",
    37: "block_kicks",
    49: "defense_return_touchdowns",
    57: "offensive_fumble_return_td",
    78: "targets",
}


# =============================================================================
# Records
# =============================================================================


@dataclass(slots=True)
class ProviderPlayer:
    """Player master data."""

    player_key: str
    name: str
    position: str
    team: str | None
    status: str | None
    bye_week: int | None


@dataclass(slots=True)
class ProviderInjury:
    player_key: str
    status: str
    note: str | None


@dataclass(slots=True)
class ProviderPlayerStats:
    """Raw weekly stat line keyed by column name."""

    player_key: str
    week: int | None
    stats: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderLeague:
    league_key: str
    name: str
    season: int | None
    num_teams: int
    current_week: int | None


@dataclass(slots=True)
class ProviderTeam:
    team_key: str
    name: str
    is_owned_by_current_login: bool


@dataclass(slots=True)
class ProviderRosterEntry:
    player_key: str
    slot: str


@dataclass(slots=True)
class ProviderTransactionMove:
    player_key: str
    move_type: str  # "add" or "drop"
    source_team_key: str | None
    destination_team_key: str | None


@dataclass(slots=True)
class ProviderTransaction:
    transaction_key: str
    transaction_type: str
    status: str
    timestamp: datetime | None
    moves: list[ProviderTransactionMove] = field(default_factory=list)


@dataclass(slots=True)
class ProviderMatchup:
    """One game from the public NFL schedule feed."""

    week: int
    home_team: str
    away_team: str


# =============================================================================
# Shape helpers
# =============================================================================


def _safe_int(val: Any, default: int | None = None) -> int | None:
    """Safely convert API value to int, handling None and empty strings."""
    if val is None or val == "":
        return default
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


def _safe_float(val: Any, default: float = 0.0) -> float:
    """Safely convert API value to float, handling None and '-' placeholders."""
    if val is None or val in ("", "-"):
        return default
    try:
        return float(val)
    except (ValueError, TypeError):
        return default


def _entries(collection: Any, key: str) -> list[Any]:
    """Items of a provider collection (``{"0": {key: ...}, "count": n}``)."""
    if isinstance(collection, list):
        items = collection
    elif isinstance(collection, dict):
        indexes = sorted((k for k in collection if k.isdigit()), key=int)
        items = [collection[k] for k in indexes]
    else:
        return []
    return [item[key] for item in items if isinstance(item, dict) and key in item]


def _merge(fragments: Any) -> dict[str, Any]:
    """Flatten a list of one-key fragments (possibly nested) into one dict."""
    if isinstance(fragments, dict):
        return dict(fragments)
    merged: dict[str, Any] = {}
    if isinstance(fragments, list):
        for fragment in fragments:
            if isinstance(fragment, dict):
                merged.update(fragment)
            elif isinstance(fragment, list):
                merged.update(_merge(fragment))
    return merged


def _content(payload: Any, root: str) -> dict[str, Any]:
    try:
        return _merge(payload["fantasy_content"][root])
    except (KeyError, TypeError) as e:
        raise ProviderError(f"Payload has no fantasy_content.{root}") from e


def _name(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("full") or "")
    return str(value or "")


# =============================================================================
# Decoders
# =============================================================================


def _decode_player(raw: Any) -> ProviderPlayer | None:
    data = _merge(raw)
    player_key = data.get("player_key")
    if not player_key:
        return None
    bye = data.get("bye_weeks")
    return ProviderPlayer(
        player_key=str(player_key),
        name=_name(data.get("name")),
        position=str(data.get("display_position") or ""),
        team=data.get("editorial_team_abbr"),
        status=data.get("status") or None,
        bye_week=_safe_int(bye.get("week")) if isinstance(bye, dict) else None,
    )


def _decode_list(raw_items: list[Any], decoder: Any, label: str) -> list[Any]:
    decoded = []
    for raw in raw_items:
        item = decoder(raw)
        if item is None:
            logger.warning(f"Skipping undecodable {label} entry: {raw!r:.200}")
            continue
        decoded.append(item)
    return decoded


def decode_league_players(payload: Any) -> list[ProviderPlayer]:
    """Players listed under ``/league/{key}/players``."""
    league = _content(payload, "league")
    return _decode_list(_entries(league.get("players"), "player"), _decode_player, "player")


def decode_injuries(payload: Any) -> list[ProviderInjury]:
    """Injury statuses from ``/players;out=injury_status``; healthy players dropped."""
    try:
        players = payload["fantasy_content"]["players"]
    except (KeyError, TypeError) as e:
        raise ProviderError("Payload has no fantasy_content.players") from e

    injuries = []
    for raw in _entries(players, "player"):
        data = _merge(raw)
        status = data.get("injury_status") or data.get("status")
        if not data.get("player_key") or not status or status == "Healthy":
            continue
        injuries.append(
            ProviderInjury(
                player_key=str(data["player_key"]),
                status=str(status),
                note=data.get("injury_note"),
            )
        )
    return injuries


def _decode_stats(raw: Any) -> ProviderPlayerStats | None:
    data = _merge(raw)
    player_key = data.get("player_key")
    if not player_key:
        return None

    block = data.get("player_stats") or {}
    stats: dict[str, float] = {}
    for entry in block.get("stats", []):
        stat = entry.get("stat", {}) if isinstance(entry, dict) else {}
        stat_id = _safe_int(stat.get("stat_id"))
        column = STAT_IDS.get(stat_id) if stat_id is not None else None
        if column:
            stats[column] = _safe_float(stat.get("value"))

    return ProviderPlayerStats(
        player_key=str(player_key),
        week=_safe_int(block.get("week")),
        stats=stats,
    )


def decode_player_stats(payload: Any) -> list[ProviderPlayerStats]:
    """Weekly stat lines from ``/players;player_keys=.../stats;type=week``."""
    try:
        players = payload["fantasy_content"]["players"]
    except (KeyError, TypeError) as e:
        raise ProviderError("Payload has no fantasy_content.players") from e
    return _decode_list(_entries(players, "player"), _decode_stats, "player stats")


def _decode_league(raw: Any) -> ProviderLeague | None:
    data = _merge(raw)
    league_key = data.get("league_key")
    if not league_key:
        return None
    return ProviderLeague(
        league_key=str(league_key),
        name=str(data.get("name") or league_key),
        season=_safe_int(data.get("season")),
        num_teams=_safe_int(data.get("num_teams"), 0) or 0,
        current_week=_safe_int(data.get("current_week")),
    )


def decode_user_leagues(payload: Any) -> list[ProviderLeague]:
    """Leagues from ``/users;use_login=1/games;game_keys=nfl/leagues``."""
    try:
        users = payload["fantasy_content"]["users"]
    except (KeyError, TypeError) as e:
        raise ProviderError("Payload has no fantasy_content.users") from e

    leagues: list[ProviderLeague] = []
    for user in _entries(users, "user"):
        for game in _entries(_merge(user).get("games"), "game"):
            raw_leagues = _entries(_merge(game).get("leagues"), "league")
            leagues.extend(_decode_list(raw_leagues, _decode_league, "league"))
    return leagues


def _decode_team(raw: Any) -> ProviderTeam | None:
    data = _merge(raw)
    team_key = data.get("team_key")
    if not team_key:
        return None
    return ProviderTeam(
        team_key=str(team_key),
        name=str(data.get("name") or team_key),
        is_owned_by_current_login=bool(_safe_int(data.get("is_owned_by_current_login"), 0)),
    )


def decode_league_teams(payload: Any) -> list[ProviderTeam]:
    """Teams from ``/league/{key}/teams``."""
    league = _content(payload, "league")
    return _decode_list(_entries(league.get("teams"), "team"), _decode_team, "team")


def _decode_roster_entry(raw: Any) -> ProviderRosterEntry | None:
    data = _merge(raw)
    player_key = data.get("player_key")
    if not player_key:
        return None
    selected = _merge(data.get("selected_position"))
    return ProviderRosterEntry(
        player_key=str(player_key),
        slot=str(selected.get("position") or "BN"),
    )


def decode_team_roster(payload: Any) -> list[ProviderRosterEntry]:
    """Roster entries from ``/team/{key}/roster;week={w}``."""
    team = _content(payload, "team")
    roster = team.get("roster") or {}
    players = roster.get("0", {}).get("players") if isinstance(roster, dict) else None
    return _decode_list(_entries(players, "player"), _decode_roster_entry, "roster")


def _decode_move(raw: Any) -> ProviderTransactionMove | None:
    data = _merge(raw)
    player_key = data.get("player_key")
    move = data.get("transaction_data")
    if isinstance(move, list):
        move = move[0] if move else None
    if not player_key or not isinstance(move, dict):
        return None
    return ProviderTransactionMove(
        player_key=str(player_key),
        move_type=str(move.get("type") or ""),
        source_team_key=move.get("source_team_key"),
        destination_team_key=move.get("destination_team_key"),
    )


def _decode_transaction(raw: Any) -> ProviderTransaction | None:
    data = _merge(raw)
    key = data.get("transaction_key")
    if not key:
        return None
    timestamp = _safe_int(data.get("timestamp"))
    return ProviderTransaction(
        transaction_key=str(key),
        transaction_type=str(data.get("type") or ""),
        status=str(data.get("status") or ""),
        timestamp=datetime.fromtimestamp(timestamp, UTC) if timestamp else None,
        moves=_decode_list(
            _entries(data.get("players"), "player"), _decode_move, "transaction move"
        ),
    )


def decode_league_transactions(payload: Any) -> list[ProviderTransaction]:
    """Transactions from ``/league/{key}/transactions``."""
    league = _content(payload, "league")
    return _decode_list(
        _entries(league.get("transactions"), "transaction"),
        _decode_transaction,
        "transaction",
    )


def decode_schedule(payload: Any) -> list[ProviderMatchup]:
    """Games from the public scoreboard feed."""
    matchups = []
    for event in (payload or {}).get("events", []):
        week = _safe_int((event.get("week") or {}).get("number"))
        competitions = event.get("competitions") or []
        if week is None or not competitions:
            continue

        sides: dict[str, str] = {}
        for competitor in competitions[0].get("competitors", []):
            abbr = (competitor.get("team") or {}).get("abbreviation")
            if abbr:
                sides[competitor.get("homeAway", "")] = abbr

        if "home" in sides and "away" in sides:
            matchups.append(
                ProviderMatchup(week=week, home_team=sides["home"], away_team=sides["away"])
            )
        else:
            logger.warning(f"Skipping scoreboard event without both teams: {event.get('id')}")
    return matchups


def decode_league_roster_positions(payload: Any) -> dict[str, int]:
    """Slot -> count from ``/league/{key}/settings``."""
    league = _content(payload, "league")
    settings = _merge(league.get("settings"))
    positions: dict[str, int] = {}
    for raw in _entries(settings.get("roster_positions"), "roster_position"):
        data = _merge(raw)
        slot = data.get("position")
        count = _safe_int(data.get("count"), 0) or 0
        if slot and count > 0:
            positions[str(slot)] = positions.get(str(slot), 0) + count
    return positions
