"""Tests for decoding provider payloads into typed records."""

from datetime import UTC, datetime

import pytest

from fantasy_pipeline.services.provider_models import (
    ProviderError,
    decode_injuries,
    decode_league_players,
    decode_league_roster_positions,
    decode_league_teams,
    decode_league_transactions,
    decode_player_stats,
    decode_schedule,
    decode_team_roster,
    decode_user_leagues,
)


def player_fragments(key: str, name: str, position: str, team: str, **extra) -> list:
    """Provider player: a list of one-key fragments, nested one level."""
    fragments = [
        {"player_key": key},
        {"name": {"full": name}},
        {"display_position": position},
        {"editorial_team_abbr": team},
    ]
    fragments.extend({k: v} for k, v in extra.items())
    return [fragments]


class TestDecodePlayers:
    """Tests for decode_league_players."""

    def test_decodes_players(self):
        payload = {
            "fantasy_content": {
                "league": [
                    {"league_key": "449.l.1"},
                    {
                        "players": {
                            "0": {
                                "player": player_fragments(
                                    "449.p.1", "Josh Allen", "QB", "Buf", bye_weeks={"week": "7"}
                                )
                            },
                            "1": {"player": player_fragments("449.p.2", "Tony Pollard", "RB", "Ten")},
                            "count": 2,
                        }
                    },
                ]
            }
        }

        players = decode_league_players(payload)

        assert [p.player_key for p in players] == ["449.p.1", "449.p.2"]
        assert players[0].name == "Josh Allen"
        assert players[0].position == "QB"
        assert players[0].bye_week == 7
        assert players[1].bye_week is None

    def test_skips_entries_without_key(self):
        payload = {
            "fantasy_content": {
                "league": [
                    {},
                    {"players": {"0": {"player": [[{"name": {"full": "Nobody"}}]]}}},
                ]
            }
        }

        assert decode_league_players(payload) == []

    def test_missing_envelope_raises(self):
        with pytest.raises(ProviderError):
            decode_league_players({"error": "nope"})


class TestDecodeInjuries:
    """Tests for decode_injuries."""

    def test_healthy_players_dropped(self):
        payload = {
            "fantasy_content": {
                "players": {
                    "0": {"player": [[{"player_key": "p1"}, {"status": "Q"}, {"injury_note": "Ankle"}]]},
                    "1": {"player": [[{"player_key": "p2"}, {"status": "Healthy"}]]},
                    "2": {"player": [[{"player_key": "p3"}]]},
                }
            }
        }

        injuries = decode_injuries(payload)

        assert len(injuries) == 1
        assert injuries[0].player_key == "p1"
        assert injuries[0].status == "Q"
        assert injuries[0].note == "Ankle"


class TestDecodePlayerStats:
    """Tests for decode_player_stats."""

    def test_maps_stat_ids_to_columns(self):
        payload = {
            "fantasy_content": {
                "players": {
                    "0": {
                        "player": [
                            [{"player_key": "p1"}],
                            {
                                "player_stats": {
                                    "week": "5",
                                    "stats": [
                                        {"stat": {"stat_id": "4", "value": "281"}},
                                        {"stat": {"stat_id": "5", "value": "2"}},
                                        {"stat": {"stat_id": "78", "value": "-"}},
                                        {"stat": {"stat_id": "999", "value": "4"}},
                                    ],
                                }
                            },
                        ]
                    }
                }
            }
        }

        stats = decode_player_stats(payload)

        assert len(stats) == 1
        assert stats[0].week == 5
        assert stats[0].stats == {"passing_yards": 281.0, "passing_touchdowns": 2.0, "targets": 0.0}


class TestDecodeLeaguesAndTeams:
    """Tests for user leagues, league teams, rosters and settings."""

    def test_user_leagues(self):
        payload = {
            "fantasy_content": {
                "users": {
                    "0": {
                        "user": [
                            {"guid": "abc"},
                            {
                                "games": {
                                    "0": {
                                        "game": [
                                            {"game_key": "449"},
                                            {
                                                "leagues": {
                                                    "0": {
                                                        "league": [
                                                            {
                                                                "league_key": "449.l.1",
                                                                "name": "Office",
                                                                "season": "2025",
                                                                "num_teams": 12,
                                                                "current_week": 6,
                                                            }
                                                        ]
                                                    }
                                                }
                                            },
                                        ]
                                    }
                                }
                            },
                        ]
                    }
                }
            }
        }

        leagues = decode_user_leagues(payload)

        assert len(leagues) == 1
        assert leagues[0].league_key == "449.l.1"
        assert leagues[0].season == 2025
        assert leagues[0].num_teams == 12
        assert leagues[0].current_week == 6

    def test_league_teams(self):
        payload = {
            "fantasy_content": {
                "league": [
                    {"league_key": "449.l.1"},
                    {
                        "teams": {
                            "0": {"team": [[{"team_key": "449.l.1.t.1"}, {"name": "Mine"}, {"is_owned_by_current_login": 1}]]},
                            "1": {"team": [[{"team_key": "449.l.1.t.2"}, {"name": "Theirs"}]]},
                        }
                    },
                ]
            }
        }

        teams = decode_league_teams(payload)

        assert [t.name for t in teams] == ["Mine", "Theirs"]
        assert teams[0].is_owned_by_current_login is True
        assert teams[1].is_owned_by_current_login is False

    def test_team_roster_slots(self):
        payload = {
            "fantasy_content": {
                "team": [
                    [{"team_key": "449.l.1.t.1"}],
                    {
                        "roster": {
                            "0": {
                                "players": {
                                    "0": {
                                        "player": [
                                            [{"player_key": "p1"}],
                                            {"selected_position": [{"coverage_type": "week"}, {"position": "QB"}]},
                                        ]
                                    },
                                    "1": {"player": [[{"player_key": "p2"}]]},
                                }
                            }
                        }
                    },
                ]
            }
        }

        roster = decode_team_roster(payload)

        assert [(r.player_key, r.slot) for r in roster] == [("p1", "QB"), ("p2", "BN")]

    def test_roster_positions(self):
        payload = {
            "fantasy_content": {
                "league": [
                    {"league_key": "449.l.1"},
                    {
                        "settings": [
                            {
                                "roster_positions": [
                                    {"roster_position": {"position": "QB", "count": 1}},
                                    {"roster_position": {"position": "WR", "count": "3"}},
                                    {"roster_position": {"position": "W/R/T", "count": 1}},
                                    {"roster_position": {"position": "BN", "count": 6}},
                                ]
                            }
                        ]
                    },
                ]
            }
        }

        assert decode_league_roster_positions(payload) == {"QB": 1, "WR": 3, "W/R/T": 1, "BN": 6}


class TestDecodeTransactions:
    """Tests for decode_league_transactions."""

    def test_add_drop_moves(self):
        payload = {
            "fantasy_content": {
                "league": [
                    {"league_key": "449.l.1"},
                    {
                        "transactions": {
                            "0": {
                                "transaction": [
                                    {
                                        "transaction_key": "449.l.1.tr.5",
                                        "type": "add/drop",
                                        "status": "successful",
                                        "timestamp": "1700000000",
                                    },
                                    {
                                        "players": {
                                            "0": {
                                                "player": [
                                                    [{"player_key": "p1"}],
                                                    {"transaction_data": [{"type": "add", "destination_team_key": "t1"}]},
                                                ]
                                            },
                                            "1": {
                                                "player": [
                                                    [{"player_key": "p2"}],
                                                    {"transaction_data": {"type": "drop", "source_team_key": "t1"}},
                                                ]
                                            },
                                        }
                                    },
                                ]
                            }
                        }
                    },
                ]
            }
        }

        transactions = decode_league_transactions(payload)

        assert len(transactions) == 1
        tx = transactions[0]
        assert tx.timestamp == datetime.fromtimestamp(1700000000, UTC)
        assert [(m.player_key, m.move_type) for m in tx.moves] == [("p1", "add"), ("p2", "drop")]
        assert tx.moves[0].destination_team_key == "t1"
        assert tx.moves[1].source_team_key == "t1"


class TestDecodeSchedule:
    """Tests for decode_schedule."""

    def test_home_and_away(self):
        payload = {
            "events": [
                {
                    "id": "1",
                    "week": {"number": 3},
                    "competitions": [
                        {
                            "competitors": [
                                {"homeAway": "home", "team": {"abbreviation": "BUF"}},
                                {"homeAway": "away", "team": {"abbreviation": "MIA"}},
                            ]
                        }
                    ],
                },
                {"id": "2", "week": {"number": 3}, "competitions": [{"competitors": []}]},
            ]
        }

        matchups = decode_schedule(payload)

        assert len(matchups) == 1
        assert (matchups[0].week, matchups[0].home_team, matchups[0].away_team) == (3, "BUF", "MIA")
