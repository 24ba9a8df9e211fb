"""Tests for add suggestions and start/bench verdicts."""

from unittest.mock import AsyncMock

import pytest

from conftest import make_db
from fantasy_pipeline.services.recommendations import (
    CandidatePlayer,
    RecommendationsService,
    RosteredPlayer,
    Verdict,
    add_confidence,
    build_add_recommendations,
    build_recommendation_map,
    build_start_bench_verdicts,
    filter_eligible_candidates,
    generate_add_reason,
    improvement_percent,
    start_bench_confidence,
)


def rostered(
    player_id: str,
    position: str,
    score: float | None,
    slot: str | None = None,
    **extra,
) -> RosteredPlayer:
    return RosteredPlayer(
        player_id=player_id,
        name=f"Player {player_id}",
        position=position,
        team="BUF",
        slot=slot or position,
        weighted_score=score,
        **extra,
    )


def candidate(player_id: str, position: str, score: float | None, **extra) -> CandidatePlayer:
    return CandidatePlayer(
        player_id=player_id,
        name=f"Player {player_id}",
        position=position,
        team="MIA",
        weighted_score=score,
        **extra,
    )


class TestEligibility:
    """Tests for filter_eligible_candidates."""

    def test_excludes_rostered_injured_and_bye(self):
        candidates = [
            candidate("ok", "RB", 5.0),
            candidate("rostered", "RB", 5.0),
            candidate("out", "RB", 5.0, injury_status="O"),
            candidate("ir", "RB", 5.0, injury_status="IR"),
            candidate("bye", "RB", 5.0, bye_week=6),
            candidate("unscored", "RB", None),
            candidate("questionable", "RB", 5.0, injury_status="Q"),
        ]

        eligible = filter_eligible_candidates(candidates, {"rostered"}, lineup_week=6)

        assert [c.player_id for c in eligible] == ["ok", "questionable"]


class TestAddRecommendations:
    """Tests for build_add_recommendations."""

    def test_pairs_sorted_by_delta(self):
        """RB A=8 with candidates B=10 and C=9 gives B then C."""
        roster = [rostered("A", "RB", 8.0)]
        candidates = [candidate("C", "RB", 9.0), candidate("B", "RB", 10.0)]

        adds = build_add_recommendations(roster, candidates)

        assert [(a.rostered_player_id, a.candidate_player_id) for a in adds] == [
            ("A", "B"),
            ("A", "C"),
        ]
        assert adds[0].delta == 2.0
        assert adds[1].delta == 1.0

    def test_only_strictly_better_same_position(self):
        roster = [rostered("A", "WR", 8.0)]
        candidates = [
            candidate("equal", "WR", 8.0),
            candidate("worse", "WR", 7.0),
            candidate("other-pos", "TE", 20.0),
        ]

        assert build_add_recommendations(roster, candidates) == []

    def test_unscored_rostered_player_omitted(self):
        roster = [rostered("A", "RB", None)]

        assert build_add_recommendations(roster, [candidate("B", "RB", 10.0)]) == []

    def test_every_pair_emitted(self):
        roster = [rostered("A", "RB", 4.0), rostered("B", "RB", 6.0)]
        candidates = [candidate("X", "RB", 7.0), candidate("Y", "RB", 5.0)]

        adds = build_add_recommendations(roster, candidates)

        pairs = [(a.rostered_player_id, a.candidate_player_id) for a in adds]
        assert pairs == [("A", "X"), ("A", "Y"), ("B", "X")]


class TestConfidence:
    """Tests for confidence tiers."""

    @pytest.mark.parametrize(
        ("candidate_score", "rostered_score", "level", "label"),
        [
            (12.5, 10.0, 3, "Strong Upgrade"),
            (11.0, 10.0, 2, "Good Upgrade"),
            (10.5, 10.0, 1, "Slight Upgrade"),
            (1.0, 0.0, 3, "Strong Upgrade"),
        ],
    )
    def test_add_confidence(self, candidate_score, rostered_score, level, label):
        confidence = add_confidence(candidate_score, rostered_score)

        assert (confidence.level, confidence.label) == (level, label)

    def test_improvement_percent_non_positive_base(self):
        assert improvement_percent(1.0, 0.0) == 100.0
        assert improvement_percent(0.0, 0.0) == 0.0
        assert improvement_percent(-1.0, -2.0) == 0.0

    def test_start_bench_confidence(self):
        assert start_bench_confidence(10.0, 7.0, Verdict.START).label == "Must Start"
        assert start_bench_confidence(10.0, 8.5, Verdict.BENCH).label == "Strong Bench"
        assert start_bench_confidence(10.0, 9.5, Verdict.START).label == "Lean Start"
        # Scores below 1 are measured against 1
        assert start_bench_confidence(0.2, 0.15, Verdict.START).level == 1


class TestAddReason:
    """Tests for generate_add_reason."""

    def test_includes_delta_and_position_context(self):
        reason = generate_add_reason(
            candidate("B", "RB", 10.0), rostered("A", "RB", 8.0, recent_mean=5.0)
        )

        assert "Player B (MIA) outscores Player A (BUF): 10.00 vs 8.00 (+2.00, 25% better)." in reason
        assert "Player A has been underperforming at RB." in reason

    def test_bench_and_variance_flags(self):
        reason = generate_add_reason(
            candidate("B", "WR", 10.0),
            rostered("A", "WR", 8.0, slot="BN", recent_mean=10.0, recent_std=8.0),
        )

        assert "This WR offers more upside." in reason
        assert "Player A is currently on your bench." in reason
        assert "Player A has been inconsistent recently (high variance)." in reason

    def test_is_deterministic(self):
        c, r = candidate("B", "TE", 4.0), rostered("A", "TE", 3.0)

        assert generate_add_reason(c, r) == generate_add_reason(c, r)

    def test_names_biggest_factor_edges(self):
        reason = generate_add_reason(
            candidate(
                "B",
                "RB",
                10.0,
                factors={
                    "recent_mean": 0.3,
                    "weighted_opportunity": 0.4,
                    "opponent_difficulty": 0.05,
                },
            ),
            rostered(
                "A",
                "RB",
                8.0,
                factors={
                    "recent_mean": 0.1,
                    "weighted_opportunity": 0.05,
                    "opponent_difficulty": 0.06,
                },
            ),
        )

        assert reason.endswith("Biggest edges: Workload (+0.35), Recent Production (+0.20).")

    def test_no_edges_without_breakdown(self):
        reason = generate_add_reason(candidate("B", "RB", 10.0), rostered("A", "RB", 8.0))

        assert "Biggest edges" not in reason


class TestStartBenchVerdicts:
    """Tests for build_start_bench_verdicts."""

    def test_correct_lineup_has_no_verdicts(self):
        roster = [
            rostered("q1", "QB", 9.0),
            rostered("q2", "QB", 5.0, slot="BN"),
        ]

        assert build_start_bench_verdicts(roster, lineup_week=6, flex_slots=0) == {}

    def test_swap_when_bench_player_outranks_starter(self):
        roster = [
            rostered("q1", "QB", 5.0),
            rostered("q2", "QB", 9.0, slot="BN"),
        ]

        verdicts = build_start_bench_verdicts(roster, lineup_week=6, flex_slots=0)

        assert verdicts["q2"].verdict is Verdict.START
        assert verdicts["q2"].comparison_name == "Player q1"
        assert verdicts["q1"].verdict is Verdict.BENCH
        assert verdicts["q1"].comparison_name == "Player q2"
        assert "Ranked #1 of 2 QBs" in verdicts["q2"].reason
        assert "only top 1 should start" in verdicts["q1"].reason

    def test_reasons_name_factor_edges(self):
        roster = [
            rostered("q1", "QB", 5.0, factors={"passing_efficiency": 0.1, "recent_mean": 0.4}),
            rostered(
                "q2", "QB", 9.0, slot="BN", factors={"passing_efficiency": 0.9, "recent_mean": 0.2}
            ),
        ]

        verdicts = build_start_bench_verdicts(roster, lineup_week=6, flex_slots=0)

        assert verdicts["q2"].reason.endswith("Leads on Passing Efficiency (+0.80).")
        assert verdicts["q1"].reason.endswith("Player q2 leads on Passing Efficiency (+0.80).")

    def test_injured_starter_benched(self):
        roster = [
            rostered("k1", "K", 9.0, injury_status="O"),
            rostered("k2", "K", 4.0, slot="BN"),
        ]

        verdicts = build_start_bench_verdicts(roster, lineup_week=6, flex_slots=0)

        assert verdicts["k1"].verdict is Verdict.BENCH
        assert "is injured" in verdicts["k1"].reason
        assert verdicts["k1"].comparison_name == "Player k2"

    def test_bye_week_starter_benched(self):
        roster = [rostered("d1", "DEF", 9.0, bye_week=6)]

        verdicts = build_start_bench_verdicts(roster, lineup_week=6, flex_slots=0)

        assert verdicts["d1"].verdict is Verdict.BENCH
        assert "is on bye" in verdicts["d1"].reason
        assert verdicts["d1"].comparison_score == 100.0

    def test_flex_filled_from_remaining_players(self):
        roster = [
            rostered("r1", "RB", 10.0),
            rostered("r2", "RB", 9.0),
            rostered("w1", "WR", 8.0),
            rostered("w2", "WR", 7.0),
            rostered("t1", "TE", 6.0),
            rostered("r3", "RB", 5.0, slot="W/R/T"),
            rostered("w3", "WR", 6.5, slot="BN"),
        ]

        verdicts = build_start_bench_verdicts(roster, lineup_week=6)

        assert verdicts["w3"].verdict is Verdict.START
        assert verdicts["r3"].verdict is Verdict.BENCH
        assert "flex-eligible" in verdicts["w3"].reason

    def test_league_slot_counts(self):
        roster = [
            rostered("w1", "WR", 8.0),
            rostered("w2", "WR", 7.0, slot="BN"),
        ]

        verdicts = build_start_bench_verdicts(
            roster, lineup_week=6, starting_slots={"WR": 2}, flex_slots=0
        )

        assert verdicts["w2"].verdict is Verdict.START


class TestRecommendationMap:
    """Tests for build_recommendation_map."""

    def test_keys_are_rostered_player_ids(self):
        roster = [
            rostered("A", "RB", 8.0),
            rostered("Q", "QB", 9.0),
        ]
        candidates = [candidate("B", "RB", 10.0), candidate("Z", "RB", 30.0, bye_week=6)]

        result = build_recommendation_map(roster, candidates, {"A", "Q"}, week=5)

        assert set(result) == {"A"}
        assert [a.candidate_player_id for a in result["A"].add_upgrades] == ["B"]
        assert result["A"].start_bench is None


class TestRecommendationsService:
    """Tests for RecommendationsService.get_recommendations."""

    async def test_splits_roster_and_candidates(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = {"roster_positions": {"QB": 1, "RB": 2, "BN": 5}}

        def row(pid, position, score, slot=None, user_id=None):
            return {
                "player_id": pid,
                "name": f"Player {pid}",
                "position": position,
                "team": "BUF",
                "bye_week": None,
                "weighted_score": score,
                "recent_mean": None,
                "recent_std": None,
                "recent_mean_norm": None,
                "recent_std_norm": None,
                "opponent_difficulty": None,
                "efficiency_norm": None,
                "injury_status": None,
                "slot": slot,
                "user_id": user_id,
            }

        conn.fetch.return_value = [
            row("A", "RB", 8.0, slot="RB", user_id="me"),
            row("O", "RB", 50.0, slot="RB", user_id="rival"),
            row("B", "RB", 10.0),
        ]
        service = RecommendationsService(make_db(conn))

        result = await service.get_recommendations("L1", "me", 2025, 5)

        # Rival's player is rostered in the league, so not a candidate
        assert [a.candidate_player_id for a in result["A"].add_upgrades] == ["B"]

    async def test_no_roster(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = None
        conn.fetch.return_value = []

        assert await RecommendationsService(make_db(conn)).get_recommendations("L1", "me", 2025, 5) == {}

    async def test_attaches_factor_breakdown(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = {"roster_positions": '{"RB": 1, "BN": 5}'}
        conn.fetch.return_value = [
            {
                "player_id": "A",
                "name": "Alpha",
                "position": "RB",
                "team": "BUF",
                "bye_week": None,
                "weighted_score": 0.1,
                "recent_mean": 4.0,
                "recent_std": 1.0,
                "recent_mean_norm": 1.0,
                "recent_std_norm": None,
                "opponent_difficulty": None,
                "efficiency_norm": None,
                "injury_status": None,
                "slot": "RB",
                "user_id": "me",
            },
            {
                "player_id": "B",
                "name": "Bravo",
                "position": "RB",
                "team": "MIA",
                "bye_week": None,
                "weighted_score": 0.5,
                "recent_mean": 6.0,
                "recent_std": 1.0,
                "recent_mean_norm": 0.5,
                "recent_std_norm": None,
                "opponent_difficulty": None,
                "efficiency_norm": '{"weighted_opportunity": 1.0}',
                "injury_status": None,
                "slot": None,
                "user_id": None,
            },
        ]

        result = await RecommendationsService(make_db(conn)).get_recommendations(
            "L1", "me", 2025, 5
        )

        (add,) = result["A"].add_upgrades
        assert add.reason.endswith("Biggest edges: Workload (+0.36).")
