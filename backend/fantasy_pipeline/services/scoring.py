"""Weighted scoring policy and per-position efficiency metrics.

A player's weighted score for a week is a linear combination of normalized
inputs:

- ``recent_mean``: z-score of trailing fantasy points
- ``volatility``: z-score of trailing std, clipped to +/-2
- position efficiency metrics: min-max scaled 3-week averages
- ``opponent_difficulty``: how many points the upcoming opponent allows to
  the position (z-score)

Weights are league policy, not law; ``ScoringPolicy`` carries them and the
defaults below can be swapped for a league-specific table.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from fantasy_pipeline.services.aggregation import clip

VOLATILITY_CLIP = 2.0
SCORE_DECIMALS = 3
METRIC_DECIMALS = 2

# =============================================================================
# Default weights
# =============================================================================

# Keys map to normalized inputs; negative weights penalize.
DEFAULT_WEIGHTS: dict[str, dict[str, float]] = {
    "QB": {
        "recent_mean": 0.50,
        "volatility": -0.05,
        "passing_efficiency": 0.45,
        "turnovers": -0.15,
        "rushing_upside": 0.15,
        "opponent_difficulty": 0.10,
    },
    "RB": {
        "recent_mean": 0.30,
        "volatility": -0.04,
        "weighted_opportunity": 0.36,
        "touchdown_production": 0.18,
        "receiving_profile": 0.08,
        "yards_per_touch": 0.06,
        "opponent_difficulty": 0.06,
    },
    "WR": {
        "recent_mean": 0.50,
        "volatility": -0.04,
        "targets_per_game": 0.28,
        "yards_per_target": 0.12,
        "catch_rate": 0.06,
        "opponent_difficulty": 0.08,
    },
    "TE": {
        "recent_mean": 0.36,
        "volatility": -0.08,
        "targets_per_game": 0.30,
        "receiving_touchdowns": 0.20,
        "yards_per_target": 0.12,
        "opponent_difficulty": 0.10,
    },
    "K": {
        "recent_mean": 0.65,
        "volatility": -0.10,
        "fg_profile": 0.40,
        "fg_pat_misses": -0.10,
        "fg_attempts": 0.15,
        "opponent_difficulty": 0.10,
    },
    "DEF": {
        "recent_mean": 0.30,
        "volatility": -0.04,
        "sacks_per_game": 0.28,
        "turnovers_forced": 0.26,
        "dst_tds": 0.10,
        "points_allowed": -0.10,
        "block_kicks": 0.03,
        "safeties": 0.02,
        "opponent_difficulty": 0.22,
    },
}

# Display name per factor; also the set of factors a weight table may use
FACTOR_LABELS: dict[str, str] = {
    "recent_mean": "Recent Production",
    "volatility": "Consistency",
    "opponent_difficulty": "Matchup",
    "passing_efficiency": "Passing Efficiency",
    "turnovers": "Turnover Avoidance",
    "rushing_upside": "Rushing Upside",
    "weighted_opportunity": "Workload",
    "touchdown_production": "TD Production",
    "receiving_profile": "Receiving Work",
    "yards_per_touch": "Efficiency",
    "targets_per_game": "Target Volume",
    "yards_per_target": "Yards per Target",
    "catch_rate": "Catch Rate",
    "receiving_touchdowns": "Receiving TDs",
    "fg_profile": "FG Profile",
    "fg_pat_misses": "Accuracy",
    "fg_attempts": "Opportunities",
    "sacks_per_game": "Sack Rate",
    "turnovers_forced": "Takeaways",
    "dst_tds": "Defensive TDs",
    "points_allowed": "Points Allowed",
    "block_kicks": "Blocked Kicks",
    "safeties": "Safeties",
}

BASE_FACTORS = frozenset({"recent_mean", "volatility", "opponent_difficulty"})


def _validate_weights(weights: Mapping[str, Mapping[str, float]]) -> None:
    """Every position must weight the base factors and only known factors."""
    for position, factors in weights.items():
        missing = BASE_FACTORS - factors.keys()
        if missing:
            raise ValueError(f"{position} weights missing base factors: {sorted(missing)}")
        unknown = set(factors) - FACTOR_LABELS.keys()
        if unknown:
            raise ValueError(f"{position} weights use unknown factors: {sorted(unknown)}")


_validate_weights(DEFAULT_WEIGHTS)


def scoring_inputs(
    recent_mean_norm: float | None,
    recent_std_norm: float | None,
    opponent_difficulty: float | None,
    efficiency_norm: Mapping[str, float | None] | None = None,
) -> dict[str, float | None]:
    """Factor name -> normalized input, from the stored league-calc columns."""
    return {
        "recent_mean": recent_mean_norm,
        "volatility": recent_std_norm,
        "opponent_difficulty": opponent_difficulty,
        **(efficiency_norm or {}),
    }


def efficiency_metrics(position: str) -> list[str]:
    """Efficiency metric names scored for a position (base factors excluded)."""
    return [f for f in DEFAULT_WEIGHTS.get(position, {}) if f not in BASE_FACTORS]


ALL_EFFICIENCY_METRICS: list[str] = sorted(
    {metric for position in DEFAULT_WEIGHTS for metric in efficiency_metrics(position)}
)


# =============================================================================
# Policy
# =============================================================================


@dataclass(frozen=True)
class ScoringPolicy:
    """Position -> factor -> weight table used to build weighted scores."""

    weights: Mapping[str, Mapping[str, float]] = field(
        default_factory=lambda: DEFAULT_WEIGHTS
    )

    def __post_init__(self) -> None:
        _validate_weights(self.weights)

    def positions(self) -> list[str]:
        return list(self.weights)

    def score_breakdown(
        self, position: str, inputs: Mapping[str, float | None]
    ) -> dict[str, float]:
        """Contribution (weight x normalized input) of each factor to the score.

        Missing inputs count as 0 (population average for z-scored inputs,
        population minimum for min-max inputs). Empty for positions without
        weights.
        """
        breakdown: dict[str, float] = {}
        for factor, weight in self.weights.get(position, {}).items():
            value = inputs.get(factor) or 0.0
            if factor == "volatility":
                value = clip(value, -VOLATILITY_CLIP, VOLATILITY_CLIP)
            breakdown[factor] = weight * value
        return breakdown

    def weighted_score(self, position: str, inputs: Mapping[str, float | None]) -> float | None:
        """Sum of the score breakdown. Positions without weights have no score."""
        breakdown = self.score_breakdown(position, inputs)
        if not breakdown:
            return None
        return round(sum(breakdown.values()), SCORE_DECIMALS)


def factor_edges(
    ahead: Mapping[str, float], behind: Mapping[str, float], limit: int = 2
) -> list[tuple[str, float]]:
    """Factors where ``ahead`` out-contributes ``behind`` the most.

    Returns (factor, gap) pairs with a positive gap, largest first. Equal gaps
    are ordered by factor name.
    """
    gaps = [
        (factor, round(ahead.get(factor, 0.0) - behind.get(factor, 0.0), SCORE_DECIMALS))
        for factor in ahead.keys() | behind.keys()
    ]
    positive = sorted((item for item in gaps if item[1] > 0), key=lambda item: (-item[1], item[0]))
    return positive[:limit]


# =============================================================================
# Raw efficiency metrics per position
# =============================================================================


def _ratio(numerator: float, denominator: float) -> float | None:
    return numerator / denominator if denominator > 0 else None


def _rounded(values: Mapping[str, float | None]) -> dict[str, float | None]:
    return {
        k: (round(v, METRIC_DECIMALS) if v is not None else None) for k, v in values.items()
    }


def compute_efficiency(position: str, stats: Mapping[str, float]) -> dict[str, float | None]:
    """Raw (un-normalized) efficiency metrics for one weekly stat line.

    Ratios with a zero denominator are None.
    """

    def s(name: str) -> float:
        return float(stats.get(name, 0.0) or 0.0)

    if position == "QB":
        yards_per_attempt = _ratio(s("passing_yards"), s("passes_attempted"))
        return _rounded(
            {
                "passing_efficiency": (
                    s("passing_touchdowns") + yards_per_attempt
                    if yards_per_attempt is not None
                    else None
                ),
                "turnovers": s("interceptions") + s("fumbles_lost"),
                "rushing_upside": s("rushing_yards") + 6 * s("rushing_touchdowns"),
            }
        )

    if position == "RB":
        touches = s("rushing_attempts") + s("targets")
        return _rounded(
            {
                "weighted_opportunity": touches,
                "touchdown_production": s("rushing_touchdowns") + s("receiving_touchdowns"),
                "receiving_profile": s("receptions") + s("receiving_yards"),
                "yards_per_touch": _ratio(
                    s("rushing_yards") + s("receiving_yards"), touches
                ),
            }
        )

    if position == "WR":
        return {
            "targets_per_game": round(s("targets"), METRIC_DECIMALS),
            "catch_rate": (
                round(s("receptions") / s("targets"), 3) if s("targets") > 0 else None
            ),
            "yards_per_target": (
                round(s("receiving_yards") / s("targets"), METRIC_DECIMALS)
                if s("targets") > 0
                else None
            ),
        }

    if position == "TE":
        return _rounded(
            {
                "targets_per_game": s("targets"),
                "yards_per_target": _ratio(s("receiving_yards"), s("targets")),
                "receiving_touchdowns": s("receiving_touchdowns"),
            }
        )

    if position == "K":
        made = [s(f"fg_made_{r}") for r in ("0_19", "20_29", "30_39", "40_49", "50_plus")]
        missed = [s(f"fg_missed_{r}") for r in ("0_19", "20_29", "30_39", "40_49", "50_plus")]
        return _rounded(
            {
                "fg_profile": 3 * made[4] + 2 * made[3] + made[0] + made[1] + made[2],
                "fg_pat_misses": sum(missed) + s("pat_missed"),
                "fg_attempts": sum(made) + sum(missed),
            }
        )

    if position == "DEF":
        return _rounded(
            {
                "sacks_per_game": s("sacks"),
                "turnovers_forced": s("defensive_int") + s("fumble_recoveries"),
                "dst_tds": s("defensive_touchdowns") + s("defense_return_touchdowns"),
                "points_allowed": s("points_allowed"),
                "block_kicks": s("block_kicks"),
                "safeties": s("safeties"),
            }
        )

    return {}
