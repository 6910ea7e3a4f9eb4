"""
Unit tests for the market allocation engine

Tests cover:
- Demand calculation and its determinism
- Competitive scoring (price floor, diminishing returns, brand)
- Softmax share allocation and share conservation
- Round-1 symmetry between identical teams
- Rubber-banding gating and the non-renormalized boost
- ESG revenue penalty gradient
- Rankings and tie-breaking
- Next-round market evolution, named events and custom effects
"""

import math

import pytest

from config import CONFIG, REGIONS, SEGMENTS
from context import DeterminismError, create_market_context
from engine import create_initial_market_state, create_initial_team_state
from events import EventEffect, MarketEffectTarget, MarketEventType, RoundEvent
from market import (
    apply_custom_effect,
    apply_esg_events,
    apply_market_event,
    calculate_demand,
    calculate_price_score,
    calculate_rankings,
    calculate_team_position,
    diminishing_multiplier,
    generate_next_market_state,
    price_floor_multiplier,
    rubber_band_multipliers,
    simulate,
    softmax_shares,
)
from models import Product


def identical_teams(count):
    return [(f"team-{i + 1}", create_initial_team_state()) for i in range(count)]


def budget_only_team():
    state = create_initial_team_state()
    state.products = [p for p in state.products if p.segment == "Budget"]
    return state


class TestDemand:
    """Test suite for segment demand"""

    def test_same_context_same_demand(self):
        """Demand noise comes only from the context"""
        market = create_initial_market_state()
        first = calculate_demand(market, create_market_context("m", 1))
        second = calculate_demand(market, create_market_context("m", 1))

        assert first == second

    def test_demand_within_noise_band(self):
        """Budget demand stays within +/-5% of the adjusted base"""
        market = create_initial_market_state()
        demand = calculate_demand(market, create_market_context("m", 1))

        # 500,000 * GDP 1.025 * confidence 1.0 * inflation 0.99 * growth 1.02
        base = 500_000 * 1.025 * 1.0 * 0.99 * 1.02
        assert base * 0.95 - 1 <= demand["Budget"] <= base * 1.05

    def test_every_segment_present_and_integral(self):
        market = create_initial_market_state()
        demand = calculate_demand(market, create_market_context("m", 1))

        assert list(demand) == list(SEGMENTS)
        assert all(isinstance(units, int) and units >= 0 for units in demand.values())

    def test_missing_context_raises(self):
        with pytest.raises(DeterminismError):
            calculate_demand(create_initial_market_state(), None)


class TestScoring:
    """Test suite for competitive scoring"""

    def test_diminishing_multiplier_linear_below_one(self):
        assert abs(diminishing_multiplier(0.8) - 0.8) < 1e-9

    def test_diminishing_multiplier_dampened_above_one(self):
        """1.2 ratio -> 1 + sqrt(0.2) * 0.5"""
        expected = 1.0 + math.sqrt(0.2) * 0.5
        assert abs(diminishing_multiplier(1.2) - expected) < 1e-9

    def test_diminishing_multiplier_capped(self):
        assert diminishing_multiplier(10.0) == CONFIG.market.score_multiplier_cap

    def test_price_floor_multiplier_inside_tolerance(self):
        """Prices at most 15% below the floor are not penalized"""
        assert price_floor_multiplier(100.0, 100.0) == 1.0
        assert price_floor_multiplier(90.0, 100.0) == 1.0

    def test_price_floor_multiplier_scales_to_max(self):
        """Penalty grows linearly beyond the tolerance, up to 30%"""
        # 22.5 below: (22.5 - 15) / 15 = 0.5 -> 15% reduction
        assert abs(price_floor_multiplier(77.5, 100.0) - 0.85) < 1e-9
        assert abs(price_floor_multiplier(50.0, 100.0) - 0.70) < 1e-9

    def test_price_far_below_floor_scores_lower(self):
        """Dumping far below the segment minimum loses price score"""
        market = create_initial_market_state()
        at_min = Product(id="a", name="A", segment="Budget", price=100.0, quality=50, features=30)
        dumped = Product(id="b", name="B", segment="Budget", price=60.0, quality=50, features=30)

        assert calculate_price_score(dumped, "Budget", market) < calculate_price_score(at_min, "Budget", market)

    def test_no_product_scores_zero(self):
        market = create_initial_market_state()
        position = calculate_team_position("t", create_initial_team_state(), None, "Budget", market)

        assert position.total_score == 0.0
        assert position.product is None

    def test_higher_brand_scores_higher(self):
        market = create_initial_market_state()
        strong = create_initial_team_state(brand_value=0.55)
        weak = create_initial_team_state(brand_value=0.45)
        product = strong.products[0]

        strong_pos = calculate_team_position("s", strong, product, product.segment, market)
        weak_pos = calculate_team_position("w", weak, product, product.segment, market)

        assert strong_pos.brand_score > weak_pos.brand_score
        assert strong_pos.total_score > weak_pos.total_score

    def test_esg_contributes_through_sustainability_premium(self):
        market = create_initial_market_state()
        state = create_initial_team_state()
        state.esg_score = 500.0
        product = state.products[0]

        position = calculate_team_position("t", state, product, product.segment, market)
        weight = CONFIG.market.segment_weights[product.segment]["esg"]

        assert abs(position.esg_score - 0.5 * 0.3 * weight) < 1e-9


class TestSoftmax:
    """Test suite for share allocation"""

    def test_shares_sum_to_one(self):
        shares = softmax_shares([30.0, 45.0, 12.5, 60.0])
        assert abs(sum(shares) - 1.0) < 1e-9

    def test_equal_scores_split_evenly(self):
        shares = softmax_shares([42.0, 42.0, 42.0])
        assert all(abs(s - 1 / 3) < 1e-9 for s in shares)

    def test_all_zero_splits_evenly(self):
        assert softmax_shares([0.0, 0.0]) == [0.5, 0.5]

    def test_zero_score_excluded(self):
        """A zero score gets no share when anyone else competes"""
        shares = softmax_shares([10.0, 0.0])
        assert shares == [1.0, 0.0]

    def test_temperature_ten(self):
        """Scores 20 and 10 at T=10 -> 1 / (1 + e^-1)"""
        shares = softmax_shares([20.0, 10.0])
        assert abs(shares[0] - 1 / (1 + math.exp(-1))) < 1e-9

    def test_monotonic_in_score(self):
        scores = [55.0, 61.0, 48.0, 61.0, 70.0]
        shares = softmax_shares(scores)

        for i, a in enumerate(scores):
            for j, b in enumerate(scores):
                if a > b:
                    assert shares[i] >= shares[j]

    def test_empty(self):
        assert softmax_shares([]) == []


class TestSimulate:
    """Test suite for whole-market resolution"""

    def test_share_conservation(self):
        """Allocated shares sum to 1 in every contested segment"""
        teams = identical_teams(3)
        teams[0][1].brand_value = 0.9
        teams[2][1].products[0].price = 380.0
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))

        for segment in SEGMENTS:
            total = sum(result.allocated_shares[team_id][segment] for team_id, _ in teams)
            assert abs(total - 1.0) < 1e-5

    def test_round_one_symmetry(self):
        """Identical teams get 1/N of every segment and equal revenue"""
        teams = identical_teams(4)
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1), apply_rubber_banding=False)

        for team_id, _ in teams:
            for segment in SEGMENTS:
                assert abs(result.market_shares[team_id][segment] - 0.25) < 0.01
        revenues = set(result.revenue_by_team.values())
        assert len(revenues) == 1

    def test_brand_differentiation(self):
        """Brand 0.55 beats 0.45 everywhere, without zeroing the weaker team"""
        teams = [
            ("strong", create_initial_team_state(brand_value=0.55)),
            ("weak", create_initial_team_state(brand_value=0.45)),
        ]
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))

        for segment in SEGMENTS:
            assert result.market_shares["strong"][segment] > result.market_shares["weak"][segment]
            assert result.market_shares["weak"][segment] > 0
        assert result.revenue_by_team["strong"] > result.revenue_by_team["weak"]

    def test_units_and_revenue_follow_shares(self):
        teams = identical_teams(2)
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))

        for position in result.positions:
            expected_units = math.floor(result.total_demand[position.segment] * position.market_share)
            assert position.units_sold == expected_units
            assert abs(position.revenue - expected_units * position.product.price) < 1e-6

    def test_team_without_product_sells_nothing(self):
        teams = [("full", create_initial_team_state()), ("budget", budget_only_team())]
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))

        assert result.allocated_shares["budget"]["Professional"] == 0.0
        assert result.sales_by_team["budget"]["Professional"] == 0

    def test_revenue_attributed_to_factory_region(self):
        teams = identical_teams(2)
        teams[1][1].factories[0].region = "Europe"
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))

        assert set(result.revenue_by_region["team-1"]) == set(REGIONS)
        assert result.revenue_by_region["team-2"]["Europe"] > 0
        assert result.revenue_by_region["team-2"]["North America"] == 0

    def test_warranty_cost_from_defects(self):
        teams = identical_teams(1)
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))
        factory = teams[0][1].factories[0]
        expected = sum(
            p.units_sold * factory.defect_rate * p.product.unit_cost for p in result.positions)

        assert abs(result.warranty_cost_by_team["team-1"] - expected) < 1e-6

    def test_inputs_not_mutated(self):
        teams = identical_teams(2)
        market = create_initial_market_state()
        before = [state.to_dict() for _, state in teams]
        market_before = market.to_dict()

        simulate(teams, market, create_market_context("m", 1))

        assert [state.to_dict() for _, state in teams] == before
        assert market.to_dict() == market_before

    def test_deterministic(self):
        teams = identical_teams(3)
        market = create_initial_market_state()

        first = simulate(teams, market, create_market_context("m", 2))
        second = simulate(teams, market, create_market_context("m", 2))

        assert first.revenue_by_team == second.revenue_by_team
        assert first.total_demand == second.total_demand


class TestRubberBanding:
    """Test suite for catch-up adjustment"""

    def lopsided_teams(self):
        return [
            ("leader-a", create_initial_team_state()),
            ("leader-b", create_initial_team_state()),
            ("trailer", budget_only_team()),
        ]

    def test_multipliers_inactive_before_round_three(self):
        shares = {"a": {s: 0.9 for s in SEGMENTS}, "b": {s: 0.1 for s in SEGMENTS}}
        assert rubber_band_multipliers(shares, 2, True) == {}

    def test_multipliers_inactive_when_disabled(self):
        shares = {"a": {s: 0.9 for s in SEGMENTS}, "b": {s: 0.1 for s in SEGMENTS}}
        assert rubber_band_multipliers(shares, 5, False) == {}

    def test_multipliers_for_trailing_and_leading(self):
        shares = {
            "a": {s: 0.8 for s in SEGMENTS},
            "b": {s: 0.15 for s in SEGMENTS},
            "c": {s: 0.05 for s in SEGMENTS},
        }
        multipliers = rubber_band_multipliers(shares, 3, True)

        assert multipliers["a"] == CONFIG.rubber_band.leading_penalty
        assert multipliers["c"] == CONFIG.rubber_band.trailing_boost

    def test_balanced_market_untouched(self):
        shares = {"a": {s: 0.5 for s in SEGMENTS}, "b": {s: 0.5 for s in SEGMENTS}}
        assert rubber_band_multipliers(shares, 4, True) == {}

    def test_no_adjustment_before_round_three(self):
        market = create_initial_market_state()
        market.round_number = 2

        result = simulate(self.lopsided_teams(), market, create_market_context("m", 2), apply_rubber_banding=True)

        assert not result.rubber_banding_applied
        assert result.market_shares == result.allocated_shares

    def test_trailing_team_share_increases(self):
        """From round 3 a trailing team's share rises above its allocation"""
        market = create_initial_market_state()
        market.round_number = 3

        result = simulate(self.lopsided_teams(), market, create_market_context("m", 3), apply_rubber_banding=True)

        assert result.rubber_banding_applied
        assert result.market_shares["trailer"]["Budget"] > result.allocated_shares["trailer"]["Budget"]

    def test_boost_is_not_renormalized(self):
        market = create_initial_market_state()
        market.round_number = 3

        result = simulate(self.lopsided_teams(), market, create_market_context("m", 3), apply_rubber_banding=True)
        budget_total = sum(result.market_shares[t]["Budget"] for t in ("leader-a", "leader-b", "trailer"))

        assert budget_total > 1.0

    def test_revenue_recomputed_from_adjusted_shares(self):
        market = create_initial_market_state()
        market.round_number = 3

        result = simulate(self.lopsided_teams(), market, create_market_context("m", 3), apply_rubber_banding=True)
        trailer = next(p for p in result.positions if p.team_id == "trailer" and p.segment == "Budget")

        assert trailer.units_sold == math.floor(result.total_demand["Budget"] * trailer.market_share)
        assert result.sales_by_team["trailer"]["Budget"] == trailer.units_sold
        assert abs(trailer.revenue - trailer.units_sold * trailer.product.price) < 1e-6


class TestESG:
    """Test suite for the ESG penalty"""

    def test_zero_score_full_penalty(self):
        """Score 0 on $10M revenue -> -$800,000"""
        event = apply_esg_events(0, 10_000_000)

        assert event.type == "penalty"
        assert abs(event.amount - (-800_000)) < 1e-6

    def test_threshold_has_no_effect(self):
        assert apply_esg_events(300, 10_000_000) is None

    def test_high_score_has_no_effect(self):
        assert apply_esg_events(700, 10_000_000) is None

    def test_penalty_shrinks_towards_threshold(self):
        """150 -> 8% - 0.5 * 7% = 4.5%"""
        event = apply_esg_events(150, 1_000_000)

        assert abs(event.penalty_rate - 0.045) < 1e-9
        assert apply_esg_events(299, 1_000_000).penalty_rate < event.penalty_rate

    def test_penalty_reduces_simulated_revenue(self):
        teams = identical_teams(2)
        teams[0][1].esg_score = 500.0
        teams[1][1].esg_score = 0.0
        market = create_initial_market_state()

        result = simulate(teams, market, create_market_context("m", 1))

        assert "team-2" in result.esg_events
        assert "team-1" not in result.esg_events
        assert result.revenue_by_team["team-2"] < result.revenue_by_team["team-1"]


class TestRankings:
    """Test suite for ranking lists"""

    def test_ranks_by_revenue(self):
        teams = [
            ("weak", create_initial_team_state(brand_value=0.3)),
            ("strong", create_initial_team_state(brand_value=0.9)),
        ]
        market = create_initial_market_state()
        result = simulate(teams, market, create_market_context("m", 1))

        rankings = {r.team_id: r for r in calculate_rankings(teams, result)}

        assert rankings["strong"].rank == 1
        assert rankings["weak"].rank == 2
        assert rankings["strong"].share_rank == 1

    def test_ties_keep_input_order(self):
        """Equal keys rank in the order teams were supplied"""
        teams = identical_teams(3)
        market = create_initial_market_state()
        result = simulate(teams, market, create_market_context("m", 1))

        rankings = calculate_rankings(teams, result)

        assert [r.eps_rank for r in rankings] == [1, 2, 3]
        assert [r.rank for r in rankings] == [1, 2, 3]

    def test_eps_rank_independent(self):
        teams = identical_teams(2)
        teams[1][1].eps = 4.0
        market = create_initial_market_state()
        result = simulate(teams, market, create_market_context("m", 1))

        rankings = {r.team_id: r for r in calculate_rankings(teams, result)}

        assert rankings["team-2"].eps_rank == 1
        assert rankings["team-1"].eps_rank == 2


class TestMarketEvolution:
    """Test suite for next-round market state"""

    def test_round_advances_and_input_untouched(self):
        market = create_initial_market_state()
        before = market.to_dict()

        nxt = generate_next_market_state(market, create_market_context("m", 1))

        assert nxt.round_number == 2
        assert market.to_dict() == before

    def test_deterministic(self):
        market = create_initial_market_state()

        first = generate_next_market_state(market, create_market_context("m", 1))
        second = generate_next_market_state(market, create_market_context("m", 1))

        assert first.to_dict() == second.to_dict()

    def test_indicators_stay_in_range(self):
        cfg = CONFIG.macro
        market = create_initial_market_state()
        for round_number in range(1, 30):
            market = generate_next_market_state(market, create_market_context("walk", round_number))
            econ = market.economic_conditions
            assert cfg.gdp_range[0] <= econ.gdp <= cfg.gdp_range[1]
            assert cfg.inflation_range[0] <= econ.inflation <= cfg.inflation_range[1]
            assert cfg.confidence_range[0] <= econ.consumer_confidence <= cfg.confidence_range[1]
            assert cfg.fx_volatility_min <= market.fx_volatility <= cfg.fx_volatility_max

    def test_segment_demand_grows(self):
        market = create_initial_market_state()
        nxt = generate_next_market_state(market, create_market_context("m", 1))

        # Budget grows 2% per round
        assert abs(nxt.demand_by_segment["Budget"].total_demand - 500_000 * 1.02) < 1e-6

    def test_recession_cuts_demand(self):
        market = create_initial_market_state()
        recession = RoundEvent(type=MarketEventType.RECESSION)

        calm = generate_next_market_state(market, create_market_context("m", 1))
        hit = generate_next_market_state(market, create_market_context("m", 1), [recession])

        for segment in SEGMENTS:
            expected = calm.demand_by_segment[segment].total_demand * 0.85
            assert abs(hit.demand_by_segment[segment].total_demand - expected) < 1e-6

    def test_event_clamps_indicators(self):
        market = create_initial_market_state()
        market.economic_conditions.gdp = -9.0

        after = apply_market_event(market, RoundEvent(type=MarketEventType.RECESSION), create_market_context("m", 1))

        assert after.economic_conditions.gdp == CONFIG.macro.event_gdp_range[0]
        assert market.economic_conditions.gdp == -9.0

    def test_tech_breakthrough_targets_high_end(self):
        market = create_initial_market_state()
        after = apply_market_event(
            market, RoundEvent(type=MarketEventType.TECH_BREAKTHROUGH), create_market_context("m", 1))

        assert abs(after.demand_by_segment["Enthusiast"].total_demand - 200_000 * 1.25) < 1e-6
        assert abs(after.demand_by_segment["Professional"].total_demand - 100_000 * 1.20) < 1e-6
        assert after.demand_by_segment["Budget"].total_demand == 500_000

    def test_currency_crisis_sets_volatility(self):
        market = create_initial_market_state()
        after = apply_market_event(
            market, RoundEvent(type=MarketEventType.CURRENCY_CRISIS), create_market_context("m", 1))

        assert after.fx_volatility == CONFIG.macro.currency_crisis_volatility
        for pair, rate in market.fx_rates.items():
            assert rate * 0.85 <= after.fx_rates[pair] <= rate * 1.15

    def test_custom_event_applies_only_listed_effects(self):
        market = create_initial_market_state()
        event = RoundEvent(
            type=MarketEventType.CUSTOM,
            effects=[
                EventEffect(MarketEffectTarget.DEMAND_BUDGET, 0.1),
                EventEffect(MarketEffectTarget.GDP, 1.0),
            ],
        )

        after = apply_market_event(market, event, create_market_context("m", 1))

        assert abs(after.demand_by_segment["Budget"].total_demand - 550_000) < 1e-6
        assert abs(after.economic_conditions.gdp - 3.5) < 1e-9
        assert after.demand_by_segment["General"].total_demand == 400_000

    def test_custom_effect_scales_pressure(self):
        market = create_initial_market_state()
        apply_custom_effect(market, MarketEffectTarget.SUSTAINABILITY_PREMIUM, 0.5)

        assert abs(market.market_pressures.sustainability_premium - 0.45) < 1e-9

    def test_every_custom_target_handled(self):
        for target in MarketEffectTarget:
            market = create_initial_market_state()
            apply_custom_effect(market, target, 0.05)
