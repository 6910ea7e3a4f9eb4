"""
Unit tests for round events

Tests cover:
- Parsing events and effect targets from payloads
- Team effects and their clamps
- Team targeting
- Copy-on-write application
"""

import pytest

from engine import create_initial_team_state
from events import (
    EventEffect,
    MarketEffectTarget,
    MarketEventType,
    RoundEvent,
    TeamEffectTarget,
    apply_team_events,
    parse_effect_target,
)


def team_event(target, modifier, target_teams=None):
    return RoundEvent(
        type=MarketEventType.CUSTOM,
        effects=[EventEffect(target, modifier)],
        target_teams=target_teams,
    )


class TestParsing:
    """Test suite for event payload parsing"""

    def test_parse_market_target(self):
        assert parse_effect_target("gdp") is MarketEffectTarget.GDP

    def test_parse_team_target(self):
        assert parse_effect_target("morale") is TeamEffectTarget.MORALE

    def test_unknown_target_rejected(self):
        with pytest.raises(ValueError):
            parse_effect_target("weather")

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValueError):
            RoundEvent.from_dict({"type": "alien_invasion"})

    def test_from_dict(self):
        event = RoundEvent.from_dict({
            "type": "custom",
            "title": "Subsidy",
            "effects": [{"target": "cash", "modifier": 0.1}, {"target": "demand_budget", "modifier": -0.2}],
            "target_teams": ["team-1"],
        })

        assert event.type is MarketEventType.CUSTOM
        assert event.title == "Subsidy"
        assert [e.target for e in event.team_effects] == [TeamEffectTarget.CASH]
        assert [e.target for e in event.market_effects] == [MarketEffectTarget.DEMAND_BUDGET]
        assert event.target_teams == ["team-1"]

    def test_all_means_every_team(self):
        event = RoundEvent.from_dict({"type": "boom", "target_teams": "all"})

        assert event.target_teams is None
        assert event.targets("anyone")


class TestTeamEffects:
    """Test suite for team-level effects"""

    def test_cash_scaled(self):
        state = create_initial_team_state(cash=100_000_000)
        new_state = apply_team_events(state, "t", [team_event(TeamEffectTarget.CASH, -0.1)])

        assert abs(new_state.cash - 90_000_000) < 1e-6

    def test_morale_clamped(self):
        state = create_initial_team_state()
        new_state = apply_team_events(state, "t", [team_event(TeamEffectTarget.MORALE, 1.0)])

        assert new_state.workforce.average_morale == 100.0

    def test_brand_clamped(self):
        state = create_initial_team_state(brand_value=0.8)
        new_state = apply_team_events(state, "t", [team_event(TeamEffectTarget.BRAND_VALUE, 0.5)])

        assert new_state.brand_value == 1.0

    def test_efficiency_clamped_per_factory(self):
        state = create_initial_team_state()
        new_state = apply_team_events(state, "t", [team_event(TeamEffectTarget.EFFICIENCY, -0.99)])

        assert new_state.factories[0].efficiency == 0.1

    def test_esg_is_additive_and_floored(self):
        state = create_initial_team_state()
        raised = apply_team_events(state, "t", [team_event(TeamEffectTarget.ESG_SCORE, 50)])
        crashed = apply_team_events(state, "t", [team_event(TeamEffectTarget.ESG_SCORE, -500)])

        assert raised.esg_score == state.esg_score + 50
        assert crashed.esg_score == 0.0

    def test_untargeted_team_unchanged(self):
        state = create_initial_team_state()
        event = team_event(TeamEffectTarget.CASH, 0.5, target_teams=["team-2"])

        new_state = apply_team_events(state, "team-1", [event])

        assert new_state.cash == state.cash

    def test_market_effects_ignored(self):
        state = create_initial_team_state()
        event = team_event(MarketEffectTarget.GDP, 5.0)

        assert apply_team_events(state, "t", [event]).to_dict() == state.to_dict()

    def test_input_not_mutated(self):
        state = create_initial_team_state()
        before = state.to_dict()

        apply_team_events(state, "t", [team_event(TeamEffectTarget.CASH, 0.5)])

        assert state.to_dict() == before
