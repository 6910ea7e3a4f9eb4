"""
Round-scoped events.

Events are a closed vocabulary: the event kind and every effect target are
enums, so an unknown kind or target is rejected when the event is parsed
rather than silently ignored mid-round. Market-level effects are applied
by market.apply_market_event; team-level effects are applied here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from config import CONFIG
from models import TeamState, clone_team_state


class MarketEventType(str, Enum):
    RECESSION = "recession"
    BOOM = "boom"
    INFLATION_SPIKE = "inflation_spike"
    TECH_BREAKTHROUGH = "tech_breakthrough"
    SUSTAINABILITY_REGULATION = "sustainability_regulation"
    PRICE_WAR = "price_war"
    SUPPLY_CHAIN_CRISIS = "supply_chain_crisis"
    CURRENCY_CRISIS = "currency_crisis"
    CUSTOM = "custom"  # Only the listed effects apply


class MarketEffectTarget(str, Enum):
    GDP = "gdp"
    INFLATION = "inflation"
    CONSUMER_CONFIDENCE = "consumer_confidence"
    UNEMPLOYMENT = "unemployment"
    PRICE_COMPETITION = "price_competition"
    SUSTAINABILITY_PREMIUM = "sustainability_premium"
    DEMAND_BUDGET = "demand_budget"
    DEMAND_GENERAL = "demand_general"
    DEMAND_ENTHUSIAST = "demand_enthusiast"
    DEMAND_PROFESSIONAL = "demand_professional"
    DEMAND_ACTIVE = "demand_active"


class TeamEffectTarget(str, Enum):
    EFFICIENCY = "efficiency"
    MORALE = "morale"
    BRAND_VALUE = "brand_value"
    CASH = "cash"
    ESG_SCORE = "esg_score"


EffectTarget = Union[MarketEffectTarget, TeamEffectTarget]


def parse_effect_target(name: str) -> EffectTarget:
    for enum_cls in (MarketEffectTarget, TeamEffectTarget):
        try:
            return enum_cls(name)
        except ValueError:
            continue
    valid = [t.value for t in MarketEffectTarget] + [t.value for t in TeamEffectTarget]
    raise ValueError(f"unknown effect target {name!r}, expected one of {valid}")


@dataclass(frozen=True)
class EventEffect:
    target: EffectTarget
    modifier: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventEffect":
        return cls(target=parse_effect_target(data["target"]), modifier=float(data["modifier"]))


@dataclass
class RoundEvent:
    """A one-off event for this round; target_teams=None means every team."""

    type: MarketEventType
    title: str = ""
    description: str = ""
    effects: List[EventEffect] = field(default_factory=list)
    target_teams: Optional[List[str]] = None

    def targets(self, team_id: str) -> bool:
        return self.target_teams is None or team_id in self.target_teams

    @property
    def team_effects(self) -> List[EventEffect]:
        return [e for e in self.effects if isinstance(e.target, TeamEffectTarget)]

    @property
    def market_effects(self) -> List[EventEffect]:
        return [e for e in self.effects if isinstance(e.target, MarketEffectTarget)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundEvent":
        target_teams = data.get("target_teams")
        if target_teams == "all":
            target_teams = None
        return cls(
            type=MarketEventType(data["type"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            effects=[EventEffect.from_dict(e) for e in data.get("effects", [])],
            target_teams=list(target_teams) if target_teams is not None else None,
        )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _efficiency(state: TeamState, modifier: float) -> None:
    ops = CONFIG.operations
    for factory in state.factories:
        factory.efficiency = _clamp(factory.efficiency * (1 + modifier), ops.min_efficiency, ops.max_efficiency)


def _morale(state: TeamState, modifier: float) -> None:
    state.workforce.average_morale = _clamp(state.workforce.average_morale * (1 + modifier), 0.0, 100.0)


def _brand_value(state: TeamState, modifier: float) -> None:
    state.brand_value = _clamp(state.brand_value * (1 + modifier), 0.0, 1.0)


def _cash(state: TeamState, modifier: float) -> None:
    state.cash *= (1 + modifier)


def _esg_score(state: TeamState, modifier: float) -> None:
    state.esg_score = max(0.0, state.esg_score + modifier)


TEAM_EFFECT_HANDLERS: Dict[TeamEffectTarget, Callable[[TeamState, float], None]] = {
    TeamEffectTarget.EFFICIENCY: _efficiency,
    TeamEffectTarget.MORALE: _morale,
    TeamEffectTarget.BRAND_VALUE: _brand_value,
    TeamEffectTarget.CASH: _cash,
    TeamEffectTarget.ESG_SCORE: _esg_score,
}

if set(TEAM_EFFECT_HANDLERS) != set(TeamEffectTarget):
    raise RuntimeError("every TeamEffectTarget needs a handler")


def apply_team_events(state: TeamState, team_id: str, events: Sequence[RoundEvent]) -> TeamState:
    """Return a copy of state with every team effect targeting team_id applied."""
    new_state = clone_team_state(state)
    for event in events:
        if not event.targets(team_id):
            continue
        for effect in event.team_effects:
            TEAM_EFFECT_HANDLERS[effect.target](new_state, effect.modifier)
    return new_state
