"""
Market Allocation Engine

Resolves competition between every team at once: segment demand,
per-team competitive scores, softmax share allocation, catch-up
adjustment (rubber-banding), ESG revenue effects, rankings and the
evolution of the shared market state into the next round.

All functions are pure over their inputs. Randomness comes exclusively
from the "market" substream of the Context passed in.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from config import CONFIG, REGIONS, SEGMENTS
from context import Context, require_context
from events import MarketEffectTarget, MarketEventType, RoundEvent
from models import MarketState, Product, TeamState, clone_market_state

logger = logging.getLogger(__name__)

TeamEntry = Tuple[str, TeamState]

DEFAULT_REGION = "North America"


@dataclass(slots=True)
class TeamMarketPosition:
    """Ephemeral (team, segment) result for one round."""

    team_id: str
    segment: str
    product: Optional[Product]
    price_score: float = 0.0
    quality_score: float = 0.0
    brand_score: float = 0.0
    esg_score: float = 0.0
    feature_score: float = 0.0
    total_score: float = 0.0
    market_share: float = 0.0
    units_sold: int = 0
    revenue: float = 0.0
    warranty_cost: float = 0.0


@dataclass(slots=True)
class ESGEvent:
    type: str
    amount: float
    penalty_rate: float
    message: str


@dataclass
class MarketSimulationResult:
    positions: List[TeamMarketPosition]
    total_demand: Dict[str, int]
    market_shares: Dict[str, Dict[str, float]]  # team -> segment -> share (after rubber-banding)
    allocated_shares: Dict[str, Dict[str, float]]  # team -> segment -> share (softmax output)
    sales_by_team: Dict[str, Dict[str, int]]
    revenue_by_team: Dict[str, float]
    revenue_by_region: Dict[str, Dict[str, float]]
    warranty_cost_by_team: Dict[str, float]
    rubber_banding_applied: bool = False
    rubber_band_multipliers: Dict[str, float] = field(default_factory=dict)
    esg_events: Dict[str, ESGEvent] = field(default_factory=dict)


@dataclass(slots=True)
class Ranking:
    team_id: str
    rank: int
    eps_rank: int
    share_rank: int


# ============================================================
# Demand
# ============================================================

def calculate_demand(market_state: MarketState, ctx: Context) -> Dict[str, int]:
    """Unit demand per segment, adjusted by the economy and +/-5% noise."""
    ctx = require_context(ctx, "calculate_demand")
    cfg = CONFIG.market
    econ = market_state.economic_conditions

    gdp_factor = 1 + econ.gdp / 100
    confidence_factor = econ.consumer_confidence / cfg.confidence_reference
    inflation_factor = 1 - (econ.inflation / 100) * cfg.inflation_demand_sensitivity

    demand: Dict[str, int] = {}
    for segment in SEGMENTS:
        segment_data = market_state.demand_by_segment[segment]
        growth_factor = 1 + segment_data.growth_rate
        noise = cfg.demand_noise_min + ctx.random("market") * cfg.demand_noise_span
        adjusted = (segment_data.total_demand * gdp_factor * confidence_factor
                    * inflation_factor * growth_factor * noise)
        demand[segment] = max(0, math.floor(adjusted))
    return demand


# ============================================================
# Scoring
# ============================================================

def get_segment_weights(segment: str) -> Dict[str, float]:
    return CONFIG.market.segment_weights[segment]


def get_quality_expectation(segment: str) -> float:
    return CONFIG.market.quality_expectations[segment]


def price_elasticity(segment: str) -> float:
    return CONFIG.market.price_elasticities[segment]


def diminishing_multiplier(ratio: float) -> float:
    """Linear up to 1.0, square-root dampened above, capped."""
    cfg = CONFIG.market
    if ratio <= 1.0:
        multiplier = ratio
    else:
        multiplier = 1.0 + math.sqrt(ratio - 1.0) * cfg.excess_ratio_factor
    return min(cfg.score_multiplier_cap, multiplier)


def price_floor_multiplier(price: float, segment_min: float) -> float:
    """1.0 unless the price sits more than the threshold fraction below the floor."""
    cfg = CONFIG.market
    if price >= segment_min:
        return 1.0
    below_min = segment_min - price
    floor_threshold = segment_min * cfg.price_floor_penalty_threshold
    if floor_threshold <= 0 or below_min <= floor_threshold:
        return 1.0
    penalty_scale = min(1.0, (below_min - floor_threshold) / floor_threshold)
    return 1.0 - penalty_scale * cfg.price_floor_penalty_max


def calculate_price_score(product: Product, segment: str, market_state: MarketState) -> float:
    cfg = CONFIG.market
    weight = get_segment_weights(segment)["price"]
    price_range = market_state.demand_by_segment[segment].price_range

    # Quality buys pricing headroom above the nominal max
    adjusted_max = price_range.max * (1 + product.quality * cfg.quality_price_tolerance)
    adjusted_width = adjusted_max - price_range.min
    if adjusted_width > 0:
        position = max(0.0, (adjusted_max - product.price) / adjusted_width)
    else:
        position = 0.5

    return min(1.0, position) * weight * price_floor_multiplier(product.price, price_range.min)


def calculate_team_position(
    team_id: str,
    state: TeamState,
    product: Optional[Product],
    segment: str,
    market_state: MarketState,
) -> TeamMarketPosition:
    """Score one product of one team in one segment (zero without a product)."""
    if product is None:
        return TeamMarketPosition(team_id=team_id, segment=segment, product=None)

    cfg = CONFIG.market
    weights = get_segment_weights(segment)

    price_score = calculate_price_score(product, segment, market_state)

    quality_ratio = product.quality / get_quality_expectation(segment)
    quality_score = diminishing_multiplier(quality_ratio) * weights["quality"]

    brand_score = math.sqrt(state.brand_value) * weights["brand"]

    esg_ratio = state.esg_score / CONFIG.esg.score_scale
    esg_score = esg_ratio * market_state.market_pressures.sustainability_premium * weights["esg"]

    feature_ratio = product.features / cfg.feature_reference
    feature_score = diminishing_multiplier(feature_ratio) * weights["features"]

    total = price_score + quality_score + brand_score + esg_score + feature_score
    total += product.quality * cfg.quality_share_bonus_per_point

    return TeamMarketPosition(
        team_id=team_id,
        segment=segment,
        product=product,
        price_score=price_score,
        quality_score=quality_score,
        brand_score=brand_score,
        esg_score=esg_score,
        feature_score=feature_score,
        total_score=total,
    )


def best_team_position(team_id: str, state: TeamState, segment: str, market_state: MarketState) -> TeamMarketPosition:
    """A team competes in a segment with its strongest launched/ready product."""
    best = calculate_team_position(team_id, state, None, segment, market_state)
    for product in state.competing_products(segment):
        candidate = calculate_team_position(team_id, state, product, segment, market_state)
        if best.product is None or candidate.total_score > best.total_score:
            best = candidate
    return best


# ============================================================
# Allocation
# ============================================================

def softmax_shares(scores: Sequence[float], temperature: Optional[float] = None) -> List[float]:
    """
    Convert scores to shares summing to 1.

    Zero scores are excluded from the softmax; if every score is zero the
    segment splits evenly.
    """
    if temperature is None:
        temperature = CONFIG.market.softmax_temperature
    values = np.asarray(scores, dtype=np.float64)
    if values.size == 0:
        return []

    valid = values > 0
    if not valid.any():
        return [1.0 / values.size] * values.size

    # Subtract the max for numerical stability
    shifted = np.where(valid, (values - values[valid].max()) / temperature, -np.inf)
    exp_scores = np.exp(shifted)
    total = exp_scores.sum()
    if total == 0:
        return [1.0 / values.size] * values.size
    return (exp_scores / total).tolist()


def calculate_market_shares(positions: Sequence[TeamMarketPosition]) -> List[float]:
    return softmax_shares([p.total_score for p in positions])


def _primary_factory_region(state: TeamState) -> str:
    # TODO: match the producing factory to the product's production line once lines are modeled
    return state.factories[0].region if state.factories else DEFAULT_REGION


def settle_position(position: TeamMarketPosition, demand: int, state: TeamState) -> None:
    """Derive units, revenue and warranty cost from the position's share."""
    product = position.product
    units = math.floor(demand * position.market_share) if product else 0
    position.units_sold = units
    position.revenue = units * product.price if product else 0.0
    position.warranty_cost = 0.0
    if product and units > 0 and state.factories:
        factory = state.factories[0]
        effective_defect_rate = factory.defect_rate * (1 - factory.warranty_reduction)
        position.warranty_cost = units * effective_defect_rate * product.unit_cost


# ============================================================
# ESG and rubber-banding
# ============================================================

def apply_esg_events(esg_score: float, revenue: float) -> Optional[ESGEvent]:
    """
    Revenue penalty for ESG scores below the threshold; None otherwise.

    penalty_rate = 8% - (score / 300) * 7%, so score 0 costs 8% of revenue
    and a score just under 300 costs about 1%.
    """
    cfg = CONFIG.esg
    if esg_score >= cfg.penalty_threshold:
        return None

    score_ratio = max(0.0, esg_score) / cfg.penalty_threshold
    penalty_rate = cfg.penalty_max - score_ratio * (cfg.penalty_max - cfg.penalty_min)
    penalty = -revenue * penalty_rate
    return ESGEvent(
        type="penalty",
        amount=penalty,
        penalty_rate=penalty_rate,
        message=(f"ESG crisis (boycotts/fines): -{penalty_rate * 100:.1f}% revenue "
                 f"(${abs(penalty) / 1_000_000:.1f}M)"),
    )


def average_shares(market_shares: Dict[str, Dict[str, float]]) -> Dict[str, float]:
    return {
        team_id: sum(shares.get(s, 0.0) for s in SEGMENTS) / len(SEGMENTS)
        for team_id, shares in market_shares.items()
    }


def rubber_band_multipliers(
    market_shares: Dict[str, Dict[str, float]],
    round_number: int,
    enabled: bool,
) -> Dict[str, float]:
    """
    Multipliers for teams outside the catch-up band; empty when inactive.

    Shares are not renormalized after the boost, so a segment total can
    exceed 1 once this runs.
    """
    cfg = CONFIG.rubber_band
    if not enabled or round_number < cfg.start_round or not market_shares:
        return {}

    team_averages = average_shares(market_shares)
    cross_team_average = sum(team_averages.values()) / len(team_averages)
    if cross_team_average <= 0:
        return {}

    # The gap gate is fixed at half/twice the average; the per-team thresholds are configurable
    needs_adjustment = any(
        avg < cross_team_average * 0.5 or avg > cross_team_average * 2
        for avg in team_averages.values()
    )
    if not needs_adjustment:
        return {}

    multipliers: Dict[str, float] = {}
    for team_id, avg in team_averages.items():
        if avg < cross_team_average * cfg.trailing_threshold:
            multipliers[team_id] = cfg.trailing_boost
        elif avg > cross_team_average * cfg.leading_threshold:
            multipliers[team_id] = cfg.leading_penalty
    return multipliers


# ============================================================
# Round simulation
# ============================================================

def simulate(
    teams: Sequence[TeamEntry],
    market_state: MarketState,
    ctx: Context,
    apply_rubber_banding: bool = False,
) -> MarketSimulationResult:
    """Resolve one round of competition across every team and segment."""
    ctx = require_context(ctx, "market simulation")
    states = {team_id: state for team_id, state in teams}

    total_demand = calculate_demand(market_state, ctx)

    positions: List[TeamMarketPosition] = []
    by_key: Dict[Tuple[str, str], TeamMarketPosition] = {}
    allocated: Dict[str, Dict[str, float]] = {team_id: {} for team_id, _ in teams}

    for segment in SEGMENTS:
        segment_positions = [
            best_team_position(team_id, state, segment, market_state)
            for team_id, state in teams
        ]
        shares = calculate_market_shares(segment_positions)
        for position, share in zip(segment_positions, shares):
            position.market_share = share
            allocated[position.team_id][segment] = share
            by_key[(position.team_id, segment)] = position
            positions.append(position)

    market_shares = {team_id: dict(shares) for team_id, shares in allocated.items()}

    multipliers = rubber_band_multipliers(allocated, market_state.round_number, apply_rubber_banding)
    for team_id, multiplier in multipliers.items():
        for segment in SEGMENTS:
            position = by_key[(team_id, segment)]
            position.market_share *= multiplier
            market_shares[team_id][segment] = position.market_share
    if multipliers:
        logger.info("Rubber-banding applied in round %d: %s", market_state.round_number, multipliers)

    # Units, revenue and warranty are always derived from the final shares
    sales_by_team: Dict[str, Dict[str, int]] = {team_id: {} for team_id, _ in teams}
    revenue_by_team: Dict[str, float] = {team_id: 0.0 for team_id, _ in teams}
    warranty_by_team: Dict[str, float] = {team_id: 0.0 for team_id, _ in teams}
    revenue_by_region: Dict[str, Dict[str, float]] = {
        team_id: {region: 0.0 for region in REGIONS} for team_id, _ in teams
    }
    for position in positions:
        state = states[position.team_id]
        settle_position(position, total_demand[position.segment], state)
        sales_by_team[position.team_id][position.segment] = position.units_sold
        revenue_by_team[position.team_id] += position.revenue
        warranty_by_team[position.team_id] += position.warranty_cost
        if position.revenue > 0:
            revenue_by_region[position.team_id][_primary_factory_region(state)] += position.revenue

    esg_events: Dict[str, ESGEvent] = {}
    for team_id, state in teams:
        event = apply_esg_events(state.esg_score, revenue_by_team[team_id])
        if event is not None:
            esg_events[team_id] = event
            revenue_by_team[team_id] += event.amount

    return MarketSimulationResult(
        positions=positions,
        total_demand=total_demand,
        market_shares=market_shares,
        allocated_shares=allocated,
        sales_by_team=sales_by_team,
        revenue_by_team=revenue_by_team,
        revenue_by_region=revenue_by_region,
        warranty_cost_by_team=warranty_by_team,
        rubber_banding_applied=bool(multipliers),
        rubber_band_multipliers=multipliers,
        esg_events=esg_events,
    )


# ============================================================
# Rankings
# ============================================================

def calculate_rankings(teams: Sequence[TeamEntry], result: MarketSimulationResult) -> List[Ranking]:
    """Three independent orderings; stable sorts break ties by input order."""
    order = [team_id for team_id, _ in teams]
    eps = {team_id: state.eps for team_id, state in teams}
    total_share = {team_id: sum(result.market_shares[team_id].values()) for team_id in order}

    by_revenue = sorted(order, key=lambda t: result.revenue_by_team[t], reverse=True)
    by_eps = sorted(order, key=lambda t: eps[t], reverse=True)
    by_share = sorted(order, key=lambda t: total_share[t], reverse=True)

    return [
        Ranking(
            team_id=team_id,
            rank=by_revenue.index(team_id) + 1,
            eps_rank=by_eps.index(team_id) + 1,
            share_rank=by_share.index(team_id) + 1,
        )
        for team_id in order
    ]


# ============================================================
# Next-round evolution
# ============================================================

def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


def _walk(ctx: Context, amplitude: float) -> float:
    return (ctx.random("market") - 0.5) * amplitude


def generate_next_market_state(
    current: MarketState,
    ctx: Context,
    events: Optional[Sequence[RoundEvent]] = None,
) -> MarketState:
    """Advance the round, drift the macro indicators and apply any events."""
    ctx = require_context(ctx, "generate_next_market_state")
    cfg = CONFIG.macro
    state = clone_market_state(current)
    state.round_number += 1

    econ = state.economic_conditions
    econ.gdp = _clamp(econ.gdp + _walk(ctx, cfg.gdp_walk), cfg.gdp_range)
    econ.inflation = _clamp(econ.inflation + _walk(ctx, cfg.inflation_walk), cfg.inflation_range)
    econ.consumer_confidence = _clamp(
        econ.consumer_confidence + _walk(ctx, cfg.confidence_walk), cfg.confidence_range)
    econ.unemployment_rate = _clamp(
        econ.unemployment_rate + _walk(ctx, cfg.unemployment_walk), cfg.unemployment_range)

    state.fx_volatility = ctx.uniform("market", cfg.fx_volatility_min, cfg.fx_volatility_max)
    for pair in sorted(state.fx_rates):
        state.fx_rates[pair] *= 1 + _walk(ctx, state.fx_volatility)

    rates = state.interest_rates
    if econ.inflation > cfg.rate_hike_inflation:
        rates.federal_rate += cfg.rate_step
    elif econ.inflation < cfg.rate_cut_inflation:
        rates.federal_rate -= cfg.rate_step
    rates.federal_rate = _clamp(rates.federal_rate, cfg.federal_rate_range)
    rates.ten_year_bond = rates.federal_rate + cfg.ten_year_spread
    rates.corporate_bond = rates.federal_rate + cfg.corporate_spread

    for segment in SEGMENTS:
        demand = state.demand_by_segment[segment]
        demand.total_demand *= 1 + demand.growth_rate

    pressures = state.market_pressures
    pressures.price_competition = _clamp(
        pressures.price_competition + _walk(ctx, cfg.price_competition_walk), cfg.price_competition_range)
    pressures.quality_expectations = _clamp(
        pressures.quality_expectations + cfg.quality_expectation_drift, cfg.quality_expectation_range)
    pressures.sustainability_premium = _clamp(
        pressures.sustainability_premium + cfg.sustainability_drift, cfg.sustainability_range)

    for event in events or ():
        state = apply_market_event(state, event, ctx)
    return state


def _scale_demand(state: MarketState, factor: float, segments: Sequence[str] = SEGMENTS) -> None:
    for segment in segments:
        state.demand_by_segment[segment].total_demand *= factor


def _recession(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    econ = state.economic_conditions
    econ.gdp -= 2
    econ.consumer_confidence -= 15
    econ.unemployment_rate += 1.5
    _scale_demand(state, 0.85)


def _boom(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    econ = state.economic_conditions
    econ.gdp += 2
    econ.consumer_confidence += 10
    econ.unemployment_rate -= 0.5
    _scale_demand(state, 1.15)


def _inflation_spike(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    state.economic_conditions.inflation += 3
    state.interest_rates.federal_rate += 0.75
    state.economic_conditions.consumer_confidence -= 8


def _tech_breakthrough(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    _scale_demand(state, 1.25, ["Enthusiast"])
    _scale_demand(state, 1.20, ["Professional"])
    state.market_pressures.quality_expectations += 0.05


def _sustainability_regulation(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    state.market_pressures.sustainability_premium += 0.15


def _price_war(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    state.market_pressures.price_competition += 0.2
    _scale_demand(state, 1.15, ["Budget"])


def _supply_chain_crisis(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    _scale_demand(state, 0.9)


def _currency_crisis(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    state.fx_volatility = CONFIG.macro.currency_crisis_volatility
    for pair in sorted(state.fx_rates):
        state.fx_rates[pair] *= 0.85 + ctx.random("market") * 0.3


def _custom(state: MarketState, event: RoundEvent, ctx: Context) -> None:
    for effect in event.market_effects:
        apply_custom_effect(state, effect.target, effect.modifier)


MARKET_EVENT_HANDLERS: Dict[MarketEventType, Callable[[MarketState, RoundEvent, Context], None]] = {
    MarketEventType.RECESSION: _recession,
    MarketEventType.BOOM: _boom,
    MarketEventType.INFLATION_SPIKE: _inflation_spike,
    MarketEventType.TECH_BREAKTHROUGH: _tech_breakthrough,
    MarketEventType.SUSTAINABILITY_REGULATION: _sustainability_regulation,
    MarketEventType.PRICE_WAR: _price_war,
    MarketEventType.SUPPLY_CHAIN_CRISIS: _supply_chain_crisis,
    MarketEventType.CURRENCY_CRISIS: _currency_crisis,
    MarketEventType.CUSTOM: _custom,
}

if set(MARKET_EVENT_HANDLERS) != set(MarketEventType):
    raise RuntimeError("every MarketEventType needs a handler")


def apply_market_event(state: MarketState, event: RoundEvent, ctx: Context) -> MarketState:
    """Return a copy of state with the event applied and indicators re-clamped."""
    cfg = CONFIG.macro
    new_state = clone_market_state(state)
    MARKET_EVENT_HANDLERS[event.type](new_state, event, ctx)

    econ = new_state.economic_conditions
    econ.gdp = _clamp(econ.gdp, cfg.event_gdp_range)
    econ.inflation = _clamp(econ.inflation, cfg.event_inflation_range)
    econ.consumer_confidence = _clamp(econ.consumer_confidence, cfg.event_confidence_range)
    econ.unemployment_rate = _clamp(econ.unemployment_rate, cfg.event_unemployment_range)
    pressures = new_state.market_pressures
    pressures.price_competition = _clamp(pressures.price_competition, cfg.event_price_competition_range)
    pressures.quality_expectations = _clamp(pressures.quality_expectations, cfg.event_quality_expectation_range)
    pressures.sustainability_premium = _clamp(pressures.sustainability_premium, cfg.event_sustainability_range)
    return new_state


_DEMAND_TARGETS = {
    MarketEffectTarget.DEMAND_BUDGET: "Budget",
    MarketEffectTarget.DEMAND_GENERAL: "General",
    MarketEffectTarget.DEMAND_ENTHUSIAST: "Enthusiast",
    MarketEffectTarget.DEMAND_PROFESSIONAL: "Professional",
    MarketEffectTarget.DEMAND_ACTIVE: "Active Lifestyle",
}


def _add_gdp(state: MarketState, modifier: float) -> None:
    state.economic_conditions.gdp += modifier


def _add_inflation(state: MarketState, modifier: float) -> None:
    state.economic_conditions.inflation += modifier


def _add_confidence(state: MarketState, modifier: float) -> None:
    state.economic_conditions.consumer_confidence += modifier


def _add_unemployment(state: MarketState, modifier: float) -> None:
    state.economic_conditions.unemployment_rate += modifier


def _scale_price_competition(state: MarketState, modifier: float) -> None:
    state.market_pressures.price_competition *= 1 + modifier


def _scale_sustainability(state: MarketState, modifier: float) -> None:
    state.market_pressures.sustainability_premium *= 1 + modifier


def _demand_handler(segment: str) -> Callable[[MarketState, float], None]:
    def scale(state: MarketState, modifier: float) -> None:
        state.demand_by_segment[segment].total_demand *= 1 + modifier
    return scale


CUSTOM_EFFECT_HANDLERS: Dict[MarketEffectTarget, Callable[[MarketState, float], None]] = {
    MarketEffectTarget.GDP: _add_gdp,
    MarketEffectTarget.INFLATION: _add_inflation,
    MarketEffectTarget.CONSUMER_CONFIDENCE: _add_confidence,
    MarketEffectTarget.UNEMPLOYMENT: _add_unemployment,
    MarketEffectTarget.PRICE_COMPETITION: _scale_price_competition,
    MarketEffectTarget.SUSTAINABILITY_PREMIUM: _scale_sustainability,
    **{target: _demand_handler(segment) for target, segment in _DEMAND_TARGETS.items()},
}

if set(CUSTOM_EFFECT_HANDLERS) != set(MarketEffectTarget):
    raise RuntimeError("every MarketEffectTarget needs a handler")


def apply_custom_effect(state: MarketState, target: MarketEffectTarget, modifier: float) -> None:
    """Mutates state in place; callers pass an owned copy."""
    CUSTOM_EFFECT_HANDLERS[target](state, modifier)
