"""
Round Orchestrator

process_round drives one round of the simulation for every team:

  1. derive the round's seeds
  2. run each team's collaborator pipeline on a private copy of its state,
     then apply round events aimed at that team
  3. resolve the market once, with every team's post-pipeline state visible
  4. write back revenue, costs, EPS, statements and valuation
  5. rank the teams, evolve the market state and record the audit trail

The caller's team and market states are never mutated.
"""

import logging
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from collaborators import DEFAULT_PIPELINE, Collaborator, ModuleResult, run_stage
from config import CONFIG, SEGMENTS
from context import Context, DeterminismError, SeedBundle, derive_seed_bundle, hash_state
from events import RoundEvent, apply_team_events
from market import (
    ESGEvent,
    Ranking,
    calculate_rankings,
    generate_next_market_state,
    simulate,
)
from models import (
    AllDecisions,
    EconomicConditions,
    Factory,
    InterestRates,
    MarketPressures,
    MarketState,
    PriceRange,
    Product,
    SegmentDemand,
    TeamState,
    Workforce,
    clone_decisions,
    clone_team_state,
)
from statements import compute_total_assets, generate_financial_statements

logger = logging.getLogger(__name__)

Pipeline = Sequence[Tuple[str, Collaborator]]


@dataclass
class TeamInput:
    id: str
    state: TeamState
    decisions: AllDecisions = field(default_factory=AllDecisions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamInput":
        return cls(
            id=data["id"],
            state=TeamState.from_dict(data["state"]),
            decisions=AllDecisions.from_dict(data.get("decisions")),
        )


@dataclass
class RoundInput:
    round_number: int
    teams: List[TeamInput]
    market_state: MarketState
    match_seed: Optional[str] = None
    events: List[RoundEvent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundInput":
        return cls(
            round_number=data["round_number"],
            teams=[TeamInput.from_dict(t) for t in data["teams"]],
            market_state=MarketState.from_dict(data["market_state"]),
            match_seed=data.get("match_seed"),
            events=[RoundEvent.from_dict(e) for e in data.get("events", [])],
        )


@dataclass
class RoundResult:
    round_number: int
    team_id: str
    new_state: TeamState
    module_results: Dict[str, ModuleResult]
    sales_by_segment: Dict[str, int]
    market_share_by_segment: Dict[str, float]
    competitor_actions: List[str]
    total_revenue: float
    total_costs: float
    warranty_cost: float
    net_income: float
    esg_event: Optional[ESGEvent] = None
    rank: int = 0
    eps_rank: int = 0
    market_share_rank: int = 0


@dataclass
class AuditTrail:
    seed_bundle: SeedBundle
    final_state_hashes: Dict[str, str]
    engine_version: str
    schema_version: str


@dataclass
class RoundOutput:
    round_number: int
    results: List[RoundResult]
    new_market_state: MarketState
    rankings: List[Ranking]
    summary_messages: List[str]
    audit_trail: AuditTrail
    rubber_banding_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def result_for(self, team_id: str) -> RoundResult:
        for result in self.results:
            if result.team_id == team_id:
                return result
        raise KeyError(team_id)


@dataclass
class DecisionValidation:
    valid: bool
    errors: List[str]
    corrected_decisions: AllDecisions


@dataclass
class _ProcessedTeam:
    id: str
    opening: TeamState
    state: TeamState
    module_results: Dict[str, ModuleResult]
    event_cash_flow: float


# ============================================================
# Seeds
# ============================================================

def resolve_match_seed(match_seed: Optional[str]) -> str:
    """Return the supplied seed, or a generated one when strict mode is off."""
    if match_seed:
        return match_seed
    if CONFIG.engine.require_match_seed:
        raise DeterminismError("match_seed is required (engine.require_match_seed is enabled)")
    generated = secrets.token_hex(8)
    logger.warning("No match seed supplied, generated %s; this round cannot be replayed "
                   "unless the seed is recorded", generated)
    return generated


# ============================================================
# Valuation
# ============================================================

def calculate_total_costs(module_results: Dict[str, ModuleResult]) -> float:
    return sum(result.costs for result in module_results.values())


def investor_sentiment(state: TeamState) -> float:
    fin = CONFIG.finance
    sentiment = fin.neutral_sentiment
    if state.esg_score > fin.high_esg_sentiment_threshold:
        sentiment += fin.high_esg_sentiment_bonus
    elif state.esg_score < fin.low_esg_sentiment_threshold:
        sentiment -= fin.low_esg_sentiment_penalty
    return max(0.0, min(100.0, sentiment))


def eps_growth(current_eps: float, previous_eps: float) -> float:
    if previous_eps == 0:
        return 0.0
    return (current_eps - previous_eps) / abs(previous_eps)


def calculate_target_pe(state: TeamState, growth: float, sentiment: float) -> float:
    """Base 15, adjusted for growth, sentiment, margin and leverage; clamped to 5-30."""
    fin = CONFIG.finance
    pe = fin.base_pe

    if growth > 0:
        pe += min(10.0, growth * 50)

    pe += (sentiment - fin.neutral_sentiment) / 5

    margin = state.net_income / state.revenue if state.revenue > 0 else 0.0
    if margin > 0.15:
        pe += 3
    elif margin > 0.10:
        pe += 1
    else:
        pe -= 2

    total_debt = state.short_term_debt + state.long_term_debt
    if state.shareholders_equity > 0:
        debt_to_equity = total_debt / state.shareholders_equity
        if debt_to_equity > 1.0:
            pe -= 5
        elif debt_to_equity > 0.6:
            pe -= 2

    low, high = fin.pe_range
    return max(low, min(high, pe))


def update_market_cap(state: TeamState, growth: float, sentiment: float) -> float:
    fin = CONFIG.finance
    if state.eps > 0:
        market_cap = state.eps * state.shares_issued * calculate_target_pe(state, growth, sentiment)
    else:
        price_to_sales = max(fin.min_price_to_sales, 2 + (sentiment - fin.neutral_sentiment) / 25)
        market_cap = state.revenue * price_to_sales

    book_value = state.total_assets - state.total_liabilities
    floor = max(book_value * fin.book_value_floor, state.total_assets * fin.asset_floor)
    return max(floor, market_cap)


# ============================================================
# Round processing
# ============================================================

def _run_pipeline(
    team: TeamInput,
    ctx: Context,
    market_state: MarketState,
    events: Sequence[RoundEvent],
    pipeline: Pipeline,
    summary: List[str],
) -> _ProcessedTeam:
    opening = clone_team_state(team.state)
    state = clone_team_state(team.state)
    state.current_round = ctx.round_number
    module_results: Dict[str, ModuleResult] = {}

    for name, collaborator in pipeline:
        decisions = getattr(team.decisions, name, None)
        output = run_stage(name, collaborator, state, decisions, ctx, market_state)
        state = output.new_state
        module_results[name] = output.result
        summary.extend(f"  {team.id}: {message}" for message in output.result.messages)

    cash_before_events = state.cash
    state = apply_team_events(state, team.id, events)
    return _ProcessedTeam(
        id=team.id,
        opening=opening,
        state=state,
        module_results=module_results,
        event_cash_flow=state.cash - cash_before_events,
    )


def competitor_summary(processed: Sequence[_ProcessedTeam], team_id: str) -> List[str]:
    """Qualitative view of what the other teams did, without numbers."""
    summary = []
    for other in processed:
        if other.id == team_id:
            continue
        results = other.module_results
        if "factory" in results and results["factory"].changes.get("new_factories_built", 0) > 0:
            summary.append("A competitor expanded their manufacturing capacity")
        if "marketing" in results and results["marketing"].changes.get("brand_value_change", 0) > 0.01:
            summary.append("A competitor invested heavily in branding")
        if "rd" in results and results["rd"].changes.get("new_products_started", 0) > 0:
            summary.append("A competitor is developing new products")
    if not summary:
        summary.append("Competitors maintained steady operations")
    return summary


def _write_back(
    team: _ProcessedTeam,
    shares: Dict[str, float],
    revenue: float,
    summary: List[str],
) -> Tuple[float, float]:
    state = team.state
    state.market_share = dict(shares)
    state.revenue = revenue
    state.cash += revenue

    total_costs = calculate_total_costs(team.module_results)
    state.net_income = revenue - total_costs
    state.eps = state.net_income / state.shares_issued if state.shares_issued > 0 else 0.0

    state.total_assets = compute_total_assets(state)
    state.shareholders_equity = state.total_assets - state.total_liabilities

    finance_changes = team.module_results["finance"].changes if "finance" in team.module_results else {}
    try:
        statements = generate_financial_statements(
            state,
            team.opening,
            previous=state.financial_statements,
            expenses_by_module={name: r.costs for name, r in team.module_results.items()},
            buybacks=finance_changes.get("buyback_spent", 0.0),
            dividends=finance_changes.get("dividends_paid", 0.0),
            other_cash_flow=team.event_cash_flow,
        )
    except Exception as exc:
        logger.warning("Could not generate financial statements for %s: %s", team.id, exc)
        summary.append(f"  {team.id}: Warning - could not generate financial statements: {exc}")
    else:
        if not statements.valid:
            logger.warning("Financial statements for %s do not reconcile: %s", team.id, statements.errors)
            summary.append(f"  {team.id}: Financial statement warnings: {', '.join(statements.errors)}")
        state.previous_financial_statements = state.financial_statements
        state.financial_statements = statements.to_dict()

    growth = eps_growth(state.eps, team.opening.eps)
    state.market_cap = update_market_cap(state, growth, investor_sentiment(state))
    state.share_price = state.market_cap / state.shares_issued if state.shares_issued > 0 else 0.0
    return total_costs, state.net_income


def process_round(round_input: RoundInput, pipeline: Pipeline = DEFAULT_PIPELINE) -> RoundOutput:
    """
    Resolve one round for every team.

    Collaborator failures never abort the round: the failing stage reports
    success=False and the team continues from its pre-stage state. Raises
    DeterminismError only when no match seed is given in strict mode.
    """
    round_number = round_input.round_number
    match_seed = resolve_match_seed(round_input.match_seed)
    seeds = derive_seed_bundle(match_seed, round_number)
    market_state = round_input.market_state

    summary = [
        f"=== Processing Round {round_number} ===",
        f"Seed: {seeds.match_seed}, round seed: {seeds.round_seed}",
    ]

    processed: List[_ProcessedTeam] = []
    for team in round_input.teams:
        summary.append(f"Processing team: {team.id}")
        ctx = Context(seeds, round_number, team.id)
        processed.append(_run_pipeline(team, ctx, market_state, round_input.events, pipeline, summary))

    summary.append("Running market simulation...")
    market_ctx = Context(seeds, round_number, CONFIG.engine.market_scope)
    entries = [(team.id, team.state) for team in processed]
    market_result = simulate(
        entries,
        market_state,
        market_ctx,
        apply_rubber_banding=round_number >= CONFIG.rubber_band.start_round,
    )
    if market_result.rubber_banding_applied:
        summary.append("Rubber-banding adjustments applied to balance competition.")
    for team_id, event in market_result.esg_events.items():
        summary.append(f"  {team_id}: {event.message}")

    results: List[RoundResult] = []
    for team in processed:
        total_costs, net_income = _write_back(
            team,
            market_result.market_shares[team.id],
            market_result.revenue_by_team[team.id],
            summary,
        )
        results.append(RoundResult(
            round_number=round_number,
            team_id=team.id,
            new_state=team.state,
            module_results=team.module_results,
            sales_by_segment=market_result.sales_by_team[team.id],
            market_share_by_segment=market_result.market_shares[team.id],
            competitor_actions=competitor_summary(processed, team.id),
            total_revenue=market_result.revenue_by_team[team.id],
            total_costs=total_costs,
            warranty_cost=market_result.warranty_cost_by_team[team.id],
            net_income=net_income,
            esg_event=market_result.esg_events.get(team.id),
        ))

    rankings = calculate_rankings(entries, market_result)
    by_team = {ranking.team_id: ranking for ranking in rankings}
    for result in results:
        ranking = by_team[result.team_id]
        result.rank = ranking.rank
        result.eps_rank = ranking.eps_rank
        result.market_share_rank = ranking.share_rank

    new_market_state = generate_next_market_state(market_state, market_ctx, round_input.events)

    leader = next((r.team_id for r in rankings if r.rank == 1), None)
    summary.append(f"Round {round_number} complete. Leader: {leader}")
    logger.info("Round %d processed for %d teams (leader: %s)", round_number, len(processed), leader)

    return RoundOutput(
        round_number=round_number,
        results=results,
        new_market_state=new_market_state,
        rankings=rankings,
        summary_messages=summary,
        audit_trail=AuditTrail(
            seed_bundle=seeds,
            final_state_hashes={team.id: hash_state(team.state) for team in processed},
            engine_version=CONFIG.engine.engine_version,
            schema_version=CONFIG.engine.schema_version,
        ),
        rubber_banding_applied=market_result.rubber_banding_applied,
    )


# ============================================================
# Decision validation
# ============================================================

def validate_decisions(state: TeamState, decisions: AllDecisions) -> DecisionValidation:
    """
    Check the decision set against the team's cash and known entities.

    Spending is checked in pipeline order against projected cash. Anything
    unaffordable is trimmed in the corrected copy; the input is untouched.
    """
    ops = CONFIG.operations
    errors: List[str] = []
    corrected = clone_decisions(decisions)
    projected = state.cash
    factory_ids = {f.id for f in state.factories}
    product_ids = {p.id for p in state.products}

    for factory_id in list(corrected.factory.efficiency_investments):
        if factory_id not in factory_ids:
            errors.append(f"Unknown factory {factory_id} in efficiency investments")
            del corrected.factory.efficiency_investments[factory_id]
    for factory_id in list(corrected.factory.green_investments):
        if factory_id not in factory_ids:
            errors.append(f"Unknown factory {factory_id} in green investments")
            del corrected.factory.green_investments[factory_id]

    factory_spend = (sum(corrected.factory.efficiency_investments.values())
                     + sum(corrected.factory.green_investments.values()))
    if factory_spend > projected:
        errors.append("Insufficient funds for factory investments")
        corrected.factory.efficiency_investments = {}
        corrected.factory.green_investments = {}
    else:
        projected -= factory_spend

    new_factory_cost = len(corrected.factory.new_factories) * CONFIG.finance.new_factory_cost
    if new_factory_cost > projected:
        affordable = int(max(0.0, projected) // CONFIG.finance.new_factory_cost)
        errors.append("Insufficient funds for new factories")
        corrected.factory.new_factories = corrected.factory.new_factories[:affordable]
        projected -= affordable * CONFIG.finance.new_factory_cost
    else:
        projected -= new_factory_cost

    budget = int(max(0.0, projected) // ops.hiring_cost)
    requested = sum(max(0, n) for n in corrected.hr.hires.values())
    if requested > budget:
        errors.append("Insufficient funds for all planned hires")
        trimmed = {}
        for role, count in corrected.hr.hires.items():
            allowed = min(max(0, count), budget)
            trimmed[role] = allowed
            budget -= allowed
        corrected.hr.hires = trimmed
    projected -= sum(corrected.hr.hires.values()) * ops.hiring_cost

    if corrected.rd.rd_budget is not None and corrected.rd.rd_budget < 0:
        errors.append("R&D budget cannot be negative")
        corrected.rd.rd_budget = None
    for improvement in corrected.rd.product_improvements:
        if improvement.product_id not in product_ids:
            errors.append(f"Unknown product {improvement.product_id} in improvements")
    corrected.rd.product_improvements = [
        i for i in corrected.rd.product_improvements if i.product_id in product_ids]

    marketing_spend = sum(corrected.marketing.advertising_budget.values()) + corrected.marketing.branding_investment
    if marketing_spend > 0 and marketing_spend > projected:
        errors.append("Insufficient funds for marketing spend")
        # Scale every line down by the same factor to fit what is left
        scale = max(0.0, projected) / marketing_spend
        corrected.marketing.advertising_budget = {
            segment: amount * scale for segment, amount in corrected.marketing.advertising_budget.items()}
        corrected.marketing.branding_investment *= scale
        marketing_spend *= scale
    projected -= marketing_spend

    for change in corrected.marketing.product_pricing:
        if change.new_price <= 0:
            errors.append(f"Price for {change.product_id} must be positive")
    corrected.marketing.product_pricing = [c for c in corrected.marketing.product_pricing if c.new_price > 0]

    for promotion in corrected.marketing.promotions:
        if not (0 < promotion.discount_percent < 100):
            errors.append(f"Promotion discount for {promotion.segment} must be between 0 and 100")
    corrected.marketing.promotions = [
        p for p in corrected.marketing.promotions if 0 < p.discount_percent < 100]

    if corrected.finance.shares_buyback > max(0.0, projected):
        errors.append("Insufficient funds for share buyback")
        corrected.finance.shares_buyback = 0.0

    return DecisionValidation(valid=not errors, errors=errors, corrected_decisions=corrected)


# ============================================================
# Initial states and reports
# ============================================================

def _starter_products() -> List[Product]:
    ops = CONFIG.operations
    specs = [
        ("General", 450.0, 65.0, 50.0),
        ("Budget", 200.0, 50.0, 30.0),
        ("Enthusiast", 800.0, 80.0, 70.0),
        ("Professional", 1250.0, 90.0, 85.0),
        ("Active Lifestyle", 600.0, 70.0, 60.0),
    ]
    products = []
    for segment, price, quality, features in specs:
        slug = segment.lower().replace(" ", "-")
        unit_cost = (ops.raw_material_cost_per_unit[segment] + ops.labor_cost_per_unit
                     + ops.overhead_cost_per_unit + (quality - 50) * 0.5)
        products.append(Product(
            id=f"initial-product-{slug}",
            name=f"{segment} Phone",
            segment=segment,
            price=price,
            quality=quality,
            features=features,
            unit_cost=unit_cost,
        ))
    return products


def create_initial_team_state(
    cash: Optional[float] = None,
    brand_value: float = 0.5,
    include_products: bool = True,
) -> TeamState:
    starting_cash = CONFIG.finance.default_starting_cash if cash is None else cash
    factory = Factory(id="initial-factory-1", name="Main Factory", region="North America")
    state = TeamState(
        cash=starting_cash,
        products=_starter_products() if include_products else [],
        factories=[factory],
        workforce=Workforce(),
        brand_value=brand_value,
    )
    state.total_assets = compute_total_assets(state)
    state.shareholders_equity = state.total_assets
    return state


def create_initial_market_state() -> MarketState:
    def demand(total: float, low: float, high: float, growth: float) -> SegmentDemand:
        return SegmentDemand(total_demand=total, price_range=PriceRange(min=low, max=high), growth_rate=growth)

    return MarketState(
        round_number=1,
        economic_conditions=EconomicConditions(),
        fx_rates={"EUR/USD": 1.10, "GBP/USD": 1.27, "JPY/USD": 0.0067, "CNY/USD": 0.14},
        interest_rates=InterestRates(),
        demand_by_segment={
            "Budget": demand(500_000, 100, 300, 0.02),
            "General": demand(400_000, 300, 600, 0.03),
            "Enthusiast": demand(200_000, 600, 1000, 0.04),
            "Professional": demand(100_000, 1000, 1500, 0.02),
            "Active Lifestyle": demand(150_000, 400, 800, 0.05),
        },
        market_pressures=MarketPressures(),
        fx_volatility=CONFIG.macro.fx_volatility_min,
    )


def generate_round_report(output: RoundOutput) -> str:
    """Plain-text summary of a processed round."""
    lines = [f"Round {output.round_number} Report", "=" * 60]
    lines.append(f"{'Team':<12}{'Revenue':>14}{'Net Income':>14}{'EPS':>9}{'Rank':>6}{'EPS#':>6}{'Share#':>8}")
    for result in sorted(output.results, key=lambda r: r.rank):
        lines.append(
            f"{result.team_id:<12}"
            f"{result.total_revenue / 1_000_000:>13.1f}M"
            f"{result.net_income / 1_000_000:>13.1f}M"
            f"{result.new_state.eps:>9.2f}"
            f"{result.rank:>6}{result.eps_rank:>6}{result.market_share_rank:>8}"
        )

    lines.append("")
    lines.append("Market share by segment:")
    for segment in SEGMENTS:
        shares = ", ".join(
            f"{r.team_id} {r.market_share_by_segment.get(segment, 0.0) * 100:.1f}%" for r in output.results)
        lines.append(f"  {segment:<17}{shares}")

    econ = output.new_market_state.economic_conditions
    lines.append("")
    lines.append(
        f"Next round economy: GDP {econ.gdp:.2f}%, inflation {econ.inflation:.2f}%, "
        f"confidence {econ.consumer_confidence:.1f}, unemployment {econ.unemployment_rate:.2f}%"
    )
    return "\n".join(lines)
