"""
Collaborator Modules

The per-team decision pipeline that runs before market allocation:
materials settlement, factory, HR, R&D, marketing and finance. Each
collaborator takes the output state of the previous one and returns a
StageOutput; none of them touch another team's state.

The orchestrator calls every collaborator through run_stage, so an
exception inside one stage turns into a failed ModuleResult and the
team's state for that stage rolls back to its pre-stage value.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

from config import CONFIG
from context import Context
from models import (
    EMPLOYEE_ROLES,
    FactoryDecisions,
    FinanceDecisions,
    Factory,
    HRDecisions,
    MarketingDecisions,
    MarketState,
    MaterialsDecisions,
    Product,
    RDDecisions,
    TeamState,
    clone_team_state,
)

logger = logging.getLogger(__name__)


@dataclass
class ModuleResult:
    success: bool = True
    changes: Dict[str, Any] = field(default_factory=dict)
    costs: float = 0.0
    revenue: float = 0.0
    messages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StageOutput:
    new_state: TeamState
    result: ModuleResult


Collaborator = Callable[[TeamState, Any, Context, MarketState], StageOutput]


def _millions(amount: float) -> str:
    return f"${amount / 1_000_000:.1f}M"


def run_stage(
    name: str,
    collaborator: Collaborator,
    state: TeamState,
    decisions: Any,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    """Run one collaborator; any exception becomes a failed result and a rollback."""
    try:
        return collaborator(state, decisions, ctx, market_state)
    except Exception as exc:
        logger.error("Stage %s failed for team %s: %s", name, ctx.team_id, exc, exc_info=True)
        return StageOutput(
            new_state=state,
            result=ModuleResult(
                success=False,
                changes={"error": str(exc)},
                messages=[f"{name} module error: {exc}"],
            ),
        )


# ============================================================
# Materials
# ============================================================

def process_materials(
    state: TeamState,
    decisions: MaterialsDecisions,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    """Settle last round's payables, charge holding cost and import tariffs, book new orders."""
    ops = CONFIG.operations
    new_state = clone_team_state(state)
    messages: List[str] = []

    # Materials ordered last round are paid for and consumed now
    settled = new_state.accounts_payable
    if settled > 0:
        new_state.cash -= settled
        new_state.accounts_payable = 0.0
        new_state.total_liabilities = max(0.0, new_state.total_liabilities - settled)
        new_state.materials_inventory_value = max(0.0, new_state.materials_inventory_value - settled)
        messages.append(f"Settled {_millions(settled)} of materials payables")

    holding_cost = new_state.materials_inventory_value * ops.inventory_holding_rate
    new_state.cash -= holding_cost

    tariff = 0.0
    if decisions.purchase > 0:
        new_state.materials_inventory_value += decisions.purchase
        new_state.accounts_payable += decisions.purchase
        new_state.total_liabilities += decisions.purchase
        messages.append(f"Ordered {_millions(decisions.purchase)} of raw materials")

        # Duty is paid at the border in cash, the order itself goes on account
        destination = new_state.factories[0].region if new_state.factories else None
        rate = ops.tariff_rates.get((decisions.supplier_region, destination), 0.0)
        if rate > 0:
            tariff = decisions.purchase * rate
            new_state.cash -= tariff
            messages.append(
                f"Paid {_millions(tariff)} tariff on materials from {decisions.supplier_region} ({rate:.0%})")

    return StageOutput(
        new_state=new_state,
        result=ModuleResult(
            changes={
                "payables_settled": settled,
                "holding_cost": holding_cost,
                "materials_ordered": decisions.purchase,
                "tariff_cost": tariff,
            },
            costs=settled + holding_cost + tariff,
            messages=messages,
        ),
    )


# ============================================================
# Factory
# ============================================================

def efficiency_gain(previous_investment: float, amount: float) -> float:
    """1% efficiency per $1M, halved past the cumulative threshold."""
    ops = CONFIG.operations
    threshold = ops.efficiency_diminish_threshold
    full_rate = ops.efficiency_per_million / 1_000_000
    reduced_rate = full_rate * ops.efficiency_diminished_rate

    before_threshold = max(0.0, min(amount, threshold - previous_investment))
    after_threshold = amount - before_threshold
    return before_threshold * full_rate + after_threshold * reduced_rate


def create_factory(name: str, region: str, ctx: Context) -> Factory:
    return Factory(
        id=ctx.next_id("factory"),
        name=name,
        region=region,
        defect_rate=CONFIG.operations.base_defect_rate,
    )


def process_factory(
    state: TeamState,
    decisions: FactoryDecisions,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    ops = CONFIG.operations
    new_state = clone_team_state(state)
    factories = {f.id: f for f in new_state.factories}
    costs = 0.0
    esg_gain = 0.0
    messages: List[str] = []

    for factory_id, amount in decisions.efficiency_investments.items():
        factory = factories.get(factory_id)
        if factory is None:
            messages.append(f"Unknown factory {factory_id}, efficiency investment skipped")
            continue
        if amount <= 0:
            continue
        gain = efficiency_gain(factory.efficiency_investment, amount)
        factory.efficiency_investment += amount
        factory.efficiency = min(ops.max_efficiency, factory.efficiency + gain)
        costs += amount
        messages.append(f"Factory {factory.name}: efficiency improved to {factory.efficiency * 100:.1f}%")

    for factory_id, amount in decisions.green_investments.items():
        factory = factories.get(factory_id)
        if factory is None:
            messages.append(f"Unknown factory {factory_id}, green investment skipped")
            continue
        if amount <= 0:
            continue
        factory.green_investment += amount
        points = amount / 1_000_000 * ops.esg_points_per_green_million
        esg_gain += points
        new_state.brand_value = min(
            1.0, new_state.brand_value + amount / 100_000_000 * ops.green_brand_per_hundred_million)
        costs += amount
        messages.append(f"Factory {factory.name}: green investment +{points:.0f} ESG")

    new_state.cash -= costs
    new_state.esg_score += esg_gain

    built = 0
    for order in decisions.new_factories:
        cost = CONFIG.finance.new_factory_cost
        if new_state.cash < cost:
            messages.append(f"Insufficient funds to build {order.name}")
            continue
        new_state.factories.append(create_factory(order.name, order.region, ctx))
        new_state.cash -= cost
        costs += cost
        built += 1
        messages.append(f"Built new factory {order.name} in {order.region}")

    return StageOutput(
        new_state=new_state,
        result=ModuleResult(
            changes={"new_factories_built": built, "esg_gain": esg_gain},
            costs=costs,
            messages=messages,
        ),
    )


# ============================================================
# HR
# ============================================================

def annual_salary(role: str, salary_multiplier: float) -> float:
    return CONFIG.operations.base_salaries[role] * salary_multiplier


def labor_cost_per_round(state: TeamState) -> float:
    workforce = state.workforce
    annual = sum(
        workforce.headcount(role) * annual_salary(role, workforce.salary_multiplier)
        for role in EMPLOYEE_ROLES
    )
    return annual / CONFIG.operations.rounds_per_year


def _set_headcount(state: TeamState, role: str, count: int) -> None:
    setattr(state.workforce, f"{role}s", max(0, count))


def _clamp_morale(value: float) -> float:
    return max(0.0, min(100.0, value))


def process_hr(
    state: TeamState,
    decisions: HRDecisions,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    """Hiring, firing, salary and training changes, then turnover and payroll."""
    ops = CONFIG.operations
    new_state = clone_team_state(state)
    workforce = new_state.workforce
    costs = 0.0
    messages: List[str] = []

    # A new year starts in round 1, 5, 9, ...
    if ctx.round_number % ops.rounds_per_year == 1:
        workforce.trainings_this_year = 0

    hired = 0
    for role, count in decisions.hires.items():
        if count <= 0:
            continue
        affordable = count
        if ops.hiring_cost > 0:
            affordable = max(0, min(count, int(max(0.0, new_state.cash) // ops.hiring_cost)))
        if affordable < count:
            messages.append(f"Insufficient funds to hire {count} {role}s, hired {affordable}")
        _set_headcount(new_state, role, workforce.headcount(role) + affordable)
        cost = affordable * ops.hiring_cost
        new_state.cash -= cost
        costs += cost
        hired += affordable

    fired = 0
    for role, count in decisions.fires.items():
        count = min(count, workforce.headcount(role))
        if count <= 0:
            continue
        severance = count * annual_salary(role, workforce.salary_multiplier) * ops.severance_fraction
        _set_headcount(new_state, role, workforce.headcount(role) - count)
        new_state.cash -= severance
        costs += severance
        fired += count
        messages.append(f"Let go {count} {role}s ({_millions(severance)} severance)")

    if decisions.salary_multiplier is not None and decisions.salary_multiplier > 0:
        change = decisions.salary_multiplier - workforce.salary_multiplier
        workforce.salary_multiplier = decisions.salary_multiplier
        workforce.average_morale = _clamp_morale(
            workforce.average_morale + change * ops.salary_morale_sensitivity)
        messages.append(f"Salary multiplier set to {decisions.salary_multiplier:.2f}")

    for role in decisions.training_programs:
        if new_state.cash < ops.training_cost:
            messages.append(f"Insufficient funds for {role} training")
            continue
        gain = ops.training_morale_gain
        if workforce.trainings_this_year >= ops.max_trainings_per_year:
            gain *= 0.5
        workforce.trainings_this_year += 1
        workforce.average_morale = _clamp_morale(workforce.average_morale + gain)
        new_state.cash -= ops.training_cost
        costs += ops.training_cost
        messages.append(f"Completed {role} training (+{gain:.1f} morale)")

    # Turnover: binomial departures per role from the "hr" substream
    turnover_rate = ops.annual_turnover_rate
    if workforce.average_morale < ops.low_morale_threshold:
        turnover_rate += ops.low_morale_turnover_rate
    per_round_rate = min(1.0, turnover_rate / ops.rounds_per_year)
    departed = 0
    for role in EMPLOYEE_ROLES:
        headcount = workforce.headcount(role)
        if headcount <= 0:
            continue
        leaving = int(ctx.rng("hr").binomial(headcount, per_round_rate))
        _set_headcount(new_state, role, headcount - leaving)
        departed += leaving
    if departed:
        messages.append(f"{departed} employees left the company")

    payroll = labor_cost_per_round(new_state)
    workforce.labor_cost = payroll
    new_state.cash -= payroll
    costs += payroll

    return StageOutput(
        new_state=new_state,
        result=ModuleResult(
            changes={
                "hired": hired,
                "fired": fired,
                "turnover": departed,
                "headcount": workforce.total_headcount,
                "average_morale": workforce.average_morale,
            },
            costs=costs,
            messages=messages,
        ),
    )


# ============================================================
# R&D
# ============================================================

def development_cost(segment: str, target_quality: float) -> float:
    base = CONFIG.operations.product_dev_base_costs[segment]
    return base * (1 + (target_quality - 50) / 50)


def development_rounds(target_quality: float, engineers: int) -> int:
    ops = CONFIG.operations
    base = ops.product_dev_base_rounds + max(0.0, target_quality - 50) * ops.product_dev_quality_factor
    speedup = min(0.5, engineers * ops.product_dev_engineer_speedup)
    return max(1, round(base * (1 - speedup)))


def unit_cost_for(segment: str, quality: float) -> float:
    ops = CONFIG.operations
    return (ops.raw_material_cost_per_unit[segment] + ops.labor_cost_per_unit
            + ops.overhead_cost_per_unit + (quality - 50) * 0.5)


def suggested_price(segment: str, quality: float, market_state: MarketState) -> float:
    price_range = market_state.demand_by_segment[segment].price_range
    return price_range.min + (price_range.max - price_range.min) * (quality / 100)


def improvement_cost(quality_increase: float, features_increase: float) -> float:
    ops = CONFIG.operations
    return quality_increase * ops.quality_point_cost + features_increase * ops.feature_point_cost


def process_rd(
    state: TeamState,
    decisions: RDDecisions,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    """R&D budget, engineer output, product development and patents."""
    ops = CONFIG.operations
    new_state = clone_team_state(state)
    costs = 0.0
    messages: List[str] = []

    if decisions.rd_budget is not None and decisions.rd_budget > 0:
        new_state.rd_budget = decisions.rd_budget
        new_state.cash -= decisions.rd_budget
        costs += decisions.rd_budget
        messages.append(f"R&D budget set to {_millions(decisions.rd_budget)}")

    rd_points = new_state.workforce.engineers * ops.rd_points_per_engineer
    new_state.rd_progress += rd_points

    # Products already in development advance before new ones are started
    completed = 0
    for product in new_state.products:
        if product.development_status != "in_development":
            continue
        product.rounds_remaining = max(0, product.rounds_remaining - 1)
        product.development_progress = min(
            100.0, product.development_progress + 100.0 / (product.rounds_remaining + 1))
        if product.rounds_remaining == 0:
            product.development_status = "ready"
            product.quality = product.target_quality if product.target_quality is not None else product.quality
            product.features = product.target_features if product.target_features is not None else product.features
            product.development_progress = 100.0
            completed += 1
            messages.append(f"{product.name} development complete, ready for launch")

    started = 0
    for spec in decisions.new_products:
        cost = development_cost(spec.segment, spec.target_quality)
        if new_state.cash < cost:
            messages.append(f"Insufficient funds to develop {spec.name}")
            continue
        rounds = development_rounds(spec.target_quality, new_state.workforce.engineers)
        new_state.products.append(Product(
            id=ctx.next_id("product"),
            name=spec.name,
            segment=spec.segment,
            price=suggested_price(spec.segment, spec.target_quality, market_state),
            quality=spec.target_quality * 0.5,
            features=spec.target_features * 0.5,
            unit_cost=unit_cost_for(spec.segment, spec.target_quality),
            development_status="in_development",
            rounds_remaining=rounds,
            development_progress=0.0,
            target_quality=spec.target_quality,
            target_features=spec.target_features,
        ))
        new_state.cash -= cost
        costs += cost
        started += 1
        messages.append(f"Started development of {spec.name} for {spec.segment} ({rounds} rounds)")

    products = {p.id: p for p in new_state.products}
    improved = 0
    for improvement in decisions.product_improvements:
        product = products.get(improvement.product_id)
        if product is None:
            messages.append(f"Unknown product {improvement.product_id}, improvement skipped")
            continue
        cost = improvement_cost(improvement.quality_increase, improvement.features_increase)
        points_needed = improvement.quality_increase * ops.rd_points_per_quality_point
        if new_state.cash < cost or new_state.rd_progress < points_needed:
            messages.append(f"Cannot improve {product.name}: insufficient funds or R&D points")
            continue
        product.quality = min(100.0, product.quality + improvement.quality_increase)
        product.features = min(100.0, product.features + improvement.features_increase)
        product.unit_cost = unit_cost_for(product.segment, product.quality)
        new_state.rd_progress -= points_needed
        new_state.cash -= cost
        costs += cost
        improved += 1
        messages.append(f"Improved {product.name}: Q+{improvement.quality_increase:g}, "
                        f"F+{improvement.features_increase:g}")

    patents_before = new_state.patents
    while new_state.rd_progress >= ops.patent_threshold:
        new_state.rd_progress -= ops.patent_threshold
        new_state.patents += 1
    if new_state.patents > patents_before:
        messages.append(f"New patent acquired (total: {new_state.patents})")

    return StageOutput(
        new_state=new_state,
        result=ModuleResult(
            changes={
                "rd_points_generated": rd_points,
                "new_products_started": started,
                "products_completed": completed,
                "products_improved": improved,
                "patents_earned": new_state.patents - patents_before,
            },
            costs=costs,
            messages=messages,
        ),
    )


# ============================================================
# Marketing
# ============================================================

def advertising_impact(budget: float, segment: str) -> float:
    """0.15% brand per $1M, each further $3M chunk 40% as effective as the last."""
    ops = CONFIG.operations
    multiplier = ops.advertising_segment_multipliers[segment]
    remaining = budget / 1_000_000
    effectiveness = 1.0
    impact = 0.0
    while remaining > 0:
        chunk = min(remaining, ops.advertising_chunk_millions)
        impact += chunk * ops.advertising_impact_per_million * effectiveness * multiplier
        remaining -= chunk
        effectiveness *= ops.advertising_chunk_decay
    return impact


def branding_impact(investment: float) -> float:
    """Linear up to $5M, logarithmic beyond."""
    ops = CONFIG.operations
    millions = investment / 1_000_000
    if millions <= ops.branding_linear_millions:
        return millions * ops.branding_impact_per_million
    base_return = ops.branding_linear_millions * ops.branding_impact_per_million
    extra = millions - ops.branding_linear_millions
    return base_return + ops.branding_impact_per_million * 2.5 * math.log2(1 + extra / ops.branding_linear_millions)


def process_marketing(
    state: TeamState,
    decisions: MarketingDecisions,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    ops = CONFIG.operations
    new_state = clone_team_state(state)
    costs = 0.0
    brand_growth = 0.0
    messages: List[str] = []

    for segment, budget in decisions.advertising_budget.items():
        if budget <= 0:
            continue
        impact = advertising_impact(budget, segment)
        brand_growth += impact
        costs += budget
        messages.append(f"{segment} advertising: {_millions(budget)} -> +{impact * 100:.2f}% brand")

    if decisions.branding_investment > 0:
        impact = branding_impact(decisions.branding_investment)
        brand_growth += impact
        costs += decisions.branding_investment
        messages.append(f"Branding investment: {_millions(decisions.branding_investment)} "
                        f"-> +{impact * 100:.2f}% brand")

    products = {p.id: p for p in new_state.products}
    for change in decisions.product_pricing:
        product = products.get(change.product_id)
        if product is None or change.new_price <= 0:
            continue
        messages.append(f"Repriced {product.name}: ${product.price:,.0f} -> ${change.new_price:,.0f}")
        product.price = change.new_price

    for promotion in decisions.promotions:
        if promotion.discount_percent <= 0:
            continue
        for product in new_state.products:
            if product.segment == promotion.segment:
                old_price = product.price
                product.price = round(old_price * (1 - promotion.discount_percent / 100))
                messages.append(f"{promotion.segment} promotion: {promotion.discount_percent:g}% off "
                                f"(${old_price:,.0f} -> ${product.price:,.0f})")
                break

    capped_growth = min(brand_growth, ops.brand_max_growth_per_round)
    if brand_growth > capped_growth:
        messages.append(f"Brand growth capped at {ops.brand_max_growth_per_round * 100:.1f}%")
    brand = min(1.0, state.brand_value + capped_growth)
    brand -= brand * ops.brand_decay_rate
    new_state.brand_value = max(0.0, brand)
    new_state.cash -= costs

    return StageOutput(
        new_state=new_state,
        result=ModuleResult(
            changes={
                "advertising_spend": sum(decisions.advertising_budget.values()),
                "branding_spend": decisions.branding_investment,
                "promotions_active": len(decisions.promotions),
                "brand_value_change": new_state.brand_value - state.brand_value,
            },
            costs=costs,
            messages=messages,
        ),
    )


# ============================================================
# Finance
# ============================================================

def process_finance(
    state: TeamState,
    decisions: FinanceDecisions,
    ctx: Context,
    market_state: MarketState,
) -> StageOutput:
    """Debt issuance and repayment, interest, buybacks and dividends."""
    fin = CONFIG.finance
    new_state = clone_team_state(state)
    costs = 0.0
    messages: List[str] = []

    if decisions.treasury_bills_issue > 0:
        amount = decisions.treasury_bills_issue
        new_state.cash += amount
        new_state.short_term_debt += amount
        new_state.total_liabilities += amount
        messages.append(f"Issued {_millions(amount)} in Treasury Bills")

    if decisions.corporate_bonds_issue > 0:
        amount = decisions.corporate_bonds_issue
        new_state.cash += amount
        new_state.long_term_debt += amount
        new_state.total_liabilities += amount
        messages.append(f"Issued {_millions(amount)} in Corporate Bonds")

    repaid = 0.0
    if decisions.debt_repayment > 0:
        outstanding = new_state.short_term_debt + new_state.long_term_debt
        repaid = min(decisions.debt_repayment, outstanding, max(0.0, new_state.cash))
        short_part = min(repaid, new_state.short_term_debt)
        new_state.short_term_debt -= short_part
        new_state.long_term_debt -= repaid - short_part
        new_state.total_liabilities = max(0.0, new_state.total_liabilities - repaid)
        new_state.cash -= repaid
        messages.append(f"Repaid {_millions(repaid)} of debt")

    # Quarterly interest on what is outstanding after this round's issuance
    rates = market_state.interest_rates
    tbill_rate = max(0.0, rates.federal_rate / 100 - fin.tbill_rate_discount)
    bond_rate = rates.corporate_bond / 100 + fin.bond_rate_premium
    interest = (new_state.short_term_debt * tbill_rate + new_state.long_term_debt * bond_rate) / \
        CONFIG.operations.rounds_per_year
    if interest > 0:
        new_state.cash -= interest
        costs += interest
        messages.append(f"Interest expense {_millions(interest)}")

    shares_bought = 0
    spent = 0.0
    if decisions.shares_buyback > 0 and new_state.share_price > 0:
        if new_state.cash >= decisions.shares_buyback:
            shares_bought = math.floor(decisions.shares_buyback / new_state.share_price)
            shares_bought = min(shares_bought, int(new_state.shares_issued) - 1)
            spent = shares_bought * new_state.share_price
            new_state.shares_issued -= shares_bought
            new_state.cash -= spent
            messages.append(f"Bought back {shares_bought:,} shares for {_millions(spent)}")
        else:
            messages.append("Insufficient funds for share buyback")

    dividends_paid = 0.0
    if decisions.dividend_per_share > 0:
        total = decisions.dividend_per_share * new_state.shares_issued
        if new_state.cash >= total:
            new_state.cash -= total
            dividends_paid = total
            dividend_yield = (decisions.dividend_per_share / new_state.share_price * 100
                              if new_state.share_price > 0 else 0.0)
            messages.append(f"Paid ${decisions.dividend_per_share:.2f} dividend per share "
                            f"({dividend_yield:.1f}% yield, total {_millions(total)})")
        else:
            messages.append("Insufficient funds for dividend payment")

    return StageOutput(
        new_state=new_state,
        result=ModuleResult(
            changes={
                "debt_issued": max(0.0, decisions.treasury_bills_issue) + max(0.0, decisions.corporate_bonds_issue),
                "debt_repaid": repaid,
                "interest_expense": interest,
                "shares_bought_back": shares_bought,
                "buyback_spent": spent,
                "dividends_paid": dividends_paid,
            },
            costs=costs,
            messages=messages,
        ),
    )


# Fixed pipeline order; stage names double as AllDecisions attribute names
DEFAULT_PIPELINE: Sequence[Tuple[str, Collaborator]] = (
    ("materials", process_materials),
    ("factory", process_factory),
    ("hr", process_hr),
    ("rd", process_rd),
    ("marketing", process_marketing),
    ("finance", process_finance),
)

STAGE_NAMES = tuple(name for name, _ in DEFAULT_PIPELINE)
