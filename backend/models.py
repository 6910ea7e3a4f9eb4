"""
Value types for the round-resolution engine.

TeamState is owned by exactly one team and MarketState is a read-only
snapshot for the duration of a round. Operations never mutate a caller's
value: they clone (clone_team_state / clone_market_state) and return the
new value.
"""

import copy
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from config import CONFIG, REGIONS, SEGMENTS


DEVELOPMENT_STATUSES = ("in_development", "ready", "launched")
COMPETING_STATUSES = ("ready", "launched")
EMPLOYEE_ROLES = ("worker", "engineer", "supervisor")


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that map onto dataclass fields (ignores UI extras)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _check_segment(segment: str) -> None:
    if segment not in SEGMENTS:
        raise ValueError(f"unknown segment {segment!r}, expected one of {SEGMENTS}")


# ============================================================
# Team-owned entities
# ============================================================

@dataclass(slots=True)
class Product:
    """A phone model competing (or in development) in one segment."""

    id: str
    name: str
    segment: str
    price: float
    quality: float  # 0-100
    features: float  # 0-100+, values above 100 earn a dampened bonus
    reliability: float = 70.0
    unit_cost: float = 0.0
    development_status: str = "launched"
    rounds_remaining: int = 0
    development_progress: float = 100.0
    target_quality: Optional[float] = None
    target_features: Optional[float] = None

    def __post_init__(self):
        _check_segment(self.segment)
        if self.development_status not in DEVELOPMENT_STATUSES:
            raise ValueError(f"development_status must be one of {DEVELOPMENT_STATUSES}, "
                             f"got {self.development_status!r}")
        if not (0.0 <= self.quality <= 100.0):
            raise ValueError(f"quality must be in [0,100], got {self.quality}")
        if self.features < 0:
            raise ValueError(f"features cannot be negative, got {self.features}")
        if self.price < 0:
            raise ValueError(f"price cannot be negative, got {self.price}")
        if self.rounds_remaining < 0:
            raise ValueError(f"rounds_remaining cannot be negative, got {self.rounds_remaining}")

    @property
    def is_competing(self) -> bool:
        return self.development_status in COMPETING_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class Factory:
    id: str
    name: str
    region: str = "North America"
    efficiency: float = 0.7  # 0.1-1.0
    defect_rate: float = 0.05
    warranty_reduction: float = 0.0  # Fraction of defects covered by upgrades
    capacity: float = 50_000.0  # Units per round
    efficiency_investment: float = 0.0  # Cumulative, drives diminishing returns
    green_investment: float = 0.0

    def __post_init__(self):
        if self.region not in REGIONS:
            raise ValueError(f"unknown region {self.region!r}, expected one of {REGIONS}")
        if not (0.0 <= self.warranty_reduction <= 1.0):
            raise ValueError(f"warranty_reduction must be in [0,1], got {self.warranty_reduction}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Factory":
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class Workforce:
    """Aggregate headcount; the engine never needs individual employees."""

    workers: int = 50
    engineers: int = 8
    supervisors: int = 5
    average_morale: float = 75.0  # 0-100
    salary_multiplier: float = 1.0
    labor_cost: float = 0.0  # Last round's payroll
    trainings_this_year: int = 0

    @property
    def total_headcount(self) -> int:
        return self.workers + self.engineers + self.supervisors

    def headcount(self, role: str) -> int:
        return getattr(self, f"{role}s")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workforce":
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class TeamState:
    """Everything one team owns between rounds."""

    cash: float
    revenue: float = 0.0
    net_income: float = 0.0
    eps: float = 0.0
    shares_issued: float = CONFIG.finance.default_shares_issued
    share_price: float = CONFIG.finance.default_share_price
    market_cap: float = CONFIG.finance.default_market_cap
    total_assets: float = 0.0
    total_liabilities: float = 0.0
    short_term_debt: float = 0.0
    long_term_debt: float = 0.0
    shareholders_equity: float = 0.0
    accounts_payable: float = 0.0
    materials_inventory_value: float = 0.0
    products: List[Product] = field(default_factory=list)
    factories: List[Factory] = field(default_factory=list)
    workforce: Workforce = field(default_factory=Workforce)
    brand_value: float = 0.5  # 0-1
    esg_score: float = 100.0  # Unbounded above, typically 0-1000
    market_share: Dict[str, float] = field(default_factory=dict)
    patents: int = 0
    rd_budget: float = 0.0
    rd_progress: float = 0.0
    current_round: int = 0
    financial_statements: Optional[Dict[str, Any]] = None
    previous_financial_statements: Optional[Dict[str, Any]] = None
    engine_version: str = CONFIG.engine.engine_version

    def __post_init__(self):
        if not (0.0 <= self.brand_value <= 1.0):
            raise ValueError(f"brand_value must be in [0,1], got {self.brand_value}")
        if self.esg_score < 0:
            raise ValueError(f"esg_score cannot be negative, got {self.esg_score}")

    def competing_products(self, segment: str) -> List[Product]:
        return [p for p in self.products if p.segment == segment and p.is_competing]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamState":
        kwargs = _known_fields(cls, data)
        kwargs["products"] = [Product.from_dict(p) for p in data.get("products", [])]
        kwargs["factories"] = [Factory.from_dict(f) for f in data.get("factories", [])]
        if "workforce" in data:
            kwargs["workforce"] = Workforce.from_dict(data["workforce"])
        return cls(**kwargs)


# ============================================================
# Shared market snapshot
# ============================================================

@dataclass(slots=True)
class EconomicConditions:
    gdp: float = 2.5  # Growth, percent
    inflation: float = 2.0
    consumer_confidence: float = 75.0
    unemployment_rate: float = 4.5


@dataclass(slots=True)
class InterestRates:
    federal_rate: float = 5.0
    ten_year_bond: float = 4.5
    corporate_bond: float = 6.0


@dataclass(slots=True)
class PriceRange:
    min: float
    max: float


@dataclass(slots=True)
class SegmentDemand:
    total_demand: float
    price_range: PriceRange
    growth_rate: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SegmentDemand":
        return cls(
            total_demand=data["total_demand"],
            price_range=PriceRange(**data["price_range"]),
            growth_rate=data.get("growth_rate", 0.0),
        )


@dataclass(slots=True)
class MarketPressures:
    price_competition: float = 0.5
    quality_expectations: float = 0.6
    sustainability_premium: float = 0.3


@dataclass(slots=True)
class MarketState:
    round_number: int
    economic_conditions: EconomicConditions
    fx_rates: Dict[str, float]
    interest_rates: InterestRates
    demand_by_segment: Dict[str, SegmentDemand]
    market_pressures: MarketPressures
    fx_volatility: float = 0.15

    def __post_init__(self):
        missing = [s for s in SEGMENTS if s not in self.demand_by_segment]
        if missing:
            raise ValueError(f"market state is missing demand for segments {missing}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketState":
        return cls(
            round_number=data["round_number"],
            economic_conditions=EconomicConditions(**data["economic_conditions"]),
            fx_rates=dict(data["fx_rates"]),
            interest_rates=InterestRates(**data["interest_rates"]),
            demand_by_segment={
                segment: SegmentDemand.from_dict(demand)
                for segment, demand in data["demand_by_segment"].items()
            },
            market_pressures=MarketPressures(**data["market_pressures"]),
            fx_volatility=data.get("fx_volatility", 0.15),
        )


# ============================================================
# Decisions
# ============================================================

@dataclass(slots=True)
class NewFactoryOrder:
    name: str
    region: str = "North America"


@dataclass(slots=True)
class FactoryDecisions:
    efficiency_investments: Dict[str, float] = field(default_factory=dict)  # factory id -> $
    green_investments: Dict[str, float] = field(default_factory=dict)  # factory id -> $
    new_factories: List[NewFactoryOrder] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FactoryDecisions":
        return cls(
            efficiency_investments=dict(data.get("efficiency_investments", {})),
            green_investments=dict(data.get("green_investments", {})),
            new_factories=[NewFactoryOrder(**o) for o in data.get("new_factories", [])],
        )


@dataclass(slots=True)
class MaterialsDecisions:
    purchase: float = 0.0  # $ of raw materials ordered, settled on arrival next round
    supplier_region: Optional[str] = None  # None buys locally, tariff free

    def __post_init__(self):
        if self.supplier_region is not None and self.supplier_region not in REGIONS:
            raise ValueError(f"unknown region {self.supplier_region!r}, expected one of {REGIONS}")


@dataclass(slots=True)
class HRDecisions:
    hires: Dict[str, int] = field(default_factory=dict)  # role -> count
    fires: Dict[str, int] = field(default_factory=dict)
    salary_multiplier: Optional[float] = None
    training_programs: List[str] = field(default_factory=list)  # roles trained

    def __post_init__(self):
        for role in list(self.hires) + list(self.fires) + list(self.training_programs):
            if role not in EMPLOYEE_ROLES:
                raise ValueError(f"unknown role {role!r}, expected one of {EMPLOYEE_ROLES}")


@dataclass(slots=True)
class NewProductSpec:
    name: str
    segment: str
    target_quality: float
    target_features: float

    def __post_init__(self):
        _check_segment(self.segment)


@dataclass(slots=True)
class ProductImprovement:
    product_id: str
    quality_increase: float = 0.0
    features_increase: float = 0.0


@dataclass(slots=True)
class RDDecisions:
    rd_budget: Optional[float] = None
    new_products: List[NewProductSpec] = field(default_factory=list)
    product_improvements: List[ProductImprovement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RDDecisions":
        return cls(
            rd_budget=data.get("rd_budget"),
            new_products=[NewProductSpec(**p) for p in data.get("new_products", [])],
            product_improvements=[ProductImprovement(**i) for i in data.get("product_improvements", [])],
        )


@dataclass(slots=True)
class PriceChange:
    product_id: str
    new_price: float


@dataclass(slots=True)
class Promotion:
    segment: str
    discount_percent: float

    def __post_init__(self):
        _check_segment(self.segment)


@dataclass(slots=True)
class MarketingDecisions:
    advertising_budget: Dict[str, float] = field(default_factory=dict)  # segment -> $
    branding_investment: float = 0.0
    product_pricing: List[PriceChange] = field(default_factory=list)
    promotions: List[Promotion] = field(default_factory=list)

    def __post_init__(self):
        for segment in self.advertising_budget:
            _check_segment(segment)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketingDecisions":
        return cls(
            advertising_budget=dict(data.get("advertising_budget", {})),
            branding_investment=data.get("branding_investment", 0.0),
            product_pricing=[PriceChange(**p) for p in data.get("product_pricing", [])],
            promotions=[Promotion(**p) for p in data.get("promotions", [])],
        )


@dataclass(slots=True)
class FinanceDecisions:
    treasury_bills_issue: float = 0.0
    corporate_bonds_issue: float = 0.0
    debt_repayment: float = 0.0
    shares_buyback: float = 0.0  # $ spent repurchasing at the current share price
    dividend_per_share: float = 0.0


@dataclass(slots=True)
class AllDecisions:
    materials: MaterialsDecisions = field(default_factory=MaterialsDecisions)
    factory: FactoryDecisions = field(default_factory=FactoryDecisions)
    hr: HRDecisions = field(default_factory=HRDecisions)
    rd: RDDecisions = field(default_factory=RDDecisions)
    marketing: MarketingDecisions = field(default_factory=MarketingDecisions)
    finance: FinanceDecisions = field(default_factory=FinanceDecisions)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AllDecisions":
        data = data or {}
        return cls(
            materials=MaterialsDecisions(**data.get("materials", {})),
            factory=FactoryDecisions.from_dict(data.get("factory", {})),
            hr=HRDecisions(**data.get("hr", {})),
            rd=RDDecisions.from_dict(data.get("rd", {})),
            marketing=MarketingDecisions.from_dict(data.get("marketing", {})),
            finance=FinanceDecisions(**data.get("finance", {})),
        )


# ============================================================
# Cloning
# ============================================================

def clone_team_state(state: TeamState) -> TeamState:
    return copy.deepcopy(state)


def clone_market_state(state: MarketState) -> MarketState:
    return copy.deepcopy(state)


def clone_decisions(decisions: AllDecisions) -> AllDecisions:
    return copy.deepcopy(decisions)
