"""
Financial Statements

Builds the income statement, balance sheet and cash-flow statement for one
team at the end of a round and checks that the three reconcile.

Statements are a derived artifact: the orchestrator treats a failure here
as a warning and keeps the previous round's statements.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from config import CONFIG
from models import TeamState

TOLERANCE = 0.01


def property_value(state: TeamState) -> float:
    return len(state.factories) * CONFIG.finance.new_factory_cost


def compute_total_assets(state: TeamState) -> float:
    """Cash, materials inventory and factories at replacement cost."""
    return state.cash + state.materials_inventory_value + property_value(state)


@dataclass
class IncomeStatement:
    revenue: float
    expenses_by_module: Dict[str, float]
    operating_expenses: float
    operating_income: float
    interest_expense: float
    net_income: float
    eps: float
    net_margin: float


@dataclass
class BalanceSheet:
    cash: float
    inventory: float
    property_plant_equipment: float
    total_assets: float
    accounts_payable: float
    short_term_debt: float
    long_term_debt: float
    other_liabilities: float
    total_liabilities: float
    retained_earnings: float
    contributed_capital: float
    total_equity: float


@dataclass
class CashFlowStatement:
    opening_cash: float
    net_income: float
    change_in_payables: float
    change_in_inventory: float
    operating_cash_flow: float
    debt_change: float
    buybacks: float
    dividends: float
    financing_cash_flow: float
    other_cash_flow: float
    net_cash_change: float
    closing_cash: float


@dataclass
class FinancialStatements:
    round: int
    income_statement: IncomeStatement
    balance_sheet: BalanceSheet
    cash_flow_statement: CashFlowStatement
    ratios: Dict[str, float]
    valid: bool = True
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_income_statement(state: TeamState, expenses_by_module: Dict[str, float]) -> IncomeStatement:
    total_expenses = sum(expenses_by_module.values())
    interest = expenses_by_module.get("finance", 0.0)
    operating_expenses = total_expenses - interest
    net_income = state.revenue - total_expenses
    return IncomeStatement(
        revenue=state.revenue,
        expenses_by_module=dict(expenses_by_module),
        operating_expenses=operating_expenses,
        operating_income=state.revenue - operating_expenses,
        interest_expense=interest,
        net_income=net_income,
        eps=net_income / state.shares_issued if state.shares_issued > 0 else 0.0,
        net_margin=net_income / state.revenue if state.revenue > 0 else 0.0,
    )


def build_balance_sheet(
    state: TeamState,
    income: IncomeStatement,
    previous: Optional[Dict[str, Any]],
    dividends: float,
) -> BalanceSheet:
    total_assets = compute_total_assets(state)
    known_liabilities = state.accounts_payable + state.short_term_debt + state.long_term_debt
    total_equity = total_assets - state.total_liabilities

    previous_retained = previous["balance_sheet"]["retained_earnings"] if previous else 0.0
    retained = previous_retained + income.net_income - dividends

    return BalanceSheet(
        cash=state.cash,
        inventory=state.materials_inventory_value,
        property_plant_equipment=property_value(state),
        total_assets=total_assets,
        accounts_payable=state.accounts_payable,
        short_term_debt=state.short_term_debt,
        long_term_debt=state.long_term_debt,
        other_liabilities=state.total_liabilities - known_liabilities,
        total_liabilities=state.total_liabilities,
        retained_earnings=retained,
        contributed_capital=total_equity - retained,
        total_equity=total_equity,
    )


def build_cash_flow(
    state: TeamState,
    opening: TeamState,
    income: IncomeStatement,
    buybacks: float,
    dividends: float,
    other_cash_flow: float,
) -> CashFlowStatement:
    change_in_payables = state.accounts_payable - opening.accounts_payable
    change_in_inventory = state.materials_inventory_value - opening.materials_inventory_value
    operating = income.net_income + change_in_payables - change_in_inventory

    debt_change = (state.short_term_debt + state.long_term_debt) - (opening.short_term_debt + opening.long_term_debt)
    financing = debt_change - buybacks - dividends

    net_change = operating + financing + other_cash_flow
    return CashFlowStatement(
        opening_cash=opening.cash,
        net_income=income.net_income,
        change_in_payables=change_in_payables,
        change_in_inventory=change_in_inventory,
        operating_cash_flow=operating,
        debt_change=debt_change,
        buybacks=buybacks,
        dividends=dividends,
        financing_cash_flow=financing,
        other_cash_flow=other_cash_flow,
        net_cash_change=net_change,
        closing_cash=opening.cash + net_change,
    )


def calculate_ratios(income: IncomeStatement, balance: BalanceSheet) -> Dict[str, float]:
    current_liabilities = balance.accounts_payable + balance.short_term_debt
    current_assets = balance.cash + balance.inventory
    return {
        "net_margin": income.net_margin,
        "return_on_assets": income.net_income / balance.total_assets if balance.total_assets > 0 else 0.0,
        "return_on_equity": income.net_income / balance.total_equity if balance.total_equity > 0 else 0.0,
        "current_ratio": current_assets / current_liabilities if current_liabilities > 0 else 0.0,
        "debt_to_equity": (balance.short_term_debt + balance.long_term_debt) / balance.total_equity
        if balance.total_equity > 0 else 0.0,
    }


def validate_statements(
    state: TeamState,
    income: IncomeStatement,
    balance: BalanceSheet,
    cash_flow: CashFlowStatement,
) -> List[str]:
    errors = []
    if abs(cash_flow.closing_cash - state.cash) > TOLERANCE:
        errors.append(f"Cash does not reconcile: cash flow closes at {cash_flow.closing_cash:.2f}, "
                      f"balance sheet shows {state.cash:.2f}")
    if abs(income.net_income - state.net_income) > TOLERANCE:
        errors.append(f"Net income mismatch: statement {income.net_income:.2f}, state {state.net_income:.2f}")
    if abs(balance.total_assets - (balance.total_liabilities + balance.total_equity)) > TOLERANCE:
        errors.append("Balance sheet does not balance")
    if balance.other_liabilities < -TOLERANCE:
        errors.append("Liability breakdown exceeds total liabilities")
    return errors


def generate_financial_statements(
    state: TeamState,
    opening: TeamState,
    previous: Optional[Dict[str, Any]] = None,
    expenses_by_module: Optional[Dict[str, float]] = None,
    buybacks: float = 0.0,
    dividends: float = 0.0,
    other_cash_flow: float = 0.0,
) -> FinancialStatements:
    """
    Build all three statements for state, the team at the end of the round.

    opening is the team's state at the start of the round; previous is the
    prior round's statements (as a dict) for retained earnings. Validation
    problems are reported on the result, never raised.
    """
    income = build_income_statement(state, expenses_by_module or {})
    balance = build_balance_sheet(state, income, previous, dividends)
    cash_flow = build_cash_flow(state, opening, income, buybacks, dividends, other_cash_flow)
    errors = validate_statements(state, income, balance, cash_flow)
    return FinancialStatements(
        round=state.current_round,
        income_statement=income,
        balance_sheet=balance,
        cash_flow_statement=cash_flow,
        ratios=calculate_ratios(income, balance),
        valid=not errors,
        errors=errors,
    )
