#!/usr/bin/env python3
"""
Multi-round match runner.

Plays N teams through R rounds with a fixed match seed and simple built-in
strategies, printing per-round standings. With --verify every round is
replayed from the same input and the audit hashes are compared.
"""

import argparse
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import SEGMENTS
from engine import (
    RoundInput,
    RoundOutput,
    TeamInput,
    create_initial_market_state,
    create_initial_team_state,
    generate_round_report,
    process_round,
)
from models import (
    AllDecisions,
    FinanceDecisions,
    HRDecisions,
    MarketingDecisions,
    NewProductSpec,
    PriceChange,
    RDDecisions,
    TeamState,
)

Strategy = Callable[[TeamState, int], AllDecisions]


def balanced_strategy(state: TeamState, round_number: int) -> AllDecisions:
    return AllDecisions(
        marketing=MarketingDecisions(
            advertising_budget={segment: 1_000_000.0 for segment in SEGMENTS},
            branding_investment=2_000_000.0,
        ),
        rd=RDDecisions(rd_budget=3_000_000.0),
    )


def brand_strategy(state: TeamState, round_number: int) -> AllDecisions:
    return AllDecisions(
        marketing=MarketingDecisions(
            advertising_budget={"General": 3_000_000.0, "Budget": 3_000_000.0},
            branding_investment=5_000_000.0,
        ),
    )


def premium_strategy(state: TeamState, round_number: int) -> AllDecisions:
    decisions = AllDecisions(
        rd=RDDecisions(rd_budget=5_000_000.0),
        hr=HRDecisions(hires={"engineer": 2} if round_number <= 2 else {}),
    )
    if round_number == 1:
        decisions.rd.new_products.append(
            NewProductSpec(name="Pro Max", segment="Professional", target_quality=95, target_features=90))
    return decisions


def cost_leader_strategy(state: TeamState, round_number: int) -> AllDecisions:
    # Undercut each segment by 10% while staying above the price floor penalty zone
    pricing = [PriceChange(product_id=p.id, new_price=round(p.price * 0.9, 2))
               for p in state.products if p.is_competing]
    return AllDecisions(
        marketing=MarketingDecisions(product_pricing=pricing if round_number == 1 else []),
        finance=FinanceDecisions(corporate_bonds_issue=20_000_000.0 if round_number == 1 else 0.0),
    )


STRATEGIES: Dict[str, Strategy] = {
    "balanced": balanced_strategy,
    "brand": brand_strategy,
    "premium": premium_strategy,
    "cost_leader": cost_leader_strategy,
}


def create_match(num_teams: int, starting_cash: Optional[float] = None) -> Tuple[Dict[str, TeamState], Any]:
    print(f"Creating match with {num_teams} teams...")
    teams = {f"team-{i + 1}": create_initial_team_state(cash=starting_cash) for i in range(num_teams)}
    return teams, create_initial_market_state()


def build_round_input(
    teams: Dict[str, TeamState],
    market_state,
    round_number: int,
    match_seed: str,
) -> RoundInput:
    names = list(STRATEGIES)
    team_inputs = []
    for index, (team_id, state) in enumerate(teams.items()):
        strategy = STRATEGIES[names[index % len(names)]]
        team_inputs.append(TeamInput(id=team_id, state=state, decisions=strategy(state, round_number)))
    return RoundInput(
        round_number=round_number,
        teams=team_inputs,
        market_state=market_state,
        match_seed=match_seed,
    )


def main(
    num_teams: int = 4,
    num_rounds: int = 8,
    match_seed: str = "demo-match",
    verify: bool = False,
    output_path: Optional[str] = None,
    show_reports: bool = False,
) -> List[RoundOutput]:
    print("=" * 80)
    print(f"ROUND RESOLUTION ENGINE ({num_teams} teams, {num_rounds} rounds, seed {match_seed!r})")
    print("=" * 80)
    print()

    teams, market_state = create_match(num_teams)
    names = list(STRATEGIES)
    for index, team_id in enumerate(teams):
        print(f"  {team_id}: {names[index % len(names)]} strategy")
    print()

    outputs: List[RoundOutput] = []
    mismatches = 0
    start_time = time.time()

    print("Round | Leader     | Revenue(M) | Net Inc(M) | Rubber-band | Verified")
    print("-" * 80)
    for round_number in range(1, num_rounds + 1):
        round_input = build_round_input(teams, market_state, round_number, match_seed)
        output = process_round(round_input)

        verified = "-"
        if verify:
            replay = process_round(round_input)
            if replay.audit_trail.final_state_hashes == output.audit_trail.final_state_hashes:
                verified = "yes"
            else:
                verified = "MISMATCH"
                mismatches += 1

        leader = min(output.results, key=lambda r: r.rank)
        print(f"{round_number:5d} | {leader.team_id:<10} | {leader.total_revenue / 1_000_000:10.1f} | "
              f"{leader.net_income / 1_000_000:10.1f} | {'yes' if output.rubber_banding_applied else 'no':>11} | {verified}")

        if show_reports:
            print()
            print(generate_round_report(output))
            print()

        for result in output.results:
            teams[result.team_id] = result.new_state
        market_state = output.new_market_state
        outputs.append(output)

    total_time = time.time() - start_time
    print()
    print(f"✓ Match complete in {total_time:.2f} seconds")
    if verify:
        if mismatches:
            print(f"✗ {mismatches} round(s) failed replay verification")
        else:
            print("✓ Every round replayed with identical state hashes")
    print()

    print("FINAL STANDINGS")
    print("-" * 80)
    final = outputs[-1] if outputs else None
    if final is not None:
        for result in sorted(final.results, key=lambda r: r.rank):
            state = result.new_state
            print(f"  #{result.rank} {result.team_id:<10} cash ${state.cash / 1_000_000:8.1f}M | "
                  f"share price ${state.share_price:8.2f} | brand {state.brand_value:.3f} | "
                  f"patents {state.patents}")
    print()

    if output_path:
        payload = [
            {
                "round_number": o.round_number,
                "audit_trail": {
                    "seed_bundle": o.audit_trail.seed_bundle.to_dict(),
                    "final_state_hashes": o.audit_trail.final_state_hashes,
                    "engine_version": o.audit_trail.engine_version,
                    "schema_version": o.audit_trail.schema_version,
                },
                "rankings": [{"team_id": r.team_id, "rank": r.rank, "eps_rank": r.eps_rank,
                              "share_rank": r.share_rank} for r in o.rankings],
            }
            for o in outputs
        ]
        with open(output_path, "w") as f:
            json.dump(payload, f, indent=2)
        print(f"✓ Audit trail saved to: {output_path}")
        print()

    return outputs


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a multi-round match.")
    parser.add_argument("--teams", type=int, default=4, help="Number of teams")
    parser.add_argument("--rounds", type=int, default=8, help="Number of rounds to play")
    parser.add_argument("--seed", type=str, default="demo-match", help="Match seed")
    parser.add_argument("--verify", action="store_true", help="Replay every round and compare state hashes")
    parser.add_argument("--output", type=str, default=None, help="Write audit trails to this JSON file")
    parser.add_argument("--reports", action="store_true", help="Print the full report after each round")
    args = parser.parse_args()

    main(
        num_teams=args.teams,
        num_rounds=args.rounds,
        match_seed=args.seed,
        verify=args.verify,
        output_path=args.output,
        show_reports=args.reports,
    )
