"""
Smoke tests for the multi-round match runner

Tests cover:
- A short match runs end to end with replay verification
- Audit trail export
"""

import json

from run_simulation import STRATEGIES, build_round_input, create_match, main


class TestMatchRunner:
    """Test suite for run_simulation"""

    def test_strategies_assigned_round_robin(self):
        teams, market_state = create_match(5)
        round_input = build_round_input(teams, market_state, 1, "seed")

        assert len(round_input.teams) == 5
        assert round_input.match_seed == "seed"
        assert len(STRATEGIES) == 4

    def test_short_match(self):
        outputs = main(num_teams=3, num_rounds=4, match_seed="smoke", verify=True)

        assert [o.round_number for o in outputs] == [1, 2, 3, 4]
        assert outputs[-1].new_market_state.round_number == 5

    def test_replay_of_whole_match(self):
        first = main(num_teams=2, num_rounds=3, match_seed="replay")
        second = main(num_teams=2, num_rounds=3, match_seed="replay")

        assert ([o.audit_trail.final_state_hashes for o in first]
                == [o.audit_trail.final_state_hashes for o in second])

    def test_audit_export(self, tmp_path):
        path = tmp_path / "audit.json"
        main(num_teams=2, num_rounds=2, match_seed="export", output_path=str(path))

        payload = json.loads(path.read_text())

        assert len(payload) == 2
        assert payload[0]["audit_trail"]["seed_bundle"]["match_seed"] == "export"
