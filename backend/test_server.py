"""
API tests for the FastAPI server

Tests cover:
- Health and initial-state endpoints
- Round resolution over HTTP, including replay determinism
- Error mapping (400 bad payload, 422 missing seed / schema violations)
- Decision validation endpoint
- Live match over the websocket, including a rejected round
"""

import pytest
from fastapi.testclient import TestClient

from config import CONFIG
from server import app, manager


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_manager():
    manager.reset()
    yield
    manager.reset()


def round_payload(client, match_seed="api-match", num_teams=2):
    team_state = client.post("/teams/initial", json={}).json()
    market_state = client.get("/market/initial").json()
    return {
        "round_number": 1,
        "teams": [{"id": f"team-{i + 1}", "state": team_state, "decisions": {}} for i in range(num_teams)],
        "market_state": market_state,
        "match_seed": match_seed,
    }


class TestEndpoints:
    """Test suite for the HTTP surface"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["engine_version"] == CONFIG.engine.engine_version

    def test_initial_team(self, client):
        response = client.post("/teams/initial", json={"cash": 1_000_000, "include_products": False})
        data = response.json()

        assert response.status_code == 200
        assert data["cash"] == 1_000_000
        assert data["products"] == []

    def test_initial_team_rejects_bad_brand(self, client):
        response = client.post("/teams/initial", json={"brand_value": 3})
        assert response.status_code == 422

    def test_initial_market(self, client):
        data = client.get("/market/initial").json()

        assert data["round_number"] == 1
        assert "Budget" in data["demand_by_segment"]

    def test_round(self, client):
        response = client.post("/rounds", json=round_payload(client))
        data = response.json()

        assert response.status_code == 200
        assert len(data["results"]) == 2
        assert data["new_market_state"]["round_number"] == 2

    def test_round_replay(self, client):
        payload = round_payload(client)

        first = client.post("/rounds", json=payload).json()
        second = client.post("/rounds", json=payload).json()

        assert first["audit_trail"]["final_state_hashes"] == second["audit_trail"]["final_state_hashes"]

    def test_round_without_seed(self, client):
        response = client.post("/rounds", json=round_payload(client, match_seed=None))
        assert response.status_code == 422

    def test_round_with_unknown_segment(self, client):
        payload = round_payload(client)
        payload["teams"][0]["state"]["products"][0]["segment"] = "Luxury"

        response = client.post("/rounds", json=payload)

        assert response.status_code == 400

    def test_round_requires_teams(self, client):
        payload = round_payload(client)
        payload["teams"] = []

        assert client.post("/rounds", json=payload).status_code == 422

    def test_round_with_unknown_event(self, client):
        payload = round_payload(client)
        payload["events"] = [{"type": "alien_invasion"}]

        assert client.post("/rounds", json=payload).status_code == 400

    def test_validate_decisions(self, client):
        state = client.post("/teams/initial", json={}).json()
        response = client.post("/decisions/validate", json={
            "state": state,
            "decisions": {"factory": {"green_investments": {"ghost": 1_000_000}}},
        })
        data = response.json()

        assert response.status_code == 200
        assert data["valid"] is False
        assert data["corrected_decisions"]["factory"]["green_investments"] == {}


class TestWebSocket:
    """Test suite for the live match channel"""

    def test_setup_and_round(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "SETUP", "config": {"num_teams": 3, "match_seed": "ws-match"}})
            setup = ws.receive_json()

            ws.send_json({"command": "ROUND"})
            played = ws.receive_json()

        assert setup["type"] == "SETUP_COMPLETE"
        assert setup["teams"] == ["team-1", "team-2", "team-3"]
        assert played["type"] == "ROUND_COMPLETE"
        assert played["output"]["round_number"] == 1
        assert "Round 1 Report" in played["report"]

    def test_history_and_reset(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "SETUP", "config": {"num_teams": 2, "match_seed": "ws-match"}})
            ws.receive_json()
            ws.send_json({"command": "ROUND"})
            ws.receive_json()
            ws.send_json({"command": "HISTORY"})
            history = ws.receive_json()
            ws.send_json({"command": "RESET"})
            reset = ws.receive_json()

        assert len(history["history"]) == 1
        assert history["history"][0]["round"] == 1
        assert reset == {"type": "RESET", "round": 0}
        assert not manager.is_initialized

    def test_round_before_setup(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "ROUND"})
            response = ws.receive_json()

        assert response["type"] == "ERROR"

    def test_unknown_command(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "DANCE"})
            response = ws.receive_json()

        assert response["type"] == "ERROR"

    def test_rejected_round_keeps_round_number(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "SETUP", "config": {"num_teams": 2, "match_seed": "ws-match"}})
            ws.receive_json()
            ws.send_json({"command": "ROUND", "events": [{"type": "not_an_event"}]})
            rejected = ws.receive_json()
            ws.send_json({"command": "ROUND"})
            played = ws.receive_json()

        assert rejected["type"] == "ERROR"
        assert played["type"] == "ROUND_COMPLETE"
        assert played["output"]["round_number"] == 1
        assert manager.round_number == 1
        assert manager.market_state.round_number == 2
