import logging
import os
import sys

# Add current directory to path so we can import backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, confloat, conint

from config import CONFIG
from context import DeterminismError
from engine import (
    RoundInput,
    RoundOutput,
    TeamInput,
    create_initial_market_state,
    create_initial_team_state,
    generate_round_report,
    process_round,
    resolve_match_seed,
    validate_decisions,
)
from events import RoundEvent
from models import AllDecisions, MarketState, TeamState

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Round Resolution Engine", version=CONFIG.engine.engine_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Request Models ----------

class EffectInput(BaseModel):
    target: str
    modifier: float


class EventInput(BaseModel):
    type: str
    title: str = ""
    description: str = ""
    effects: List[EffectInput] = Field(default_factory=list)
    target_teams: Optional[Union[List[str], str]] = None


class TeamPayload(BaseModel):
    id: str
    state: Dict[str, Any]
    decisions: Dict[str, Any] = Field(default_factory=dict)


class RoundRequest(BaseModel):
    round_number: conint(ge=1)
    teams: List[TeamPayload] = Field(min_length=1)
    market_state: Dict[str, Any]
    match_seed: Optional[str] = None
    events: List[EventInput] = Field(default_factory=list)


class InitialTeamRequest(BaseModel):
    cash: Optional[confloat(ge=0)] = None
    brand_value: confloat(ge=0, le=1) = 0.5
    include_products: bool = True


class ValidateRequest(BaseModel):
    state: Dict[str, Any]
    decisions: Dict[str, Any] = Field(default_factory=dict)


class ValidateResponse(BaseModel):
    valid: bool
    errors: List[str]
    corrected_decisions: Dict[str, Any]

# ---------- Helpers ----------

def _parse(builder, payload: Dict[str, Any]):
    """Build an engine value from a request payload, mapping bad input to HTTP 400."""
    try:
        return builder(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}") from exc


def _run(round_input: RoundInput) -> RoundOutput:
    try:
        return process_round(round_input)
    except DeterminismError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

# ---------- API Endpoints ----------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "engine_version": CONFIG.engine.engine_version,
        "schema_version": CONFIG.engine.schema_version,
    }


@app.post("/rounds")
async def rounds(req: RoundRequest):
    round_input = _parse(RoundInput.from_dict, req.model_dump())
    output = _run(round_input)
    return output.to_dict()


@app.get("/market/initial")
async def initial_market():
    return create_initial_market_state().to_dict()


@app.post("/teams/initial")
async def initial_team(req: InitialTeamRequest):
    state = create_initial_team_state(
        cash=req.cash,
        brand_value=req.brand_value,
        include_products=req.include_products,
    )
    return state.to_dict()


@app.post("/decisions/validate", response_model=ValidateResponse)
async def decisions_validate(req: ValidateRequest):
    state = _parse(TeamState.from_dict, req.state)
    decisions = _parse(AllDecisions.from_dict, req.decisions)
    validation = validate_decisions(state, decisions)
    return ValidateResponse(
        valid=validation.valid,
        errors=validation.errors,
        corrected_decisions=validation.corrected_decisions.to_dict(),
    )

# ---------- Live Match ----------

class MatchManager:
    """Holds one running match for the websocket client."""

    def __init__(self):
        self.match_seed: Optional[str] = None
        self.teams: Dict[str, TeamState] = {}
        self.market_state: Optional[MarketState] = None
        self.round_number = 0
        self.history: List[Dict[str, Any]] = []

    def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        if config is None:
            config = {}

        num_teams = int(config.get("num_teams", 4))
        if num_teams < 1:
            raise ValueError("num_teams must be at least 1")
        self.match_seed = resolve_match_seed(config.get("match_seed"))

        logger.info(f"Initializing match {self.match_seed} with {num_teams} teams...")
        self.teams = {
            f"team-{i + 1}": create_initial_team_state(cash=config.get("starting_cash"))
            for i in range(num_teams)
        }
        self.market_state = create_initial_market_state()
        self.round_number = 0
        self.history = []

    @property
    def is_initialized(self) -> bool:
        return self.market_state is not None

    def play_round(
        self,
        decisions: Optional[Dict[str, Dict[str, Any]]] = None,
        events: Optional[List[Dict[str, Any]]] = None,
    ) -> RoundOutput:
        if not self.is_initialized:
            raise ValueError("match has not been set up")
        decisions = decisions or {}

        next_round = self.round_number + 1
        round_input = RoundInput(
            round_number=next_round,
            teams=[
                TeamInput(id=team_id, state=state, decisions=AllDecisions.from_dict(decisions.get(team_id)))
                for team_id, state in self.teams.items()
            ],
            market_state=self.market_state,
            match_seed=self.match_seed,
            events=[RoundEvent.from_dict(e) for e in events or []],
        )
        output = process_round(round_input)
        self.round_number = next_round

        for result in output.results:
            self.teams[result.team_id] = result.new_state
        self.market_state = output.new_market_state
        self.history.append({
            "round": self.round_number,
            "rankings": [r.team_id for r in sorted(output.rankings, key=lambda r: r.rank)],
            "hashes": output.audit_trail.final_state_hashes,
        })
        return output

    def reset(self) -> None:
        self.__init__()


manager = MatchManager()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket connected")

    try:
        while True:
            data = await websocket.receive_json()
            command = data.get("command")

            try:
                if command == "SETUP":
                    manager.initialize(data.get("config", {}))
                    await websocket.send_json({
                        "type": "SETUP_COMPLETE",
                        "match_seed": manager.match_seed,
                        "teams": list(manager.teams),
                    })
                elif command == "ROUND":
                    output = manager.play_round(data.get("decisions"), data.get("events"))
                    await websocket.send_json({
                        "type": "ROUND_COMPLETE",
                        "output": output.to_dict(),
                        "report": generate_round_report(output),
                    })
                elif command == "HISTORY":
                    await websocket.send_json({"type": "HISTORY", "history": manager.history})
                elif command == "RESET":
                    manager.reset()
                    await websocket.send_json({"type": "RESET", "round": 0})
                else:
                    await websocket.send_json({"type": "ERROR", "detail": f"unknown command {command!r}"})
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Command %s rejected: %s", command, exc)
                await websocket.send_json({"type": "ERROR", "detail": str(exc)})

    except WebSocketDisconnect:
        logger.info("Client disconnected")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
