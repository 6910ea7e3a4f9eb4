"""
Deterministic execution context.

Every source of randomness and every generated id in a round comes from a
Context derived from (match seed, round number, team id). Two contexts built
from the same arguments produce identical draws; contexts for different
teams or purposes draw from independent numpy SeedSequence children, so one
team's outcomes reveal nothing about another's.

There is no global fallback generator. Code that needs randomness takes a
Context argument and raises DeterminismError when it is missing.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Dict, Optional

import numpy as np

from config import CONFIG


PURPOSES = ("market", "factory", "hr", "marketing", "rd", "finance", "general")


class DeterminismError(ValueError):
    """Raised when an operation would silently lose reproducibility."""


def hash_string(text: str) -> int:
    """Stable 64-bit integer digest of a string (independent of PYTHONHASHSEED)."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


@dataclass(frozen=True)
class SeedBundle:
    """Seeds derived for one round. Recorded in the audit trail."""

    match_seed: str
    round_number: int
    round_seed: int
    market_seed: int
    factory_seed: int
    hr_seed: int
    marketing_seed: int
    rd_seed: int
    finance_seed: int

    def seed_for(self, purpose: str) -> int:
        if purpose == "general":
            return self.round_seed
        if purpose in PURPOSES:
            return getattr(self, f"{purpose}_seed")
        # Ad-hoc purposes still derive from the match seed, never from global state
        return hash_string(f"{self.match_seed}-{purpose}-{self.round_number}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def derive_seed_bundle(match_seed: str, round_number: int) -> SeedBundle:
    """Pure function of its inputs: same (seed, round) -> same bundle."""
    if not match_seed:
        raise DeterminismError("a non-empty match seed is required to derive round seeds")

    def derive(purpose: str) -> int:
        return hash_string(f"{match_seed}-{purpose}-{round_number}")

    return SeedBundle(
        match_seed=match_seed,
        round_number=round_number,
        round_seed=derive("round"),
        market_seed=derive("market"),
        factory_seed=derive("factory"),
        hr_seed=derive("hr"),
        marketing_seed=derive("marketing"),
        rd_seed=derive("rd"),
        finance_seed=derive("finance"),
    )


class DeterministicIdGenerator:
    """Counter-based ids, namespaced by entity kind: {kind}-{team}-r{round}-{n}."""

    def __init__(self, round_number: int, team_id: str):
        self.round_number = round_number
        self.team_id = team_id
        self._counters: Dict[str, int] = {}

    def next(self, kind: str) -> str:
        counter = self._counters.get(kind, 0) + 1
        self._counters[kind] = counter
        return f"{kind}-{self.team_id}-r{self.round_number}-{counter}"

    def reset(self) -> None:
        self._counters.clear()


class Context:
    """
    Per-(round, team) source of random substreams and ids.

    Streams are created lazily and cached, so successive calls to
    ``rng("market")`` continue the same sequence.
    """

    def __init__(self, seeds: SeedBundle, round_number: int, team_id: str):
        self.seeds = seeds
        self.round_number = round_number
        self.team_id = team_id
        self.id_generator = DeterministicIdGenerator(round_number, team_id)
        self.engine_version = CONFIG.engine.engine_version
        self.schema_version = CONFIG.engine.schema_version
        self._team_key = hash_string(f"team:{team_id}")
        self._streams: Dict[str, np.random.Generator] = {}

    def rng(self, purpose: str) -> np.random.Generator:
        stream = self._streams.get(purpose)
        if stream is None:
            sequence = np.random.SeedSequence(
                entropy=self.seeds.seed_for(purpose),
                spawn_key=(self._team_key, hash_string(f"purpose:{purpose}")),
            )
            stream = np.random.Generator(np.random.PCG64(sequence))
            self._streams[purpose] = stream
        return stream

    def random(self, purpose: str) -> float:
        """Next float in [0, 1) from the named substream."""
        return float(self.rng(purpose).random())

    def uniform(self, purpose: str, low: float, high: float) -> float:
        return low + self.random(purpose) * (high - low)

    def next_id(self, kind: str) -> str:
        return self.id_generator.next(kind)


def create_context(match_seed: str, round_number: int, team_id: str) -> Context:
    seeds = derive_seed_bundle(match_seed, round_number)
    return Context(seeds, round_number, team_id)


def create_market_context(match_seed: str, round_number: int) -> Context:
    """Context for market-wide draws (demand noise, macro evolution)."""
    return create_context(match_seed, round_number, CONFIG.engine.market_scope)


def create_test_context(seed: int = 12345, round_number: int = 1, team_id: str = "test-team") -> Context:
    return create_context(str(seed), round_number, team_id)


def require_context(ctx: Optional[Context], operation: str) -> Context:
    if ctx is None:
        raise DeterminismError(f"{operation} requires a deterministic Context")
    return ctx


def _canonical(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"cannot hash value of type {type(value).__name__}")


def hash_state(state: Any) -> str:
    """
    Order-independent content hash for audit and replay comparison.

    Keys are sorted at every depth, so two states that differ only in dict
    insertion order hash identically. Not used by any business logic.
    """
    if not isinstance(state, (dict, list)):
        state = _canonical(state)
    payload = json.dumps(state, sort_keys=True, separators=(",", ":"), default=_canonical)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
