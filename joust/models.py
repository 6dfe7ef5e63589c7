"""
joust/models.py - Core data types for the joust engine

Agents, tribes, jousts, round posts and the results record written when a
joust finishes. Everything here is plain data; persistence lives behind the
JoustStore protocol (joust/store.py) and the progression logic lives in
joust/engine.py.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# ============================================================================
# Constants
# ============================================================================

OPTIONS = ("A", "B")

# Reserved address scheme for offline agents answered by the stub channel
LOCAL_SCHEME = "local://"

CHANNEL_HTTP = "http"
CHANNEL_STUB = "stub"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_choice(value: Any) -> str | None:
    """Upper-case an A/B answer. Anything else becomes None."""
    if value is None:
        return None
    choice = str(value).strip().upper()
    return choice if choice in OPTIONS else None


class JoustState(str, Enum):
    """Joust progression states, in strict forward order."""

    DRAFT = "draft"
    ROUND1 = "round1"
    ROUND2 = "round2"
    VOTE = "vote"
    DONE = "done"

    @property
    def next(self) -> "JoustState":
        order = list(JoustState)
        idx = order.index(self)
        return order[min(idx + 1, len(order) - 1)]


class Round(str, Enum):
    ROUND1 = "round1"
    ROUND2 = "round2"


# ============================================================================
# Agents & Tribes
# ============================================================================


@dataclass
class Agent:
    """A remote participant with its own callback address and secret."""

    id: str
    display_name: str
    callback_url: str
    secret: str
    tags: list[str] = field(default_factory=list)
    channel: str = CHANNEL_HTTP  # "http" | "stub"
    infamy: int = 0
    wins: int = 0
    losses: int = 0
    created_at: str = field(default_factory=now_iso)

    # Optional identity verification (set after registration)
    verified_provider: str | None = None
    verified_subject: str | None = None
    verified_profile: dict[str, Any] | None = None

    def public_dict(self) -> dict[str, Any]:
        """Everything except the signing secret."""
        data = asdict(self)
        data.pop("secret")
        return data


@dataclass
class JoinPolicy:
    """Who may join a tribe. Consulted on membership changes, not by conquest."""

    min_infamy: int = 0
    required_tags: list[str] = field(default_factory=list)
    preferred_tags: list[str] = field(default_factory=list)
    open_join: bool = True

    def admits(self, agent: Agent) -> tuple[bool, str]:
        """Check infamy and required tags. Returns (ok, reason)."""
        if agent.infamy < self.min_infamy:
            return False, f"infamy {agent.infamy} below minimum {self.min_infamy}"
        have = {t.lower() for t in agent.tags}
        missing = [t for t in self.required_tags if t.lower() not in have]
        if missing:
            return False, f"missing required tags: {', '.join(missing)}"
        return True, ""

    def affinity(self, agent: Agent) -> int:
        """How many preferred tags the agent carries. Advisory only."""
        have = {t.lower() for t in agent.tags}
        return sum(1 for t in self.preferred_tags if t.lower() in have)


@dataclass
class Tribe:
    """A team of agents sharing infamy and a join policy."""

    id: str
    name: str
    color: str
    leader_agent_id: str
    infamy: int = 0
    wins: int = 0
    losses: int = 0
    policy: JoinPolicy = field(default_factory=JoinPolicy)
    created_at: str = field(default_factory=now_iso)

    @property
    def record(self) -> str:
        return f"{self.wins}-{self.losses}"

    def ref(self) -> dict[str, str]:
        """Short form sent to agents in callback payloads."""
        return {"id": self.id, "name": self.name, "color": self.color}


# ============================================================================
# Jousts
# ============================================================================


@dataclass
class Prompt:
    """The would-you-rather question every joust is fought over."""

    question: str
    a: str
    b: str

    def option_text(self, choice: str) -> str:
        return self.a if choice == "A" else self.b


@dataclass
class RoundPost:
    """A tribe's recorded answer for one round. Written at most once."""

    tribe_id: str
    round: Round
    message: str
    choice: str | None = None
    agent_id: str | None = None
    created_at: str = field(default_factory=now_iso)


@dataclass
class TribeResult:
    """Per-tribe scoring plus the infamy delta applied at resolution."""

    choice: str | None
    neutral_votes: int = 0
    snitch_votes: int = 0
    outside_votes: int = 0
    persuasion_score: int = 0
    delta_infamy: int = 0


@dataclass
class DecisionInfo:
    """How the winner was picked."""

    mode: str
    source: str | None = None
    model: str | None = None
    confidence: float | None = None
    verdict: str = ""
    fallback: bool = False


@dataclass
class Migration:
    """Conquest outcome: losing-tribe members moved into the winner."""

    winner_tribe_id: str | None = None
    moved_agents: int = 0
    moved_from_tribes: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class JoustResults:
    """Final record for a finished joust."""

    winner_tribe_id: str | None
    winning_option: str | None
    vote_totals: dict[str, int]
    tribe_results: dict[str, TribeResult]
    decision: DecisionInfo
    migration: Migration

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JoustResults":
        return cls(
            winner_tribe_id=data.get("winner_tribe_id"),
            winning_option=data.get("winning_option"),
            vote_totals=dict(data.get("vote_totals") or {"A": 0, "B": 0}),
            tribe_results={
                tid: TribeResult(**tr) for tid, tr in (data.get("tribe_results") or {}).items()
            },
            decision=DecisionInfo(**(data.get("decision") or {"mode": "rules"})),
            migration=Migration(**(data.get("migration") or {})),
        )


@dataclass
class Joust:
    """One run of the binary-choice protocol between two or more tribes."""

    id: str
    title: str
    prompt: Prompt
    tribe_ids: tuple[str, ...]
    state: JoustState = JoustState.DRAFT
    posts: dict[tuple[Round, str], RoundPost] = field(default_factory=dict)
    votes: dict[str, str] = field(default_factory=dict)
    results: JoustResults | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self):
        self.tribe_ids = tuple(self.tribe_ids)
        self.state = JoustState(self.state)

    @property
    def required_token(self) -> str:
        return f"#{self.id[:5]}"

    def post(self, round: Round, tribe_id: str) -> RoundPost | None:
        return self.posts.get((Round(round), tribe_id))

    def choices(self) -> dict[str, str | None]:
        """Round-2 choice per participating tribe (None if forfeited or missing)."""
        choices = {}
        for tribe_id in self.tribe_ids:
            post = self.post(Round.ROUND2, tribe_id)
            choices[tribe_id] = post.choice if post else None
        return choices

    def transcript(self) -> dict[str, Any]:
        """Rounds so far, in the shape agents receive in callback payloads."""
        out: dict[str, Any] = {"round1": {"posts": {}}, "round2": {"posts": {}}}
        for (round, tribe_id), post in self.posts.items():
            entry: dict[str, Any] = {
                "message": post.message,
                "agentId": post.agent_id,
                "createdAt": post.created_at,
            }
            if round == Round.ROUND2:
                entry["choice"] = post.choice
            out[round.value]["posts"][tribe_id] = entry
        return out

    def summary_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.value,
            "wyr": asdict(self.prompt),
            "tribe_ids": list(self.tribe_ids),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
