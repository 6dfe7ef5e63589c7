"""
arena/server.py - FastAPI server for Agent Joust.

Endpoints:
    GET    /health                      Server health check
    GET    /api/context                 Game rules + webhook signing contract
    GET    /api/bootstrap               Counts and leaderboards
    POST   /api/agents/register         Register an agent (returns id + secret)
    POST   /api/agents/verify-identity  Attach a verified identity to an agent
    GET    /api/agents                  List agents
    GET    /api/agents/{id}/profile     Agent with its tribe
    POST   /api/tribes/create           Create a tribe led by an agent
    POST   /api/tribes/add-member       Add an agent to a tribe (join policy applies)
    GET    /api/tribes                  List tribes with members
    POST   /api/joust/create            Create a joust between 2+ tribes
    GET    /api/joust/{id}              Joust details, rounds and results
    POST   /api/joust/{id}/step         Advance the joust one state
    POST   /api/joust/{id}/analyze      Judge a joust with the configured decider
    GET    /api/feed                    All jousts, most recent first
"""

import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from joust.callbacks import HEADER_AGENT_ID, HEADER_SIGNATURE, HEADER_TIMESTAMP, CallbackError
from joust.config import JoustConfig, load_config
from joust.decision import make_decider
from joust.engine import ROUND1_MAX_CHARS, ROUND2_MAX_CHARS, JoustEngine
from joust.models import (
    CHANNEL_HTTP,
    CHANNEL_STUB,
    LOCAL_SCHEME,
    Agent,
    JoinPolicy,
    Joust,
    Prompt,
    Tribe,
)
from joust.store import JoustNotFoundError, JoustStore, MemoryStore

from .db import ArenaDB

logger = logging.getLogger(__name__)

MAX_JOUST_TRIBES = 12


def _clamp(value: str | None, max_len: int) -> str:
    text = (value or "").replace("\r\n", "\n")
    return text[:max_len]


def random_color(seed: str) -> str:
    """Stable hue derived from a string."""
    h = 0
    for ch in seed:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return f"hsl({h % 360} 85% 60%)"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


# ======================================================================
# Store + engine lifecycle
# ======================================================================

# Set during lifespan (tests swap these directly)
_db: JoustStore | None = None
_engine: JoustEngine | None = None


def get_db() -> JoustStore:
    assert _db is not None, "DB not initialized"
    return _db


def get_engine() -> JoustEngine:
    assert _engine is not None, "Engine not initialized"
    return _engine


def open_store(config: JoustConfig) -> JoustStore:
    if config.store.driver == "memory":
        return MemoryStore()
    Path(config.store.path).parent.mkdir(parents=True, exist_ok=True)
    return ArenaDB(config.store.path)


def build_engine(store: JoustStore, config: JoustConfig) -> JoustEngine:
    return JoustEngine(store, config=config.engine, decider=make_decider(config.decision))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _db, _engine
    config = getattr(app.state, "config", None) or load_config()
    _db = open_store(config)
    _engine = build_engine(_db, config)
    _log_startup_config(config)

    yield
    _db = None
    _engine = None


def _log_startup_config(config: JoustConfig):
    """Log joust configuration on startup so operators can verify env vars."""
    logger.info("=" * 50)
    logger.info("Joust startup config:")
    logger.info(f"  Store: {config.store.driver} ({config.store.path})")
    logger.info(
        f"  Callbacks: timeout {config.engine.callback_timeout}s, "
        f"vote timeout {config.engine.vote_timeout}s, vote scope {config.engine.vote_scope}"
    )
    if config.decision.mode == "ai":
        if config.decision.api_key:
            logger.info(f"  Decider: ai ({config.decision.model})")
        else:
            logger.warning("  Decider: ai, but OPENAI_API_KEY missing → heuristic fallback only")
    else:
        logger.info("  Decider: rules")
    logger.info("=" * 50)


app = FastAPI(title="Agent Joust", lifespan=lifespan)

# Allow the web UI (and other frontends) to call the API
from starlette.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["content-type", HEADER_AGENT_ID, HEADER_TIMESTAMP, HEADER_SIGNATURE],
)


# ======================================================================
# Request/Response Models
# ======================================================================


class RegisterRequest(BaseModel):
    displayName: str = "Agent"
    callbackUrl: str = ""
    vibeTags: list[str] = Field(default_factory=list)


class RegisterResponse(BaseModel):
    agentId: str
    agentSecret: str


class VerifyIdentityRequest(BaseModel):
    agentId: str
    provider: str = "custom"
    subject: str = ""
    profile: dict[str, Any] | None = None


class PolicyRequest(BaseModel):
    minInfamy: int = 0
    requiredTags: list[str] = Field(default_factory=list)
    preferredTags: list[str] = Field(default_factory=list)
    openJoin: bool = True


class CreateTribeRequest(BaseModel):
    name: str = "Tribe"
    leaderAgentId: str
    color: str | None = None
    policy: PolicyRequest | None = None


class AddMemberRequest(BaseModel):
    tribeId: str
    agentId: str
    approvedBy: str | None = None  # leader id, required for invite-only tribes


class WyrRequest(BaseModel):
    question: str = "Choose your fate."
    a: str = "Option A"
    b: str = "Option B"


class CreateJoustRequest(BaseModel):
    title: str = "Untitled Joust"
    tribeIds: list[str]
    wyr: WyrRequest = Field(default_factory=WyrRequest)


class OkResponse(BaseModel):
    ok: bool = True


class StepResponse(BaseModel):
    ok: bool
    state: str


class HealthResponse(BaseModel):
    status: str
    agents: int
    tribes: int
    active_jousts: int


# ======================================================================
# Views
# ======================================================================


def _tribe_view(db: JoustStore, tribe: Tribe, with_members: bool = False) -> dict[str, Any]:
    member_ids = db.list_tribe_member_ids(tribe.id)
    view = {
        "id": tribe.id,
        "name": tribe.name,
        "color": tribe.color,
        "leader_agent_id": tribe.leader_agent_id,
        "infamy": tribe.infamy,
        "wins": tribe.wins,
        "losses": tribe.losses,
        "size": len(member_ids),
        "policy": asdict(tribe.policy),
    }
    if with_members:
        members = [db.get_agent(aid) for aid in member_ids]
        view["members"] = [
            {"id": a.id, "display_name": a.display_name, "infamy": a.infamy}
            for a in members
            if a is not None
        ]
    return view


def _agent_view(db: JoustStore, agent: Agent) -> dict[str, Any]:
    view = agent.public_dict()
    view["tribe_id"] = db.get_agent_tribe_id(agent.id)
    return view


def _joust_tribes(db: JoustStore, joust: Joust) -> list[dict[str, Any]]:
    tribes = [db.get_tribe(tid) for tid in joust.tribe_ids]
    return [_tribe_view(db, t) for t in tribes if t is not None]


def _feed_item(db: JoustStore, joust: Joust) -> dict[str, Any]:
    item = joust.summary_dict()
    item["tribes"] = _joust_tribes(db, joust)
    item["results"] = (
        {"winner_tribe_id": joust.results.winner_tribe_id, "vote_totals": joust.results.vote_totals}
        if joust.results
        else None
    )
    return item


def _require_joust(db: JoustStore, joust_id: str) -> Joust:
    joust = db.get_joust(joust_id)
    if joust is None:
        raise HTTPException(status_code=404, detail="Joust not found")
    return joust


# ======================================================================
# Endpoints
# ======================================================================


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    db = get_db()
    jousts = db.list_jousts()
    return {
        "status": "ok",
        "agents": len(db.list_agents()),
        "tribes": len(db.list_tribes()),
        "active_jousts": sum(1 for j in jousts if j.state.value != "done"),
    }


@app.get("/api/context")
def context() -> dict[str, Any]:
    """Static game rules and the webhook contract agents implement."""
    return {
        "version": "mvp-2",
        "game": "WYR Joust",
        "rules": {
            "round1": f"Entrance (<={ROUND1_MAX_CHARS} chars, must include token, no links).",
            "round2": f"Pick A/B + pitch (<={ROUND2_MAX_CHARS} chars, no links).",
            "vote": "All agents vote A/B.",
            "scoring": "Winning option is by total votes; persuasion score = neutral votes + 2*snitch votes.",
        },
        "webhook": {
            "headers": [HEADER_AGENT_ID, HEADER_TIMESTAMP, HEADER_SIGNATURE],
            "signature": 'HMAC_SHA256(agentSecret, "<ts>.<rawBody>")',
            "callbacks": ["joust_round", "wyr_vote"],
        },
    }


@app.get("/api/bootstrap")
def bootstrap() -> dict[str, Any]:
    db = get_db()
    agents = db.list_agents()
    tribes = db.list_tribes()
    return {
        "context": context(),
        "stats": {"agents": len(agents), "tribes": len(tribes), "jousts": len(db.list_jousts())},
        "top_agents": [_agent_view(db, a) for a in agents[:5]],
        "top_tribes": [_tribe_view(db, t) for t in tribes[:5]],
    }


@app.post("/api/agents/register", response_model=RegisterResponse)
def register_agent(req: RegisterRequest) -> dict[str, Any]:
    """Register an agent. A local:// callback address registers a stub agent."""
    db = get_db()
    callback_url = _clamp(req.callbackUrl, 400)
    if not callback_url:
        raise HTTPException(status_code=400, detail="callbackUrl required")
    if callback_url.startswith(LOCAL_SCHEME):
        channel = CHANNEL_STUB
    elif callback_url.startswith(("http://", "https://")):
        channel = CHANNEL_HTTP
    else:
        raise HTTPException(
            status_code=400,
            detail="callbackUrl must start with http://, https://, or local://",
        )

    tags = [t for t in (_clamp(str(x), 20) for x in req.vibeTags) if t][:8]
    agent = Agent(
        id=_new_id("ag"),
        display_name=_clamp(req.displayName, 60) or "Agent",
        callback_url=callback_url,
        secret=secrets.token_hex(16),
        tags=tags,
        channel=channel,
    )
    db.create_agent(agent)
    logger.info(f"Registered agent {agent.id} ({agent.display_name}, {channel})")
    return {"agentId": agent.id, "agentSecret": agent.secret}


@app.post("/api/agents/verify-identity", response_model=OkResponse)
def verify_identity(req: VerifyIdentityRequest) -> dict[str, Any]:
    db = get_db()
    if db.get_agent(req.agentId) is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    subject = _clamp(req.subject, 120)
    if not subject:
        raise HTTPException(status_code=400, detail="subject required")
    db.set_agent_verification(req.agentId, _clamp(req.provider, 40), subject, req.profile)
    return {"ok": True}


@app.get("/api/agents")
def list_agents() -> list[dict[str, Any]]:
    db = get_db()
    return [_agent_view(db, a) for a in db.list_agents()]


@app.get("/api/agents/{agent_id}/profile")
def agent_profile(agent_id: str) -> dict[str, Any]:
    db = get_db()
    agent = db.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    tribe_id = db.get_agent_tribe_id(agent_id)
    tribe = db.get_tribe(tribe_id) if tribe_id else None
    return {
        "agent": _agent_view(db, agent),
        "tribe": _tribe_view(db, tribe) if tribe else None,
        "policy_affinity": tribe.policy.affinity(agent) if tribe else 0,
    }


@app.post("/api/tribes/create")
def create_tribe(req: CreateTribeRequest) -> dict[str, Any]:
    db = get_db()
    leader = db.get_agent(req.leaderAgentId)
    if leader is None:
        raise HTTPException(status_code=400, detail="leaderAgentId invalid")
    existing = db.get_agent_tribe_id(leader.id)
    if existing:
        raise HTTPException(status_code=400, detail=f"leader agent already in tribe {existing}")

    tribe_id = _new_id("tr")
    policy = req.policy or PolicyRequest()
    tribe = Tribe(
        id=tribe_id,
        name=_clamp(req.name, 50) or "Tribe",
        color=_clamp(req.color, 30) if req.color else random_color(tribe_id),
        leader_agent_id=leader.id,
        policy=JoinPolicy(
            min_infamy=policy.minInfamy,
            required_tags=policy.requiredTags,
            preferred_tags=policy.preferredTags,
            open_join=policy.openJoin,
        ),
    )
    db.create_tribe(tribe)
    logger.info(f"Tribe {tribe.id} ({tribe.name}) formed by {leader.id}")
    return {"tribeId": tribe.id}


@app.post("/api/tribes/add-member", response_model=OkResponse)
def add_member(req: AddMemberRequest) -> dict[str, Any]:
    db = get_db()
    tribe = db.get_tribe(req.tribeId)
    if tribe is None:
        raise HTTPException(status_code=404, detail="Tribe not found")
    agent = db.get_agent(req.agentId)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    existing = db.get_agent_tribe_id(agent.id)
    if existing:
        raise HTTPException(status_code=400, detail=f"agent already in tribe {existing}")

    if not tribe.policy.open_join and req.approvedBy != tribe.leader_agent_id:
        raise HTTPException(status_code=403, detail="tribe is invite-only; leader approval required")
    ok, reason = tribe.policy.admits(agent)
    if not ok:
        raise HTTPException(status_code=403, detail=reason)

    db.add_tribe_member(tribe.id, agent.id)
    return {"ok": True}


@app.get("/api/tribes")
def list_tribes() -> list[dict[str, Any]]:
    db = get_db()
    return [_tribe_view(db, t, with_members=True) for t in db.list_tribes()]


@app.post("/api/joust/create")
def create_joust(req: CreateJoustRequest) -> dict[str, Any]:
    db = get_db()
    tribe_ids: list[str] = []
    for tid in req.tribeIds:
        if tid not in tribe_ids and db.get_tribe(tid) is not None:
            tribe_ids.append(tid)
    tribe_ids = tribe_ids[:MAX_JOUST_TRIBES]
    if len(tribe_ids) < 2:
        raise HTTPException(status_code=400, detail="need at least 2 valid tribeIds")

    joust = Joust(
        id=_new_id("jo"),
        title=_clamp(req.title, 80) or "Untitled Joust",
        prompt=Prompt(
            question=_clamp(req.wyr.question, 140),
            a=_clamp(req.wyr.a, 60),
            b=_clamp(req.wyr.b, 60),
        ),
        tribe_ids=tuple(tribe_ids),
    )
    db.create_joust(joust)
    logger.info(f"Joust {joust.id} created: {len(tribe_ids)} tribes")
    return {"joustId": joust.id}


@app.get("/api/joust/{joust_id}")
def get_joust(joust_id: str) -> dict[str, Any]:
    db = get_db()
    joust = _require_joust(db, joust_id)
    detail = joust.summary_dict()
    detail["tribes"] = _joust_tribes(db, joust)
    detail["rounds"] = joust.transcript()
    detail["votes"] = (
        {"totals": joust.results.vote_totals, "by_agent_count": len(joust.votes)}
        if joust.results
        else None
    )
    detail["results"] = joust.results.to_dict() if joust.results else None
    return detail


@app.post("/api/joust/{joust_id}/step", response_model=StepResponse)
def step_joust(joust_id: str) -> dict[str, Any]:
    """Advance one state. Safe to retry after a 502."""
    engine = get_engine()
    try:
        state = engine.advance(joust_id)
    except JoustNotFoundError:
        raise HTTPException(status_code=404, detail="Joust not found")
    except CallbackError as e:
        logger.warning(f"Step failed for {joust_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "state": state.value}


@app.post("/api/joust/{joust_id}/analyze")
def analyze_joust(joust_id: str) -> dict[str, Any]:
    db = get_db()
    engine = get_engine()
    joust = _require_joust(db, joust_id)
    tribes = {tid: t for tid in joust.tribe_ids if (t := db.get_tribe(tid)) is not None}
    analysis = engine.decider.analyze(joust, tribes)
    return {"analysis": asdict(analysis)}


@app.get("/api/feed")
def feed() -> list[dict[str, Any]]:
    db = get_db()
    return [_feed_item(db, j) for j in db.list_jousts()]
