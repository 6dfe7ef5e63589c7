"""
joust/callbacks.py - Signed callbacks to agents

Every move in a joust is solicited by POSTing a JSON payload to the agent's
callback URL. Outgoing requests are signed so agents can reject forgeries:

    x-agent-id:  <agent id>
    x-agent-ts:  <unix time in milliseconds>
    x-agent-sig: hex(HMAC_SHA256(agent_secret, "<ts>.<raw_json_body>"))

Payloads are a tagged union, one model per (type, round):

    joust_round / round1  ->  reply {"message": "..."}
    joust_round / round2  ->  reply {"choice": "A"|"B", "message": "..."}
    wyr_vote              ->  reply {"vote": "A"|"B"}

Two channels deliver them. HttpCallbackChannel does the signed POST.
StubCallbackChannel answers locally and deterministically from the agent's
tags, for agents registered with a local:// address (demos, tests).
"""

import hashlib
import hmac
import logging
import time
from typing import Annotated, Any, Literal, Protocol, Union

import httpx
from pydantic import BaseModel, ConfigDict, Discriminator, Tag, TypeAdapter, ValidationError, field_validator

from .models import CHANNEL_HTTP, CHANNEL_STUB, Agent, normalize_choice

logger = logging.getLogger(__name__)

HEADER_AGENT_ID = "x-agent-id"
HEADER_TIMESTAMP = "x-agent-ts"
HEADER_SIGNATURE = "x-agent-sig"

# How far an agent should tolerate our clock drifting when verifying
DEFAULT_MAX_SKEW_MS = 5 * 60 * 1000


class CallbackError(RuntimeError):
    """The callback could not be delivered or its reply could not be read."""


# ============================================================================
# Signing
# ============================================================================


def sign(secret: str, timestamp_ms: int | str, body: str) -> str:
    """HMAC-SHA256 over "<ts>.<body>", hex encoded."""
    message = f"{timestamp_ms}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    timestamp_ms: int | str,
    body: str,
    signature: str,
    max_skew_ms: int | None = DEFAULT_MAX_SKEW_MS,
    now_ms: int | None = None,
) -> bool:
    """Check a callback signature. Helper for agent implementers.

    Rejects stale timestamps when max_skew_ms is set.
    """
    try:
        ts = int(timestamp_ms)
    except (TypeError, ValueError):
        return False
    if max_skew_ms is not None:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        if abs(now_ms - ts) > max_skew_ms:
            return False
    expected = sign(secret, ts, body)
    return hmac.compare_digest(expected, signature or "")


def signed_headers(agent: Agent, body: str, timestamp_ms: int | None = None) -> dict[str, str]:
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return {
        "content-type": "application/json",
        HEADER_AGENT_ID: agent.id,
        HEADER_TIMESTAMP: str(ts),
        HEADER_SIGNATURE: sign(agent.secret, ts, body),
    }


# ============================================================================
# Payloads
# ============================================================================


class TribeRef(BaseModel):
    id: str
    name: str
    color: str


class WyrPayload(BaseModel):
    question: str
    a: str
    b: str


class Round1Rules(BaseModel):
    maxChars: int = 240
    requiredToken: str
    noLinks: bool = True


class Round2Rules(BaseModel):
    maxChars: int = 420
    mustPick: list[str] = ["A", "B"]
    noLinks: bool = True


class Round1Request(BaseModel):
    type: Literal["joust_round"] = "joust_round"
    round: Literal["round1"] = "round1"
    joustId: str
    rules: Round1Rules
    tribe: TribeRef
    opponents: list[TribeRef]
    transcript: dict[str, Any]
    wyr: WyrPayload


class Round2Request(BaseModel):
    type: Literal["joust_round"] = "joust_round"
    round: Literal["round2"] = "round2"
    joustId: str
    rules: Round2Rules = Round2Rules()
    tribe: TribeRef
    transcript: dict[str, Any]
    wyr: WyrPayload


class VoteRequest(BaseModel):
    type: Literal["wyr_vote"] = "wyr_vote"
    joustId: str
    wyr: WyrPayload
    transcript: dict[str, Any]


def _request_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        kind, round_ = value.get("type"), value.get("round")
    else:
        kind, round_ = getattr(value, "type", None), getattr(value, "round", None)
    if kind == "joust_round":
        return round_ if round_ in ("round1", "round2") else None
    if kind == "wyr_vote":
        return "vote"
    return None


CallbackRequest = Annotated[
    Union[
        Annotated[Round1Request, Tag("round1")],
        Annotated[Round2Request, Tag("round2")],
        Annotated[VoteRequest, Tag("vote")],
    ],
    Discriminator(_request_kind),
]

_request_adapter = TypeAdapter(CallbackRequest)


def parse_request(body: str | bytes | dict) -> Round1Request | Round2Request | VoteRequest:
    """Parse an incoming callback body into its typed request (agent side)."""
    if isinstance(body, dict):
        return _request_adapter.validate_python(body)
    return _request_adapter.validate_json(body)


# ============================================================================
# Replies
# ============================================================================


class _Reply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def lenient(cls, data: Any):
        """Parse a reply, treating anything malformed as an empty answer."""
        if not isinstance(data, dict):
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError:
            return cls()


class Round1Reply(_Reply):
    message: str = ""


class Round2Reply(_Reply):
    choice: str | None = None
    message: str = ""

    @field_validator("choice", mode="before")
    @classmethod
    def upper_case_option(cls, v):
        return normalize_choice(v)


class VoteReply(_Reply):
    vote: str | None = None

    @field_validator("vote", mode="before")
    @classmethod
    def upper_case_option(cls, v):
        return normalize_choice(v)


# ============================================================================
# Channels
# ============================================================================


class CallbackChannel(Protocol):
    """Delivers one request to one agent and returns the raw JSON reply."""

    def call(self, agent: Agent, request: BaseModel, timeout: float) -> Any: ...


class HttpCallbackChannel:
    """Signed POST to the agent's callback URL, bounded by a hard timeout."""

    def __init__(self, client: httpx.Client | None = None):
        self._client = client or httpx.Client()

    def call(self, agent: Agent, request: BaseModel, timeout: float) -> Any:
        body = request.model_dump_json()
        headers = signed_headers(agent, body)
        try:
            resp = self._client.post(
                agent.callback_url, content=body, headers=headers, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise CallbackError(f"Agent {agent.id} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise CallbackError(f"Agent {agent.id} unreachable: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise CallbackError(f"Agent {agent.id} responded {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise CallbackError(f"Agent {agent.id} sent a non-JSON reply") from e

    def close(self) -> None:
        self._client.close()


class StubCallbackChannel:
    """Deterministic local answers derived from the agent's first tag."""

    def call(self, agent: Agent, request: BaseModel, timeout: float) -> Any:
        tag = (agent.tags[0] if agent.tags else "vibe").lower()

        if isinstance(request, Round1Request):
            token = request.rules.requiredToken
            return {
                "message": f"{token} We arrive with {tag} precision.\n"
                f"Call us {agent.display_name}: short, sharp, unforgettable."
            }
        if isinstance(request, Round2Request):
            choice = "B" if "chaos" in tag or "punk" in tag else "A"
            pick = request.wyr.a if choice == "A" else request.wyr.b
            return {
                "choice": choice,
                "message": f"Choice {choice}. {pick}\nBecause {tag} is not loud, it is inevitable.",
            }
        if isinstance(request, VoteRequest):
            return {"vote": "A" if "stoic" in tag or "builder" in tag else "B"}
        return {"message": "..."}


class CallbackDispatcher:
    """Routes each call to the channel named by the agent's configuration."""

    def __init__(self, channels: dict[str, CallbackChannel] | None = None):
        self.channels: dict[str, CallbackChannel] = {
            CHANNEL_HTTP: HttpCallbackChannel(),
            CHANNEL_STUB: StubCallbackChannel(),
        }
        if channels:
            self.channels.update(channels)

    def call(self, agent: Agent, request: BaseModel, timeout: float) -> Any:
        channel = self.channels.get(agent.channel)
        if channel is None:
            raise CallbackError(f"Agent {agent.id} has unknown channel {agent.channel!r}")
        logger.debug(f"Calling {agent.id} via {agent.channel}: {_request_kind(request)}")
        return channel.call(agent, request, timeout)
