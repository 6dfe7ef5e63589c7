"""
joust/engine.py - The joust state machine

    draft -> round1 -> round2 -> vote -> done

advance() moves a joust forward exactly one state per call. Each round only
calls tribes that don't have a post yet, so retrying after a failure never
re-asks an agent that already answered.

Round 1/2 callback errors propagate (the advance is aborted, state is
unchanged, recorded posts stay). Vote callback errors are swallowed per
agent; a silent agent just doesn't vote.

Calls for the same joust are serialized by a per-joust lock; different
jousts advance independently.
"""

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from pydantic import BaseModel

from .callbacks import (
    CallbackDispatcher,
    CallbackError,
    Round1Reply,
    Round1Request,
    Round2Reply,
    Round2Request,
    VoteReply,
    VoteRequest,
    WyrPayload,
)
from .config import EngineConfig
from .conquest import conquer
from .decision import DecisionStrategy, RulesDecision
from .models import Agent, Joust, JoustResults, JoustState, Round, RoundPost, Tribe
from .resolution import apply_reputation, pick_winner
from .scoring import compute_scores
from .store import JoustNotFoundError, JoustStore

logger = logging.getLogger(__name__)

ROUND1_MAX_CHARS = 240
ROUND2_MAX_CHARS = 420
ROUND2_FORFEIT = "(forfeit)"

_LINK_RE = re.compile(r"https?://|www\.", re.IGNORECASE)


def has_link(text: str) -> bool:
    return bool(_LINK_RE.search(text))


def clean_message(raw: str, max_chars: int) -> str | None:
    """Normalize a reply message. None if empty, too long, or contains a link."""
    message = (raw or "").replace("\r\n", "\n").strip()
    if not message or len(message) > max_chars or has_link(message):
        return None
    return message


class JoustEngine:
    """Advances jousts through their rounds and resolves them."""

    def __init__(
        self,
        store: JoustStore,
        config: EngineConfig | None = None,
        decider: DecisionStrategy | None = None,
        dispatcher: CallbackDispatcher | None = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.decider = decider or RulesDecision()
        self.dispatcher = dispatcher or CallbackDispatcher()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _joust_lock(self, joust_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(joust_id, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def advance(self, joust_id: str) -> JoustState:
        """Run one step. Returns the state after the step.

        Raises:
            JoustNotFoundError: unknown joust id
            CallbackError: a round-1/round-2 callback failed (safe to retry)
        """
        with self._joust_lock(joust_id):
            joust = self._load(joust_id)
            if joust.state == JoustState.DONE:
                return joust.state

            if joust.state == JoustState.DRAFT:
                pass
            elif joust.state == JoustState.ROUND1:
                self._run_round1(joust)
            elif joust.state == JoustState.ROUND2:
                self._run_round2(joust)
            elif joust.state == JoustState.VOTE:
                self._run_vote(joust)
                self._resolve(joust_id)
                return JoustState.DONE

            new_state = joust.state.next
            self.store.update_joust_state(joust_id, new_state)
            logger.info(f"Joust {joust_id}: {joust.state.value} -> {new_state.value}")
            return new_state

    def run_to_completion(self, joust_id: str, max_steps: int = 10) -> JoustState:
        """Advance until done (or max_steps). Convenience for CLI and tests."""
        state = self._load(joust_id).state
        for _ in range(max_steps):
            if state == JoustState.DONE:
                break
            state = self.advance(joust_id)
        return state

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, joust_id: str) -> Joust:
        joust = self.store.get_joust(joust_id)
        if joust is None:
            raise JoustNotFoundError(joust_id)
        return joust

    def _tribes(self, joust: Joust) -> dict[str, Tribe]:
        tribes = {}
        for tribe_id in joust.tribe_ids:
            tribe = self.store.get_tribe(tribe_id)
            if tribe is not None:
                tribes[tribe_id] = tribe
        return tribes

    def _wyr(self, joust: Joust) -> WyrPayload:
        return WyrPayload(question=joust.prompt.question, a=joust.prompt.a, b=joust.prompt.b)

    def _leader(self, tribe: Tribe | None) -> Agent | None:
        return self.store.get_agent(tribe.leader_agent_id) if tribe else None

    def _record(self, joust: Joust, post: RoundPost) -> None:
        self.store.save_round_post(joust.id, post)
        joust.posts[(post.round, post.tribe_id)] = post

    def _call(self, agent: Agent, request: BaseModel, timeout: float):
        return self.dispatcher.call(agent, request, timeout)

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def _run_round1(self, joust: Joust) -> None:
        token = joust.required_token
        tribes = self._tribes(joust)

        for tribe_id in joust.tribe_ids:
            if joust.post(Round.ROUND1, tribe_id):
                continue
            tribe = tribes.get(tribe_id)
            leader = self._leader(tribe)
            if tribe is None or leader is None:
                logger.warning(f"Joust {joust.id}: tribe {tribe_id} has no leader, forfeiting round1")
                self._record(joust, RoundPost(tribe_id, Round.ROUND1, f"{token} (forfeit)"))
                continue

            request = Round1Request(
                joustId=joust.id,
                rules={"maxChars": ROUND1_MAX_CHARS, "requiredToken": token},
                tribe=tribe.ref(),
                opponents=[t.ref() for tid, t in tribes.items() if tid != tribe_id],
                transcript=joust.transcript(),
                wyr=self._wyr(joust),
            )
            reply = Round1Reply.lenient(self._call(leader, request, self.config.callback_timeout))
            message = clean_message(reply.message, ROUND1_MAX_CHARS)

            if message is None:
                logger.info(f"Joust {joust.id}: {tribe_id} forfeits round1")
                message = f"{token} (forfeit)"
            elif token not in message:
                message = f"{token} {message}"
            self._record(joust, RoundPost(tribe_id, Round.ROUND1, message, agent_id=leader.id))

    def _run_round2(self, joust: Joust) -> None:
        tribes = self._tribes(joust)

        for tribe_id in joust.tribe_ids:
            if joust.post(Round.ROUND2, tribe_id):
                continue
            tribe = tribes.get(tribe_id)
            leader = self._leader(tribe)
            if tribe is None or leader is None:
                logger.warning(f"Joust {joust.id}: tribe {tribe_id} has no leader, forfeiting round2")
                self._record(joust, RoundPost(tribe_id, Round.ROUND2, ROUND2_FORFEIT))
                continue

            request = Round2Request(
                joustId=joust.id,
                rules={"maxChars": ROUND2_MAX_CHARS},
                tribe=tribe.ref(),
                transcript=joust.transcript(),
                wyr=self._wyr(joust),
            )
            reply = Round2Reply.lenient(self._call(leader, request, self.config.callback_timeout))
            message = clean_message(reply.message, ROUND2_MAX_CHARS)

            if message is None or reply.choice is None:
                logger.info(f"Joust {joust.id}: {tribe_id} forfeits round2")
                post = RoundPost(tribe_id, Round.ROUND2, ROUND2_FORFEIT, agent_id=leader.id)
            else:
                post = RoundPost(tribe_id, Round.ROUND2, message, choice=reply.choice, agent_id=leader.id)
            self._record(joust, post)

    def _voters(self, joust: Joust) -> list[Agent]:
        agents = self.store.list_agents()
        if self.config.vote_scope != "contest":
            return agents
        allowed = set(joust.tribe_ids)
        return [a for a in agents if self.store.get_agent_tribe_id(a.id) in allowed]

    def _run_vote(self, joust: Joust) -> None:
        request = VoteRequest(joustId=joust.id, wyr=self._wyr(joust), transcript=joust.transcript())
        timeout = self.config.vote_timeout

        for agent in self._voters(joust):
            if agent.id in joust.votes:
                continue
            try:
                reply = VoteReply.lenient(self._call(agent, request, timeout))
            except CallbackError as e:
                logger.debug(f"Joust {joust.id}: no vote from {agent.id}: {e}")
                continue
            if reply.vote is not None:
                self.store.upsert_vote(joust.id, agent.id, reply.vote)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve(self, joust_id: str) -> JoustResults:
        """Score, decide, redistribute infamy, migrate members, persist. Once."""
        joust = self._load(joust_id)
        tribes = self._tribes(joust)
        voter_tribes = {aid: self.store.get_agent_tribe_id(aid) for aid in joust.votes}

        sheet = compute_scores(joust, voter_tribes)
        forced, decision = self.decider.decide(joust, tribes, sheet)
        infamy = {tid: t.infamy for tid, t in tribes.items()}
        resolution = pick_winner(joust.tribe_ids, sheet, infamy, forced_winner=forced)

        apply_reputation(self.store, joust.tribe_ids, sheet, resolution)
        migration = conquer(self.store, joust.tribe_ids, resolution.winner_tribe_id)

        results = JoustResults(
            winner_tribe_id=resolution.winner_tribe_id,
            winning_option=resolution.winning_option,
            vote_totals=sheet.vote_totals,
            tribe_results=sheet.tribe_scores,
            decision=decision,
            migration=migration,
        )
        self.store.complete_joust(joust_id, results)
        logger.info(
            f"Joust {joust_id} done: winner={resolution.winner_tribe_id} "
            f"option={resolution.winning_option} votes={sheet.vote_totals}"
        )
        return results
