"""
joust/store.py - Persistence interface and the in-memory backend

The engine only talks to a JoustStore. Two backends implement it with the
same semantics:
  - MemoryStore (here) for tests and throwaway servers
  - ArenaDB (arena/db.py) backed by SQLite
"""

import copy
import threading
from typing import Protocol

from .models import (
    Agent,
    Joust,
    JoustResults,
    JoustState,
    Round,
    RoundPost,
    Tribe,
    now_iso,
)


class JoustNotFoundError(KeyError):
    """Raised when a joust id is not in the store."""


# ============================================================================
# Protocol
# ============================================================================


class JoustStore(Protocol):
    """Everything the engine and the HTTP layer need from storage."""

    # Agents
    def create_agent(self, agent: Agent) -> None: ...
    def get_agent(self, agent_id: str) -> Agent | None: ...
    def list_agents(self) -> list[Agent]: ...
    def set_agent_verification(
        self, agent_id: str, provider: str, subject: str, profile: dict | None
    ) -> None: ...
    def apply_agent_delta(self, agent_id: str, delta: int, won: bool) -> None: ...

    # Tribes & membership
    def create_tribe(self, tribe: Tribe) -> None: ...
    def get_tribe(self, tribe_id: str) -> Tribe | None: ...
    def list_tribes(self) -> list[Tribe]: ...
    def add_tribe_member(self, tribe_id: str, agent_id: str) -> None: ...
    def transfer_agent(self, agent_id: str, tribe_id: str) -> None: ...
    def list_tribe_member_ids(self, tribe_id: str) -> list[str]: ...
    def get_agent_tribe_id(self, agent_id: str) -> str | None: ...
    def apply_tribe_outcome(
        self, tribe_id: str, delta: int, won: bool, member_delta: int
    ) -> list[str]: ...

    # Jousts
    def create_joust(self, joust: Joust) -> None: ...
    def get_joust(self, joust_id: str) -> Joust | None: ...
    def list_jousts(self) -> list[Joust]: ...
    def update_joust_state(self, joust_id: str, state: JoustState) -> None: ...
    def save_round_post(self, joust_id: str, post: RoundPost) -> bool: ...
    def upsert_vote(self, joust_id: str, agent_id: str, vote: str) -> None: ...
    def complete_joust(self, joust_id: str, results: JoustResults) -> bool: ...


# ============================================================================
# In-memory backend
# ============================================================================


class MemoryStore:
    """Dict-backed JoustStore. Returns copies so callers can't mutate state."""

    def __init__(self):
        self._lock = threading.RLock()
        self._agents: dict[str, Agent] = {}
        self._tribes: dict[str, Tribe] = {}
        self._members: dict[str, str] = {}  # agent_id -> tribe_id
        self._jousts: dict[str, Joust] = {}

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def create_agent(self, agent: Agent) -> None:
        with self._lock:
            if agent.id in self._agents:
                raise ValueError(f"Agent {agent.id} already exists")
            self._agents[agent.id] = copy.deepcopy(agent)

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return copy.deepcopy(agent) if agent else None

    def list_agents(self) -> list[Agent]:
        """Agents ordered by infamy (desc), newest first within a tie."""
        with self._lock:
            agents = sorted(self._agents.values(), key=lambda a: a.created_at, reverse=True)
            agents.sort(key=lambda a: a.infamy, reverse=True)
            return [copy.deepcopy(a) for a in agents]

    def set_agent_verification(
        self, agent_id: str, provider: str, subject: str, profile: dict | None
    ) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return
            agent.verified_provider = provider
            agent.verified_subject = subject
            agent.verified_profile = copy.deepcopy(profile)

    def apply_agent_delta(self, agent_id: str, delta: int, won: bool) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return
            agent.infamy += delta
            if won:
                agent.wins += 1
            else:
                agent.losses += 1

    # ------------------------------------------------------------------
    # Tribes & membership
    # ------------------------------------------------------------------

    def create_tribe(self, tribe: Tribe) -> None:
        """Create a tribe. The leader joins it as its first member."""
        with self._lock:
            if tribe.id in self._tribes:
                raise ValueError(f"Tribe {tribe.id} already exists")
            if tribe.leader_agent_id not in self._agents:
                raise ValueError(f"Tribe {tribe.id} could not be created: unknown leader {tribe.leader_agent_id}")
            self._tribes[tribe.id] = copy.deepcopy(tribe)
            self._members.setdefault(tribe.leader_agent_id, tribe.id)

    def get_tribe(self, tribe_id: str) -> Tribe | None:
        with self._lock:
            tribe = self._tribes.get(tribe_id)
            return copy.deepcopy(tribe) if tribe else None

    def list_tribes(self) -> list[Tribe]:
        with self._lock:
            tribes = sorted(self._tribes.values(), key=lambda t: t.created_at, reverse=True)
            tribes.sort(key=lambda t: t.infamy, reverse=True)
            return [copy.deepcopy(t) for t in tribes]

    def add_tribe_member(self, tribe_id: str, agent_id: str) -> None:
        """Add an agent with no tribe. Agents already in a tribe are left alone."""
        with self._lock:
            self._members.setdefault(agent_id, tribe_id)

    def transfer_agent(self, agent_id: str, tribe_id: str) -> None:
        with self._lock:
            self._members[agent_id] = tribe_id

    def list_tribe_member_ids(self, tribe_id: str) -> list[str]:
        with self._lock:
            return [aid for aid, tid in self._members.items() if tid == tribe_id]

    def get_agent_tribe_id(self, agent_id: str) -> str | None:
        with self._lock:
            return self._members.get(agent_id)

    def apply_tribe_outcome(
        self, tribe_id: str, delta: int, won: bool, member_delta: int
    ) -> list[str]:
        """Apply a tribe's delta and its members' share together. Returns member ids."""
        with self._lock:
            tribe = self._tribes.get(tribe_id)
            if tribe is None:
                return []
            tribe.infamy += delta
            if won:
                tribe.wins += 1
            else:
                tribe.losses += 1
            member_ids = self.list_tribe_member_ids(tribe_id)
            for agent_id in member_ids:
                self.apply_agent_delta(agent_id, member_delta, won)
            return member_ids

    # ------------------------------------------------------------------
    # Jousts
    # ------------------------------------------------------------------

    def create_joust(self, joust: Joust) -> None:
        with self._lock:
            if joust.id in self._jousts:
                raise ValueError(f"Joust {joust.id} already exists")
            self._jousts[joust.id] = copy.deepcopy(joust)

    def get_joust(self, joust_id: str) -> Joust | None:
        with self._lock:
            joust = self._jousts.get(joust_id)
            return copy.deepcopy(joust) if joust else None

    def list_jousts(self) -> list[Joust]:
        """Most recently updated first."""
        with self._lock:
            jousts = sorted(self._jousts.values(), key=lambda j: j.updated_at, reverse=True)
            return [copy.deepcopy(j) for j in jousts]

    def _require(self, joust_id: str) -> Joust:
        joust = self._jousts.get(joust_id)
        if joust is None:
            raise JoustNotFoundError(joust_id)
        return joust

    def update_joust_state(self, joust_id: str, state: JoustState) -> None:
        with self._lock:
            joust = self._require(joust_id)
            joust.state = JoustState(state)
            joust.updated_at = now_iso()

    def save_round_post(self, joust_id: str, post: RoundPost) -> bool:
        """Record a post unless one exists for (round, tribe). Returns True if written."""
        with self._lock:
            joust = self._require(joust_id)
            key = (Round(post.round), post.tribe_id)
            if key in joust.posts:
                return False
            joust.posts[key] = copy.deepcopy(post)
            joust.updated_at = now_iso()
            return True

    def upsert_vote(self, joust_id: str, agent_id: str, vote: str) -> None:
        with self._lock:
            joust = self._require(joust_id)
            joust.votes[agent_id] = vote

    def complete_joust(self, joust_id: str, results: JoustResults) -> bool:
        """Store results and mark done. No-op (returns False) if already done."""
        with self._lock:
            joust = self._require(joust_id)
            if joust.state == JoustState.DONE:
                return False
            joust.results = copy.deepcopy(results)
            joust.state = JoustState.DONE
            joust.updated_at = now_iso()
            return True
