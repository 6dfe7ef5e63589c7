"""
arena/db.py - SQLite storage for the joust server.

ArenaDB implements the JoustStore protocol (joust/store.py) with the same
semantics as MemoryStore. One instance per server lifetime, backed by a
single SQLite file (or :memory: for tests).
"""

import json
import sqlite3
import threading
from typing import Any

from joust.models import (
    Agent,
    JoinPolicy,
    Joust,
    JoustResults,
    JoustState,
    Prompt,
    Round,
    RoundPost,
    Tribe,
    now_iso,
)
from joust.store import JoustNotFoundError


def _loads(raw: str | None, fallback: Any) -> Any:
    if raw is None:
        return fallback
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return fallback


class ArenaDB:
    """Thin wrapper around SQLite for agents, tribes and jousts."""

    def __init__(self, path: str = "arena.db"):
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        # One connection shared across server threads
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                callback_url TEXT NOT NULL,
                secret TEXT NOT NULL,
                tags TEXT NOT NULL,
                channel TEXT NOT NULL DEFAULT 'http',
                created_at TEXT NOT NULL,
                infamy INTEGER NOT NULL DEFAULT 0,
                wins INTEGER NOT NULL DEFAULT 0,
                losses INTEGER NOT NULL DEFAULT 0,
                verified_provider TEXT,
                verified_subject TEXT,
                verified_profile_json TEXT
            );

            CREATE TABLE IF NOT EXISTS tribes (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                color TEXT NOT NULL,
                leader_agent_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                infamy INTEGER NOT NULL DEFAULT 0,
                wins INTEGER NOT NULL DEFAULT 0,
                losses INTEGER NOT NULL DEFAULT 0,
                policy_json TEXT,
                FOREIGN KEY (leader_agent_id) REFERENCES agents(id)
            );

            CREATE TABLE IF NOT EXISTS tribe_members (
                agent_id TEXT PRIMARY KEY,
                tribe_id TEXT NOT NULL,
                joined_at TEXT NOT NULL,
                FOREIGN KEY (tribe_id) REFERENCES tribes(id) ON DELETE CASCADE,
                FOREIGN KEY (agent_id) REFERENCES agents(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS jousts (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                state TEXT NOT NULL,
                wyr_question TEXT NOT NULL,
                wyr_a TEXT NOT NULL,
                wyr_b TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                results_json TEXT
            );

            CREATE TABLE IF NOT EXISTS joust_tribes (
                joust_id TEXT NOT NULL,
                tribe_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (joust_id, tribe_id),
                FOREIGN KEY (joust_id) REFERENCES jousts(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS round_posts (
                joust_id TEXT NOT NULL,
                tribe_id TEXT NOT NULL,
                round TEXT NOT NULL,
                message TEXT NOT NULL,
                choice TEXT,
                agent_id TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (joust_id, tribe_id, round),
                FOREIGN KEY (joust_id) REFERENCES jousts(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS votes (
                joust_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                vote TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (joust_id, agent_id),
                FOREIGN KEY (joust_id) REFERENCES jousts(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_members_tribe ON tribe_members(tribe_id);
            CREATE INDEX IF NOT EXISTS idx_round_posts_joust ON round_posts(joust_id);
            CREATE INDEX IF NOT EXISTS idx_votes_joust ON votes(joust_id);
            """
        )

    # ------------------------------------------------------------------
    # Row hydration
    # ------------------------------------------------------------------

    @staticmethod
    def _agent(row: sqlite3.Row | None) -> Agent | None:
        if row is None:
            return None
        return Agent(
            id=row["id"],
            display_name=row["display_name"],
            callback_url=row["callback_url"],
            secret=row["secret"],
            tags=_loads(row["tags"], []),
            channel=row["channel"],
            infamy=row["infamy"],
            wins=row["wins"],
            losses=row["losses"],
            created_at=row["created_at"],
            verified_provider=row["verified_provider"],
            verified_subject=row["verified_subject"],
            verified_profile=_loads(row["verified_profile_json"], None),
        )

    @staticmethod
    def _tribe(row: sqlite3.Row | None) -> Tribe | None:
        if row is None:
            return None
        return Tribe(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            leader_agent_id=row["leader_agent_id"],
            infamy=row["infamy"],
            wins=row["wins"],
            losses=row["losses"],
            policy=JoinPolicy(**_loads(row["policy_json"], {})),
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def create_agent(self, agent: Agent) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO agents (id, display_name, callback_url, secret, tags, channel, "
                    "created_at, infamy, wins, losses) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        agent.id,
                        agent.display_name,
                        agent.callback_url,
                        agent.secret,
                        json.dumps(agent.tags),
                        agent.channel,
                        agent.created_at,
                        agent.infamy,
                        agent.wins,
                        agent.losses,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Agent {agent.id} already exists") from e
            self._conn.commit()

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
            return self._agent(row)

    def list_agents(self) -> list[Agent]:
        """Agents ordered by infamy (desc), newest first within a tie."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM agents ORDER BY infamy DESC, created_at DESC"
            ).fetchall()
            return [self._agent(r) for r in rows]

    def set_agent_verification(
        self, agent_id: str, provider: str, subject: str, profile: dict | None
    ) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE agents SET verified_provider = ?, verified_subject = ?, "
                "verified_profile_json = ? WHERE id = ?",
                (provider, subject, json.dumps(profile) if profile is not None else None, agent_id),
            )
            self._conn.commit()

    def _agent_delta(self, agent_id: str, delta: int, won: bool) -> None:
        self._conn.execute(
            "UPDATE agents SET infamy = infamy + ?, wins = wins + ?, losses = losses + ? WHERE id = ?",
            (delta, 1 if won else 0, 0 if won else 1, agent_id),
        )

    def apply_agent_delta(self, agent_id: str, delta: int, won: bool) -> None:
        with self._lock:
            self._agent_delta(agent_id, delta, won)
            self._conn.commit()

    # ------------------------------------------------------------------
    # Tribes & membership
    # ------------------------------------------------------------------

    def create_tribe(self, tribe: Tribe) -> None:
        """Create a tribe. The leader joins it as its first member."""
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO tribes (id, name, color, leader_agent_id, created_at, "
                        "infamy, wins, losses, policy_json) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            tribe.id,
                            tribe.name,
                            tribe.color,
                            tribe.leader_agent_id,
                            tribe.created_at,
                            tribe.infamy,
                            tribe.wins,
                            tribe.losses,
                            json.dumps(vars(tribe.policy)),
                        ),
                    )
                    self._conn.execute(
                        "INSERT OR IGNORE INTO tribe_members (agent_id, tribe_id, joined_at) "
                        "VALUES (?, ?, ?)",
                        (tribe.leader_agent_id, tribe.id, now_iso()),
                    )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Tribe {tribe.id} could not be created: {e}") from e

    def get_tribe(self, tribe_id: str) -> Tribe | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM tribes WHERE id = ?", (tribe_id,)).fetchone()
            return self._tribe(row)

    def list_tribes(self) -> list[Tribe]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM tribes ORDER BY infamy DESC, created_at DESC"
            ).fetchall()
            return [self._tribe(r) for r in rows]

    def add_tribe_member(self, tribe_id: str, agent_id: str) -> None:
        """Add an agent with no tribe. Agents already in a tribe are left alone."""
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO tribe_members (agent_id, tribe_id, joined_at) VALUES (?, ?, ?)",
                (agent_id, tribe_id, now_iso()),
            )
            self._conn.commit()

    def transfer_agent(self, agent_id: str, tribe_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO tribe_members (agent_id, tribe_id, joined_at) VALUES (?, ?, ?) "
                "ON CONFLICT(agent_id) DO UPDATE SET tribe_id = excluded.tribe_id, "
                "joined_at = excluded.joined_at",
                (agent_id, tribe_id, now_iso()),
            )

    def list_tribe_member_ids(self, tribe_id: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT agent_id FROM tribe_members WHERE tribe_id = ? ORDER BY joined_at, agent_id",
                (tribe_id,),
            ).fetchall()
            return [r["agent_id"] for r in rows]

    def get_agent_tribe_id(self, agent_id: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT tribe_id FROM tribe_members WHERE agent_id = ?", (agent_id,)
            ).fetchone()
            return row["tribe_id"] if row else None

    def apply_tribe_outcome(
        self, tribe_id: str, delta: int, won: bool, member_delta: int
    ) -> list[str]:
        """Apply a tribe's delta and its members' share in one transaction."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE tribes SET infamy = infamy + ?, wins = wins + ?, losses = losses + ? "
                "WHERE id = ?",
                (delta, 1 if won else 0, 0 if won else 1, tribe_id),
            )
            if cursor.rowcount == 0:
                return []
            member_ids = [
                r["agent_id"]
                for r in self._conn.execute(
                    "SELECT agent_id FROM tribe_members WHERE tribe_id = ?", (tribe_id,)
                ).fetchall()
            ]
            for agent_id in member_ids:
                self._agent_delta(agent_id, member_delta, won)
            return member_ids

    # ------------------------------------------------------------------
    # Jousts
    # ------------------------------------------------------------------

    def create_joust(self, joust: Joust) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO jousts (id, title, state, wyr_question, wyr_a, wyr_b, "
                        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            joust.id,
                            joust.title,
                            joust.state.value,
                            joust.prompt.question,
                            joust.prompt.a,
                            joust.prompt.b,
                            joust.created_at,
                            joust.updated_at,
                        ),
                    )
                    self._conn.executemany(
                        "INSERT INTO joust_tribes (joust_id, tribe_id, position) VALUES (?, ?, ?)",
                        [(joust.id, tid, pos) for pos, tid in enumerate(joust.tribe_ids)],
                    )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Joust {joust.id} already exists") from e

    def _tribe_ids(self, joust_id: str) -> tuple[str, ...]:
        rows = self._conn.execute(
            "SELECT tribe_id FROM joust_tribes WHERE joust_id = ? ORDER BY position", (joust_id,)
        ).fetchall()
        return tuple(r["tribe_id"] for r in rows)

    def _joust(self, row: sqlite3.Row) -> Joust:
        results = _loads(row["results_json"], None)
        joust = Joust(
            id=row["id"],
            title=row["title"],
            prompt=Prompt(question=row["wyr_question"], a=row["wyr_a"], b=row["wyr_b"]),
            tribe_ids=self._tribe_ids(row["id"]),
            state=JoustState(row["state"]),
            results=JoustResults.from_dict(results) if results else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        for p in self._conn.execute(
            "SELECT * FROM round_posts WHERE joust_id = ?", (joust.id,)
        ).fetchall():
            round_ = Round(p["round"])
            joust.posts[(round_, p["tribe_id"])] = RoundPost(
                tribe_id=p["tribe_id"],
                round=round_,
                message=p["message"],
                choice=p["choice"],
                agent_id=p["agent_id"],
                created_at=p["created_at"],
            )
        for v in self._conn.execute(
            "SELECT agent_id, vote FROM votes WHERE joust_id = ?", (joust.id,)
        ).fetchall():
            joust.votes[v["agent_id"]] = v["vote"]
        return joust

    def get_joust(self, joust_id: str) -> Joust | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jousts WHERE id = ?", (joust_id,)).fetchone()
            return self._joust(row) if row else None

    def list_jousts(self) -> list[Joust]:
        """Most recently updated first."""
        with self._lock:
            rows = self._conn.execute("SELECT * FROM jousts ORDER BY updated_at DESC").fetchall()
            return [self._joust(r) for r in rows]

    def _require(self, joust_id: str) -> None:
        row = self._conn.execute("SELECT 1 FROM jousts WHERE id = ?", (joust_id,)).fetchone()
        if row is None:
            raise JoustNotFoundError(joust_id)

    def update_joust_state(self, joust_id: str, state: JoustState) -> None:
        with self._lock:
            self._require(joust_id)
            self._conn.execute(
                "UPDATE jousts SET state = ?, updated_at = ? WHERE id = ?",
                (JoustState(state).value, now_iso(), joust_id),
            )
            self._conn.commit()

    def save_round_post(self, joust_id: str, post: RoundPost) -> bool:
        """Record a post unless one exists for (round, tribe). Returns True if written."""
        with self._lock:
            self._require(joust_id)
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO round_posts "
                "(joust_id, tribe_id, round, message, choice, agent_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    joust_id,
                    post.tribe_id,
                    Round(post.round).value,
                    post.message,
                    post.choice,
                    post.agent_id,
                    post.created_at,
                ),
            )
            self._conn.execute(
                "UPDATE jousts SET updated_at = ? WHERE id = ?", (now_iso(), joust_id)
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def upsert_vote(self, joust_id: str, agent_id: str, vote: str) -> None:
        with self._lock:
            self._require(joust_id)
            self._conn.execute(
                "INSERT INTO votes (joust_id, agent_id, vote, created_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(joust_id, agent_id) DO UPDATE SET vote = excluded.vote, "
                "created_at = excluded.created_at",
                (joust_id, agent_id, vote, now_iso()),
            )
            self._conn.commit()

    def complete_joust(self, joust_id: str, results: JoustResults) -> bool:
        """Store results and mark done. No-op (returns False) if already done."""
        with self._lock:
            self._require(joust_id)
            cursor = self._conn.execute(
                "UPDATE jousts SET results_json = ?, state = ?, updated_at = ? "
                "WHERE id = ? AND state != ?",
                (
                    json.dumps(results.to_dict()),
                    JoustState.DONE.value,
                    now_iso(),
                    joust_id,
                    JoustState.DONE.value,
                ),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def close(self) -> None:
        self._conn.close()
