"""Tests for the JoustStore backends: MemoryStore and ArenaDB share one suite."""

import pytest

from arena.db import ArenaDB
from joust.conquest import conquer
from joust.models import (
    Agent,
    DecisionInfo,
    JoinPolicy,
    Joust,
    JoustResults,
    JoustState,
    Migration,
    Prompt,
    Round,
    RoundPost,
    Tribe,
    TribeResult,
)
from joust.store import JoustNotFoundError, MemoryStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield MemoryStore()
    else:
        db = ArenaDB(":memory:")
        yield db
        db.close()


def _make_agent(store, agent_id: str, tags=None, infamy: int = 0) -> Agent:
    agent = Agent(
        id=agent_id,
        display_name=agent_id.upper(),
        callback_url="local://agent",
        secret="s3cret",
        tags=list(tags or []),
        channel="stub",
        infamy=infamy,
    )
    store.create_agent(agent)
    return agent


def _make_tribe(store, tribe_id: str, leader_id: str, **kwargs) -> Tribe:
    tribe = Tribe(id=tribe_id, name=tribe_id.title(), color="hsl(1 85% 60%)", leader_agent_id=leader_id, **kwargs)
    store.create_tribe(tribe)
    return tribe


def _make_joust(store, joust_id: str = "jo_abcdef1234", tribe_ids=("T1", "T2")) -> Joust:
    joust = Joust(
        id=joust_id,
        title="Store test",
        prompt=Prompt(question="Tea or coffee?", a="Tea", b="Coffee"),
        tribe_ids=tuple(tribe_ids),
    )
    store.create_joust(joust)
    return joust


def _make_results(winner="T1") -> JoustResults:
    return JoustResults(
        winner_tribe_id=winner,
        winning_option="A",
        vote_totals={"A": 2, "B": 1},
        tribe_results={
            "T1": TribeResult(choice="A", neutral_votes=1, persuasion_score=1, delta_infamy=15),
            "T2": TribeResult(choice="B", delta_infamy=-6),
        },
        decision=DecisionInfo(mode="rules", source="rules", verdict="Votes."),
        migration=Migration(winner_tribe_id=winner, moved_agents=1, moved_from_tribes=[{"tribe_id": "T2", "moved_count": 1}]),
    )


# ============================================================================
# Agents
# ============================================================================


class TestAgents:
    def test_create_and_get(self, store):
        _make_agent(store, "a1", tags=["stoic", "builder"])
        agent = store.get_agent("a1")
        assert agent.display_name == "A1"
        assert agent.tags == ["stoic", "builder"]
        assert agent.channel == "stub"
        assert agent.secret == "s3cret"

    def test_get_missing(self, store):
        assert store.get_agent("nope") is None

    def test_duplicate_rejected(self, store):
        _make_agent(store, "a1")
        with pytest.raises(ValueError):
            _make_agent(store, "a1")

    def test_list_ordered_by_infamy(self, store):
        _make_agent(store, "low", infamy=1)
        _make_agent(store, "high", infamy=50)
        _make_agent(store, "mid", infamy=10)
        assert [a.id for a in store.list_agents()] == ["high", "mid", "low"]

    def test_verification(self, store):
        _make_agent(store, "a1")
        store.set_agent_verification("a1", "github", "octocat", {"login": "octocat"})
        agent = store.get_agent("a1")
        assert agent.verified_provider == "github"
        assert agent.verified_subject == "octocat"
        assert agent.verified_profile == {"login": "octocat"}

    def test_apply_delta(self, store):
        _make_agent(store, "a1")
        store.apply_agent_delta("a1", 5, True)
        store.apply_agent_delta("a1", -2, False)
        agent = store.get_agent("a1")
        assert (agent.infamy, agent.wins, agent.losses) == (3, 1, 1)

    def test_returned_copy_is_detached(self, store):
        _make_agent(store, "a1")
        agent = store.get_agent("a1")
        agent.infamy = 999
        assert store.get_agent("a1").infamy == 0


# ============================================================================
# Tribes & membership
# ============================================================================


class TestTribes:
    def test_leader_auto_joins(self, store):
        _make_agent(store, "a1")
        _make_tribe(store, "T1", "a1")
        assert store.get_agent_tribe_id("a1") == "T1"
        assert store.list_tribe_member_ids("T1") == ["a1"]

    def test_unknown_leader_rejected(self, store):
        with pytest.raises(ValueError):
            _make_tribe(store, "T1", "ghost")
        assert store.get_tribe("T1") is None
        assert store.get_agent_tribe_id("ghost") is None

    def test_policy_round_trips(self, store):
        _make_agent(store, "a1")
        policy = JoinPolicy(min_infamy=5, required_tags=["stoic"], preferred_tags=["builder"], open_join=False)
        _make_tribe(store, "T1", "a1", policy=policy)
        assert store.get_tribe("T1").policy == policy

    def test_add_member(self, store):
        _make_agent(store, "a1")
        _make_agent(store, "a2")
        _make_tribe(store, "T1", "a1")
        store.add_tribe_member("T1", "a2")
        assert sorted(store.list_tribe_member_ids("T1")) == ["a1", "a2"]

    def test_add_member_keeps_existing_tribe(self, store):
        _make_agent(store, "a1")
        _make_agent(store, "b1")
        _make_tribe(store, "T1", "a1")
        _make_tribe(store, "T2", "b1")
        store.add_tribe_member("T2", "a1")
        assert store.get_agent_tribe_id("a1") == "T1"

    def test_transfer_is_exclusive(self, store):
        _make_agent(store, "a1")
        _make_agent(store, "b1")
        _make_tribe(store, "T1", "a1")
        _make_tribe(store, "T2", "b1")
        store.transfer_agent("b1", "T1")
        assert store.get_agent_tribe_id("b1") == "T1"
        assert store.list_tribe_member_ids("T2") == []

    def test_agent_without_tribe(self, store):
        _make_agent(store, "loner")
        assert store.get_agent_tribe_id("loner") is None

    def test_apply_tribe_outcome(self, store):
        _make_agent(store, "a1")
        _make_agent(store, "a2")
        _make_tribe(store, "T1", "a1")
        store.add_tribe_member("T1", "a2")

        members = store.apply_tribe_outcome("T1", 17, True, 6)

        assert sorted(members) == ["a1", "a2"]
        tribe = store.get_tribe("T1")
        assert (tribe.infamy, tribe.wins, tribe.losses) == (17, 1, 0)
        for aid in ("a1", "a2"):
            agent = store.get_agent(aid)
            assert (agent.infamy, agent.wins) == (6, 1)

    def test_apply_tribe_outcome_missing_tribe(self, store):
        assert store.apply_tribe_outcome("ghost", 5, True, 2) == []


# ============================================================================
# Jousts
# ============================================================================


class TestJousts:
    def test_create_and_get(self, store):
        _make_joust(store)
        joust = store.get_joust("jo_abcdef1234")
        assert joust.state == JoustState.DRAFT
        assert joust.tribe_ids == ("T1", "T2")
        assert joust.prompt.b == "Coffee"
        assert joust.results is None
        assert joust.required_token == "#jo_ab"

    def test_tribe_order_preserved(self, store):
        _make_joust(store, tribe_ids=("T3", "T1", "T2"))
        assert store.get_joust("jo_abcdef1234").tribe_ids == ("T3", "T1", "T2")

    def test_missing_joust(self, store):
        assert store.get_joust("jo_missing") is None
        with pytest.raises(JoustNotFoundError):
            store.update_joust_state("jo_missing", JoustState.ROUND1)

    def test_update_state(self, store):
        _make_joust(store)
        store.update_joust_state("jo_abcdef1234", JoustState.ROUND1)
        assert store.get_joust("jo_abcdef1234").state == JoustState.ROUND1

    def test_round_post_written_once(self, store):
        _make_joust(store)
        first = RoundPost("T1", Round.ROUND1, "#jo_ab first", agent_id="a1")
        second = RoundPost("T1", Round.ROUND1, "#jo_ab second", agent_id="a1")
        assert store.save_round_post("jo_abcdef1234", first) is True
        assert store.save_round_post("jo_abcdef1234", second) is False
        post = store.get_joust("jo_abcdef1234").post(Round.ROUND1, "T1")
        assert post.message == "#jo_ab first"

    def test_round2_choice_stored(self, store):
        _make_joust(store)
        store.save_round_post("jo_abcdef1234", RoundPost("T2", Round.ROUND2, "B it is", choice="B", agent_id="b1"))
        joust = store.get_joust("jo_abcdef1234")
        assert joust.choices() == {"T1": None, "T2": "B"}

    def test_vote_upsert(self, store):
        _make_joust(store)
        store.upsert_vote("jo_abcdef1234", "a1", "A")
        store.upsert_vote("jo_abcdef1234", "a1", "B")
        assert store.get_joust("jo_abcdef1234").votes == {"a1": "B"}

    def test_complete_once(self, store):
        _make_joust(store)
        assert store.complete_joust("jo_abcdef1234", _make_results("T1")) is True
        assert store.complete_joust("jo_abcdef1234", _make_results("T2")) is False

        joust = store.get_joust("jo_abcdef1234")
        assert joust.state == JoustState.DONE
        assert joust.results.winner_tribe_id == "T1"
        assert joust.results.tribe_results["T1"].delta_infamy == 15
        assert joust.results.migration.moved_from_tribes == [{"tribe_id": "T2", "moved_count": 1}]

    def test_list_jousts(self, store):
        _make_joust(store, "jo_one0000001")
        _make_joust(store, "jo_two0000002")
        assert {j.id for j in store.list_jousts()} == {"jo_one0000001", "jo_two0000002"}


# ============================================================================
# Conquest
# ============================================================================


class TestConquest:
    def test_losers_absorbed_by_winner(self, store):
        for aid in ("a1", "b1", "b2", "c1", "c2"):
            _make_agent(store, aid)
        _make_tribe(store, "T1", "a1")
        _make_tribe(store, "T2", "b1")
        _make_tribe(store, "T3", "c1")
        store.add_tribe_member("T2", "b2")
        store.add_tribe_member("T3", "c2")

        migration = conquer(store, ["T1", "T2", "T3"], "T1")

        assert migration.winner_tribe_id == "T1"
        assert migration.moved_agents == 4
        assert migration.moved_from_tribes == [
            {"tribe_id": "T2", "moved_count": 2},
            {"tribe_id": "T3", "moved_count": 2},
        ]
        assert sorted(store.list_tribe_member_ids("T1")) == ["a1", "b1", "b2", "c1", "c2"]
        assert store.list_tribe_member_ids("T2") == []

    def test_outsiders_untouched(self, store):
        for aid in ("a1", "b1", "x1"):
            _make_agent(store, aid)
        _make_tribe(store, "T1", "a1")
        _make_tribe(store, "T2", "b1")
        _make_tribe(store, "TX", "x1")

        conquer(store, ["T1", "T2"], "T1")

        assert store.get_agent_tribe_id("x1") == "TX"

    def test_empty_tribe_not_listed(self, store):
        _make_agent(store, "a1")
        _make_agent(store, "b1")
        _make_tribe(store, "T1", "a1")
        _make_tribe(store, "T2", "b1")
        store.transfer_agent("b1", "T1")

        migration = conquer(store, ["T1", "T2"], "T1")

        assert migration.moved_agents == 0
        assert migration.moved_from_tribes == []

    def test_no_winner(self, store):
        migration = conquer(store, ["T1", "T2"], None)
        assert migration.moved_agents == 0
        assert migration.winner_tribe_id is None
