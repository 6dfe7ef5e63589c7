"""Tests for joust/engine.py: the state machine end to end, no network.

Agents answer through a scripted in-process channel (or the stub channel).
"""

import threading
import time

import httpx
import pytest

from joust.callbacks import (
    CallbackDispatcher,
    CallbackError,
    HttpCallbackChannel,
    Round1Request,
    Round2Request,
    VoteRequest,
)
from joust.config import EngineConfig
from joust.engine import JoustEngine, clean_message, has_link
from joust.models import Agent, DecisionInfo, Joust, JoustState, Prompt, Round, Tribe
from joust.store import JoustNotFoundError, MemoryStore

JOUST_ID = "jo_engine0001"
TOKEN = "#jo_en"


class ScriptedChannel:
    """Replies from a per-agent script: {agent_id: {"round1"|"round2"|"vote": reply}}.

    A reply that is an exception instance is raised instead of returned.
    """

    def __init__(self, script: dict):
        self.script = script
        self.calls: list[tuple[str, str, float]] = []

    def call(self, agent, request, timeout):
        if isinstance(request, Round1Request):
            kind = "round1"
        elif isinstance(request, Round2Request):
            kind = "round2"
        else:
            assert isinstance(request, VoteRequest)
            kind = "vote"
        self.calls.append((agent.id, kind, timeout))
        reply = self.script.get(agent.id, {}).get(kind)
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            raise CallbackError(f"{agent.id} has nothing to say")
        return reply


def _make_agent(store, agent_id, channel="scripted", tags=None) -> Agent:
    agent = Agent(
        id=agent_id,
        display_name=agent_id,
        callback_url="local://x" if channel == "stub" else "http://agent.test",
        secret="s",
        tags=list(tags or []),
        channel=channel,
    )
    store.create_agent(agent)
    return agent


def _make_world(store, channel="scripted", tags=None):
    """Two tribes (T1 led by a1, T2 led by b1), one tribeless agent n1, one joust."""
    tags = tags or {}
    for aid in ("a1", "b1", "n1"):
        _make_agent(store, aid, channel=channel, tags=tags.get(aid))
    store.create_tribe(Tribe(id="T1", name="Tide", color="blue", leader_agent_id="a1"))
    store.create_tribe(Tribe(id="T2", name="Gale", color="white", leader_agent_id="b1"))
    store.create_joust(
        Joust(
            id=JOUST_ID,
            title="Engine test",
            prompt=Prompt(question="Sea or sky?", a="Sea", b="Sky"),
            tribe_ids=("T1", "T2"),
        )
    )


def _script(**overrides) -> dict:
    script = {
        "a1": {"round1": {"message": f"{TOKEN} Tide rises."}, "round2": {"choice": "A", "message": "Sea."}, "vote": {"vote": "A"}},
        "b1": {"round1": {"message": f"{TOKEN} Gale howls."}, "round2": {"choice": "B", "message": "Sky."}, "vote": {"vote": "B"}},
        "n1": {"vote": {"vote": "A"}},
    }
    for agent_id, replies in overrides.items():
        script.setdefault(agent_id, {}).update(replies)
    return script


def _engine(store, channel, **config) -> JoustEngine:
    return JoustEngine(
        store,
        config=EngineConfig(**config),
        dispatcher=CallbackDispatcher({"scripted": channel}),
    )


@pytest.fixture
def store():
    s = MemoryStore()
    _make_world(s)
    return s


# ============================================================================
# Message rules
# ============================================================================


class TestCleanMessage:
    def test_trims_and_normalizes_newlines(self):
        assert clean_message("  hi\r\nthere  ", 240) == "hi\nthere"

    def test_empty(self):
        assert clean_message("   ", 240) is None
        assert clean_message(None, 240) is None

    def test_too_long(self):
        assert clean_message("x" * 241, 240) is None
        assert clean_message("x" * 240, 240) == "x" * 240

    @pytest.mark.parametrize("text", ["see https://x.io", "HTTP://LOUD.COM", "visit www.example.org"])
    def test_links(self, text):
        assert has_link(text)
        assert clean_message(text, 240) is None


# ============================================================================
# Stepping
# ============================================================================


class TestAdvance:
    def test_states_in_order(self, store):
        engine = _engine(store, ScriptedChannel(_script()))
        states = [engine.advance(JOUST_ID) for _ in range(4)]
        assert states == [JoustState.ROUND1, JoustState.ROUND2, JoustState.VOTE, JoustState.DONE]

    def test_done_is_a_no_op(self, store):
        channel = ScriptedChannel(_script())
        engine = _engine(store, channel)
        engine.run_to_completion(JOUST_ID)
        calls = len(channel.calls)
        infamy = store.get_tribe("T1").infamy

        assert engine.advance(JOUST_ID) == JoustState.DONE
        assert len(channel.calls) == calls
        assert store.get_tribe("T1").infamy == infamy

    def test_unknown_joust(self, store):
        engine = _engine(store, ScriptedChannel(_script()))
        with pytest.raises(JoustNotFoundError):
            engine.advance("jo_nope")

    def test_draft_step_calls_nobody(self, store):
        channel = ScriptedChannel(_script())
        _engine(store, channel).advance(JOUST_ID)
        assert channel.calls == []


class TestRound1:
    def _run(self, store, **overrides):
        engine = _engine(store, ScriptedChannel(_script(**overrides)))
        engine.advance(JOUST_ID)
        engine.advance(JOUST_ID)
        return store.get_joust(JOUST_ID)

    def test_posts_recorded(self, store):
        joust = self._run(store)
        post = joust.post(Round.ROUND1, "T1")
        assert post.message == f"{TOKEN} Tide rises."
        assert post.agent_id == "a1"
        assert joust.state == JoustState.ROUND2

    def test_missing_token_prefixed(self, store):
        joust = self._run(store, a1={"round1": {"message": "No token here."}})
        assert joust.post(Round.ROUND1, "T1").message == f"{TOKEN} No token here."

    def test_link_forfeits(self, store):
        joust = self._run(store, a1={"round1": {"message": f"{TOKEN} see https://spam.example"}})
        assert joust.post(Round.ROUND1, "T1").message == f"{TOKEN} (forfeit)"

    def test_too_long_forfeits(self, store):
        joust = self._run(store, a1={"round1": {"message": f"{TOKEN} " + "x" * 300}})
        assert joust.post(Round.ROUND1, "T1").message == f"{TOKEN} (forfeit)"

    def test_malformed_reply_forfeits(self, store):
        joust = self._run(store, b1={"round1": ["not", "an", "object"]})
        assert joust.post(Round.ROUND1, "T2").message == f"{TOKEN} (forfeit)"

    def test_payload_lists_opponents(self, store):
        seen = []

        class Spy(ScriptedChannel):
            def call(self, agent, request, timeout):
                seen.append(request)
                return super().call(agent, request, timeout)

        engine = _engine(store, Spy(_script()), callback_timeout=2.5)
        engine.advance(JOUST_ID)
        engine.advance(JOUST_ID)

        first = seen[0]
        assert first.rules.requiredToken == TOKEN
        assert first.tribe.id == "T1"
        assert [o.id for o in first.opponents] == ["T2"]
        # Second leader sees the first post in the transcript
        assert "T1" in seen[1].transcript["round1"]["posts"]


class TestRetry:
    def test_failure_keeps_state_and_recorded_posts(self, store):
        channel = ScriptedChannel(_script(b1={"round1": CallbackError("b1 timed out")}))
        engine = _engine(store, channel)
        engine.advance(JOUST_ID)

        with pytest.raises(CallbackError):
            engine.advance(JOUST_ID)

        joust = store.get_joust(JOUST_ID)
        assert joust.state == JoustState.ROUND1
        assert joust.post(Round.ROUND1, "T1") is not None
        assert joust.post(Round.ROUND1, "T2") is None

        # Retry: only the tribe without a post is asked again
        channel.script["b1"]["round1"] = {"message": f"{TOKEN} back online"}
        assert engine.advance(JOUST_ID) == JoustState.ROUND2
        round1_calls = [c[0] for c in channel.calls if c[1] == "round1"]
        assert round1_calls == ["a1", "b1", "b1"]

    def test_round2_failure_is_retryable(self, store):
        channel = ScriptedChannel(_script(a1={"round2": CallbackError("a1 down")}))
        engine = _engine(store, channel)
        engine.advance(JOUST_ID)
        engine.advance(JOUST_ID)

        with pytest.raises(CallbackError):
            engine.advance(JOUST_ID)
        assert store.get_joust(JOUST_ID).state == JoustState.ROUND2


class TestRound2:
    def _run(self, store, **overrides):
        engine = _engine(store, ScriptedChannel(_script(**overrides)))
        for _ in range(3):
            engine.advance(JOUST_ID)
        return store.get_joust(JOUST_ID)

    def test_choice_normalized(self, store):
        joust = self._run(store, a1={"round2": {"choice": "a", "message": "Sea."}})
        assert joust.post(Round.ROUND2, "T1").choice == "A"

    def test_invalid_choice_forfeits(self, store):
        joust = self._run(store, a1={"round2": {"choice": "maybe", "message": "Both?"}})
        post = joust.post(Round.ROUND2, "T1")
        assert post.message == "(forfeit)"
        assert post.choice is None

    def test_link_forfeits(self, store):
        joust = self._run(store, b1={"round2": {"choice": "B", "message": "www.sky.example"}})
        assert joust.post(Round.ROUND2, "T2").choice is None


class TestVote:
    def test_failures_are_swallowed(self, store):
        channel = ScriptedChannel(_script(n1={"vote": CallbackError("n1 asleep")}))
        engine = _engine(store, channel)
        assert engine.run_to_completion(JOUST_ID) == JoustState.DONE
        assert "n1" not in store.get_joust(JOUST_ID).votes

    def test_undecodable_reply_is_skipped(self, store):
        garbled = HttpCallbackChannel(
            client=httpx.Client(
                transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"\xff\xfe\xfa"))
            )
        )
        _make_agent(store, "x1", channel="http")
        engine = JoustEngine(
            store,
            dispatcher=CallbackDispatcher({"scripted": ScriptedChannel(_script()), "http": garbled}),
        )

        assert engine.run_to_completion(JOUST_ID) == JoustState.DONE
        joust = store.get_joust(JOUST_ID)
        assert "x1" not in joust.votes
        assert joust.results.vote_totals == {"A": 2, "B": 1}

    def test_vote_timeout_capped(self, store):
        channel = ScriptedChannel(_script())
        _engine(store, channel, callback_timeout=7.0, vote_timeout_cap=4.0).run_to_completion(JOUST_ID)
        timeouts = {kind: t for _, kind, t in channel.calls}
        assert timeouts["round1"] == 7.0
        assert timeouts["vote"] == 4.0

    def test_contest_scope_skips_outsiders(self, store):
        channel = ScriptedChannel(_script())
        _engine(store, channel, vote_scope="contest").run_to_completion(JOUST_ID)
        voters = {aid for aid, kind, _ in channel.calls if kind == "vote"}
        assert voters == {"a1", "b1"}

    def test_all_scope_polls_everyone(self, store):
        channel = ScriptedChannel(_script())
        _engine(store, channel).run_to_completion(JOUST_ID)
        voters = {aid for aid, kind, _ in channel.calls if kind == "vote"}
        assert voters == {"a1", "b1", "n1"}


class TestConcurrency:
    def test_parallel_advances_run_one_after_another(self, store):
        entered = threading.Event()
        release = threading.Event()

        class Blocking(ScriptedChannel):
            def call(self, agent, request, timeout):
                if isinstance(request, Round1Request) and not entered.is_set():
                    entered.set()
                    release.wait(5)
                return super().call(agent, request, timeout)

        channel = Blocking(_script())
        engine = _engine(store, channel)
        engine.advance(JOUST_ID)

        states = []
        threads = [threading.Thread(target=lambda: states.append(engine.advance(JOUST_ID))) for _ in range(2)]
        threads[0].start()
        assert entered.wait(5)
        threads[1].start()
        # Second advance is parked on the joust lock while round1 is in flight
        time.sleep(0.05)
        assert states == []
        assert threads[1].is_alive()
        release.set()
        for t in threads:
            t.join(5)

        round1_calls = [c[0] for c in channel.calls if c[1] == "round1"]
        round2_calls = [c[0] for c in channel.calls if c[1] == "round2"]
        assert round1_calls == ["a1", "b1"]
        assert round2_calls == ["a1", "b1"]
        assert set(states) == {JoustState.ROUND2, JoustState.VOTE}

        joust = store.get_joust(JOUST_ID)
        assert joust.state == JoustState.VOTE
        assert sorted(tid for (rnd, tid) in joust.posts if rnd == Round.ROUND1) == ["T1", "T2"]
        assert sorted(tid for (rnd, tid) in joust.posts if rnd == Round.ROUND2) == ["T1", "T2"]


# ============================================================================
# Resolution
# ============================================================================


class TestFullRun:
    def test_results(self, store):
        engine = _engine(store, ScriptedChannel(_script()))
        assert engine.run_to_completion(JOUST_ID) == JoustState.DONE

        results = store.get_joust(JOUST_ID).results
        assert results.vote_totals == {"A": 2, "B": 1}
        assert results.winning_option == "A"
        assert results.winner_tribe_id == "T1"
        assert results.tribe_results["T1"].neutral_votes == 1
        assert results.tribe_results["T1"].persuasion_score == 1
        assert results.tribe_results["T1"].delta_infamy == 15
        assert results.tribe_results["T2"].delta_infamy == -6
        assert results.decision.mode == "rules"
        assert results.migration.moved_agents == 1
        assert results.migration.moved_from_tribes == [{"tribe_id": "T2", "moved_count": 1}]

    def test_reputation_and_conquest(self, store):
        _engine(store, ScriptedChannel(_script())).run_to_completion(JOUST_ID)

        t1, t2 = store.get_tribe("T1"), store.get_tribe("T2")
        assert (t1.infamy, t1.wins, t1.losses) == (15, 1, 0)
        assert (t2.infamy, t2.wins, t2.losses) == (-6, 0, 1)
        # Member shares are applied before the loser is absorbed
        assert store.get_agent("a1").infamy == 5
        assert store.get_agent("b1").infamy == -2
        assert store.get_agent("b1").losses == 1
        assert store.get_agent_tribe_id("b1") == "T1"
        assert store.get_agent("n1").infamy == 0

    def test_forced_winner(self, store):
        class Judge:
            mode = "ai"

            def analyze(self, joust, tribes, sheet=None):
                raise AssertionError("not used")

            def decide(self, joust, tribes, sheet):
                return "T2", DecisionInfo(mode="ai", source="openai", verdict="Gale.")

        engine = JoustEngine(
            store,
            decider=Judge(),
            dispatcher=CallbackDispatcher({"scripted": ScriptedChannel(_script())}),
        )
        engine.run_to_completion(JOUST_ID)

        results = store.get_joust(JOUST_ID).results
        assert results.winner_tribe_id == "T2"
        assert results.winning_option == "B"
        assert results.decision.source == "openai"
        assert store.get_agent_tribe_id("a1") == "T2"

    def test_stub_agents(self):
        store = MemoryStore()
        _make_world(store, channel="stub", tags={"a1": ["stoic"], "b1": ["chaos"], "n1": ["builder"]})
        engine = JoustEngine(store)

        assert engine.run_to_completion(JOUST_ID) == JoustState.DONE

        joust = store.get_joust(JOUST_ID)
        assert joust.post(Round.ROUND1, "T1").message.startswith(TOKEN)
        assert joust.choices() == {"T1": "A", "T2": "B"}
        assert joust.votes == {"a1": "A", "b1": "B", "n1": "A"}
        assert joust.results.winner_tribe_id == "T1"

    def test_leaderless_tribe_forfeits(self):
        store = MemoryStore()
        _make_world(store)
        # A tribe id in the joust that doesn't exist any more
        store.create_joust(
            Joust(
                id="jo_ghost00001",
                title="Ghost",
                prompt=Prompt(question="?", a="A", b="B"),
                tribe_ids=("T1", "T_gone"),
            )
        )
        engine = _engine(store, ScriptedChannel(_script()))
        assert engine.run_to_completion("jo_ghost00001") == JoustState.DONE

        joust = store.get_joust("jo_ghost00001")
        ghost = joust.post(Round.ROUND1, "T_gone")
        assert ghost.message == "#jo_gh (forfeit)"
        assert ghost.agent_id is None
        assert joust.post(Round.ROUND2, "T_gone").choice is None
