"""Unit tests for TurnEngine."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import asyncio
import pytest
from fakes import ScriptedChatAdapter, ScriptedDetector, make_peer
from models.conversation import ConversationStatus, TurnRole
from services.errors import AuthError, ChatBackendError
from services.turn_engine import TurnEngine


class RecordingObserver:
    def __init__(self, fail: bool = False):
        self.turns = []
        self.fail = fail

    def on_turn_appended(self, turn):
        self.turns.append(turn)
        if self.fail:
            raise RuntimeError("observer exploded")


class TestTurnEngine:
    """Test suite for TurnEngine."""

    @pytest.fixture
    def requester(self):
        return make_peer("alice")

    @pytest.fixture
    def peer(self):
        return make_peer("bob")

    def test_rejects_round_limit_below_one(self):
        """Test the engine refuses a zero round limit."""
        with pytest.raises(ValueError):
            TurnEngine(ScriptedChatAdapter(), ScriptedDetector(), max_rounds=0)

    def test_run_rejects_override_below_one(self, requester, peer):
        engine = TurnEngine(ScriptedChatAdapter(), ScriptedDetector(), max_rounds=3)
        with pytest.raises(ValueError):
            asyncio.run(engine.run(requester, peer, "Need a tent", max_rounds=0))

    def test_quick_conclusion_after_first_peer_turn(self, requester, peer):
        """Test a conclusion on the first verdict stops with a single peer turn."""
        adapter = ScriptedChatAdapter(replies={"bob": ["Sorry, I can't help with that."]})
        engine = TurnEngine(adapter, ScriptedDetector(conclude_at_turns=1), max_rounds=5)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert outcome.status == ConversationStatus.CONCLUDED
        assert outcome.reason == "agreement reached"
        assert len(outcome.transcript) == 1
        assert outcome.transcript[0].role == TurnRole.PEER
        assert outcome.transcript[0].text == "Sorry, I can't help with that."
        assert outcome.rounds == 1
        assert adapter.calls_for("alice") == []

    def test_exhausts_rounds_without_conclusion(self, requester, peer):
        """Test max_rounds=3 yields three peer turns and two requester turns."""
        adapter = ScriptedChatAdapter()
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=3)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        roles = [turn.role for turn in outcome.transcript]
        assert roles == [
            TurnRole.PEER, TurnRole.REQUESTER, TurnRole.PEER, TurnRole.REQUESTER, TurnRole.PEER
        ]
        assert outcome.status == ConversationStatus.MAX_ROUNDS
        assert outcome.reason is None
        assert len(adapter.calls_for("bob")) == 3
        assert len(adapter.calls_for("alice")) == 2

    def test_single_round_sends_no_follow_up(self, requester, peer):
        adapter = ScriptedChatAdapter()
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=1)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert len(outcome.transcript) == 1
        assert outcome.status == ConversationStatus.MAX_ROUNDS
        assert adapter.calls_for("alice") == []

    def test_conclusion_on_final_round_sends_no_follow_up(self, requester, peer):
        """Test a verdict on the last peer turn ends the run before any requester prompt."""
        adapter = ScriptedChatAdapter()
        engine = TurnEngine(adapter, ScriptedDetector(conclude_at_turns=3), max_rounds=2)

        outcome = asyncio.run(engine.run(requester, peer, "need a projector for Saturday"))

        assert outcome.status == ConversationStatus.CONCLUDED
        assert [turn.role for turn in outcome.transcript] == [TurnRole.PEER, TurnRole.REQUESTER, TurnRole.PEER]
        assert len(adapter.calls_for("alice")) == 1

    def test_round_override_takes_precedence(self, requester, peer):
        adapter = ScriptedChatAdapter()
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=5)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent", max_rounds=2))

        assert len([t for t in outcome.transcript if t.role == TurnRole.PEER]) == 2
        assert len([t for t in outcome.transcript if t.role == TurnRole.REQUESTER]) == 1

    def test_opener_is_sent_but_not_recorded(self, requester, peer):
        """Test the opening prompt reaches the peer but never enters the transcript."""
        adapter = ScriptedChatAdapter()
        engine = TurnEngine(adapter, ScriptedDetector(conclude_at_turns=1))

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent for Saturday"))

        first_message = adapter.calls[0][1]
        assert first_message == TurnEngine.build_opener("Need a tent for Saturday")
        assert "Need a tent for Saturday" in first_message
        assert all(turn.text != first_message for turn in outcome.transcript)

    def test_requester_reply_is_forwarded_to_peer(self, requester, peer):
        """Test the requester proxy's reply becomes the next prompt to the peer."""
        adapter = ScriptedChatAdapter(replies={"alice": ["When can I pick it up?"]})
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=2)

        asyncio.run(engine.run(requester, peer, "Need a tent"))

        follow_up_prompt = adapter.calls_for("alice")[0][1]
        assert "Need a tent" in follow_up_prompt
        assert "Them: reply 1 from bob" in follow_up_prompt
        assert adapter.calls_for("bob")[1][1] == "When can I pick it up?"

    def test_peer_auth_failure_on_first_turn(self, requester, peer):
        """Test an auth failure before any reply ends the run with ERROR and no turns."""
        adapter = ScriptedChatAdapter(failures={"bob": AuthError("token expired")})
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=5)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert outcome.status == ConversationStatus.ERROR
        assert outcome.transcript == []
        assert isinstance(outcome.error, AuthError)
        assert outcome.reason == "token expired"

    def test_requester_failure_keeps_partial_transcript(self, requester, peer):
        """Test a requester-side failure ends the run after the peer's turn."""
        adapter = ScriptedChatAdapter(failures={"alice": ChatBackendError("backend down", status_code=502)})
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=5)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert outcome.status == ConversationStatus.ERROR
        assert [turn.role for turn in outcome.transcript] == [TurnRole.PEER]
        assert outcome.error.status_code == 502

    def test_peer_failure_mid_run(self, requester, peer):
        """Test a peer failure in round two leaves the first exchange intact."""
        adapter = ScriptedChatAdapter(
            failures={"bob": ChatBackendError("stream dropped")},
            fail_after={"bob": 1}
        )
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=5)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert outcome.status == ConversationStatus.ERROR
        assert [turn.role for turn in outcome.transcript] == [TurnRole.PEER, TurnRole.REQUESTER]
        assert outcome.rounds == 2

    def test_detector_exception_does_not_end_run(self, requester, peer):
        """Test an exception from the detector counts as not concluded."""
        engine = TurnEngine(ScriptedChatAdapter(), ScriptedDetector(error=RuntimeError("boom")), max_rounds=2)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert outcome.status == ConversationStatus.MAX_ROUNDS
        assert len(outcome.transcript) == 3

    def test_detector_sees_each_peer_turn(self, requester, peer):
        detector = ScriptedDetector()
        engine = TurnEngine(ScriptedChatAdapter(), detector, max_rounds=3)

        asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert detector.seen == [1, 3, 5]

    def test_session_tokens_stay_on_their_side(self, requester, peer):
        """Test each side only ever receives the session token it issued."""
        adapter = ScriptedChatAdapter()
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=3)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        peer_tokens = [call[2] for call in adapter.calls_for("bob")]
        requester_tokens = [call[2] for call in adapter.calls_for("alice")]
        assert peer_tokens[0] is None
        assert all(token.startswith("bob-session") for token in peer_tokens[1:])
        assert requester_tokens[0] is None
        assert all(token.startswith("alice-session") for token in requester_tokens[1:])
        assert outcome.peer_session_token.startswith("bob-session")
        assert outcome.requester_session_token.startswith("alice-session")
        assert outcome.peer_session_token != outcome.requester_session_token

    def test_observer_receives_every_turn_in_order(self, requester, peer):
        observer = RecordingObserver()
        engine = TurnEngine(ScriptedChatAdapter(), ScriptedDetector(), max_rounds=2)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent", observer=observer))

        assert observer.turns == outcome.transcript

    def test_observer_failure_is_ignored(self, requester, peer):
        """Test a raising observer does not abort the round."""
        observer = RecordingObserver(fail=True)
        engine = TurnEngine(ScriptedChatAdapter(), ScriptedDetector(), max_rounds=2)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent", observer=observer))

        assert outcome.status == ConversationStatus.MAX_ROUNDS
        assert len(outcome.transcript) == 3
        assert len(observer.turns) == 3

    def test_latest_peer_reply(self, requester, peer):
        adapter = ScriptedChatAdapter(replies={"bob": ["first", "second"]})
        engine = TurnEngine(adapter, ScriptedDetector(), max_rounds=2)

        outcome = asyncio.run(engine.run(requester, peer, "Need a tent"))

        assert outcome.latest_peer_reply == "second"

    def test_follow_up_uses_recent_context_only(self):
        from models.conversation import Turn
        transcript = [Turn(role=TurnRole.PEER, text=f"turn {i}") for i in range(6)]

        prompt = TurnEngine.build_follow_up("Need a tent", transcript)

        assert "turn 0" not in prompt
        assert "turn 1" not in prompt
        assert "turn 5" in prompt
