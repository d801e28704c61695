"""
Turn engine driving one bounded, automatic negotiation between two proxies.

Each round sends a prompt to the peer's proxy, asks the conclusion detector
whether the exchange is settled, and if not has the requester's proxy write
the next prompt. The engine keeps one session token per side so each backend
retains its own memory of the conversation.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from config import MAX_ROUNDS
from models.conversation import (
    ConversationStatus,
    PeerSessionToken,
    RequesterSessionToken,
    Turn,
    TurnRole,
)
from models.network import Peer
from services.conclusion_detector import ConclusionDetector, ConclusionResult
from services.errors import AuthError, ChatBackendError, NetworkChatError
from services.proxy_chat import ProxyChatAdapter

logger = logging.getLogger(__name__)

FOLLOW_UP_CONTEXT_TURNS = 4


class TurnObserver(Protocol):
    """Receives every turn right after it is appended to the transcript."""

    def on_turn_appended(self, turn: Turn) -> None:
        ...


@dataclass
class EngineOutcome:
    """
    Final state of one engine run.

    reason is the detector's conclusion reason, or the error message for
    ERROR. A run that used up its rounds has no reason.
    """
    transcript: List[Turn]
    status: ConversationStatus
    requester_session_token: Optional[RequesterSessionToken] = None
    peer_session_token: Optional[PeerSessionToken] = None
    reason: Optional[str] = None
    error: Optional[NetworkChatError] = None
    rounds: int = 0

    @property
    def latest_peer_reply(self) -> str:
        for turn in reversed(self.transcript):
            if turn.role == TurnRole.PEER:
                return turn.text
        return ""


@dataclass
class _RunState:
    transcript: List[Turn] = field(default_factory=list)
    requester_token: Optional[RequesterSessionToken] = None
    peer_token: Optional[PeerSessionToken] = None
    rounds: int = 0


class TurnEngine:
    """Runs the round loop for a single (requester, peer, request) triple."""

    def __init__(
        self,
        chat_adapter: ProxyChatAdapter,
        detector: ConclusionDetector,
        max_rounds: int = MAX_ROUNDS
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.chat_adapter = chat_adapter
        self.detector = detector
        self.max_rounds = max_rounds

    async def run(
        self,
        requester: Peer,
        peer: Peer,
        request_content: str,
        observer: Optional[TurnObserver] = None,
        max_rounds: Optional[int] = None
    ) -> EngineOutcome:
        """
        Negotiate with one peer until concluded, out of rounds, or failed.

        Appends at most max_rounds peer turns and max_rounds - 1 requester
        turns. A chat failure on either side ends the run with status
        ERROR; it is reported on the outcome, not raised.

        Args:
            requester: The user the negotiation is on behalf of
            peer: The peer being asked for help
            request_content: Raw request text
            observer: Optional per-turn callback for live streaming
            max_rounds: Override of the engine's round limit

        Returns:
            EngineOutcome with transcript, status and both session tokens
        """
        rounds = max_rounds if max_rounds is not None else self.max_rounds
        if rounds < 1:
            raise ValueError("max_rounds must be at least 1")

        state = _RunState()
        prompt = self.build_opener(request_content)

        for round_index in range(rounds):
            state.rounds = round_index + 1

            try:
                await self._ask_peer(peer, prompt, state, observer)
            except (AuthError, ChatBackendError) as e:
                return self._fail(peer, state, e)

            verdict = await self._detect(peer, state.transcript)
            if verdict.concluded:
                logger.info(f"Conversation with {peer.display_name} concluded in round {state.rounds}: {verdict.reason}")
                return self._outcome(state, ConversationStatus.CONCLUDED, verdict.reason)

            # No follow-up the peer would never get to answer.
            if round_index == rounds - 1:
                break

            follow_up = self.build_follow_up(request_content, state.transcript)
            try:
                await self._ask_requester(requester, follow_up, state, observer)
            except (AuthError, ChatBackendError) as e:
                return self._fail(peer, state, e)

            prompt = state.transcript[-1].text

        logger.info(f"Conversation with {peer.display_name} stopped after {rounds} rounds without conclusion")
        return self._outcome(state, ConversationStatus.MAX_ROUNDS, None)

    async def _ask_peer(
        self,
        peer: Peer,
        message: str,
        state: _RunState,
        observer: Optional[TurnObserver]
    ) -> None:
        result = await self.chat_adapter.send_turn(peer, message, state.peer_token)
        if result.continuation_token:
            state.peer_token = PeerSessionToken(result.continuation_token)
        self._append(state, Turn(role=TurnRole.PEER, text=result.reply_text), observer)

    async def _ask_requester(
        self,
        requester: Peer,
        message: str,
        state: _RunState,
        observer: Optional[TurnObserver]
    ) -> None:
        result = await self.chat_adapter.send_turn(requester, message, state.requester_token)
        if result.continuation_token:
            state.requester_token = RequesterSessionToken(result.continuation_token)
        self._append(state, Turn(role=TurnRole.REQUESTER, text=result.reply_text), observer)

    async def _detect(self, peer: Peer, transcript: List[Turn]) -> ConclusionResult:
        try:
            return await self.detector.detect_conclusion(list(transcript))
        except Exception:
            logger.warning(f"Detector raised for {peer.display_name}, continuing", exc_info=True)
            return ConclusionResult(concluded=False, reason="detection failed, continuing")

    @staticmethod
    def _append(state: _RunState, turn: Turn, observer: Optional[TurnObserver]) -> None:
        state.transcript.append(turn)
        if observer is None:
            return
        try:
            observer.on_turn_appended(turn)
        except Exception:
            logger.warning("Turn observer failed; continuing round", exc_info=True)

    def _fail(self, peer: Peer, state: _RunState, error: NetworkChatError) -> EngineOutcome:
        logger.error(
            f"Conversation with {peer.display_name} failed in round {state.rounds}: {error.code} {error.message}"
        )
        outcome = self._outcome(state, ConversationStatus.ERROR, error.message)
        outcome.error = error
        return outcome

    @staticmethod
    def _outcome(state: _RunState, status: ConversationStatus, reason: Optional[str]) -> EngineOutcome:
        return EngineOutcome(
            transcript=list(state.transcript),
            status=status,
            requester_session_token=state.requester_token,
            peer_session_token=state.peer_token,
            reason=reason,
            rounds=state.rounds
        )

    @staticmethod
    def build_opener(request_content: str) -> str:
        return (
            "Hello! Someone in the network has posted a request and would like to know "
            "whether you have anything that could help:\n\n"
            f"{request_content}\n\n"
            "Based on your situation, please tell me whether you can provide relevant "
            "resources, and on what terms, or share any suggestions."
        )

    @staticmethod
    def build_follow_up(request_content: str, transcript: Sequence[Turn]) -> str:
        recent = transcript[-FOLLOW_UP_CONTEXT_TURNS:]
        context = "\n".join(
            f"{'Me' if turn.role == TurnRole.REQUESTER else 'Them'}: {turn.text}"
            for turn in recent
        )
        return (
            "You are negotiating on my behalf about this request of mine:\n"
            f"{request_content}\n\n"
            "Recent conversation with the other person:\n"
            f"{context}\n\n"
            "Write my next message to them. If they can help, ask one short question to "
            "confirm or clarify the details that are still open (timing, location, "
            "conditions). If they have declined, thank them politely and close the "
            "conversation. Reply with the message text only."
        )
