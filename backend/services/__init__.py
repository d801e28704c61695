"""Services for the agent network negotiation service."""
from .errors import (
    AuthError,
    ChatBackendError,
    DetectionError,
    NetworkChatError,
    NotFoundError,
    PersistenceError,
    SinkClosedError,
    ValidationError,
)
from .llm_client import LLMClient, LLMResponse, LLMError, LLMClientError
from .record_store import RecordStore, InMemoryRecordStore
from .credentials import CredentialResolver
from .proxy_chat import ProxyChatAdapter, ChatTurnResult
from .conclusion_detector import ConclusionDetector, ConclusionResult
from .turn_engine import TurnEngine, EngineOutcome, TurnObserver
from .progress import ProgressSink, QueueProgressSink
from .broadcast import BroadcastCoordinator
from .summary import SummaryGenerator
from .conversation_service import ConversationService, ContinuationResult

__all__ = [
    'AuthError', 'ChatBackendError', 'DetectionError', 'NetworkChatError', 'NotFoundError',
    'PersistenceError', 'SinkClosedError', 'ValidationError',
    'LLMClient', 'LLMResponse', 'LLMError', 'LLMClientError',
    'RecordStore', 'InMemoryRecordStore', 'CredentialResolver',
    'ProxyChatAdapter', 'ChatTurnResult', 'ConclusionDetector', 'ConclusionResult',
    'TurnEngine', 'EngineOutcome', 'TurnObserver', 'ProgressSink', 'QueueProgressSink',
    'BroadcastCoordinator', 'SummaryGenerator', 'ConversationService', 'ContinuationResult',
]
