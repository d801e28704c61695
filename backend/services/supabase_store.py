"""Record store backed by Supabase PostgreSQL."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from supabase import create_client, Client

from config import SUPABASE_URL, SUPABASE_KEY
from models.conversation import (
    Conversation,
    ConversationStatus,
    PeerSessionToken,
    RequesterSessionToken,
    Turn,
)
from models.network import Credential, Peer
from models.request import Request, RequestStatus
from services.errors import NotFoundError, PersistenceError
from services.record_store import RecordStore, generate_conversation_id, generate_request_id

logger = logging.getLogger(__name__)


class SupabaseRecordStore(RecordStore):
    """
    Stores users, requests and conversations in Supabase tables.

    supabase-py is blocking, so every query runs in a worker thread to keep
    the event loop free while peers negotiate concurrently.
    """

    def __init__(
        self,
        supabase_url: Optional[str] = SUPABASE_URL,
        supabase_key: Optional[str] = SUPABASE_KEY,
        client: Optional[Client] = None
    ):
        """
        Initialize the store with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            client: Pre-built client (skips credential checks)

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if client is None:
            if not supabase_url or not supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")
            client = create_client(supabase_url, supabase_key)

        self.client: Client = client
        logger.info("SupabaseRecordStore initialized")

    async def _execute(self, operation: str, query: Callable[[], Any]) -> List[Dict[str, Any]]:
        """Run a blocking query builder in a thread and return its rows."""
        try:
            result = await asyncio.to_thread(query)
        except Exception as e:
            logger.error(f"Supabase {operation} failed: {e}", exc_info=True)
            raise PersistenceError(f"Store operation '{operation}' failed: {e}", details={"operation": operation})
        return result.data or []

    # Requests

    async def create_request(
        self,
        requester_id: str,
        content: str,
        analysis: Optional[Dict[str, Any]] = None
    ) -> Request:
        now = datetime.now()
        request = Request(
            request_id=generate_request_id(),
            requester_id=requester_id,
            content=content,
            analysis=analysis,
            created_at=now,
            updated_at=now
        )
        await self._execute("create_request", lambda: self.client.table("requests").insert({
            "id": request.request_id,
            "user_id": requester_id,
            "content": content,
            "status": request.status.value,
            "analysis": analysis,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat()
        }).execute())

        logger.info(f"Created request {request.request_id} for requester {requester_id}")
        return request

    async def get_request(self, request_id: str) -> Optional[Request]:
        rows = await self._execute(
            "get_request",
            lambda: self.client.table("requests").select("*").eq("id", request_id).execute()
        )
        return self._to_request(rows[0]) if rows else None

    async def list_requests(self, requester_id: str) -> List[Request]:
        rows = await self._execute(
            "list_requests",
            lambda: self.client.table("requests").select("*")
            .eq("user_id", requester_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [self._to_request(row) for row in rows]

    async def update_request_status(self, request_id: str, status: RequestStatus) -> None:
        await self._update("requests", request_id, {"status": status.value})

    async def update_request_summary(
        self,
        request_id: str,
        summary: str,
        status: RequestStatus = RequestStatus.COMPLETED
    ) -> None:
        await self._update("requests", request_id, {"summary": summary, "status": status.value})

    # Conversations

    async def create_conversation(
        self,
        request_id: str,
        peer_id: str,
        peer_name: str,
        transcript: List[Turn],
        requester_session_token: Optional[RequesterSessionToken],
        peer_session_token: Optional[PeerSessionToken],
        status: ConversationStatus,
        reason: Optional[str] = None
    ) -> Conversation:
        now = datetime.now()
        conversation = Conversation(
            conversation_id=generate_conversation_id(),
            request_id=request_id,
            peer_id=peer_id,
            peer_name=peer_name,
            transcript=list(transcript),
            requester_session_token=requester_session_token,
            peer_session_token=peer_session_token,
            status=status,
            reason=reason,
            created_at=now,
            updated_at=now
        )
        await self._execute("create_conversation", lambda: self.client.table("conversations").insert({
            "id": conversation.conversation_id,
            "request_id": request_id,
            "target_user_id": peer_id,
            "target_user_name": peer_name,
            "messages": [turn.to_dict() for turn in transcript],
            "requester_session_id": requester_session_token,
            "peer_session_id": peer_session_token,
            "status": status.value,
            "reason": reason,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat()
        }).execute())

        logger.info(f"Created conversation {conversation.conversation_id} with {peer_name} ({status.value})")
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        rows = await self._execute(
            "get_conversation",
            lambda: self.client.table("conversations").select("*").eq("id", conversation_id).execute()
        )
        return self._to_conversation(rows[0]) if rows else None

    async def update_conversation(
        self,
        conversation_id: str,
        transcript: Optional[List[Turn]] = None,
        requester_session_token: Optional[RequesterSessionToken] = None,
        peer_session_token: Optional[PeerSessionToken] = None,
        status: Optional[ConversationStatus] = None,
        reason: Optional[str] = None
    ) -> Conversation:
        changes: Dict[str, Any] = {}
        if transcript is not None:
            changes["messages"] = [turn.to_dict() for turn in transcript]
        if requester_session_token is not None:
            changes["requester_session_id"] = requester_session_token
        if peer_session_token is not None:
            changes["peer_session_id"] = peer_session_token
        if status is not None:
            changes["status"] = status.value
        if reason is not None:
            changes["reason"] = reason

        rows = await self._update("conversations", conversation_id, changes)
        return self._to_conversation(rows[0])

    async def get_conversations_by_request(self, request_id: str) -> List[Conversation]:
        rows = await self._execute(
            "get_conversations_by_request",
            lambda: self.client.table("conversations").select("*")
            .eq("request_id", request_id)
            .order("created_at", desc=False)
            .execute()
        )
        return [self._to_conversation(row) for row in rows]

    # Peers

    async def get_peer(self, peer_id: str) -> Optional[Peer]:
        rows = await self._execute(
            "get_peer",
            lambda: self.client.table("users").select("*").eq("id", peer_id).execute()
        )
        return self._to_peer(rows[0]) if rows else None

    async def list_peers(self, exclude_peer_id: Optional[str] = None, limit: Optional[int] = None) -> List[Peer]:
        def query():
            builder = self.client.table("users").select("*")
            if exclude_peer_id:
                builder = builder.neq("id", exclude_peer_id)
            builder = builder.order("created_at", desc=True)
            if limit is not None:
                builder = builder.limit(limit)
            return builder.execute()

        rows = await self._execute("list_peers", query)
        return [self._to_peer(row) for row in rows]

    async def update_peer_credential(self, peer_id: str, credential: Credential) -> None:
        await self._update("users", peer_id, {
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "token_expiry": credential.expires_at.isoformat()
        })

    # Helpers

    async def _update(self, table: str, row_id: str, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        changes = dict(changes, updated_at=datetime.now().isoformat()) if table != "users" else changes
        rows = await self._execute(
            f"update_{table}",
            lambda: self.client.table(table).update(changes).eq("id", row_id).execute()
        )
        if not rows:
            raise NotFoundError(f"{table} row {row_id} not found")
        return rows

    def _to_request(self, row: Dict[str, Any]) -> Request:
        return Request(
            request_id=row["id"],
            requester_id=row["user_id"],
            content=row["content"],
            status=RequestStatus(row.get("status") or RequestStatus.PENDING.value),
            summary=row.get("summary"),
            analysis=row.get("analysis"),
            created_at=self._parse_timestamp(row["created_at"]),
            updated_at=self._parse_timestamp(row.get("updated_at") or row["created_at"])
        )

    def _to_conversation(self, row: Dict[str, Any]) -> Conversation:
        return Conversation(
            conversation_id=row["id"],
            request_id=row["request_id"],
            peer_id=row["target_user_id"],
            peer_name=row.get("target_user_name") or "Unknown user",
            transcript=[Turn.from_dict(item) for item in row.get("messages") or []],
            requester_session_token=row.get("requester_session_id"),
            peer_session_token=row.get("peer_session_id"),
            status=ConversationStatus(row.get("status") or ConversationStatus.ONGOING.value),
            reason=row.get("reason"),
            summary=row.get("summary"),
            created_at=self._parse_timestamp(row["created_at"]),
            updated_at=self._parse_timestamp(row.get("updated_at") or row["created_at"])
        )

    def _to_peer(self, row: Dict[str, Any]) -> Peer:
        return Peer(
            peer_id=row["id"],
            name=row.get("name"),
            avatar=row.get("avatar"),
            credential=Credential(
                access_token=row["access_token"],
                refresh_token=row.get("refresh_token"),
                expires_at=self._parse_timestamp(row["token_expiry"])
            ),
            created_at=self._parse_timestamp(row["created_at"]) if row.get("created_at") else None
        )

    def _parse_timestamp(self, timestamp_str: str) -> datetime:
        """
        Parse timestamp string from Supabase, handling various formats.

        Supabase can return timestamps with varying microsecond precision,
        which Python's fromisoformat() can't always handle. This method
        normalizes the timestamp format.

        Args:
            timestamp_str: Timestamp string from Supabase

        Returns:
            datetime object
        """
        # Replace 'Z' with '+00:00' for timezone
        timestamp_str = timestamp_str.replace("Z", "+00:00")

        # Format: 2026-02-21T02:08:26.18976+00:00
        if "." in timestamp_str:
            head, fraction = timestamp_str.split(".", 1)
            for sign in ("+", "-"):
                if sign in fraction:
                    digits, tz = fraction.split(sign, 1)
                    digits = digits[:6].ljust(6, '0')
                    return datetime.fromisoformat(f"{head}.{digits}{sign}{tz}")
            return datetime.fromisoformat(f"{head}.{fraction[:6].ljust(6, '0')}")

        return datetime.fromisoformat(timestamp_str)
