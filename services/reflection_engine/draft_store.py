import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import ValidationError
from redis.exceptions import RedisError

from .models import DraftPersistenceError, ReflectionSession

logger = logging.getLogger(__name__)

DRAFT_SCHEMA_VERSION = 1


def encode_draft(session: ReflectionSession) -> str:
    """
    Serializes a session into the versioned draft envelope.
    """
    envelope = {
        "schema_version": DRAFT_SCHEMA_VERSION,
        "template_id": session.template_id,
        "template_version": session.template_version,
        "session": session.model_dump(mode="json"),
    }
    return json.dumps(envelope, sort_keys=True)


def decode_draft(payload: Any) -> Optional[ReflectionSession]:
    """
    Rehydrates a session from a stored envelope. Blobs that cannot be
    read (corrupt JSON, unknown schema version, wrong shape) are treated
    as absent rather than raised.
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        envelope = json.loads(payload)
    except (TypeError, json.JSONDecodeError) as e:
        logger.warning(f"Discarding undecodable draft payload: {e}")
        return None

    if not isinstance(envelope, dict) or envelope.get("schema_version") != DRAFT_SCHEMA_VERSION:
        logger.warning(
            f"Discarding draft with unsupported schema version: "
            f"{envelope.get('schema_version') if isinstance(envelope, dict) else None}"
        )
        return None

    try:
        return ReflectionSession.model_validate(envelope["session"])
    except (KeyError, ValidationError) as e:
        logger.warning(f"Discarding malformed draft for template {envelope.get('template_id')}: {e}")
        return None


class DraftStore(ABC):
    """
    Scoped key-value persistence for in-progress sessions, keyed by session id.

    Alongside each draft the store keeps a resume pointer per
    (owner, template id) so opening a template finds the newest draft.
    """

    @abstractmethod
    async def save(self, session_id: str, session: ReflectionSession) -> None:
        raise NotImplementedError

    @abstractmethod
    async def load(self, session_id: str) -> Optional[ReflectionSession]:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def find_resumable(self, owner: str, template_id: str) -> Optional[str]:
        """Session id of the newest draft for this owner and template, if any."""
        raise NotImplementedError


class InMemoryDraftStore(DraftStore):
    def __init__(self):
        self._drafts: Dict[str, str] = {}
        self._latest: Dict[Tuple[str, str], str] = {}

    async def save(self, session_id: str, session: ReflectionSession) -> None:
        self._drafts[session_id] = encode_draft(session)
        self._latest[(session.owner, session.template_id)] = session_id

    async def load(self, session_id: str) -> Optional[ReflectionSession]:
        payload = self._drafts.get(session_id)
        if payload is None:
            return None
        return decode_draft(payload)

    async def delete(self, session_id: str) -> None:
        self._drafts.pop(session_id, None)
        for key, sid in list(self._latest.items()):
            if sid == session_id:
                del self._latest[key]

    async def find_resumable(self, owner: str, template_id: str) -> Optional[str]:
        return self._latest.get((owner, template_id))

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._drafts


class RedisDraftStore(DraftStore):
    """
    Draft store on Redis. Keys:
      <namespace>draft:<session_id>                 -> draft envelope (JSON)
      <namespace>draft-latest:<owner>:<template_id> -> session id

    Drafts do not expire unless `ttl_seconds` is set.
    """

    def __init__(
        self,
        get_client: Callable[[], Awaitable[Any]],
        namespace: str = "rce:",
        ttl_seconds: Optional[int] = None,
        op_timeout: float = 2.0,
    ):
        self._get_client = get_client
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.op_timeout = op_timeout

    def draft_key(self, session_id: str) -> str:
        return f"{self.namespace}draft:{session_id}"

    def latest_key(self, owner: str, template_id: str) -> str:
        return f"{self.namespace}draft-latest:{owner}:{template_id}"

    async def _client(self):
        client = await self._get_client()
        if client is None:
            raise DraftPersistenceError("Redis unavailable, draft store disabled")
        return client

    async def _run(self, op: str, key: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.op_timeout)
        except asyncio.TimeoutError as e:
            raise DraftPersistenceError(f"Redis {op} timed out for key {key}") from e
        except RedisError as e:
            raise DraftPersistenceError(f"Redis {op} failed for key {key}: {e}") from e

    async def save(self, session_id: str, session: ReflectionSession) -> None:
        client = await self._client()
        key = self.draft_key(session_id)
        await self._run("SET", key, client.set(key, encode_draft(session), ex=self.ttl_seconds))
        latest = self.latest_key(session.owner, session.template_id)
        await self._run("SET", latest, client.set(latest, session_id, ex=self.ttl_seconds))
        logger.debug(f"Saved draft {key} (step {session.current_step_index})")

    async def load(self, session_id: str) -> Optional[ReflectionSession]:
        client = await self._client()
        key = self.draft_key(session_id)
        payload = await self._run("GET", key, client.get(key))
        if payload is None:
            return None
        return decode_draft(payload)

    async def delete(self, session_id: str) -> None:
        client = await self._client()
        key = self.draft_key(session_id)
        payload = await self._run("GET", key, client.get(key))
        await self._run("DELETE", key, client.delete(key))

        session = decode_draft(payload) if payload is not None else None
        if session is not None:
            latest = self.latest_key(session.owner, session.template_id)
            current = await self._run("GET", latest, client.get(latest))
            if isinstance(current, bytes):
                current = current.decode("utf-8")
            # Only clear the pointer if a newer draft has not replaced it.
            if current == session_id:
                await self._run("DELETE", latest, client.delete(latest))
        logger.debug(f"Deleted draft {key}")

    async def find_resumable(self, owner: str, template_id: str) -> Optional[str]:
        client = await self._client()
        key = self.latest_key(owner, template_id)
        value = await self._run("GET", key, client.get(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value
