import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from .draft_store import DraftStore
from .models import (
    FORM_ERROR_KEY,
    DraftPersistenceError,
    RecordRejectedError,
    ReflectionSession,
    StoredRecord,
    SubmissionResult,
    SubmissionSuccess,
    SubmissionTransientFailure,
    SubmissionValidationFailure,
    TransientRecordStoreError,
    utc_now,
)
from .registry import TemplateRegistry
from .validation import validate_template

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED_MESSAGE = "Please sign in to save your reflection."
RECORD_REJECTED_MESSAGE = "We couldn't save this reflection. Please review your answers and try again."


class RecordStore(Protocol):
    """Durable store for completed reflections. Write-only from the engine's side."""

    async def insert(
        self,
        record_id: str,
        user_id: str,
        template_id: str,
        answers: Dict[str, Any],
        completed_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredRecord:
        """Raises RecordRejectedError or TransientRecordStoreError on failure."""
        ...


class IdentityProvider(Protocol):
    async def current_user_id(self) -> Optional[str]:
        """The signed-in user's id, or None when not authenticated."""
        ...


class CompletionPublisher(Protocol):
    def publish_completed(self, record: StoredRecord) -> None:
        ...


class SubmissionController:
    """
    Terminal "complete" step of a reflection session.

    Guards against duplicate records: while a submission for a session id is
    in flight every further call awaits the same outcome, and once it has
    succeeded later calls return the stored success without writing again.
    The guard is keyed by session id, so different sessions never block
    each other. Only the newest `max_remembered` successes are kept; an
    older session that submits again reaches the record store, which
    returns the row already stored under its record id.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        record_store: RecordStore,
        draft_store: DraftStore,
        identity: Optional[IdentityProvider],
        publisher: Optional[CompletionPublisher] = None,
        clock: Callable[[], datetime] = utc_now,
        max_remembered: int = 1024,
    ):
        self.registry = registry
        self.record_store = record_store
        self.draft_store = draft_store
        self.identity = identity
        self.publisher = publisher
        self.clock = clock
        self._in_flight: Dict[str, "asyncio.Future[SubmissionResult]"] = {}
        self.max_remembered = max_remembered
        self._succeeded: "OrderedDict[str, SubmissionSuccess]" = OrderedDict()

    def is_in_flight(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def submit(
        self,
        session: ReflectionSession,
        identity: Optional[IdentityProvider] = None,
    ) -> SubmissionResult:
        """
        Submits a session once. `identity` overrides the controller default for
        this call, for callers that authenticate per request.
        """
        session_id = session.session_id

        if session_id in self._succeeded:
            logger.debug(f"Session {session_id} already submitted, returning stored result")
            self._succeeded.move_to_end(session_id)
            return self._succeeded[session_id]

        pending = self._in_flight.get(session_id)
        if pending is not None:
            logger.debug(f"Submission for session {session_id} already in flight, awaiting it")
            return await asyncio.shield(pending)

        future: "asyncio.Future[SubmissionResult]" = asyncio.get_running_loop().create_future()
        self._in_flight[session_id] = future
        try:
            result = await self._submit_once(session.model_copy(deep=True), identity or self.identity)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a lone caller does not trigger "never retrieved" warnings.
            future.exception()
            raise
        else:
            if isinstance(result, SubmissionSuccess):
                self._remember(session_id, result)
            future.set_result(result)
            return result
        finally:
            del self._in_flight[session_id]

    def _remember(self, session_id: str, result: SubmissionSuccess) -> None:
        self._succeeded[session_id] = result
        while len(self._succeeded) > self.max_remembered:
            self._succeeded.popitem(last=False)

    async def _submit_once(
        self,
        session: ReflectionSession,
        identity: Optional[IdentityProvider],
    ) -> SubmissionResult:
        template = self.registry.get_template(session.template_id)

        # Full-template check: in-memory state may be stale for earlier steps.
        errors = validate_template(template, session.answers)
        if errors:
            logger.info(f"Submission for session {session.session_id} failed validation on {sorted(errors)}")
            return SubmissionValidationFailure(errors=errors)

        user_id = await identity.current_user_id() if identity is not None else None
        if not user_id:
            logger.info(f"Submission for session {session.session_id} rejected: not authenticated")
            return SubmissionValidationFailure(
                errors={FORM_ERROR_KEY: NOT_AUTHENTICATED_MESSAGE},
                reason="not_authenticated",
            )

        completed_at = self.clock()
        answers = {k: v for k, v in session.answers.items() if k in template.field_ids()}
        metadata = {
            "session_id": session.session_id,
            "template_version": template.version,
            "duration_seconds": max(0, int((completed_at - session.started_at).total_seconds())),
        }

        logger.info(f"Submitting record {session.record_id} for session {session.session_id} ({template.id})")
        try:
            stored = await self.record_store.insert(
                record_id=session.record_id,
                user_id=user_id,
                template_id=template.id,
                answers=answers,
                completed_at=completed_at,
                metadata=metadata,
            )
        except TransientRecordStoreError as e:
            logger.warning(f"Transient record store failure for session {session.session_id}: {e}")
            return SubmissionTransientFailure(reason=str(e) or "record store unavailable")
        except RecordRejectedError as e:
            logger.error(f"Record store rejected record {session.record_id}: {e}", exc_info=True)
            return SubmissionValidationFailure(
                errors={FORM_ERROR_KEY: RECORD_REJECTED_MESSAGE},
                reason="record_rejected",
            )

        logger.info(f"Reflection {stored.record_id} stored for user {user_id}")

        try:
            await self.draft_store.delete(session.session_id)
        except DraftPersistenceError as e:
            # The durable copy exists; a leftover draft is harmless.
            logger.warning(f"Could not delete draft for submitted session {session.session_id}: {e}")

        self._publish(stored)
        return SubmissionSuccess(record_id=stored.record_id)

    def _publish(self, stored: StoredRecord) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish_completed(stored)
        except Exception as e:
            logger.error(f"Failed to publish completion event for record {stored.record_id}: {e}")
