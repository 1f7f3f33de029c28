import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .draft_store import DraftStore
from .models import (
    FORM_ERROR_KEY,
    DraftPersistenceError,
    ReflectionSession,
    SessionNotFoundError,
    SessionStatus,
    StepDefinition,
    SubmissionResult,
    SubmissionSuccess,
    SubmissionTransientFailure,
    SubmissionValidationFailure,
    Template,
    UnknownFieldError,
    utc_now,
)
from .submission import IdentityProvider, SubmissionController
from .validation import validate_step

logger = logging.getLogger(__name__)


def reconcile_with_template(session: ReflectionSession, template: Template) -> ReflectionSession:
    """
    Fits a resumed draft to the current template shape: answers for fields
    the template no longer declares are dropped, indexes are clamped, and a
    draft saved mid-submission becomes retryable.
    """
    known = template.field_ids()
    stale = sorted(k for k in session.answers if k not in known)
    if stale:
        logger.info(f"Dropping answers no longer in template {template.id}: {stale}")
    answers = {k: v for k, v in session.answers.items() if k in known}

    index = min(max(session.current_step_index, 0), template.last_index)
    if index != session.current_step_index:
        logger.info(f"Clamped resumed step index {session.current_step_index} -> {index} for {session.session_id}")

    status = session.status
    failure_reason = session.failure_reason
    if status == SessionStatus.SUBMITTING:
        # Outcome unknown; the stable record id makes a retry safe.
        status, failure_reason = SessionStatus.SUBMISSION_FAILED, "interrupted"

    return session.model_copy(update={
        "answers": answers,
        "current_step_index": index,
        "completed_steps": {i for i in session.completed_steps if 0 <= i <= template.last_index},
        "errors": {k: v for k, v in session.errors.items() if k in known},
        "status": status,
        "failure_reason": failure_reason,
        "template_version": template.version,
    })


class ReflectionSessionMachine:
    """
    Drives one session through its template's steps.

    - Forward moves (`next_step`, `complete`) are gated by step validation;
      backward moves (`previous_step`) never are.
    - Every transition actually taken is written to the draft store before
      the call returns, one at a time, so drafts land in mutation order.
    - Rejected transitions leave the session untouched and return False
      (or None for `complete`).
    """

    def __init__(
        self,
        template: Template,
        session: ReflectionSession,
        draft_store: DraftStore,
        controller: SubmissionController,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.template = template
        self.session = session
        self.draft_store = draft_store
        self.controller = controller
        self.clock = clock
        self._lock = asyncio.Lock()
        self._last_result: Optional[SubmissionResult] = None
        self._pending: Optional["asyncio.Future[SubmissionResult]"] = None

    @classmethod
    async def open(
        cls,
        template: Template,
        draft_store: DraftStore,
        controller: SubmissionController,
        owner: str = "local",
        session_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "ReflectionSessionMachine":
        """
        Starts a session, resuming a saved draft when one exists: the given
        `session_id`, or else the newest draft for (owner, template).

        Raises SessionNotFoundError when `session_id` names a draft that
        belongs to another owner or template.
        """
        sid = session_id or await draft_store.find_resumable(owner, template.id)
        saved = await draft_store.load(sid) if sid else None

        if saved is not None and (saved.owner != owner or saved.template_id != template.id):
            if session_id:
                logger.warning(
                    f"Refused to open draft {sid} for owner {owner} and template {template.id}; "
                    f"it belongs to {saved.owner} / {saved.template_id}"
                )
                raise SessionNotFoundError(session_id)
            logger.warning(f"Resume pointer for {owner}/{template.id} names draft {sid} of {saved.owner}/{saved.template_id}; starting fresh")
            saved = None

        if saved is not None:
            session = reconcile_with_template(saved, template)
            logger.info(f"Resumed session {session.session_id} at step {session.current_step_index}")
        else:
            now = clock()
            kwargs = {"session_id": session_id} if session_id else {}
            session = ReflectionSession(
                template_id=template.id,
                template_version=template.version,
                owner=owner,
                started_at=now,
                last_mutated_at=now,
                **kwargs,
            )
            logger.info(f"Started session {session.session_id} for template {template.id}")

        return cls(template, session, draft_store, controller, clock=clock)

    # --- Read helpers ---

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def current_step(self) -> StepDefinition:
        return self.template.steps[self.session.current_step_index]

    @property
    def is_last_step(self) -> bool:
        return self.session.current_step_index == self.template.last_index

    @property
    def is_busy(self) -> bool:
        """True while a submission is in flight or a transition holds the lock."""
        return self._pending is not None or self._lock.locked()

    def can_jump_to(self, index: int) -> bool:
        return (
            self.session.status == SessionStatus.DRAFT
            and 0 <= index <= self.template.last_index
            and all(i in self.session.completed_steps for i in range(index))
        )

    # --- Transitions ---

    async def edit_field(self, field_id: str, value: Any) -> bool:
        if self.template.find_field(field_id) is None:
            raise UnknownFieldError(field_id)

        async with self._lock:
            if self.session.status != SessionStatus.DRAFT:
                logger.debug(f"edit_field({field_id}) ignored in status {self.session.status.value}")
                return False
            self.session.answers[field_id] = value
            self.session.errors.pop(field_id, None)
            # A form-level error (sign-in, rejected record) is stale once the answers change.
            self.session.errors.pop(FORM_ERROR_KEY, None)
            self._touch()
            await self._persist()
            return True

    async def next_step(self) -> bool:
        async with self._lock:
            s = self.session
            if s.status != SessionStatus.DRAFT or s.current_step_index >= self.template.last_index:
                logger.debug(f"next_step ignored at step {s.current_step_index} in status {s.status.value}")
                return False

            errors = validate_step(self.current_step, s.answers)
            if errors:
                s.errors = errors
                await self._persist()
                return False

            s.completed_steps.add(s.current_step_index)
            s.current_step_index += 1
            s.errors = {}
            self._touch()
            await self._persist()
            return True

    async def previous_step(self) -> bool:
        async with self._lock:
            s = self.session
            if s.status != SessionStatus.DRAFT or s.current_step_index <= 0:
                logger.debug(f"previous_step ignored at step {s.current_step_index} in status {s.status.value}")
                return False
            s.current_step_index -= 1
            s.errors = {}
            self._touch()
            await self._persist()
            return True

    async def jump_to(self, index: int) -> bool:
        async with self._lock:
            if not self.can_jump_to(index):
                logger.debug(f"jump_to({index}) ignored; completed steps {sorted(self.session.completed_steps)}")
                return False
            self.session.current_step_index = index
            self.session.errors = {}
            self._touch()
            await self._persist()
            return True

    async def complete(self, identity: Optional[IdentityProvider] = None) -> Optional[SubmissionResult]:
        """
        Validates the last step and hands the session to the submission
        controller. Calls made while that submission is in flight resolve to
        its result; after success the stored result is returned again.
        `identity` is passed through to the controller for this attempt.
        """
        async with self._lock:
            s = self.session
            if s.status == SessionStatus.SUBMITTED:
                return self._last_result

            if self._pending is not None:
                pending = self._pending
            elif s.status == SessionStatus.SUBMISSION_FAILED or (
                s.status == SessionStatus.DRAFT and self.is_last_step
            ):
                errors = validate_step(self.template.steps[self.template.last_index], s.answers)
                if errors:
                    s.status = SessionStatus.DRAFT
                    s.current_step_index = self.template.last_index
                    s.errors = errors
                    await self._persist(strict=False)
                    return SubmissionValidationFailure(errors=errors)

                s.completed_steps.add(self.template.last_index)
                s.status = SessionStatus.SUBMITTING
                s.failure_reason = None
                s.errors = {}
                self._touch()
                await self._persist(strict=False)
                pending = self._pending = asyncio.ensure_future(self._submit(s.model_copy(deep=True), identity))
            else:
                logger.debug(f"complete ignored at step {s.current_step_index} in status {s.status.value}")
                return None

        return await asyncio.shield(pending)

    async def _submit(
        self,
        snapshot: ReflectionSession,
        identity: Optional[IdentityProvider],
    ) -> SubmissionResult:
        try:
            result = await self.controller.submit(snapshot, identity=identity)
        except Exception:
            async with self._lock:
                self.session.status = SessionStatus.SUBMISSION_FAILED
                self.session.failure_reason = "error"
            raise
        else:
            async with self._lock:
                await self._apply_result(result)
            return result
        finally:
            self._pending = None

    async def _apply_result(self, result: SubmissionResult) -> None:
        s = self.session
        self._last_result = result
        if isinstance(result, SubmissionSuccess):
            # The controller has already removed the draft.
            s.status = SessionStatus.SUBMITTED
            s.errors = {}
            self._touch()
            return

        if isinstance(result, SubmissionTransientFailure):
            # Draft is kept so the work survives a failed submit.
            s.status = SessionStatus.SUBMISSION_FAILED
            s.failure_reason = result.reason
        else:
            s.status = SessionStatus.DRAFT
            s.current_step_index = self.template.last_index
            s.errors = dict(result.errors)
        self._touch()
        await self._persist(strict=False)

    # --- Persistence ---

    def _touch(self) -> None:
        self.session.last_mutated_at = self.clock()

    async def _persist(self, strict: bool = True) -> None:
        try:
            await self.draft_store.save(self.session.session_id, self.session)
        except DraftPersistenceError as e:
            logger.warning(f"Draft save failed for session {self.session.session_id}; in-memory state kept: {e}")
            if strict:
                raise
