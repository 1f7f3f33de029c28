import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .draft_store import DraftStore
from .models import SessionNotFoundError, SessionStatus, utc_now
from .registry import TemplateRegistry
from .state_machine import ReflectionSessionMachine
from .submission import SubmissionController

logger = logging.getLogger(__name__)


class SessionHub:
    """
    Keeps live session machines for a process, keyed by session id, so that
    concurrent callers on one session share its lock and pending submission.
    Machines not in memory are rebuilt from their saved draft.

    Submitted machines move to a small LRU so a repeated `complete` still sees
    its result; idle draft machines are dropped after `idle_timeout` (their
    draft is still in the store).
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        draft_store: DraftStore,
        controller: SubmissionController,
        clock: Callable[[], datetime] = utc_now,
        idle_timeout: timedelta = timedelta(hours=1),
        max_finished: int = 1024,
    ):
        self.registry = registry
        self.draft_store = draft_store
        self.controller = controller
        self.clock = clock
        self.idle_timeout = idle_timeout
        self.max_finished = max_finished
        self._machines: Dict[str, ReflectionSessionMachine] = {}
        self._finished: "OrderedDict[str, ReflectionSessionMachine]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def open(
        self,
        template_id: str,
        owner: str = "local",
        session_id: Optional[str] = None,
    ) -> ReflectionSessionMachine:
        """
        Resumes the owner's newest draft for the template, or starts a new
        session. With `session_id`, resumes exactly that session; an id that
        is unknown, or that belongs to another owner or template, raises
        SessionNotFoundError.
        """
        template = self.registry.get_template(template_id)
        async with self._lock:
            self._prune()
            if session_id:
                machine = await self._lookup(session_id)
                if machine is None or machine.session.owner != owner or machine.template.id != template.id:
                    logger.warning(f"Refused open of session {session_id} by {owner} for template {template.id}")
                    raise SessionNotFoundError(session_id)
                return machine

            sid = await self.draft_store.find_resumable(owner, template.id)
            machine = self._machines.get(sid) if sid else None
            if machine is not None and machine.session.owner == owner and machine.template.id == template.id:
                return machine

            machine = await ReflectionSessionMachine.open(
                template,
                self.draft_store,
                self.controller,
                owner=owner,
                clock=self.clock,
            )
            self._machines[machine.session.session_id] = machine
            return machine

    async def get(self, session_id: str) -> Optional[ReflectionSessionMachine]:
        """The live machine for `session_id`, or one rebuilt from its draft; None if neither exists."""
        async with self._lock:
            self._prune()
            return await self._lookup(session_id)

    async def discard(self, session_id: str) -> None:
        """Abandons a session: forgets the machine and deletes its draft."""
        async with self._lock:
            self._machines.pop(session_id, None)
            self._finished.pop(session_id, None)
            await self.draft_store.delete(session_id)
            logger.info(f"Discarded session {session_id}")

    def __len__(self) -> int:
        return len(self._machines) + len(self._finished)

    async def _lookup(self, session_id: str) -> Optional[ReflectionSessionMachine]:
        machine = self._machines.get(session_id)
        if machine is not None:
            return machine
        machine = self._finished.get(session_id)
        if machine is not None:
            self._finished.move_to_end(session_id)
            return machine

        saved = await self.draft_store.load(session_id)
        if saved is None or saved.template_id not in self.registry:
            return None
        machine = await ReflectionSessionMachine.open(
            self.registry.get_template(saved.template_id),
            self.draft_store,
            self.controller,
            owner=saved.owner,
            session_id=session_id,
            clock=self.clock,
        )
        self._machines[session_id] = machine
        return machine

    def _prune(self) -> None:
        now = self.clock()
        for sid, machine in list(self._machines.items()):
            if machine.is_busy:
                continue
            if machine.status == SessionStatus.SUBMITTED:
                del self._machines[sid]
                self._finished[sid] = machine
            elif now - machine.session.last_mutated_at > self.idle_timeout:
                del self._machines[sid]
                logger.debug(f"Dropped idle session {sid} from memory")

        while len(self._finished) > self.max_finished:
            sid, _ = self._finished.popitem(last=False)
            logger.debug(f"Forgot finished session {sid}")
