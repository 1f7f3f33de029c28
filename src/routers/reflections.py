import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from services.reflection_engine.hub import SessionHub
from services.reflection_engine.models import (
    DraftPersistenceError,
    SessionNotFoundError,
    Template,
    TemplateNotFoundError,
    UnknownFieldError,
    utc_now,
)
from services.reflection_engine.registry import TemplateRegistry
from services.reflection_engine.state_machine import ReflectionSessionMachine
from services.reflection_engine.submission import IdentityProvider
from services.reflection_engine.summary import project_summary
from src.auth.identity import JWTIdentity
from src.core.config import get_settings
from src.schemas.reflection import (
    AnswerRequest,
    CompleteResponse,
    JumpRequest,
    OpenSessionRequest,
    SessionView,
    TemplateSummary,
    TransitionResponse,
)

_log = logging.getLogger(__name__)
router = APIRouter(prefix="/reflections", tags=["Reflections"])

ANONYMOUS_OWNER = "local"


# --- Dependencies ---

def get_hub(request: Request) -> SessionHub:
    return request.app.state.hub


def get_registry(hub: SessionHub = Depends(get_hub)) -> TemplateRegistry:
    return hub.registry


def get_identity(authorization: Optional[str] = Header(default=None)) -> IdentityProvider:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    settings = get_settings()
    return JWTIdentity(token, settings.jwt_secret, settings.jwt_algorithm)


async def get_owner(identity: IdentityProvider = Depends(get_identity)) -> str:
    return await identity.current_user_id() or ANONYMOUS_OWNER


async def get_machine(
    session_id: str,
    hub: SessionHub = Depends(get_hub),
    owner: str = Depends(get_owner),
) -> ReflectionSessionMachine:
    machine = await hub.get(session_id)
    # Someone else's session is reported exactly like a missing one.
    if machine is None or machine.session.owner != owner:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session '{session_id}' not found.")
    return machine


# --- Templates ---

@router.get("/templates", response_model=List[TemplateSummary])
async def list_templates(registry: TemplateRegistry = Depends(get_registry)):
    return [TemplateSummary.from_template(t) for t in registry.list_templates()]


@router.get("/templates/{template_id}", response_model=Template)
async def get_template(template_id: str, registry: TemplateRegistry = Depends(get_registry)):
    try:
        return registry.get_template(template_id)
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# --- Sessions ---

@router.post("/sessions", response_model=SessionView)
async def open_session(
    body: OpenSessionRequest,
    hub: SessionHub = Depends(get_hub),
    owner: str = Depends(get_owner),
):
    """
    Resumes the caller's newest draft for the template, or starts a new
    session. A `session_id` must name one of the caller's own sessions of
    that template.
    """
    try:
        machine = await hub.open(body.template_id, owner=owner, session_id=body.session_id)
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session '{body.session_id}' not found.")
    except DraftPersistenceError as e:
        _log.error(f"Draft store unavailable while opening {body.template_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Draft storage unavailable.")
    return SessionView.from_machine(machine)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(machine: ReflectionSessionMachine = Depends(get_machine)):
    return SessionView.from_machine(machine)


@router.put("/sessions/{session_id}/answers/{field_id}", response_model=TransitionResponse)
async def edit_answer(
    field_id: str,
    body: AnswerRequest,
    machine: ReflectionSessionMachine = Depends(get_machine),
):
    try:
        accepted = await machine.edit_field(field_id, body.value)
    except UnknownFieldError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Field '{field_id}' is not part of template '{machine.template.id}'.",
        )
    except DraftPersistenceError:
        # The edit is applied in memory; only the save failed.
        return TransitionResponse(accepted=True, session=SessionView.from_machine(machine, draft_saved=False))
    return TransitionResponse(accepted=accepted, session=SessionView.from_machine(machine))


async def _move(machine: ReflectionSessionMachine, transition) -> TransitionResponse:
    before = machine.session.current_step_index
    try:
        accepted = await transition
    except DraftPersistenceError:
        moved = machine.session.current_step_index != before
        return TransitionResponse(accepted=moved, session=SessionView.from_machine(machine, draft_saved=False))
    return TransitionResponse(accepted=accepted, session=SessionView.from_machine(machine))


@router.post("/sessions/{session_id}/next", response_model=TransitionResponse)
async def next_step(machine: ReflectionSessionMachine = Depends(get_machine)):
    return await _move(machine, machine.next_step())


@router.post("/sessions/{session_id}/previous", response_model=TransitionResponse)
async def previous_step(machine: ReflectionSessionMachine = Depends(get_machine)):
    return await _move(machine, machine.previous_step())


@router.post("/sessions/{session_id}/jump", response_model=TransitionResponse)
async def jump_to(body: JumpRequest, machine: ReflectionSessionMachine = Depends(get_machine)):
    return await _move(machine, machine.jump_to(body.index))


@router.post("/sessions/{session_id}/complete", response_model=CompleteResponse)
async def complete(
    machine: ReflectionSessionMachine = Depends(get_machine),
    identity: IdentityProvider = Depends(get_identity),
):
    result = await machine.complete(identity=identity)
    _log.info(f"complete on session {machine.session.session_id}: {result.outcome if result else 'ignored'}")
    return CompleteResponse.from_result(result, SessionView.from_machine(machine))


@router.get("/sessions/{session_id}/summary", response_class=PlainTextResponse)
async def summary(
    include_timestamp: bool = False,
    machine: ReflectionSessionMachine = Depends(get_machine),
):
    text = project_summary(
        machine.template,
        machine.session.answers,
        generated_at=utc_now() if include_timestamp else None,
    )
    return PlainTextResponse(text)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_session(
    machine: ReflectionSessionMachine = Depends(get_machine),
    hub: SessionHub = Depends(get_hub),
):
    try:
        await hub.discard(machine.session.session_id)
    except DraftPersistenceError as e:
        _log.error(f"Could not delete draft {machine.session.session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Draft storage unavailable.")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
