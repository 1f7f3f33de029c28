from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from services.reflection_engine.models import (
    SessionStatus,
    StepDefinition,
    SubmissionResult,
    SubmissionSuccess,
    SubmissionTransientFailure,
    Template,
)
from services.reflection_engine.state_machine import ReflectionSessionMachine


class TemplateSummary(BaseModel):
    id: str
    title: str
    version: int
    description: Optional[str] = None
    step_count: int

    @classmethod
    def from_template(cls, template: Template) -> "TemplateSummary":
        return cls(
            id=template.id,
            title=template.title,
            version=template.version,
            description=template.description,
            step_count=len(template.steps),
        )


class OpenSessionRequest(BaseModel):
    template_id: str
    session_id: Optional[str] = None  # resume this draft instead of the newest one


class AnswerRequest(BaseModel):
    value: Any = None


class JumpRequest(BaseModel):
    index: int


class SessionView(BaseModel):
    session_id: str
    template_id: str
    template_version: int
    status: SessionStatus
    failure_reason: Optional[str] = None
    current_step_index: int
    step_count: int
    current_step: StepDefinition
    completed_steps: List[int]
    answers: Dict[str, Any]
    errors: Dict[str, str]
    is_last_step: bool
    started_at: datetime
    last_mutated_at: datetime
    # False when the latest change is held in memory only
    draft_saved: bool = True

    @classmethod
    def from_machine(cls, machine: ReflectionSessionMachine, draft_saved: bool = True) -> "SessionView":
        s = machine.session
        return cls(
            session_id=s.session_id,
            template_id=s.template_id,
            template_version=s.template_version,
            status=s.status,
            failure_reason=s.failure_reason,
            current_step_index=s.current_step_index,
            step_count=len(machine.template.steps),
            current_step=machine.current_step,
            completed_steps=sorted(s.completed_steps),
            answers=dict(s.answers),
            errors=dict(s.errors),
            is_last_step=machine.is_last_step,
            started_at=s.started_at,
            last_mutated_at=s.last_mutated_at,
            draft_saved=draft_saved,
        )


class TransitionResponse(BaseModel):
    accepted: bool
    session: SessionView


class CompleteResponse(BaseModel):
    outcome: str  # success | validation_failure | transient_failure | ignored
    record_id: Optional[str] = None
    reason: Optional[str] = None
    errors: Dict[str, str] = {}
    session: SessionView

    @classmethod
    def from_result(cls, result: Optional[SubmissionResult], session: SessionView) -> "CompleteResponse":
        if result is None:
            return cls(outcome="ignored", session=session)
        if isinstance(result, SubmissionSuccess):
            return cls(outcome=result.outcome, record_id=result.record_id, session=session)
        if isinstance(result, SubmissionTransientFailure):
            return cls(outcome=result.outcome, reason=result.reason, session=session)
        return cls(outcome=result.outcome, reason=result.reason, errors=dict(result.errors), session=session)
