import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field

# Key under which form-level (not field-level) errors are reported.
FORM_ERROR_KEY = "__form__"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Template definitions ---

class FieldKind(str, Enum):
    FREE_TEXT = "free_text"
    NUMERIC_SCALE = "numeric_scale"
    SINGLE_CHOICE = "single_choice"
    MULTI_SELECT = "multi_select"


class ChoiceOption(BaseModel):
    value: str
    label: str


class FieldCondition(BaseModel):
    """A field applies only while the answer to `field` equals `value` (or, for lists, contains it)."""
    field: str
    value: Any

    model_config = {"frozen": True}

    def holds(self, answers: Dict[str, Any]) -> bool:
        answer = answers.get(self.field)
        if isinstance(answer, (list, tuple)):
            return self.value in answer
        return answer == self.value


class FieldDefinition(BaseModel):
    id: str
    label: str
    kind: FieldKind = FieldKind.FREE_TEXT
    required: bool = False
    min_length: Optional[int] = Field(default=None, ge=1)
    max_length: Optional[int] = Field(default=None, ge=1)
    min_items: Optional[int] = Field(default=None, ge=1)
    scale_min: Optional[float] = None
    scale_max: Optional[float] = None
    options: List[ChoiceOption] = Field(default_factory=list)
    message: Optional[str] = None  # custom "required" message
    help: Optional[str] = None
    include_in_summary: bool = True
    shared: bool = False  # same id may appear on several steps
    depends_on: Optional[FieldCondition] = None

    model_config = {"frozen": True}

    def option_label(self, value: str) -> str:
        for option in self.options:
            if option.value == value:
                return option.label
        return value


class StepDefinition(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    fields: List[FieldDefinition]

    model_config = {"frozen": True}


class Template(BaseModel):
    """
    Static definition of a reflection type: its ordered steps and their fields.
    Answers for every step live in one flat map keyed by field id.
    """
    id: str
    title: str
    version: int = 1
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(..., min_length=1)

    model_config = {"frozen": True}

    @property
    def last_index(self) -> int:
        return len(self.steps) - 1

    def field_ids(self) -> Set[str]:
        return {f.id for step in self.steps for f in step.fields}

    def find_field(self, field_id: str) -> Optional[FieldDefinition]:
        for step in self.steps:
            for f in step.fields:
                if f.id == field_id:
                    return f
        return None


# --- Session state ---

class SessionStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    SUBMISSION_FAILED = "submission_failed"


class ReflectionSession(BaseModel):
    """One user's in-progress or completed attempt at a template."""
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    template_version: int = 1
    owner: str = "local"
    # Generated once so that a retried insert carries the same id.
    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    answers: Dict[str, Any] = Field(default_factory=dict)
    current_step_index: int = 0
    completed_steps: Set[int] = Field(default_factory=set)
    errors: Dict[str, str] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.DRAFT
    failure_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    last_mutated_at: datetime = Field(default_factory=utc_now)


# --- Submission results ---

class SubmissionSuccess(BaseModel):
    outcome: Literal["success"] = "success"
    record_id: str

    model_config = {"frozen": True}


class SubmissionValidationFailure(BaseModel):
    outcome: Literal["validation_failure"] = "validation_failure"
    errors: Dict[str, str]
    reason: str = "invalid_answers"  # invalid_answers | not_authenticated | record_rejected

    model_config = {"frozen": True}


class SubmissionTransientFailure(BaseModel):
    outcome: Literal["transient_failure"] = "transient_failure"
    reason: str

    model_config = {"frozen": True}


SubmissionResult = Union[SubmissionSuccess, SubmissionValidationFailure, SubmissionTransientFailure]


class StoredRecord(BaseModel):
    record_id: str
    user_id: str
    template_id: str
    completed_at: datetime


# Custom Error Classes
class TemplateNotFoundError(LookupError):
    """Raised when a template id is not in the registry."""
    pass

class TemplateDefinitionError(ValueError):
    """Raised for malformed template definitions (e.g. duplicate field ids)."""
    pass

class UnknownFieldError(KeyError):
    """Raised when editing a field id the template does not declare."""
    pass

class DraftPersistenceError(RuntimeError):
    """Raised when the draft backend could not save, load or delete a draft."""
    pass

class RecordRejectedError(Exception):
    """The record store refused the write; retrying unchanged will not help."""
    pass

class TransientRecordStoreError(Exception):
    """The record store could not be reached (timeout, connectivity); retryable."""
    pass

class SessionNotFoundError(LookupError):
    """Raised when a session id names no session the caller may open for that template."""
    pass
