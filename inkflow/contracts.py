"""Workflow definition contracts and step results."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ExpressionError, ValidationError
from .expressions import parse_expression

logger = logging.getLogger(__name__)


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


class StepType(str, Enum):
    SEND_DOCUMENT = "send-document"
    AWAIT_SIGNATURE = "await-signature"
    APPROVAL_GATE = "approval-gate"
    CONDITIONAL_BRANCH = "conditional-branch"
    PARALLEL = "parallel"
    WAIT = "wait"


class ApprovalMode(str, Enum):
    ANY = "any"
    ALL = "all"
    MAJORITY = "majority"


class CamelModel(BaseModel):
    """Accepts the camelCase keys of stored JSON definitions."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Step configuration, one shape per step type


class SendDocumentConfig(CamelModel):
    recipient_email: str
    recipient_name: Optional[str] = None
    custom_message: Optional[str] = None
    template: Optional[str] = None


class AwaitSignatureConfig(CamelModel):
    recipient_id: str
    timeout: Optional[int] = Field(default=None, ge=0, description="Milliseconds")
    reminder_interval: Optional[int] = Field(default=None, ge=0, description="Milliseconds")


class ApprovalGateConfig(CamelModel):
    approvers: List[str] = Field(min_length=1)
    mode: ApprovalMode
    timeout: Optional[int] = Field(default=None, ge=0, description="Milliseconds")
    escalation_user_id: Optional[str] = None

    @field_validator("approvers")
    @classmethod
    def _unique_approvers(cls, value: List[str]) -> List[str]:
        duplicates = [a for a, n in Counter(value).items() if n > 1]
        if duplicates:
            raise ValueError(f"duplicate approvers: {', '.join(duplicates)}")
        return value


class ConditionalBranchConfig(CamelModel):
    condition: str
    then_step: str
    else_step: Optional[str] = None


class ParallelConfig(CamelModel):
    steps: List[str] = Field(min_length=1)
    wait_for_all: bool = True


class WaitConfig(CamelModel):
    duration: int = Field(ge=0, description="Milliseconds")
    until: Optional[str] = None


# ---------------------------------------------------------------------------
# Steps as a tagged union keyed by ``type``


class _StepBase(CamelModel):
    id: str
    name: str = ""
    on_success: Optional[str] = None
    on_failure: Optional[str] = None

    @property
    def step_type(self) -> StepType:
        return StepType(self.type)  # type: ignore[attr-defined]


class SendDocumentStep(_StepBase):
    type: Literal["send-document"]
    config: SendDocumentConfig


class AwaitSignatureStep(_StepBase):
    type: Literal["await-signature"]
    config: AwaitSignatureConfig


class ApprovalGateStep(_StepBase):
    type: Literal["approval-gate"]
    config: ApprovalGateConfig


class ConditionalBranchStep(_StepBase):
    type: Literal["conditional-branch"]
    config: ConditionalBranchConfig


class ParallelStep(_StepBase):
    type: Literal["parallel"]
    config: ParallelConfig


class WaitStep(_StepBase):
    type: Literal["wait"]
    config: WaitConfig


WorkflowStep = Annotated[
    Union[
        SendDocumentStep,
        AwaitSignatureStep,
        ApprovalGateStep,
        ConditionalBranchStep,
        ParallelStep,
        WaitStep,
    ],
    Field(discriminator="type"),
]

# Step types a parallel block may fan out to.
PARALLEL_CHILD_TYPES = {StepType.SEND_DOCUMENT}


class WorkflowDefinition(CamelModel):
    """Ordered steps plus default variables.

    List order is the default execution order; conditional branches may jump.
    """

    version: str = "1.0"
    steps: List[WorkflowStep] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("steps", mode="before")
    @classmethod
    def _normalise_step_types(cls, value: Any) -> Any:
        # stored definitions spell types with underscores (send_document)
        if not isinstance(value, list):
            return value
        normalised = []
        for step in value:
            if isinstance(step, dict) and isinstance(step.get("type"), str):
                step = {**step, "type": step["type"].replace("_", "-")}
            normalised.append(step)
        return normalised

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """Build a definition, reporting schema problems as ValidationError."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid workflow definition: {exc}") from exc

    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        index = self.index_of(step_id)
        return self.steps[index] if index != -1 else None

    def validate_structure(self) -> None:
        """Check the invariants the engine relies on.

        Raises:
            ValidationError: no steps, duplicate ids, a dangling step
                reference, an unparseable condition or a bad parallel block.
        """
        if not self.steps:
            raise ValidationError("Workflow must have at least one step")

        ids = self.step_ids()
        duplicates = sorted(i for i, n in Counter(ids).items() if n > 1)
        if duplicates:
            raise ValidationError(f"Duplicate step IDs found: {', '.join(duplicates)}")

        known = set(ids)

        def check(step_id: str, ref: Optional[str], label: str) -> None:
            if ref and ref not in known:
                raise ValidationError(
                    f"Step {step_id} references unknown {label} step: {ref}"
                )

        for step in self.steps:
            check(step.id, step.on_success, "success")
            check(step.id, step.on_failure, "failure")
            if isinstance(step, ConditionalBranchStep):
                check(step.id, step.config.then_step, "then")
                check(step.id, step.config.else_step, "else")
                try:
                    parse_expression(step.config.condition)
                except ExpressionError as exc:
                    raise ValidationError(
                        f"Step {step.id} has an invalid condition: {exc}"
                    ) from exc
            elif isinstance(step, ParallelStep):
                for child_id in step.config.steps:
                    check(step.id, child_id, "parallel")
                    child = self.get_step(child_id)
                    if child.step_type not in PARALLEL_CHILD_TYPES:
                        raise ValidationError(
                            f"Parallel step {step.id} cannot run {child.type} step {child_id}"
                        )


# ---------------------------------------------------------------------------
# Step results


class SuspensionKind(str, Enum):
    APPROVAL = "approval"
    TIMER = "timer"
    SIGNATURE = "signature"
    MANUAL = "manual"


class Suspension(BaseModel):
    """Why a paused execution is waiting and what resumes it."""

    kind: SuspensionKind
    step_id: Optional[str] = None
    approval_request_id: Optional[str] = None
    recipient_id: Optional[str] = None
    resume_at: Optional[datetime] = None
    since: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def holds_step(self) -> bool:
        """Whether the step itself stays open (``waiting``) while suspended."""
        return self.kind == SuspensionKind.SIGNATURE


class StepResult(BaseModel):
    success: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    next_step_id: Optional[str] = None
    suspension: Optional[Suspension] = None
