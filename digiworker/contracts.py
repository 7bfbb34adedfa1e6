"""Core data contracts shared by the engine and its collaborators."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base model accepting both snake_case names and camelCase wire aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        """Serialize with camelCase keys."""
        return self.model_dump_json(by_alias=True)


# ----------------------------------------------------------------------
# Workflow definitions


class StepType(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    DECISION = "decision"
    END = "end"


class AssigneeType(str, Enum):
    AI = "ai"
    HUMAN = "human"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class StepAssignment(WireModel):
    type: AssigneeType = AssigneeType.AI
    agent_name: Optional[str] = None
    human_id: Optional[str] = None
    human_name: Optional[str] = None


class Blueprint(WireModel):
    """Allow/deny lists constraining what a step's agent may do."""

    green_list: List[str] = Field(default_factory=list)
    red_list: List[str] = Field(default_factory=list)
    outstanding_questions: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.green_list and not self.red_list


class Integrations(WireModel):
    gmail: bool = False


class StepRequirements(WireModel):
    is_complete: bool = False
    requirements_text: Optional[str] = None
    blueprint: Optional[Blueprint] = None
    integrations: Integrations = Field(default_factory=Integrations)
    custom_requirements: List[str] = Field(default_factory=list)
    excel_data: Optional[str] = None


class Step(WireModel):
    id: str
    label: str
    type: StepType = StepType.ACTION
    order: int
    assigned_to: Optional[StepAssignment] = None
    requirements: Optional[StepRequirements] = None

    @property
    def is_human(self) -> bool:
        return self.assigned_to is not None and self.assigned_to.type == AssigneeType.HUMAN

    @property
    def blueprint(self) -> Blueprint:
        if self.requirements and self.requirements.blueprint:
            return self.requirements.blueprint
        return Blueprint()

    @property
    def integrations(self) -> Integrations:
        if self.requirements:
            return self.requirements.integrations
        return Integrations()


class WorkflowAssignment(WireModel):
    stakeholder_name: str
    stakeholder_type: AssigneeType = AssigneeType.AI


class Workflow(WireModel):
    """A workflow definition as stored in the repository.

    Steps are kept sorted by ``order``; duplicate ids, duplicate orders and
    more than one trigger or end step are rejected.
    """

    id: str
    name: str
    description: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    assigned_to: Optional[WorkflowAssignment] = None

    @field_validator("steps")
    @classmethod
    def _order_steps(cls, steps: List[Step]) -> List[Step]:
        ids = [step.id for step in steps]
        if len(set(ids)) != len(ids):
            raise ValueError("step ids must be unique")
        orders = [step.order for step in steps]
        if len(set(orders)) != len(orders):
            raise ValueError("step order values must be unique")
        for sentinel in (StepType.TRIGGER, StepType.END):
            if sum(1 for step in steps if step.type == sentinel) > 1:
                raise ValueError(f"a workflow may contain at most one {sentinel.value} step")
        return sorted(steps, key=lambda step: step.order)


# ----------------------------------------------------------------------
# Agent actions (closed union, validated at the decision boundary)


class ActionType(str, Enum):
    COMPLETE = "complete"
    SEND_EMAIL = "send_email"
    READ_EMAIL = "read_email"
    MODIFY_EMAIL = "modify_email"
    GUIDANCE_REQUESTED = "guidance_requested"
    REQUEST_FILE_UPLOAD = "request_file_upload"
    GENERATE_IMAGE = "generate_image"
    SHOW_IMAGE_PREVIEW = "show_image_preview"


FileType = Literal["excel", "image", "document", "any"]


class _Action(WireModel):
    @field_validator("parameters", mode="before", check_fields=False)
    @classmethod
    def _none_parameters(cls, value: Any) -> Any:
        return {} if value is None else value


class NoParameters(WireModel):
    pass


class SendEmailParameters(WireModel):
    to: str
    subject: str
    body: str


class ReadEmailParameters(WireModel):
    count: Optional[int] = None


class ModifyEmailParameters(WireModel):
    email_id: str
    label: str


class GuidanceParameters(WireModel):
    guidance_question: Optional[str] = None


class FileUploadParameters(WireModel):
    file_type: FileType = "any"
    file_description: Optional[str] = None


class GenerateImageParameters(WireModel):
    image_prompt: str


class ImagePreviewParameters(WireModel):
    image_url: Optional[str] = None
    image_caption: Optional[str] = None


class CompleteAction(_Action):
    type: Literal["complete"] = "complete"
    parameters: NoParameters = Field(default_factory=NoParameters)


class SendEmailAction(_Action):
    type: Literal["send_email"] = "send_email"
    parameters: SendEmailParameters


class ReadEmailAction(_Action):
    type: Literal["read_email"] = "read_email"
    parameters: ReadEmailParameters = Field(default_factory=ReadEmailParameters)


class ModifyEmailAction(_Action):
    type: Literal["modify_email"] = "modify_email"
    parameters: ModifyEmailParameters


class GuidanceRequestedAction(_Action):
    type: Literal["guidance_requested"] = "guidance_requested"
    parameters: GuidanceParameters = Field(default_factory=GuidanceParameters)


class RequestFileUploadAction(_Action):
    type: Literal["request_file_upload"] = "request_file_upload"
    parameters: FileUploadParameters = Field(default_factory=FileUploadParameters)


class GenerateImageAction(_Action):
    type: Literal["generate_image"] = "generate_image"
    parameters: GenerateImageParameters


class ShowImagePreviewAction(_Action):
    type: Literal["show_image_preview"] = "show_image_preview"
    parameters: ImagePreviewParameters = Field(default_factory=ImagePreviewParameters)


AgentAction = Annotated[
    Union[
        CompleteAction,
        SendEmailAction,
        ReadEmailAction,
        ModifyEmailAction,
        GuidanceRequestedAction,
        RequestFileUploadAction,
        GenerateImageAction,
        ShowImagePreviewAction,
    ],
    Field(discriminator="type"),
]

AGENT_ACTION_ADAPTER: TypeAdapter[AgentAction] = TypeAdapter(AgentAction)


class DecisionResult(WireModel):
    """Normalized answer of the action decision service for one step."""

    actions: List[AgentAction] = Field(default_factory=list)
    message: Optional[str] = None
    needs_guidance: bool = False
    guidance_question: Optional[str] = None
    requested_file_type: Optional[FileType] = None
    file_description: Optional[str] = None
    preview_image_url: Optional[str] = None
    preview_image_caption: Optional[str] = None

    @field_validator("needs_guidance", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value


# ----------------------------------------------------------------------
# Review items and guidance


class ChatMessage(WireModel):
    sender: Literal["user", "agent", "system"]
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    excel_data: Optional[str] = None
    uploaded_file_name: Optional[str] = None
    image_url: Optional[str] = None


class ReviewActionType(str, Enum):
    APPROVAL_REQUIRED = "approval_required"
    GUIDANCE_REQUESTED = "guidance_requested"
    FILE_UPLOAD_REQUESTED = "file_upload_requested"
    IMAGE_PREVIEW = "image_preview"
    ERROR = "error"


class ReviewAction(WireModel):
    type: ReviewActionType
    payload: Dict[str, Any] = Field(default_factory=dict)


class ReviewItem(WireModel):
    """Pending operator decision created whenever a run pauses."""

    id: str = Field(default_factory=lambda: f"review-{uuid.uuid4().hex}")
    workflow_id: str
    step_id: str
    digital_worker_name: str
    action: ReviewAction
    timestamp: datetime = Field(default_factory=utcnow)
    needs_guidance: bool = False
    chat_history: List[ChatMessage] = Field(default_factory=list)
    requested_file_type: Optional[FileType] = None
    preview_image_url: Optional[str] = None
    preview_image_caption: Optional[str] = None

    @property
    def retries_same_step(self) -> bool:
        """Every review except a plain approval checkpoint re-runs its step."""
        return self.action.type != ReviewActionType.APPROVAL_REQUIRED


# ----------------------------------------------------------------------
# Control Room updates


class ControlRoomUpdateType(str, Enum):
    WORKFLOW_UPDATE = "workflow_update"
    REVIEW_NEEDED = "review_needed"
    COMPLETED = "completed"


class ControlRoomUpdate(WireModel):
    type: ControlRoomUpdateType
    workflow_id: str
    step_id: Optional[str] = None
    digital_worker_name: Optional[str] = None
    message: str
    action: Optional[ReviewAction] = None
    review_item: Optional[ReviewItem] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_json(cls, data: str | bytes) -> "ControlRoomUpdate":
        return cls.model_validate_json(data)
