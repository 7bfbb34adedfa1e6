"""Execution of decided agent actions for a single step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from .constants import DEFAULT_EMAIL_READ_COUNT, GENERATED_IMAGE_PLACEHOLDER
from .contracts import (
    AgentAction,
    ChatMessage,
    CompleteAction,
    DecisionResult,
    FileType,
    GenerateImageAction,
    GuidanceRequestedAction,
    ModifyEmailAction,
    ReadEmailAction,
    RequestFileUploadAction,
    ReviewActionType,
    SendEmailAction,
    ShowImagePreviewAction,
    Step,
)
from .decision import ActionDecisionClient
from .errors import IntegrationUnavailable, StepError, UnknownActionType
from .integrations import ContentGenerationService, EmailIntegration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completed:
    """The step finished without needing the operator."""

    actions: tuple[AgentAction, ...] = ()
    message: str = ""
    generated_images: tuple[str, ...] = ()
    read_emails: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class PausedForReview:
    """The step needs operator input before it can be retried."""

    kind: ReviewActionType
    question: str
    message: Optional[str] = None
    actions: tuple[AgentAction, ...] = ()
    requested_file_type: Optional[FileType] = None
    file_description: Optional[str] = None
    preview_image_url: Optional[str] = None
    preview_image_caption: Optional[str] = None
    generated_images: tuple[str, ...] = ()


@dataclass(frozen=True)
class Failed:
    error: Exception

    @property
    def error_type(self) -> str:
        return type(self.error).__name__


StepOutcome = Union[Completed, PausedForReview, Failed]


@dataclass
class _Attempt:
    """Mutable scratchpad for one pass over a decision's actions."""

    executed: List[AgentAction] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    emails: List[dict[str, Any]] = field(default_factory=list)


class CapabilityExecutor:
    """Decide a step through the decision client, then act on the decision.

    Actions run in order. The first action that pauses or fails stops the
    remaining ones; integration checks happen here, independent of what the
    decision service believes is available.
    """

    def __init__(
        self,
        decisions: ActionDecisionClient,
        email: Optional[EmailIntegration] = None,
        content_generator: Optional[ContentGenerationService] = None,
        email_read_count: int = DEFAULT_EMAIL_READ_COUNT,
    ) -> None:
        self._decisions = decisions
        self._email = email
        self._content_generator = content_generator
        self._email_read_count = email_read_count

    async def execute_step(
        self, step: Step, guidance_history: Sequence[ChatMessage]
    ) -> StepOutcome:
        try:
            decision = await self._decisions.decide(step, guidance_history)
            return await self._run_decision(step, decision, guidance_history)
        except StepError as e:
            return Failed(e)

    async def _run_decision(
        self,
        step: Step,
        decision: DecisionResult,
        guidance_history: Sequence[ChatMessage],
    ) -> StepOutcome:
        attempt = _Attempt()
        for action in decision.actions:
            pause = await self._perform(step, action, decision, attempt, guidance_history)
            if pause is not None:
                return pause
            attempt.executed.append(action)

        executed = tuple(attempt.executed)
        images = tuple(attempt.images)
        if decision.requested_file_type or decision.file_description:
            return PausedForReview(
                kind=ReviewActionType.FILE_UPLOAD_REQUESTED,
                question=decision.file_description or "Please upload the requested file",
                message=decision.message,
                actions=executed,
                requested_file_type=decision.requested_file_type or "any",
                file_description=decision.file_description,
                generated_images=images,
            )
        if decision.preview_image_url or decision.preview_image_caption:
            return PausedForReview(
                kind=ReviewActionType.IMAGE_PREVIEW,
                question=decision.preview_image_caption or "Please review this image",
                message=decision.message,
                actions=executed,
                preview_image_url=self._resolve_image(decision.preview_image_url, images),
                preview_image_caption=decision.preview_image_caption,
                generated_images=images,
            )
        if decision.needs_guidance:
            return PausedForReview(
                kind=ReviewActionType.GUIDANCE_REQUESTED,
                question=decision.guidance_question or "Agent needs guidance",
                message=decision.message,
                actions=executed,
                generated_images=images,
            )
        return Completed(
            actions=executed,
            message=decision.message or f"Completed step: {step.label}",
            generated_images=images,
            read_emails=tuple(attempt.emails),
        )

    async def _perform(
        self,
        step: Step,
        action: AgentAction,
        decision: DecisionResult,
        attempt: _Attempt,
        guidance_history: Sequence[ChatMessage],
    ) -> Optional[PausedForReview]:
        if isinstance(action, CompleteAction):
            logger.debug(f"Step {step.id} marked as complete")
        elif isinstance(action, SendEmailAction):
            email = await self._require_email(step, action.type)
            params = action.parameters
            await email.send(params.to, params.subject, params.body)
        elif isinstance(action, ReadEmailAction):
            email = await self._require_email(step, action.type)
            count = action.parameters.count or self._email_read_count
            attempt.emails.extend(await email.read_recent(count))
        elif isinstance(action, ModifyEmailAction):
            email = await self._require_email(step, action.type)
            await email.modify_labels(action.parameters.email_id, action.parameters.label)
        elif isinstance(action, GenerateImageAction):
            await self._generate_image(step, action, attempt, guidance_history)
        elif isinstance(action, GuidanceRequestedAction):
            return PausedForReview(
                kind=ReviewActionType.GUIDANCE_REQUESTED,
                question=action.parameters.guidance_question
                or decision.guidance_question
                or "Agent needs guidance",
                message=decision.message,
                actions=tuple(attempt.executed),
                generated_images=tuple(attempt.images),
            )
        elif isinstance(action, RequestFileUploadAction):
            params = action.parameters
            logger.info(
                f"Step {step.id} requests file upload: {params.file_type} - {params.file_description}"
            )
            return PausedForReview(
                kind=ReviewActionType.FILE_UPLOAD_REQUESTED,
                question=params.file_description or "Please upload the requested file",
                message=decision.message,
                actions=tuple(attempt.executed),
                requested_file_type=params.file_type,
                file_description=params.file_description,
                generated_images=tuple(attempt.images),
            )
        elif isinstance(action, ShowImagePreviewAction):
            params = action.parameters
            return PausedForReview(
                kind=ReviewActionType.IMAGE_PREVIEW,
                question=params.image_caption or "Please review this image",
                message=decision.message,
                actions=tuple(attempt.executed),
                preview_image_url=self._resolve_image(params.image_url, attempt.images),
                preview_image_caption=params.image_caption,
                generated_images=tuple(attempt.images),
            )
        else:
            raise UnknownActionType(getattr(action, "type", None))
        return None

    async def _require_email(self, step: Step, action_type: str) -> EmailIntegration:
        if (
            not step.integrations.gmail
            or self._email is None
            or not await self._email.is_connected()
        ):
            raise IntegrationUnavailable("Gmail", action_type)
        return self._email

    async def _generate_image(
        self,
        step: Step,
        action: GenerateImageAction,
        attempt: _Attempt,
        guidance_history: Sequence[ChatMessage],
    ) -> None:
        if self._content_generator is None:
            logger.warning(
                f"No content generation service configured; skipping image for step {step.id}"
            )
            return
        try:
            asset = await self._content_generator.generate(
                action.parameters.image_prompt,
                self._excel_context(step, guidance_history),
            )
        except Exception as e:
            logger.warning(f"Image generation failed for step {step.id}: {e}")
            return
        attempt.images.append(asset)

    @staticmethod
    def _excel_context(
        step: Step, guidance_history: Sequence[ChatMessage]
    ) -> Optional[str]:
        for msg in reversed(guidance_history):
            if msg.excel_data:
                return msg.excel_data
        return step.requirements.excel_data if step.requirements else None

    @staticmethod
    def _resolve_image(url: Optional[str], images: Sequence[str]) -> Optional[str]:
        if url and url != GENERATED_IMAGE_PLACEHOLDER:
            return url
        return images[-1] if images else None
