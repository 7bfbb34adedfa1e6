"""Action decision service boundary and its pydantic-ai implementation."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

from pydantic_ai import Agent
from pydantic_ai.models import Model

from ..contracts import Blueprint, ChatMessage, DecisionResult, Integrations, Step
from .prompts import DECISION_SYSTEM_PROMPT, build_decision_prompt

logger = logging.getLogger(__name__)

RawDecision = Union[DecisionResult, Mapping[str, Any], str]


class DecisionService(Protocol):
    """External service deciding what a step should do."""

    async def decide(
        self,
        step: Step,
        blueprint: Blueprint,
        guidance_history: Sequence[ChatMessage],
        integrations: Integrations,
    ) -> RawDecision:
        """Return the raw decision; the client normalizes and validates it."""


class PydanticAIDecisionService(DecisionService):
    """Ask an LLM through a pydantic-ai ``Agent`` and return its raw text.

    The agent is created lazily so that constructing the service does not
    require provider credentials.
    """

    def __init__(self, model: Union[str, Model]) -> None:
        self._model = model
        self._agent: Optional[Agent] = None

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            self._agent = Agent(
                self._model,
                output_type=str,
                system_prompt=DECISION_SYSTEM_PROMPT,
                name="action_decision_agent",
            )
        return self._agent

    async def decide(
        self,
        step: Step,
        blueprint: Blueprint,
        guidance_history: Sequence[ChatMessage],
        integrations: Integrations,
    ) -> str:
        prompt = build_decision_prompt(step, blueprint, guidance_history, integrations)
        agent_name = (
            step.assigned_to.agent_name if step.assigned_to else None
        ) or "unnamed agent"
        logger.info(f"Agent {agent_name} is analyzing step requirements: {step.label}")
        result = await self.agent.run(prompt)
        return result.output
