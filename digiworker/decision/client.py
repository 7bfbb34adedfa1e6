"""Client normalizing answers of the action decision service."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from ..constants import DEFAULT_DECISION_TIMEOUT
from ..contracts import (
    AGENT_ACTION_ADAPTER,
    ActionType,
    AgentAction,
    ChatMessage,
    DecisionResult,
    Step,
)
from ..errors import DecisionTimeout, MalformedDecision, UnknownActionType
from .service import DecisionService, RawDecision

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_KNOWN_ACTION_TYPES = {action_type.value for action_type in ActionType}


class ActionDecisionClient:
    """Boundary to the decision service.

    Applies a hard timeout and validates the response once, so everything
    downstream works with a typed ``DecisionResult``. It never performs side
    effects itself.
    """

    def __init__(
        self, service: DecisionService, timeout: float = DEFAULT_DECISION_TIMEOUT
    ) -> None:
        self._service = service
        self.timeout = timeout

    async def decide(
        self, step: Step, guidance_history: Sequence[ChatMessage]
    ) -> DecisionResult:
        """Ask the service what ``step`` should do given its guidance so far.

        Raises:
            DecisionTimeout: The service did not answer within ``timeout``.
            MalformedDecision: The answer does not have the decision shape.
            UnknownActionType: An action uses a type outside the known set.
        """
        try:
            raw = await asyncio.wait_for(
                self._service.decide(
                    step, step.blueprint, list(guidance_history), step.integrations
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Decision for step {step.id} timed out after {self.timeout}s"
            )
            raise DecisionTimeout(self.timeout) from None
        return self.normalize(raw)

    @classmethod
    def normalize(cls, raw: RawDecision) -> DecisionResult:
        if isinstance(raw, DecisionResult):
            return raw
        if isinstance(raw, (str, bytes)):
            data = cls._extract_json(raw.decode() if isinstance(raw, bytes) else raw)
        elif isinstance(raw, Mapping):
            data = dict(raw)
        else:
            raise MalformedDecision(
                f"Unsupported decision payload type: {type(raw).__name__}"
            )

        actions = data.get("actions")
        if not isinstance(actions, list):
            raise MalformedDecision("Invalid actions array in decision response")
        data["actions"] = [cls._parse_action(action) for action in actions]

        try:
            return DecisionResult.model_validate(data)
        except ValidationError as e:
            raise MalformedDecision(f"Invalid decision response: {e}") from e

    @staticmethod
    def _parse_action(action: Any) -> AgentAction:
        if not isinstance(action, Mapping):
            raise MalformedDecision(f"Invalid action entry: {action!r}")
        if action.get("type") not in _KNOWN_ACTION_TYPES:
            raise UnknownActionType(action.get("type"))
        try:
            return AGENT_ACTION_ADAPTER.validate_python(action)
        except ValidationError as e:
            raise MalformedDecision(f"Invalid {action['type']} action: {e}") from e

    @staticmethod
    def _extract_json(text: str) -> dict[str, Any]:
        match = _JSON_OBJECT.search(text.strip())
        if not match:
            raise MalformedDecision("Failed to parse decision response: No JSON found")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise MalformedDecision(
                "Failed to parse decision response: Invalid JSON"
            ) from e
        if not isinstance(data, dict):
            raise MalformedDecision("Decision response is not a JSON object")
        return data
