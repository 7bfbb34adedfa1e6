"""Action decision boundary."""

from .client import ActionDecisionClient
from .prompts import build_decision_prompt
from .service import DecisionService, PydanticAIDecisionService

__all__ = [
    "ActionDecisionClient",
    "DecisionService",
    "PydanticAIDecisionService",
    "build_decision_prompt",
]
