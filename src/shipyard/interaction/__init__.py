"""Operator interaction: prompts for missing deployment parameters."""

from .collector import ParameterCollector
from .handler import (
    AutoResponseHandler,
    CallbackInteractionHandler,
    CLIInteractionHandler,
    InputType,
    InteractionRequest,
    InteractionResponse,
    UserInteractionHandler,
)

__all__ = [
    "ParameterCollector",
    "AutoResponseHandler",
    "CallbackInteractionHandler",
    "CLIInteractionHandler",
    "InputType",
    "InteractionRequest",
    "InteractionResponse",
    "UserInteractionHandler",
]
