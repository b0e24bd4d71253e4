"""User interaction handlers for collecting deployment parameters."""

from __future__ import annotations

import getpass
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class InputType(str, Enum):
    """Type of user input expected."""
    TEXT = "text"           # 自由文本输入
    CONFIRM = "confirm"     # 是/否确认
    SECRET = "secret"       # 敏感信息（令牌等），不回显


@dataclass
class InteractionRequest:
    """A question for the operator."""

    question: str
    input_type: InputType = InputType.TEXT
    context: Optional[str] = None               # 附加上下文信息
    default: Optional[str] = None               # 默认值
    key: Optional[str] = None                   # 参数名，供非交互处理器匹配

    def format_prompt(self) -> str:
        """Format the request as a user-friendly prompt."""
        lines = [f"\n📝 {self.question}"]
        if self.context:
            lines.append(f"   ℹ️  {self.context}")
        return "\n".join(lines)


@dataclass
class InteractionResponse:
    """Operator's answer to an interaction request."""

    value: str
    cancelled: bool = False

    @property
    def confirmed(self) -> bool:
        return not self.cancelled and self.value.lower() in ("y", "yes")

    @classmethod
    def cancelled_response(cls) -> "InteractionResponse":
        return cls(value="", cancelled=True)


class UserInteractionHandler(ABC):
    """Abstract base class for handling user interactions."""

    @abstractmethod
    def ask(self, request: InteractionRequest) -> InteractionResponse:
        """
        Present a request to the user and get their response.

        Args:
            request: The interaction request to present

        Returns:
            The user's response
        """

    @abstractmethod
    def notify(self, message: str, level: str = "info") -> None:
        """
        Send a notification to the user (no response needed).

        Args:
            message: The message to display
            level: Severity level (info, warning, error, success)
        """


class CLIInteractionHandler(UserInteractionHandler):
    """Command-line interface interaction handler."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        secret_func: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self.input_func = input_func
        self.secret_func = secret_func

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        """Present request and get user input via CLI."""
        print(request.format_prompt())
        try:
            if request.input_type == InputType.CONFIRM:
                return self._handle_confirm(request)
            if request.input_type == InputType.SECRET:
                return self._handle_secret(request)
            return self._handle_text(request)
        except KeyboardInterrupt:
            print("\n   (cancelled)")
            return InteractionResponse.cancelled_response()
        except EOFError:
            return InteractionResponse.cancelled_response()

    def _handle_confirm(self, request: InteractionRequest) -> InteractionResponse:
        default = request.default or "n"
        while True:
            answer = self.input_func(f"   Proceed? [y/n] (default: {default}): ").strip().lower()
            if not answer:
                answer = default
            if answer in ("y", "yes"):
                return InteractionResponse(value="yes")
            if answer in ("n", "no"):
                return InteractionResponse(value="no")
            print("   ❌ Please answer y or n")

    def _handle_text(self, request: InteractionRequest) -> InteractionResponse:
        prompt = "   > "
        if request.default:
            prompt = f"   > (default: {request.default}) "
        answer = self.input_func(prompt).strip()
        if not answer and request.default:
            answer = request.default
        return InteractionResponse(value=answer)

    def _handle_secret(self, request: InteractionRequest) -> InteractionResponse:
        answer = self.secret_func("   > (input hidden) ")
        return InteractionResponse(value=answer.strip())

    def notify(self, message: str, level: str = "info") -> None:
        icons = {
            "info": "ℹ️",
            "warning": "⚠️",
            "error": "❌",
            "success": "✅",
        }
        print(f"{icons.get(level, '•')} {message}")


class CallbackInteractionHandler(UserInteractionHandler):
    """
    Interaction handler that uses callbacks.
    Useful when shipyard is embedded in another tool.
    """

    def __init__(
        self,
        ask_callback: Callable[[InteractionRequest], InteractionResponse],
        notify_callback: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.ask_callback = ask_callback
        self.notify_callback = notify_callback or (lambda msg, lvl: logger.info("[%s] %s", lvl, msg))

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        return self.ask_callback(request)

    def notify(self, message: str, level: str = "info") -> None:
        self.notify_callback(message, level)


class AutoResponseHandler(UserInteractionHandler):
    """
    Automatic response handler for tests and non-interactive mode.
    Answers from predefined responses, then defaults.
    """

    def __init__(
        self,
        default_responses: Optional[dict] = None,
        always_confirm: bool = True,
        use_defaults: bool = True,
    ) -> None:
        """
        Args:
            default_responses: Dict mapping parameter keys (or question keywords) to answers
            always_confirm: Whether to auto-confirm (True) or reject (False)
            use_defaults: Whether to use default values when available
        """
        self.default_responses = default_responses or {}
        self.always_confirm = always_confirm
        self.use_defaults = use_defaults

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        logger.debug("Auto-responding to: %s", request.question[:50])

        if request.key and request.key in self.default_responses:
            return InteractionResponse(value=self.default_responses[request.key])
        for keyword, response in self.default_responses.items():
            if keyword.lower() in request.question.lower():
                return InteractionResponse(value=response)

        if request.input_type == InputType.CONFIRM:
            return InteractionResponse(value="yes" if self.always_confirm else "no")
        if self.use_defaults and request.default:
            return InteractionResponse(value=request.default)
        return InteractionResponse(value="")

    def notify(self, message: str, level: str = "info") -> None:
        logger.info("[%s] %s", level, message)
