"""Operator interaction handlers used when a stage needs a human decision."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from rich.console import Console
from rich.prompt import Confirm

logger = logging.getLogger(__name__)


@dataclass
class InteractionRequest:
    """A yes/no question from a stage to the operator."""

    question: str
    context: Optional[str] = None               # 附加上下文信息
    default: bool = False

    def format_prompt(self) -> str:
        lines = ["\n⚠️ Operator input needed:", f"   {self.question}"]
        if self.context:
            lines.append(f"   ℹ️  {self.context}")
        return "\n".join(lines)


@dataclass
class InteractionResponse:
    """Operator's response to an interaction request."""

    value: str
    cancelled: bool = False

    @property
    def confirmed(self) -> bool:
        return not self.cancelled and self.value.strip().lower() in ("y", "yes", "true", "是")

    @classmethod
    def cancelled_response(cls) -> "InteractionResponse":
        return cls(value="", cancelled=True)


class UserInteractionHandler(ABC):
    """Abstract base class for handling operator interactions."""

    @abstractmethod
    def ask(self, request: InteractionRequest) -> InteractionResponse:
        """
        Present a request to the operator and get their response.

        Args:
            request: The interaction request to present

        Returns:
            The operator's response
        """

    def confirm(self, question: str, *, context: Optional[str] = None, default: bool = False) -> bool:
        return self.ask(InteractionRequest(question=question, context=context, default=default)).confirmed


class CLIInteractionHandler(UserInteractionHandler):
    """Terminal handler built on rich prompts."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console(stderr=True)

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        self.console.print(request.format_prompt())
        try:
            answer = Confirm.ask("   Continue anyway?", default=request.default, console=self.console)
        except (KeyboardInterrupt, EOFError):
            self.console.print("\n   (cancelled)")
            return InteractionResponse.cancelled_response()
        return InteractionResponse(value="yes" if answer else "no")


class AutoResponseHandler(UserInteractionHandler):
    """
    Automatic response handler for tests or non-interactive runs.
    Confirmations resolve to `always_confirm`; keyword matches win first.
    """

    def __init__(
        self,
        default_responses: Optional[Dict[str, str]] = None,
        always_confirm: bool = False,
    ) -> None:
        self.default_responses = default_responses or {}
        self.always_confirm = always_confirm
        self.requests = []

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        self.requests.append(request)
        logger.info("Auto-responding to: %s", request.question[:80])

        for keyword, response in self.default_responses.items():
            if keyword.lower() in request.question.lower():
                return InteractionResponse(value=response)

        return InteractionResponse(value="yes" if self.always_confirm else "no")
