import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Type

from ..schemas.command import CommandParams, CommandResult
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers")


class BaseHandler(ABC):
    """
    Abstract Base Class for command handlers.
    Each subclass handles one command kind, declares its params model and
    its execution budget in seconds.
    """

    command_type: str = ""
    params_model: Type[CommandParams] = CommandParams
    timeout: float = 5

    def parse(self, payload: Dict[str, Any]) -> CommandParams:
        """Validate the command payload. Raises pydantic.ValidationError."""
        return self.params_model.model_validate(payload)

    @abstractmethod
    async def execute(self, params: CommandParams, ctx: ExecutionContext) -> CommandResult:
        """
        Run the command and return its result.
        Expected failures are raised as HandlerError; the dispatcher turns
        every exception into a failure response.
        """
        pass
