"""Exception types shared across the agent."""
from typing import Optional


class AgentError(Exception):
    """Base class for agent errors."""


class ConfigError(AgentError):
    """The identity file is missing, unreadable or incomplete."""


class DecodeError(AgentError):
    """An inbound frame could not be turned into a valid envelope."""


class AuthenticationError(AgentError):
    """The controller rejected the agent credentials. Not retryable."""


class HandlerError(AgentError):
    """
    A command handler failed in an expected way (non-zero exit, bad write).
    Carries whatever output was captured so it can be reported back.
    """

    def __init__(self, message: str, stdout: Optional[str] = None, stderr: Optional[str] = None):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class TransportClosedError(ConnectionError):
    """Raised when sending on a connection that is gone."""
