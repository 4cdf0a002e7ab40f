"""
Base AI Client

This module provides an abstract base class for AI backend clients.
It defines the interface the relay pipeline calls and provides the shared
retry-with-backoff helper used by every backend.

Classes:
    - AIResponse: Answer returned by a backend call
    - BaseAIClient: Abstract base class for AI clients
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import utils.func as func
from AI.error_types import UpstreamError

log = logging.getLogger(__name__)


@dataclass
class AIResponse:
    """
    Answer returned by an AI backend.

    Attributes:
        answer: Answer text (may contain markdown and image references)
        conversation_id: Continuation token, empty when the backend assigned none
        synthetic: True when the answer was produced locally after a failure
    """
    answer: str
    conversation_id: str = ""
    synthetic: bool = False


class BaseAIClient(ABC):
    """
    Abstract base class for AI backend clients.

    To add a new backend:
    1. Create a new class that inherits from BaseAIClient
    2. Set the provider_name class attribute
    3. Implement chat() and close()
    4. Wrap the network call with retry_with_backoff()

    Example:
        >>> class EchoClient(BaseAIClient):
        ...     provider_name = "Echo"
        ...
        ...     async def chat(self, query, user, conversation_id=""):
        ...         return AIResponse(answer=query, conversation_id=conversation_id)
        ...
        ...     async def close(self):
        ...         pass
    """

    # Provider name (must be set by subclass)
    provider_name: str = None

    def __init__(self):
        """Initialize the base client."""
        if self.provider_name is None:
            raise NotImplementedError(
                f"{self.__class__.__name__} must set provider_name class attribute"
            )

    @abstractmethod
    async def chat(self, query: str, user: str, conversation_id: str = "") -> AIResponse:
        """
        Send one user query and wait for the complete answer.

        Args:
            query: User text, already length-capped
            user: Opaque end-user label
            conversation_id: Continuation token or empty string for a new conversation

        Returns:
            AIResponse: Answer and continuation token

        Raises:
            UpstreamError: The backend answered with an error or could not be reached
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources held by the client."""
        pass

    @staticmethod
    def is_transient(error: Exception) -> bool:
        """Whether a failed call is worth repeating."""
        if isinstance(error, asyncio.TimeoutError):
            return False
        if isinstance(error, UpstreamError):
            return error.transient
        return False

    # Shared with the Telegram client
    retry_with_backoff = staticmethod(func.retry_with_backoff)
