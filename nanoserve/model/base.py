"""
Unified model interface consumed by the master.

A Generator owns one loaded model plus its conversation and decode state.
The master only ever talks to a backend through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from ..config import SessionConfig


class Role(Enum):
    """Chat message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single chat message."""
    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    def to_dict(self) -> Dict[str, str]:
        """Convert to the {"role", "content"} form used by chat templates."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class Token:
    """A token produced by one decoding step.

    `text` is the newly decoded text for this step and may be empty when the
    detokenizer is waiting for the rest of a multi-byte character.
    """
    id: Optional[int]
    text: str
    is_end_of_stream: bool = False

    @classmethod
    def end_of_stream(cls, token_id: Optional[int] = None) -> "Token":
        return cls(token_id, "", True)

    def __str__(self) -> str:
        return self.text


class Generator(ABC):
    """Model capability: load, converse, and produce one token at a time."""

    @classmethod
    @abstractmethod
    async def load(cls, config: SessionConfig) -> "Generator":
        """Load the backend described by `config`.

        Args:
            config: Session configuration

        Returns:
            A ready to use generator

        Raises:
            LoadError: If the backend cannot be initialized
        """
        pass

    @abstractmethod
    def add_message(self, message: Message) -> None:
        """Append a message to the conversation.

        Raises:
            AppendError: If the message cannot be added
        """
        pass

    @abstractmethod
    def reset(self) -> None:
        """Clear conversation history and decode state.

        Raises:
            ResetError: If the state cannot be cleared
        """
        pass

    @abstractmethod
    async def next_token(self, index: int) -> Token:
        """Produce the token at position `index` of the current generation.

        Index 0 processes the whole conversation, later indices continue
        from the previous token.

        Raises:
            TokenError: If the backend fails to produce the token
        """
        pass

    @abstractmethod
    def generated_tokens(self) -> int:
        """Number of tokens produced since the last reset."""
        pass

    def flush(self) -> str:
        """Return text held back by the detokenizer once generation is over.

        Backends that emit text as soon as it is decoded have nothing to flush.
        """
        return ""
