"""
NanoServe: a small inference orchestrator for LLMs.

Loads a model behind a uniform Generator interface, then either streams one
generation to stdout or serves the model over an HTTP chat API.
"""

__version__ = "0.1.0"

from .config import RunMode, SessionConfig
from .engine.master import Master
from .engine.sink import CollectingSink, StdoutSink, TextSink
from .errors import (
    AppendError,
    GenerationInProgressError,
    LoadError,
    NanoServeError,
    ResetError,
    TokenError,
)
from .model.base import Generator, Message, Role, Token

__all__ = [
    "RunMode",
    "SessionConfig",
    "Master",
    "CollectingSink",
    "StdoutSink",
    "TextSink",
    "NanoServeError",
    "LoadError",
    "ResetError",
    "AppendError",
    "TokenError",
    "GenerationInProgressError",
    "Generator",
    "Message",
    "Role",
    "Token",
]
