"""
Session configuration for NanoServe.

A SessionConfig is built once (from the command line or a dict) and shared
read-only by the master, the model backend and the API server.
"""

import argparse
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def _parse_address(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"api address must be host:port, got {address!r}")
    return host, int(port)


class RunMode(Enum):
    """How a master runs once created."""
    LOCAL = "local"    # one generation streamed to stdout
    SERVED = "served"  # handed to the API server


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for one inference session.

    `api` selects the run mode: when set (as "host:port") the master is served
    over HTTP, otherwise it runs a single generation from `prompt`.
    """
    # Backend
    model: str = "gpt2"
    model_type: str = "hf"
    device: str = "cpu"
    dtype: str = "fp32"

    # Run mode
    api: Optional[str] = None

    # Prompts
    system_prompt: str = "You are a helpful AI assistant."
    prompt: str = "Why is the sky blue?"

    # Sampling
    sample_len: int = 100
    temperature: float = 1.0
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    repeat_penalty: float = 1.1
    repeat_last_n: int = 128
    seed: int = 299792458

    def __post_init__(self):
        if self.sample_len < 0:
            raise ValueError(f"sample_len must be >= 0, got {self.sample_len}")
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")
        if self.repeat_last_n < 0:
            raise ValueError(f"repeat_last_n must be >= 0, got {self.repeat_last_n}")
        if self.api is not None:
            _parse_address(self.api)

    @property
    def mode(self) -> RunMode:
        """Run mode implied by the presence of an API address."""
        return RunMode.SERVED if self.api is not None else RunMode.LOCAL

    @property
    def api_address(self) -> Tuple[str, int]:
        """Split `api` into (host, port).

        Raises:
            ValueError: If no API address is configured or it is malformed
        """
        if self.api is None:
            raise ValueError("no API address configured")
        return _parse_address(self.api)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "SessionConfig":
        """Create config from a dictionary, ignoring unknown keys.

        Args:
            config_dict: Configuration values keyed by field name

        Returns:
            SessionConfig instance
        """
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config_dict.items() if k in known})

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "SessionConfig":
        """Create config from parsed command line arguments."""
        return cls.from_dict(vars(args))

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Configuration dictionary
        """
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def __str__(self) -> str:
        return (
            f"SessionConfig(model={self.model}, mode={self.mode.value}, "
            f"sample_len={self.sample_len}, temperature={self.temperature})"
        )
