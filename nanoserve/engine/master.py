"""
The master owns one model and drives it through generations.

In local mode it primes the model with the configured system and user prompts
and streams a single generation to stdout. In served mode it hands itself to
the API server, which resets it and runs one generation per request.
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Type

from ..config import RunMode, SessionConfig
from ..errors import (
    AppendError,
    GenerationInProgressError,
    LoadError,
    NanoServeError,
    ResetError,
    TokenError,
)
from ..model.base import Generator, Message
from ..model.factory import get_generator_class
from ..server.api import serve
from .sink import StdoutSink, TextSink
from .telemetry import log_generation_end, log_generation_start

logger = logging.getLogger(__name__)


@contextmanager
def _reraise_as(error_cls: Type[NanoServeError], message: str) -> Iterator[None]:
    """Wrap backend exceptions that are not already NanoServe errors."""
    try:
        yield
    except NanoServeError:
        raise
    except Exception as e:
        raise error_cls(f"{message}: {e}") from e


class Master:
    """A loaded model plus the configuration it was loaded with."""

    def __init__(self, config: SessionConfig, model: Generator):
        self.config = config
        self.model = model
        self.mode = config.mode
        self._generating = False

    @classmethod
    async def create(
        cls,
        config: SessionConfig,
        generator_cls: Optional[Type[Generator]] = None
    ) -> "Master":
        """Load the model backend and build a master around it.

        Args:
            config: Session configuration
            generator_cls: Backend class, resolved from `config.model_type` if None

        Returns:
            Master instance

        Raises:
            LoadError: If the backend cannot be initialized
        """
        if generator_cls is None:
            generator_cls = get_generator_class(config.model_type)

        with _reraise_as(LoadError, f"failed to load model {config.model!r}"):
            model = await generator_cls.load(config)
        return cls(config, model)

    @property
    def is_generating(self) -> bool:
        return self._generating

    async def run(self) -> None:
        """Run the master in the mode chosen at construction."""
        if self.mode is RunMode.SERVED:
            await serve(self)
            return

        # The model sees the system prompt first, then the user prompt
        self.add_message(Message.system(self.config.system_prompt))
        self.add_message(Message.user(self.config.prompt))

        await self.generate(StdoutSink())

    def reset(self) -> None:
        """Reset the model state for a new inference.

        Raises:
            ResetError: If the backend fails to clear its state
        """
        with _reraise_as(ResetError, "failed to reset model state"):
            self.model.reset()

    def add_message(self, message: Message) -> None:
        """Append a message to the model conversation.

        Raises:
            AppendError: If the backend rejects the message
        """
        with _reraise_as(AppendError, f"failed to add {message.role.value} message"):
            self.model.add_message(message)

    async def generate(
        self,
        sink: TextSink,
        *,
        echo: bool = True,
        sample_len: Optional[int] = None
    ) -> bool:
        """Run the generation loop, calling `sink` for every token.

        The sink first receives the configured prompt (unless `echo` is
        False), then the text of each generated token in order, then a
        single "" once generation is over. If the backend fails, the error
        propagates and the final "" is never sent.

        Args:
            sink: Callable receiving generated text
            echo: Send the configured prompt before the first token
            sample_len: Per-call cap on generated tokens, never above config.sample_len

        Returns:
            True if the model ended the stream, False if the token limit did

        Raises:
            GenerationInProgressError: If this master is already generating
            TokenError: If the backend fails to produce a token
        """
        if self._generating:
            raise GenerationInProgressError("a generation is already running on this master")

        self._generating = True
        try:
            return await self._generate(sink, echo, self._sample_len(sample_len))
        finally:
            self._generating = False

    def _sample_len(self, requested: Optional[int]) -> int:
        if requested is None:
            return self.config.sample_len
        return max(0, min(requested, self.config.sample_len))

    async def _generate(self, sink: TextSink, echo: bool, sample_len: int) -> bool:
        log_generation_start()
        logger.debug("  sample_len = %d", sample_len)

        if echo:
            sink(self.config.prompt)

        start_gen = time.perf_counter()
        end_of_stream = False

        for index in range(sample_len):
            if index == 1:
                # The first token is the warmup, start timing again from here
                start_gen = time.perf_counter()

            with _reraise_as(TokenError, f"failed to generate token {index}"):
                token = await self.model.next_token(index)

            if token.is_end_of_stream:
                end_of_stream = True
                break
            # "" is reserved for the end of stream
            if token.text:
                sink(token.text)

        with _reraise_as(TokenError, "failed to flush decoded text"):
            tail = self.model.flush()
        if tail:
            sink(tail)
        sink("")

        elapsed = time.perf_counter() - start_gen
        log_generation_end(self.model.generated_tokens(), elapsed)
        return end_of_stream
