"""
Text sinks for the generation loop.

A sink is any callable taking one string. The loop calls it once with the
prompt, once per generated token, and finally once with "" to mark the end
of the stream. Nothing is sent after the empty string.
"""

import sys
from typing import List, Optional, Protocol, TextIO


class TextSink(Protocol):
    """Anything that accepts generated text in order."""

    def __call__(self, text: str) -> None:
        ...


class StdoutSink:
    """Write generated text to a stream as it arrives.

    Text is written without newlines; the end-of-stream call writes a single
    newline. The stream is flushed after every call.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        # Resolved lazily so redirected/captured stdout is honoured
        return self._stream if self._stream is not None else sys.stdout

    def __call__(self, text: str) -> None:
        stream = self.stream
        stream.write(text if text else "\n")
        stream.flush()


class CollectingSink:
    """Accumulate generated text in memory."""

    def __init__(self):
        self._chunks: List[str] = []
        self.finished = False

    def __call__(self, text: str) -> None:
        if self.finished:
            raise RuntimeError("sink received text after end of stream")
        if text:
            self._chunks.append(text)
        else:
            self.finished = True

    @property
    def chunks(self) -> List[str]:
        return list(self._chunks)

    @property
    def text(self) -> str:
        return "".join(self._chunks)
