"""
Hugging Face transformers backend.

Wraps any AutoModelForCausalLM checkpoint behind the Generator interface,
decoding one token per call with a KV cache.
"""

import asyncio
import contextlib
import logging
from typing import List

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer

from ..config import SessionConfig
from ..engine.sampling import apply_repeat_penalty, create_sampling_strategy
from ..errors import AppendError, LoadError, TokenError
from .base import Generator, Message, Token

logger = logging.getLogger(__name__)

DTYPES = {"fp16": torch.float16, "fp32": torch.float32, "bf16": torch.bfloat16}


def resolve_device(device: str) -> str:
    """Fall back to CPU when the requested accelerator is not available."""
    if device == "cuda" and not torch.cuda.is_available():
        logger.warning("CUDA not available, using CPU for inference")
        return "cpu"
    if device == "mps" and not torch.backends.mps.is_available():
        logger.warning("MPS not available, using CPU for inference")
        return "cpu"
    return device


class HuggingFaceGenerator(Generator):
    """Generator backed by a transformers causal LM and its tokenizer."""

    def __init__(self, config: SessionConfig, model, tokenizer, device: str = "cpu"):
        self.config = config
        self.model = model
        self.tokenizer = tokenizer
        self.device = device
        self.max_length = getattr(model.config, "max_position_embeddings", None) or 1024

        self._history: List[Message] = []
        self._reset_decode_state()

    @classmethod
    async def load(cls, config: SessionConfig) -> "HuggingFaceGenerator":
        # from_pretrained blocks on disk and network IO
        return await asyncio.to_thread(cls._load, config)

    @classmethod
    def _load(cls, config: SessionConfig) -> "HuggingFaceGenerator":
        dtype = DTYPES.get(config.dtype)
        if dtype is None:
            raise LoadError(f"Unknown dtype: {config.dtype} (expected one of {', '.join(DTYPES)})")
        device = resolve_device(config.device)

        logger.info("loading HuggingFace model %s (device=%s, dtype=%s)", config.model, device, config.dtype)
        try:
            model = AutoModelForCausalLM.from_pretrained(config.model, dtype=dtype)
            tokenizer = AutoTokenizer.from_pretrained(config.model)
        except (OSError, ValueError) as e:
            raise LoadError(f"Failed to load {config.model}: {e}") from e

        model = model.to(device)
        model.eval()

        logger.info("model loaded: %s parameters", f"{sum(p.numel() for p in model.parameters()):,}")
        return cls(config, model, tokenizer, device)

    def _reset_decode_state(self):
        self._past_key_values = None
        self._context: List[int] = []  # prompt + generated ids, for the repeat penalty
        self._tokens: List[int] = []   # generated ids
        self._position = 0             # tokens held in the KV cache
        # Detokenization window over _tokens: text up to _read_offset has been
        # emitted, _prefix_offset is where the decode window starts
        self._prefix_offset = 0
        self._read_offset = 0

        rng = torch.Generator(device="cpu").manual_seed(self.config.seed)
        self.sampler = create_sampling_strategy(
            self.config.temperature, self.config.top_k, self.config.top_p, rng
        )

    def add_message(self, message: Message) -> None:
        if self._position > 0:
            raise AppendError("cannot add messages once decoding has started, reset first")
        self._history.append(message)

    def reset(self) -> None:
        self._history.clear()
        self._reset_decode_state()
        if self.device == "cuda":
            torch.cuda.empty_cache()

    def generated_tokens(self) -> int:
        return len(self._tokens)

    async def next_token(self, index: int) -> Token:
        step = asyncio.ensure_future(asyncio.to_thread(self._next_token, index))
        try:
            return await asyncio.shield(step)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted. Wait for it to land so
            # nothing writes decode state after the caller resets.
            with contextlib.suppress(Exception):
                await step
            raise

    def _next_token(self, index: int) -> Token:
        if self._past_key_values is None:
            prompt_ids = self._encode_history()
            if not prompt_ids:
                raise TokenError("the conversation encodes to no tokens")
            input_ids = torch.tensor([prompt_ids], dtype=torch.long, device=self.device)
            if input_ids.size(1) > self.max_length:
                raise TokenError(
                    f"prompt is {input_ids.size(1)} tokens, model context is {self.max_length}"
                )
        else:
            if self._position >= self.max_length:
                logger.debug("context window full at index %d", index)
                return Token.end_of_stream()
            input_ids = torch.tensor([[self._tokens[-1]]], dtype=torch.long, device=self.device)

        try:
            with torch.no_grad():
                outputs = self.model(
                    input_ids=input_ids,
                    past_key_values=self._past_key_values,
                    use_cache=True
                )
        except RuntimeError as e:
            raise TokenError(f"forward pass failed at index {index}: {e}") from e

        if self._position == 0:
            self._context.extend(input_ids[0].tolist())
        self._past_key_values = outputs.past_key_values
        self._position += input_ids.size(1)

        logits = outputs.logits[:, -1, :].float().cpu()
        if self.config.repeat_last_n > 0:
            logits = apply_repeat_penalty(
                logits, self.config.repeat_penalty, self._context[-self.config.repeat_last_n:]
            )
        next_id = int(self.sampler.sample(logits)[0, 0])

        self._tokens.append(next_id)
        self._context.append(next_id)

        if next_id == self.tokenizer.eos_token_id:
            return Token.end_of_stream(next_id)
        return Token(next_id, self._decode_step())

    def _encode_history(self) -> List[int]:
        messages = [m.to_dict() for m in self._history]
        if getattr(self.tokenizer, "chat_template", None):
            prompt = self.tokenizer.apply_chat_template(
                messages, tokenize=False, add_generation_prompt=True
            )
        else:
            prompt = "".join(f"{m['role']}: {m['content']}\n" for m in messages) + "assistant:"
        return self.tokenizer.encode(prompt, add_special_tokens=False)

    def _decode_step(self) -> str:
        # Decode a short window instead of the whole generation, so cleanup
        # rules only ever see text around the new token
        prefix_text = self.tokenizer.decode(
            self._tokens[self._prefix_offset:self._read_offset], skip_special_tokens=True
        )
        text = self.tokenizer.decode(self._tokens[self._prefix_offset:], skip_special_tokens=True)
        if len(text) <= len(prefix_text) or text.endswith("\ufffd"):
            # Incomplete UTF-8 sequence, wait for the next token
            return ""
        self._prefix_offset = self._read_offset
        self._read_offset = len(self._tokens)
        return text[len(prefix_text):]

    def flush(self) -> str:
        if self._read_offset >= len(self._tokens):
            return ""
        end = len(self._tokens)
        if self._tokens[-1] == self.tokenizer.eos_token_id:
            end -= 1
        prefix_text = self.tokenizer.decode(
            self._tokens[self._prefix_offset:self._read_offset], skip_special_tokens=True
        )
        text = self.tokenizer.decode(self._tokens[self._prefix_offset:end], skip_special_tokens=True)
        self._prefix_offset = self._read_offset = len(self._tokens)
        return text[len(prefix_text):]
