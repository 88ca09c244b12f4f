"""
Sampling strategies used by the model backends.
"""

import torch
import torch.nn.functional as F
from functools import partial
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence


class SamplingStrategy(ABC):
    """Base class for sampling strategies."""

    @abstractmethod
    def sample(self, logits: torch.Tensor) -> torch.Tensor:
        """Sample token IDs from logits.

        Args:
            logits: Shape (batch_size, vocab_size)

        Returns:
            Sampled token IDs, shape (batch_size, 1)
        """
        pass


class GreedySampling(SamplingStrategy):
    """Greedy decoding."""

    def sample(self, logits: torch.Tensor) -> torch.Tensor:
        return torch.argmax(logits, dim=-1, keepdim=True)


class TemperatureSampling(SamplingStrategy):
    """Temperature sampling."""

    def __init__(self, temperature: float = 1.0, generator: Optional[torch.Generator] = None):
        self.temperature = temperature
        self.generator = generator

    def sample(self, logits: torch.Tensor) -> torch.Tensor:
        if self.temperature == 1.0:
            probs = F.softmax(logits.float(), dim=-1)
        else:
            probs = F.softmax(logits.float() / self.temperature, dim=-1)

        return torch.multinomial(probs, num_samples=1, generator=self.generator)


LogitsFilter = Callable[[torch.Tensor], torch.Tensor]


def mask_top_k(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the `k` largest logits, masking the rest to -inf."""
    if k <= 0 or k >= logits.size(-1):
        return logits
    threshold = torch.topk(logits, k).values[..., -1, None]
    return logits.masked_fill(logits < threshold, float('-inf'))


def mask_top_p(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Keep the smallest set of logits whose probabilities add up to `p`."""
    if not 0 < p < 1.0:
        return logits
    sorted_logits, sorted_indices = torch.sort(logits, descending=True)
    probs = F.softmax(sorted_logits.float(), dim=-1)
    cumulative_probs = torch.cumsum(probs, dim=-1)

    # Drop a token once the mass before it exceeds p, the most likely one always stays
    sorted_mask = (cumulative_probs - probs) > p
    mask = sorted_mask.scatter(-1, sorted_indices, sorted_mask)
    return logits.masked_fill(mask, float('-inf'))


class FilteredSampling(SamplingStrategy):
    """Apply logits filters in order, then sample with the base strategy."""

    def __init__(self, base_strategy: SamplingStrategy, filters: Sequence[LogitsFilter]):
        self.base_strategy = base_strategy
        self.filters = list(filters)

    def sample(self, logits: torch.Tensor) -> torch.Tensor:
        for logits_filter in self.filters:
            logits = logits_filter(logits)
        return self.base_strategy.sample(logits)


def apply_repeat_penalty(
    logits: torch.Tensor,
    penalty: float,
    context: Sequence[int]
) -> torch.Tensor:
    """Penalize logits of tokens that already appear in `context`.

    Positive logits are divided by `penalty`, negative ones multiplied, so a
    penalty above 1 always makes a repeated token less likely.

    Args:
        logits: Shape (batch_size, vocab_size)
        penalty: Repetition penalty, 1.0 disables it
        context: Recently generated token IDs

    Returns:
        Penalized logits (a copy; the input is left untouched)
    """
    if penalty == 1.0 or not context:
        return logits

    logits = logits.clone()
    ids = torch.tensor(sorted(set(context)), dtype=torch.long, device=logits.device)
    scores = logits[:, ids]
    logits[:, ids] = torch.where(scores >= 0, scores / penalty, scores * penalty)
    return logits


def create_sampling_strategy(
    temperature: float,
    top_k: Optional[int] = None,
    top_p: Optional[float] = None,
    generator: Optional[torch.Generator] = None
) -> SamplingStrategy:
    """Build the sampling strategy for the given parameters.

    Args:
        temperature: Sampling temperature, 0 selects greedy decoding
        top_k: Top-K filtering
        top_p: Top-P filtering
        generator: Random generator used for multinomial sampling

    Returns:
        Sampling strategy
    """
    if temperature == 0.0:
        return GreedySampling()

    strategy = TemperatureSampling(temperature, generator)
    filters = []
    if top_k is not None:
        filters.append(partial(mask_top_k, k=top_k))
    if top_p is not None:
        filters.append(partial(mask_top_p, p=top_p))
    if filters:
        strategy = FilteredSampling(strategy, filters)
    return strategy
