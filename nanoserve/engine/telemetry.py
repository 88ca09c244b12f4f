"""
Memory and throughput reporting around the generation loop.

Everything here is observational: a failure to sample memory is logged and
never interrupts a generation.
"""

import logging
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

_UNITS = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]


def memory_usage() -> Optional[int]:
    """Get the resident memory of the current process.

    Returns:
        Resident set size in bytes, or None if it could not be sampled
    """
    try:
        return psutil.Process().memory_info().rss
    except (psutil.Error, OSError) as e:
        logger.warning("could not sample process memory: %s", e)
        return None


def human_bytes(size: float) -> str:
    """Format a byte count with binary units, e.g. "1.5 GiB"."""
    if size < 1024:
        return f"{int(size)} B"
    for unit in _UNITS[1:]:
        size /= 1024
        if size < 1024 or unit == _UNITS[-1]:
            return f"{size:.1f} {unit}"


def format_memory(size: Optional[int]) -> str:
    return "n/a" if size is None else human_bytes(size)


def tokens_per_second(generated: int, elapsed: float) -> Optional[float]:
    """Steady-state throughput of a generation.

    The first token is a warmup token and is excluded both from the timing
    window and from the count.

    Args:
        generated: Tokens produced by the backend
        elapsed: Seconds since the first steady-state token was requested

    Returns:
        Tokens per second, or None when it cannot be measured
    """
    if generated <= 1 or elapsed <= 0:
        return None
    return (generated - 1) / elapsed


def log_generation_start() -> None:
    logger.info("starting the inference loop (mem=%s)", format_memory(memory_usage()))


def log_generation_end(generated: int, elapsed: float) -> None:
    rate = tokens_per_second(generated, elapsed)
    logger.info(
        "%d tokens generated (%s token/s) - mem=%s",
        generated,
        "n/a" if rate is None else f"{rate:.2f}",
        format_memory(memory_usage()),
    )
