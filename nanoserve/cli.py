#!/usr/bin/env python3
"""
NanoServe command line entry point.

Runs a single generation to stdout, or serves the model over HTTP when
--api is given.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import SessionConfig
from .engine.master import Master
from .errors import NanoServeError


def build_parser() -> argparse.ArgumentParser:
    defaults = SessionConfig()

    parser = argparse.ArgumentParser(description="NanoServe LLM inference")
    parser.add_argument("--model", type=str, default=defaults.model, help="HuggingFace model name or path")
    parser.add_argument("--model-type", dest="model_type", type=str, choices=["hf"], default=defaults.model_type,
                        help="Model backend")
    parser.add_argument("--device", type=str, default=defaults.device, help="Device (cuda/cpu/mps)")
    parser.add_argument("--dtype", type=str, choices=["fp16", "fp32", "bf16"], default=defaults.dtype,
                        help="Data type for model weights")
    parser.add_argument("--api", type=str, default=None,
                        help="Serve the model over HTTP on this host:port instead of running one generation")
    parser.add_argument("--system-prompt", dest="system_prompt", type=str, default=defaults.system_prompt,
                        help="System prompt")
    parser.add_argument("--prompt", type=str, default=defaults.prompt, help="Input prompt")
    parser.add_argument("--sample-len", dest="sample_len", type=int, default=defaults.sample_len,
                        help="Maximum tokens to generate")
    parser.add_argument("--temperature", type=float, default=defaults.temperature,
                        help="Sampling temperature (0 for greedy)")
    parser.add_argument("--top-k", dest="top_k", type=int, default=None, help="Top-k sampling (optional)")
    parser.add_argument("--top-p", dest="top_p", type=float, default=None, help="Top-p sampling threshold (optional)")
    parser.add_argument("--repeat-penalty", dest="repeat_penalty", type=float, default=defaults.repeat_penalty,
                        help="Penalty for repeated tokens (1.0 disables it)")
    parser.add_argument("--repeat-last-n", dest="repeat_last_n", type=int, default=defaults.repeat_last_n,
                        help="Context size considered by the repeat penalty")
    parser.add_argument("--seed", type=int, default=defaults.seed, help="Random seed for sampling")
    parser.add_argument("--log-level", dest="log_level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    return parser


async def _run(config: SessionConfig) -> None:
    master = await Master.create(config)
    await master.run()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = SessionConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    # Status lines go to stderr, stdout carries the generated text
    print(f"🧠 NanoServe ({config.mode.value} mode)", file=sys.stderr)
    print(f"📁 Model: {config.model}", file=sys.stderr)
    if config.api is not None:
        print(f"🌐 Server: http://{config.api}", file=sys.stderr)

    try:
        asyncio.run(_run(config))
    except NanoServeError as e:
        print(f"\n❌ {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except BrokenPipeError:
        print("\n❌ Output stream closed", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted", file=sys.stderr)
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
