"""CLI entry point: ``python -m xinfer``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import torch
from jinja2 import TemplateError

from xinfer.errors import XInferError
from xinfer.generate import generate
from xinfer.grammar.constraints import build_recognizer
from xinfer.loader.architectures import ARCHITECTURES
from xinfer.loader.loader import Loader, LoaderConfig, ModelKind
from xinfer.loader.paths import TokenSource
from xinfer.sampling.sampler import SamplingParams

logger = logging.getLogger("xinfer")

_DTYPES = {"bfloat16": torch.bfloat16, "float16": torch.float16, "float32": torch.float32}


def _read_arg(value: str | None) -> str | None:
    """``@file`` reads the value from a file."""
    if value is not None and value.startswith("@"):
        return Path(value[1:]).read_text()
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="xinfer: constrained generation with adapters")
    parser.add_argument("--model", default=None, help="HuggingFace model ID or local path")
    parser.add_argument(
        "--kind",
        default=ModelKind.NORMAL.value,
        choices=[kind.value for kind in ModelKind],
        help="model kind (default: normal)",
    )
    parser.add_argument("--arch", default="llama", choices=sorted(ARCHITECTURES))
    parser.add_argument("--xlora-model-id", default=None, help="adapter repo ID or local path")
    parser.add_argument("--order", default=None, help="adapter ordering JSON file")
    parser.add_argument("--tgt-non-granular-index", type=int, default=None)
    parser.add_argument("--no-kv-cache", action="store_true", default=False)
    parser.add_argument("--repeat-last-n", type=int, default=64)
    parser.add_argument("--chat-template", default=None, help="override tokenizer_config.json")
    parser.add_argument("--tokenizer-json", default=None, help="override tokenizer.json")
    parser.add_argument("--revision", default=None)
    parser.add_argument(
        "--token-source",
        default="cache",
        help="literal:<token>, env:<VAR>, path:<file>, cache, or none (default: cache)",
    )
    parser.add_argument("--dtype", default=None, choices=sorted(_DTYPES))
    parser.add_argument("--device", default="cuda" if torch.cuda.is_available() else "cpu")

    constraint = parser.add_mutually_exclusive_group()
    constraint.add_argument("--regex", default=None, help="constrain output to a regex")
    constraint.add_argument(
        "--json-schema", default=None, help="constrain output to a JSON schema (@file to read)"
    )
    constraint.add_argument(
        "--grammar", default=None, help="constrain output to a GBNF grammar (@file to read)"
    )

    parser.add_argument("--temperature", type=float, default=1.0)
    parser.add_argument("--top-p", type=float, default=1.0)
    parser.add_argument("--top-k", type=int, default=None)
    parser.add_argument("--repetition-penalty", type=float, default=1.0)
    parser.add_argument("--frequency-penalty", type=float, default=0.0)
    parser.add_argument("--presence-penalty", type=float, default=0.0)
    parser.add_argument("--max-new-tokens", type=int, default=128)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--stop", action="append", default=None, help="stop string (repeatable)")

    prompt = parser.add_mutually_exclusive_group(required=True)
    prompt.add_argument("--prompt", default=None, help="raw prompt text")
    prompt.add_argument(
        "--chat", default=None, help="user message, rendered with the chat template"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level (default: INFO)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        loader = Loader(
            LoaderConfig(
                model_id=args.model,
                kind=ModelKind(args.kind),
                architecture=args.arch,
                repeat_last_n=args.repeat_last_n,
                xlora_model_id=args.xlora_model_id,
                xlora_order_path=args.order,
                no_kv_cache=args.no_kv_cache,
                chat_template=args.chat_template,
                tokenizer_json=args.tokenizer_json,
                tgt_non_granular_index=args.tgt_non_granular_index,
            )
        )
        handle = loader.load_model(
            revision=args.revision,
            token_source=TokenSource.parse(args.token_source),
            dtype=_DTYPES[args.dtype] if args.dtype else None,
            device=args.device,
        )
        params = SamplingParams(
            temperature=args.temperature,
            top_p=args.top_p,
            top_k=args.top_k,
            repetition_penalty=args.repetition_penalty,
            frequency_penalty=args.frequency_penalty,
            presence_penalty=args.presence_penalty,
            max_new_tokens=args.max_new_tokens,
            stop=args.stop,
            seed=args.seed,
        )
        recognizer = build_recognizer(
            regex=args.regex,
            json_schema=_read_arg(args.json_schema),
            grammar=_read_arg(args.grammar),
        )

        with handle.lock() as pipeline:
            tokenizer = pipeline.tokenizer()
            if args.chat is not None:
                text = pipeline.get_chat_template().render(
                    [{"role": "user", "content": args.chat}], add_generation_prompt=True
                )
                prompt_ids = tokenizer.encode(text, add_special_tokens=False)
            else:
                prompt_ids = tokenizer.encode(args.prompt)

        result = generate(handle, prompt_ids, params, recognizer=recognizer)
    except (XInferError, TemplateError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1

    print(result.text)
    logger.info(
        "%d prompt tokens, %d generated (%s) in %.2fs",
        result.prompt_tokens,
        len(result.token_ids),
        result.finish_reason,
        result.timing.total_time_s,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
