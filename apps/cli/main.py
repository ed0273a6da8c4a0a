"""`genny`: streaming chat over a local model folder.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Sequence

from apps.cli.chat_repl import chat_repl
from apps.cli.state import CliState, StateError, load_state, search_options_diff
from genny.engine.controller import ChatController, ControllerConfig
from genny.engine.registry import get_backend, list_backends
from genny.engine.search_config import SearchConfig
from genny.engine.session import InferenceSession
from genny.engine.types import ErrorNotice

logger = logging.getLogger(__name__)

MODEL_PATH_ENV = "GENNY_MODEL_PATH"


def _add_model_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--model",
        default=None,
        help=f"Model folder (default: ${MODEL_PATH_ENV}, then the last loaded model)",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="genny", description="Streaming chat over a local model folder")
    p.add_argument(
        "--backend",
        default=None,
        choices=list_backends(),
        help="Inference runtime backend (default: saved state, then onnx)",
    )
    p.add_argument("--device", default=None, help="Torch device for the transformers backend")
    p.add_argument(
        "--dtype",
        default=None,
        choices=["float16", "bfloat16", "float32"],
        help="Torch dtype for the transformers backend (default: model's own)",
    )
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: %(default)s)",
    )
    p.add_argument(
        "--no-state",
        action="store_true",
        help="Do not read or write ~/.config/genny/state.json",
    )

    sub = p.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Chat REPL (default)")
    _add_model_args(chat)
    chat.add_argument("--max-length", type=int, default=None, help="Max total sequence length in tokens")
    chat.add_argument("--min-length", type=int, default=None, help="Min total sequence length in tokens")
    chat.add_argument("--temperature", type=float, default=None, help="Sampling temperature")
    chat.add_argument("--top-k", type=int, default=None, help="Top-k sampling")
    chat.add_argument("--top-p", type=float, default=None, help="Top-p (nucleus) sampling")
    chat.add_argument("--repetition-penalty", type=float, default=None, help="Repetition penalty (>= 1)")
    sample_group = chat.add_mutually_exclusive_group()
    sample_group.add_argument(
        "--do-sample",
        dest="do_sample",
        action="store_true",
        help="Sample the next token (top-k/top-p)",
    )
    sample_group.add_argument(
        "--greedy",
        dest="do_sample",
        action="store_false",
        help="Always pick the most likely token",
    )
    chat.set_defaults(do_sample=None)

    encode = sub.add_parser("encode", help="Print token ids for TEXT")
    _add_model_args(encode)
    encode.add_argument("text", help="Text to tokenize")

    decode = sub.add_parser("decode", help="Decode comma-separated token IDS")
    _add_model_args(decode)
    decode.add_argument("ids", help="Token ids, e.g. '1, 2, 3'")

    return p


def _search_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in ("max_length", "min_length", "temperature", "top_k", "top_p", "repetition_penalty"):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    do_sample = getattr(args, "do_sample", None)
    if do_sample is not None:
        overrides["do_sample"] = do_sample
        overrides["sampling_mode"] = "both" if do_sample else "greedy"
    return overrides


def _resolve_model_path(args: argparse.Namespace, state: CliState) -> str | None:
    return getattr(args, "model", None) or os.environ.get(MODEL_PATH_ENV) or state.model_path


def _build_controller(
    args: argparse.Namespace,
    state: CliState,
    search_config: SearchConfig,
) -> ChatController:
    backend_name = args.backend or state.backend
    kwargs: dict[str, Any] = {}
    if backend_name == "transformers":
        kwargs = {"device": args.device, "dtype": args.dtype}
    backend = get_backend(backend_name, **kwargs)
    return ChatController(
        InferenceSession(backend),
        config=ControllerConfig(default_model_path=_resolve_model_path(args, state)),
        search_config=search_config,
    )


def _run_debug_command(controller: ChatController, command: str, payload: str) -> int:
    errors: list[ErrorNotice] = []
    controller.subscribe(lambda event: errors.append(event) if isinstance(event, ErrorNotice) else None)

    async def run() -> str | None:
        if not await controller.load_model():
            return None
        try:
            if command == "encode":
                return await controller.encode_debug(payload)
            return await controller.decode_debug(payload)
        finally:
            await controller.unload_model()

    if not controller.can_load_model():
        print(f"error: no model folder (use --model or ${MODEL_PATH_ENV})", file=sys.stderr)
        return 2

    result = asyncio.run(run())
    for notice in errors:
        print(f"{notice.operation}: {notice.message}", file=sys.stderr)
    if result is None:
        return 1
    print(result)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    persist = not args.no_state
    try:
        state = load_state() if persist else CliState()
    except StateError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        search_config = state.search_config().merged(_search_overrides(args) or None)
    except ValueError as exc:
        parser.error(str(exc))
        return 2

    try:
        controller = _build_controller(args, state, search_config)
    except (ImportError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.backend:
        state.backend = args.backend
    state.search_options = search_options_diff(search_config)

    # `genny` defaults to `genny chat`.
    command = args.command or "chat"

    if command == "chat":
        return chat_repl(controller=controller, state=state, persist=persist)
    if command == "encode":
        return _run_debug_command(controller, "encode", args.text)
    if command == "decode":
        return _run_debug_command(controller, "decode", args.ids)
    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
