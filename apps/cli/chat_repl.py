from __future__ import annotations

import asyncio
import atexit
import shlex
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Coroutine

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback

from apps.cli.output import format_table
from apps.cli.state import CliState, config_dir, save_state, search_options_diff
from genny.engine.controller import ChatController
from genny.engine.types import ControllerEvent, ConversationEntry, ErrorNotice, GenerationStats, PropertyChanged


_HISTORY_LENGTH = 1000

# Slash commands offered by tab completion.
_REPL_COMMANDS = (
    "/help", "/exit", "/clear", "/history", "/load", "/unload",
    "/encode", "/decode", "/set", "/options", "/stats", "/info",
)


def _history_path() -> Path:
    return config_dir() / "chat_history"


def _complete_command(text: str, index: int) -> str | None:
    candidates = [c for c in _REPL_COMMANDS if c.startswith(text)] if text.startswith("/") else []
    return candidates[index] if index < len(candidates) else None


def _init_readline() -> None:
    """Persistent input history plus slash-command completion (no-op without readline)."""
    if readline is None:
        return
    path = _history_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        readline.read_history_file(str(path))
    readline.set_history_length(_HISTORY_LENGTH)
    atexit.register(readline.write_history_file, str(path))

    readline.set_completer(_complete_command)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")


def _cmd_help() -> None:
    print(
        "\n".join(
            [
                "commands:",
                "  /help",
                "  /exit                exit",
                "  /clear               clear conversation history",
                "  /history             show the conversation",
                "  /load [path]         load a model folder (default: current model path)",
                "  /unload              unload the model",
                "  /encode <text>       show token ids for text",
                "  /decode <ids>        decode comma-separated token ids",
                "  /set key=value ...   change search options (see /options)",
                "  /options             show search options",
                "  /stats               show last generation metrics",
                "  /info                show model/session info",
                "Ctrl+C while generating cancels the reply.",
            ]
        )
    )


def _format_metrics(stats: GenerationStats) -> str:
    parts: list[str] = []
    if stats.timing.first_token_s is not None:
        parts.append(f"ttft={stats.timing.first_token_s:.3f}s")
    if stats.timing.tok_per_s is not None:
        parts.append(f"tok/s={stats.timing.tok_per_s:.2f}")
    parts.append(f"tokens={stats.usage.prompt_tokens}+{stats.usage.completion_tokens}")
    parts.append(f"finish={stats.finish_reason}")
    if stats.timing.total_s is not None:
        parts.append(f"wall={stats.timing.total_s:.3f}s")
    return " ".join(parts)


@dataclass
class _StreamPrinter:
    """Prints the growing assistant entry as fragments arrive."""

    controller: ChatController
    _entry: ConversationEntry | None = None
    _printed: int = 0
    errors: list[ErrorNotice] = field(default_factory=list)

    def __call__(self, event: ControllerEvent) -> None:
        if isinstance(event, ErrorNotice):
            self.errors.append(event)
            print(f"\n{event.operation}: {event.message}", file=sys.stderr)
            return
        if not isinstance(event, PropertyChanged) or event.name != "current_result":
            return
        entry = self.controller.current_result
        if entry is None:
            return
        if entry is not self._entry:
            self._entry = entry
            self._printed = 0
        delta = entry.content[self._printed :]
        if delta:
            sys.stdout.write(delta)
            sys.stdout.flush()
            self._printed = len(entry.content)


@dataclass
class ReplContext:
    controller: ChatController
    state: CliState
    persist: bool = True
    loop: asyncio.AbstractEventLoop = field(default_factory=asyncio.new_event_loop)

    def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        return self.loop.run_until_complete(coro)

    def save(self) -> None:
        if self.persist:
            save_state(self.state)


def _run_turn(ctx: ReplContext, text: str) -> None:
    """Send one prompt; Ctrl+C cancels the generation instead of exiting."""
    loop = ctx.loop
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, ctx.controller.cancel)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        installed = False

    task = loop.create_task(ctx.controller.send_prompt(text))
    try:
        try:
            loop.run_until_complete(task)
        except KeyboardInterrupt:
            ctx.controller.cancel()
            loop.run_until_complete(task)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    sys.stdout.write("\n")
    sys.stdout.flush()


def _cmd_load(ctx: ReplContext, path: str | None) -> None:
    controller = ctx.controller
    target = path or controller.model_path
    if not target.strip():
        print("usage: /load <model folder>", file=sys.stderr)
        return
    print(f"loading {target} ...")
    if ctx.run(controller.load_model(target)):
        print("model loaded")
        ctx.state.model_path = controller.model_path
        ctx.save()


def _cmd_set(ctx: ReplContext, assignments: list[str]) -> None:
    overrides: dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            print(f"invalid assignment {item!r} (expected key=value)", file=sys.stderr)
            return
        overrides[key.strip().replace("-", "_")] = value.strip()
    try:
        config = ctx.controller.update_search_config(**overrides)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return
    ctx.state.search_options = search_options_diff(config)
    ctx.save()
    print("ok")


def _cmd_options(ctx: ReplContext) -> None:
    rows = [(k, str(v)) for k, v in ctx.controller.search_config.to_dict().items()]
    print(format_table(["option", "value"], rows))


def _cmd_history(ctx: ReplContext) -> None:
    history = ctx.controller.history
    if not history:
        print("(empty)")
        return
    for i, entry in enumerate(history):
        role = "user" if entry.is_user_input else "assistant"
        print(f"[{i}] {role}: {entry.content}")


def _cmd_info(ctx: ReplContext) -> None:
    info = ctx.controller.session.info()
    print(format_table(["key", "value"], [(str(k), str(v)) for k, v in info.items()]))


def handle_line(ctx: ReplContext, raw: str) -> bool:
    """Handle one REPL line. Returns False when the REPL should exit."""
    line = raw.strip()
    if not line:
        return True

    if not line.startswith("/"):
        controller = ctx.controller
        if not controller.is_model_loaded:
            print("no model loaded (use /load <path>)", file=sys.stderr)
            return True
        _run_turn(ctx, line)
        return True

    cmd, _, rest = line[1:].partition(" ")
    rest = rest.strip()
    if cmd in {"exit", "quit"}:
        return False
    if cmd == "help":
        _cmd_help()
    elif cmd == "clear":
        ctx.controller.clear_history()
        print("cleared")
    elif cmd == "history":
        _cmd_history(ctx)
    elif cmd == "load":
        _cmd_load(ctx, rest or None)
    elif cmd == "unload":
        ctx.run(ctx.controller.unload_model())
        print("model unloaded")
    elif cmd == "encode":
        result = ctx.run(ctx.controller.encode_debug(rest))
        if result is not None:
            print(result)
    elif cmd == "decode":
        result = ctx.run(ctx.controller.decode_debug(rest))
        if result is not None:
            print(result)
    elif cmd == "set":
        try:
            parts = shlex.split(rest)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return True
        if not parts:
            print("usage: /set key=value ...", file=sys.stderr)
        else:
            _cmd_set(ctx, parts)
    elif cmd == "options":
        _cmd_options(ctx)
    elif cmd == "stats":
        stats = ctx.controller.last_stats
        print(_format_metrics(stats) if stats is not None else "(no generation yet)")
    elif cmd == "info":
        _cmd_info(ctx)
    else:
        print(f"unknown command: /{cmd} (try /help)", file=sys.stderr)
    return True


def chat_repl(
    *,
    controller: ChatController,
    state: CliState,
    persist: bool = True,
    load_on_start: bool = True,
) -> int:
    _init_readline()

    ctx = ReplContext(controller=controller, state=state, persist=persist)
    unsubscribe = controller.subscribe(_StreamPrinter(controller))
    try:
        if load_on_start and controller.can_load_model():
            _cmd_load(ctx, None)
        print("type /help for commands")

        while True:
            try:
                raw = input("genny> ")
            except EOFError:
                print()
                return 0
            except KeyboardInterrupt:
                print("^C")
                continue

            if not handle_line(ctx, raw):
                return 0
    finally:
        unsubscribe()
        ctx.run(controller.unload_model())
        ctx.loop.close()
