"""Chat orchestration over an inference session (single-flight).

`ChatController` is the surface a front-end binds to:
- plain state queries (`history`, `current_result`, `is_model_loaded`, ...)
- async commands (`send_prompt`, `load_model`, `encode_debug`, ...)
- enablement predicates (`can_send_prompt`, `can_load_model`, ...)
- `subscribe()` for property/history/error notifications

Errors never escape a command: they are logged and delivered to listeners as
`ErrorNotice` events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from typing import Callable

from .errors import GennyError, GenerationCancelled, ParseError
from .generation import CancellationToken, GenerationLoop
from .search_config import SearchConfig
from .session import InferenceSession
from .tokenizer import first_sequence
from .types import (
    ControllerEvent,
    ConversationEntry,
    ErrorNotice,
    GenerationStats,
    HistoryChanged,
    PropertyChanged,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ControllerEvent], None]

MODEL_LOAD_ERROR = "Model Load Error"
INFERENCE_ERROR = "Inference Error"
ENCODE_ERROR = "Tokenizer Encode Error"
DECODE_ERROR = "Tokenizer Decode Error"

_TOKEN_ID_RE = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class ControllerConfig:
    """Controller-wide defaults."""

    default_model_path: str | None = None
    cancel_marker: str = "\n\n[Operation Canceled]"


def parse_token_ids(text: str) -> list[int]:
    """Parse a comma-separated token id list, e.g. ``"1, 2,3"``.

    Empty entries are dropped; anything else that is not an integer raises
    ParseError.
    """
    ids: list[int] = []
    for raw in (text or "").split(","):
        entry = raw.strip()
        if not entry:
            continue
        if not _TOKEN_ID_RE.fullmatch(entry):
            raise ParseError(f"Invalid token id {entry!r}: expected an integer.")
        ids.append(int(entry))
    return ids


class ChatController:
    """User-visible chat operations and conversation history."""

    def __init__(
        self,
        session: InferenceSession,
        *,
        config: ControllerConfig | None = None,
        search_config: SearchConfig | None = None,
    ) -> None:
        self._session = session
        self._config = config or ControllerConfig()
        self._generation = GenerationLoop(session)
        self._listeners: list[Listener] = []

        self._model_path = self._config.default_model_path or ""
        self._prompt = ""
        self._search_config = search_config or SearchConfig()
        self._is_model_loaded = session.is_loaded
        self._history: list[ConversationEntry] = []
        self._current_result: ConversationEntry | None = None
        self._tokenizer_encode_result: str | None = None
        self._tokenizer_decode_result: str | None = None
        self._last_stats: GenerationStats | None = None
        self._last_error: ErrorNotice | None = None

        self._cancellation: CancellationToken | None = None
        self._generating = False
        self._idle = asyncio.Event()
        self._idle.set()

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: ControllerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Controller listener failed on %r", event)

    def _changed(self, name: str) -> None:
        self._emit(PropertyChanged(name))

    def _notify_error(self, operation: str, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        logger.warning("%s: %s", operation, message)
        notice = ErrorNotice(operation=operation, message=message, error=exc)
        self._last_error = notice
        self._emit(notice)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def session(self) -> InferenceSession:
        return self._session

    @property
    def model_path(self) -> str:
        return self._model_path

    @model_path.setter
    def model_path(self, value: str | None) -> None:
        self._model_path = value or ""
        self._changed("model_path")

    @property
    def prompt(self) -> str:
        return self._prompt

    @prompt.setter
    def prompt(self, value: str | None) -> None:
        self._prompt = value or ""
        self._changed("prompt")

    @property
    def search_config(self) -> SearchConfig:
        return self._search_config

    @search_config.setter
    def search_config(self, value: SearchConfig) -> None:
        self._search_config = value
        self._changed("search_config")

    def update_search_config(self, **overrides: object) -> SearchConfig:
        """Replace the search config with validated overrides (ValueError if invalid)."""
        self.search_config = self._search_config.merged(dict(overrides))
        return self._search_config

    @property
    def is_model_loaded(self) -> bool:
        return self._is_model_loaded

    def _set_model_loaded(self, value: bool) -> None:
        self._is_model_loaded = value
        self._changed("is_model_loaded")

    @property
    def is_generating(self) -> bool:
        return self._generating

    def _set_generating(self, value: bool) -> None:
        self._generating = value
        if value:
            self._idle.clear()
        else:
            self._idle.set()
        self._changed("is_generating")

    @property
    def history(self) -> tuple[ConversationEntry, ...]:
        return tuple(self._history)

    @property
    def current_result(self) -> ConversationEntry | None:
        return self._current_result

    def _set_current_result(self, entry: ConversationEntry | None) -> None:
        self._current_result = entry
        self._changed("current_result")

    @property
    def tokenizer_encode_result(self) -> str | None:
        return self._tokenizer_encode_result

    @property
    def tokenizer_decode_result(self) -> str | None:
        return self._tokenizer_decode_result

    @property
    def last_stats(self) -> GenerationStats | None:
        return self._last_stats

    @property
    def last_error(self) -> ErrorNotice | None:
        return self._last_error

    # -------------------------------------------------------------------------
    # Enablement predicates
    # -------------------------------------------------------------------------

    def can_send_prompt(self) -> bool:
        return bool(self._prompt.strip()) and not self._generating

    def can_load_model(self) -> bool:
        return bool(self._model_path.strip())

    def can_cancel(self) -> bool:
        return self._cancellation is not None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def clear_history(self) -> None:
        """Empty the history. Allowed while generating."""
        self._history.clear()
        self._emit(HistoryChanged("clear"))

    def cancel(self) -> None:
        """Request cancellation of the in-flight generation; no-op otherwise."""
        if self._cancellation is not None:
            logger.debug("Cancellation requested")
            self._cancellation.cancel()

    async def send_prompt(self, text: str | None = None) -> None:
        """Append the prompt to history and stream the reply into a new entry.

        No-op when the prompt is blank or a generation is already in flight;
        a rejected call leaves `prompt` untouched. Cancelling the calling task
        cancels the generation and waits for the runtime to let go of the model.
        """
        if self._generating:
            return
        if text is not None:
            self.prompt = text
        if not self.can_send_prompt():
            return
        if not self._session.is_loaded:
            self._notify_error(INFERENCE_ERROR, GennyError("No model is loaded."))
            return

        # Claim the single flight before the first suspension point.
        cancellation = CancellationToken()
        self._cancellation = cancellation
        self._set_generating(True)

        user_input = ConversationEntry(content=self._prompt, is_user_input=True)
        self.prompt = ""
        self._set_current_result(None)
        self._append(user_input)

        stream = self._generation.astream(user_input.content, self._search_config, cancellation)
        try:
            async with contextlib.aclosing(stream):
                async for fragment in stream:
                    if self._current_result is None:
                        # Skip whitespace the model emits before any real content.
                        if not fragment.text.strip():
                            continue
                        self._start_result()
                    self._current_result.append(fragment.text)
                    self._changed("current_result")
        except GenerationCancelled:
            self._append_cancel_marker()
        except asyncio.CancelledError:
            self._append_cancel_marker()
            raise
        except Exception as exc:
            self._notify_error(INFERENCE_ERROR, exc)
        finally:
            self._last_stats = self._generation.stats
            self._cancellation = None
            self._set_generating(False)

    async def load_model(self, path: str | None = None) -> bool:
        """Load the model at `path` (or `model_path`), replacing any loaded model."""
        if path is not None:
            self.model_path = path
        if not self.can_load_model():
            return False

        await self._stop_generation()
        await self._session.aunload()
        self._set_model_loaded(False)
        try:
            await self._session.aload(self._model_path.strip())
        except Exception as exc:
            self._notify_error(MODEL_LOAD_ERROR, exc)
            return False
        self._set_model_loaded(True)
        return True

    async def unload_model(self) -> None:
        await self._stop_generation()
        await self._session.aunload()
        self._set_model_loaded(False)

    async def encode_debug(self, text: str) -> str | None:
        """Tokenize `text` and publish the ids as ``"1, 2, 3"``."""
        self._set_encode_result(None)
        try:
            sequences = await asyncio.to_thread(self._session.tokenizer.encode, text)
            self._set_encode_result(", ".join(str(t) for t in first_sequence(sequences)))
        except Exception as exc:
            self._notify_error(ENCODE_ERROR, exc)
        return self._tokenizer_encode_result

    async def decode_debug(self, text: str) -> str | None:
        """Decode a comma-separated id list and publish the text."""
        self._set_decode_result(None)
        try:
            token_ids = parse_token_ids(text)
            self._set_decode_result(await asyncio.to_thread(self._session.tokenizer.decode, token_ids))
        except Exception as exc:
            self._notify_error(DECODE_ERROR, exc)
        return self._tokenizer_decode_result

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _append(self, entry: ConversationEntry) -> None:
        self._history.append(entry)
        self._emit(HistoryChanged("append", len(self._history) - 1))

    def _start_result(self, content: str = "") -> None:
        entry = ConversationEntry(content=content, is_user_input=False)
        self._set_current_result(entry)
        self._append(entry)

    def _append_cancel_marker(self) -> None:
        if self._current_result is None:
            self._start_result(self._config.cancel_marker.strip())
        else:
            self._current_result.append(self._config.cancel_marker)
        self._changed("current_result")

    def _set_encode_result(self, value: str | None) -> None:
        self._tokenizer_encode_result = value
        self._changed("tokenizer_encode_result")

    def _set_decode_result(self, value: str | None) -> None:
        self._tokenizer_decode_result = value
        self._changed("tokenizer_decode_result")

    async def _stop_generation(self) -> None:
        """Cancel the in-flight generation and wait until it has let go of the model."""
        if self._generating:
            self.cancel()
            await self._idle.wait()
