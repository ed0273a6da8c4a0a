"""Model/tokenizer ownership and lifecycle.

`InferenceSession` owns at most one loaded model and the tokenizer derived
from it. Nothing else holds the handles; generation borrows them through
`model` / `tokenizer` while the session is GENERATING.

State machine:

    UNLOADED -> LOADING -> READY <-> GENERATING
    READY -> UNLOADING -> UNLOADED
    LOADING -> ERROR -> UNLOADED       (failed load, resolved immediately)
    GENERATING -> ERROR                (failed generation; accepts new work)

Single-flight generation is enforced by the controller. The session lock is
held for the whole of a generation, so load/unload wait for it to finish and
never release the model under a running generator.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from typing import Any

from .backends.base import RuntimeBackend
from .errors import ModelLoadError
from .tokenizer import TokenizerSession

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    UNLOADING = "unloading"
    ERROR = "error"


class InferenceSession:
    """Owns the model handle and tokenizer handle of one runtime backend."""

    def __init__(self, backend: RuntimeBackend) -> None:
        self._backend = backend
        self._model: Any = None
        self._tokenizer_handle: Any = None
        self._tokenizer = TokenizerSession(backend)
        self._model_path: str | None = None
        self._state = SessionState.UNLOADED
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def backend(self) -> RuntimeBackend:
        return self._backend

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._model is not None and self._state in (
            SessionState.READY,
            SessionState.GENERATING,
            SessionState.ERROR,
        )

    @property
    def model(self) -> Any:
        """The loaded model handle (borrowed; never release it directly)."""
        return self._model

    @property
    def tokenizer(self) -> TokenizerSession:
        return self._tokenizer

    @property
    def model_path(self) -> str | None:
        return self._model_path

    def info(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self._state.value,
            "model_path": self._model_path,
            "loaded": self._model is not None,
        }
        if self._model is not None:
            data.update(self._backend.info(self._model))
        return data

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str) -> None:
        """Load a model folder, replacing any model already loaded.

        Blocking; use `aload()` from the event loop. Waits for a running
        generation to finish before the old model is released.

        Raises:
            ModelLoadError: The runtime rejected the folder. The session is
                left UNLOADED and can be retried.
        """
        with self._lock:
            self._unload_locked()

            self._state = SessionState.LOADING
            logger.info("Loading model from %s (backend=%s)", model_path, self._backend.name)
            model = None
            try:
                model = self._backend.load_model(model_path)
                tokenizer_handle = self._backend.create_tokenizer(model)
            except Exception as exc:
                self._state = SessionState.ERROR
                if model is not None:
                    self._release(model, "model")
                self._state = SessionState.UNLOADED
                raise ModelLoadError(model_path, str(exc) or exc.__class__.__name__) from exc

            self._model = model
            self._tokenizer_handle = tokenizer_handle
            self._tokenizer = TokenizerSession(self._backend, tokenizer_handle)
            self._model_path = model_path
            self._state = SessionState.READY
            logger.info("Model loaded: %s", model_path)

    async def aload(self, model_path: str) -> None:
        """Run `load()` on a worker thread."""
        await asyncio.to_thread(self.load, model_path)

    def unload(self) -> None:
        """Release the tokenizer and model. Idempotent; never raises.

        Blocks while a generation is running; use `aunload()` from the event loop.
        """
        with self._lock:
            self._unload_locked()

    async def aunload(self) -> None:
        """Run `unload()` on a worker thread."""
        await asyncio.to_thread(self.unload)

    # -------------------------------------------------------------------------
    # Generation bracketing
    # -------------------------------------------------------------------------

    def begin_generation(self) -> None:
        """Enter GENERATING and hold the session lock until `end_generation()`.

        Raises RuntimeError unless READY (or recovered ERROR), or when another
        generation still holds the session.
        """
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("Cannot start generation: another generation is still running.")
        if self._model is None or self._state not in (SessionState.READY, SessionState.ERROR):
            self._lock.release()
            raise RuntimeError(f"Cannot start generation while session is {self._state.value}.")
        self._state = SessionState.GENERATING

    def end_generation(self, *, failed: bool = False) -> None:
        if self._state is not SessionState.GENERATING:
            return
        self._state = SessionState.ERROR if failed else SessionState.READY
        self._lock.release()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _unload_locked(self) -> None:
        if self._model is None and self._tokenizer_handle is None:
            self._state = SessionState.UNLOADED
            return

        self._state = SessionState.UNLOADING
        self._tokenizer.close()
        # The tokenizer is derived from the model and must go first.
        if self._tokenizer_handle is not None:
            self._release(self._tokenizer_handle, "tokenizer")
        if self._model is not None:
            self._release(self._model, "model")

        self._tokenizer_handle = None
        self._model = None
        self._tokenizer = TokenizerSession(self._backend)
        logger.info("Model unloaded: %s", self._model_path)
        self._model_path = None
        self._state = SessionState.UNLOADED

    def _release(self, resource: Any, what: str) -> None:
        try:
            self._backend.release(resource)
        except Exception:
            logger.warning("Failed to release %s", what, exc_info=True)
