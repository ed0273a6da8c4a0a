"""Tokenizer operations against a loaded runtime tokenizer."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from .backends.base import RuntimeBackend
from .errors import DecodeError, EncodeError

logger = logging.getLogger(__name__)


class TokenizerStream:
    """Incremental decode state for one generation.

    The runtime stream remembers earlier tokens so `decode_one` returns the
    correctly merged text for each new token (sub-words, multi-byte chars).
    """

    def __init__(self, native: Any) -> None:
        self._native = native

    def decode_one(self, token_id: int) -> str:
        if self._native is None:
            raise DecodeError("Tokenizer stream is closed.")
        try:
            return self._native.decode(int(token_id))
        except Exception as exc:
            raise DecodeError(f"Failed to decode token {token_id}: {exc}") from exc

    def flush(self) -> str:
        """Text the runtime stream still holds back at end of generation.

        Runtimes whose streams cannot hold text back have no `flush`; they
        yield "".
        """
        if self._native is None:
            raise DecodeError("Tokenizer stream is closed.")
        flush = getattr(self._native, "flush", None)
        if not callable(flush):
            return ""
        try:
            return flush()
        except Exception as exc:
            raise DecodeError(f"Failed to flush tokenizer stream: {exc}") from exc


class TokenizerSession:
    """Encode/decode wrapper with the engine's error taxonomy.

    Holds no thread affinity; every method may be called from a worker.
    """

    def __init__(self, backend: RuntimeBackend, native: Any | None = None) -> None:
        self._backend = backend
        self._native = native

    @property
    def is_loaded(self) -> bool:
        return self._native is not None

    def encode(self, text: str) -> Any:
        """Tokenize `text` into runtime sequences."""
        if self._native is None:
            raise EncodeError("Tokenizer is not loaded.")
        try:
            return self._native.encode(text)
        except Exception as exc:
            raise EncodeError(f"Failed to encode text: {exc}") from exc

    def decode(self, token_ids: Sequence[int]) -> str:
        """Decode an arbitrary token id array."""
        if self._native is None:
            raise DecodeError("Tokenizer is not loaded.")
        try:
            ids = [int(t) for t in token_ids]
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed token ids: {exc}") from exc
        try:
            return self._native.decode(ids)
        except Exception as exc:
            raise DecodeError(f"Failed to decode tokens: {exc}") from exc

    @contextmanager
    def open_stream(self) -> Iterator[TokenizerStream]:
        """Open an incremental-decode stream; it is released on exit."""
        if self._native is None:
            raise DecodeError("Tokenizer is not loaded.")
        native_stream = self._native.create_stream()
        stream = TokenizerStream(native_stream)
        try:
            yield stream
        finally:
            stream._native = None
            try:
                self._backend.release(native_stream)
            except Exception:
                logger.warning("Failed to release tokenizer stream", exc_info=True)

    def close(self) -> None:
        """Detach from the runtime tokenizer (the session releases the handle)."""
        self._native = None


def first_sequence(sequences: Any) -> list[int]:
    """Return slot 0 of a runtime Sequences value as plain ints.

    Accepts a flat id list/array or a batch (list of lists / 2-D array).
    """
    rows = list(sequences)
    if not rows:
        return []
    head = rows[0]
    if hasattr(head, "__len__") and not isinstance(head, (str, bytes)):
        return [int(t) for t in head]
    return [int(t) for t in rows]
