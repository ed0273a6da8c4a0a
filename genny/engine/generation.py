"""Incremental token generation (single-sequence, cancellable).

This module turns a prompt into a lazy, ordered sequence of decoded token
fragments:
- `GenerationLoop.generate()` is the synchronous step loop over the runtime
  generator; every runtime resource it opens is released on exit.
- `GenerationLoop.astream()` runs that loop on a worker thread and hands the
  fragments to an asyncio consumer in order.

Cancellation is cooperative and checked once per step. A cancelled loop
raises `GenerationCancelled` so callers can tell it apart from a natural end.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterator

from .errors import GennyError, GenerationCancelled, UnclassifiedRuntimeError
from .search_config import SearchConfig
from .session import InferenceSession
from .tokenizer import first_sequence
from .types import FinishReason, GenerationStats, Timing, TokenFragment, Usage

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation flag shared between the caller and one generation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("Operation Canceled")


@dataclass(frozen=True)
class _End:
    error: BaseException | None = None


class GenerationLoop:
    """Drives the runtime generator of an `InferenceSession` step by step.

    Each `generate()` call creates its own generator params, tokenizer stream
    and generator; a call is not restartable.
    """

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        self._stats: GenerationStats | None = None

    @property
    def stats(self) -> GenerationStats | None:
        """Stats of the most recently finished call."""
        return self._stats

    def generate(
        self,
        prompt: str,
        config: SearchConfig,
        cancellation: CancellationToken | None = None,
    ) -> Iterator[TokenFragment]:
        """Yield one fragment per generated token, in step order.

        The last fragment also carries any text the tokenizer stream was still
        holding back (e.g. an incomplete multi-byte character).

        Raises:
            EncodeError: The prompt could not be tokenized (before any fragment).
            GenerationCancelled: `cancellation` was set between two steps.
            UnclassifiedRuntimeError: Any other runtime failure.
        """
        cancellation = cancellation or CancellationToken()
        session = self._session
        backend = session.backend
        greedy = not config.uses_sampling

        session.begin_generation()
        started = time.monotonic()
        first_token_at: float | None = None
        prompt_tokens = 0
        completion_tokens = 0
        finish_reason: FinishReason = "error"

        try:
            cancellation.raise_if_cancelled()
            sequences = session.tokenizer.encode(prompt)
            prompt_tokens = len(first_sequence(sequences))
            model = session.model

            params = backend.create_generator_params(model)
            try:
                config.apply_to(params)
                params.set_input_sequences(sequences)

                with session.tokenizer.open_stream() as stream:
                    generator = backend.create_generator(model, params)
                    try:
                        done = generator.is_done()
                        while not done:
                            cancellation.raise_if_cancelled()

                            token_id = self._step(generator, greedy=greedy)
                            text = stream.decode_one(token_id)
                            done = generator.is_done()
                            if done:
                                # Last token: emit whatever the stream still holds back.
                                text += stream.flush()

                            completion_tokens += 1
                            if first_token_at is None:
                                first_token_at = time.monotonic()
                            yield TokenFragment(token_id=token_id, text=text)
                    finally:
                        self._release(generator, "generator")
            finally:
                self._release(params, "generator params")

            finish_reason = "stop"
        except GeneratorExit:
            # Consumer closed the iterator early.
            finish_reason = "cancelled"
            raise
        except GenerationCancelled:
            finish_reason = "cancelled"
            raise
        except GennyError:
            raise
        except Exception as exc:
            raise UnclassifiedRuntimeError(str(exc) or exc.__class__.__name__) from exc
        finally:
            session.end_generation(failed=finish_reason == "error")
            self._stats = _build_stats(
                finish_reason,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                started=started,
                first_token_at=first_token_at,
            )
            logger.info(
                "Generation %s: prompt_tokens=%d completion_tokens=%d tok/s=%s",
                finish_reason,
                prompt_tokens,
                completion_tokens,
                "n/a" if self._stats.timing.tok_per_s is None else f"{self._stats.timing.tok_per_s:.1f}",
            )

    async def astream(
        self,
        prompt: str,
        config: SearchConfig,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[TokenFragment]:
        """Async iterator over `generate()` run on a background worker thread.

        The terminal outcome of the worker (cancellation or error) is re-raised
        in the consumer after every fragment produced before it was delivered.
        Closing the iterator early (or cancelling the consuming task) stops the
        worker and waits until it has released its runtime resources.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[TokenFragment | _End] = asyncio.Queue()
        finished: asyncio.Future[None] = loop.create_future()
        cancel = cancellation or CancellationToken()

        def mark_finished() -> None:
            if not finished.done():
                finished.set_result(None)

        def worker() -> None:
            error: BaseException | None = None
            try:
                for fragment in self.generate(prompt, config, cancel):
                    loop.call_soon_threadsafe(queue.put_nowait, fragment)
            except Exception as exc:
                error = exc
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _End(error))
                loop.call_soon_threadsafe(mark_finished)

        thread = threading.Thread(target=worker, name=f"genny-gen-{uuid.uuid4().hex}", daemon=True)
        thread.start()

        try:
            while True:
                item = await queue.get()
                if isinstance(item, _End):
                    if item.error is not None:
                        raise item.error
                    break
                yield item
        except asyncio.CancelledError:
            cancel.cancel()
            raise
        finally:
            cancel.cancel()
            # The worker borrows the session's model until generate() returns.
            await asyncio.shield(finished)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _step(self, generator: Any, *, greedy: bool) -> int:
        compute_logits: Callable[[], None] | None = getattr(generator, "compute_logits", None)
        if callable(compute_logits):
            compute_logits()

        next_greedy = getattr(generator, "generate_next_token_greedy", None)
        if greedy and callable(next_greedy):
            next_greedy()
        else:
            # The runtime picks sampling vs. top-1 from the do_sample option.
            generator.generate_next_token()

        sequence = generator.get_sequence(0)
        token_id = int(sequence[-1])
        logger.debug("step: token_id=%d", token_id)
        return token_id

    def _release(self, resource: Any, what: str) -> None:
        try:
            self._session.backend.release(resource)
        except Exception:
            logger.warning("Failed to release %s", what, exc_info=True)


def _build_stats(
    finish_reason: FinishReason,
    *,
    prompt_tokens: int,
    completion_tokens: int,
    started: float,
    first_token_at: float | None,
) -> GenerationStats:
    ended = time.monotonic()
    first_token_s = None if first_token_at is None else max(first_token_at - started, 0.0)
    tok_per_s = None
    decode_s = None if first_token_at is None else max(ended - first_token_at, 0.0)
    if decode_s and completion_tokens > 1:
        tok_per_s = (completion_tokens - 1) / decode_s
    return GenerationStats(
        finish_reason=finish_reason,
        usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        timing=Timing(first_token_s=first_token_s, total_s=max(ended - started, 0.0), tok_per_s=tok_per_s),
    )
