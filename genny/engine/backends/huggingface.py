"""Backend for Hugging Face `transformers` causal LMs (PyTorch).

Implements the same step-wise generator contract as onnxruntime-genai on top
of a plain forward pass with a KV cache, so any local folder loadable with
`AutoModelForCausalLM.from_pretrained` can be chatted with.

Only a single return sequence is produced. Beam-search options
(`num_return_sequences > 1`, `length_penalty`, `early_stopping`,
`diversity_penalty`) are accepted and ignored.
"""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from ..search_config import SEARCH_OPTION_NAMES, SearchConfig
from .base import RuntimeBackend

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)


# =============================================================================
# Model / Tokenizer
# =============================================================================


@dataclass
class _LoadedModel:
    model: Any
    hf_tokenizer: Any
    model_path: str
    device: str
    eos_token_ids: frozenset[int]

    def close(self) -> None:
        self.model = None
        self.hf_tokenizer = None


class _TokenizerStream:
    """Incremental detokenizer.

    Decodes a sliding window of ids and only emits text once it no longer
    ends in a partial UTF-8 sequence, so multi-token characters and
    sub-word merges come out whole.
    """

    def __init__(self, hf_tokenizer: Any) -> None:
        self._tokenizer = hf_tokenizer
        self._ids: list[int] = []
        self._prefix_offset = 0
        self._read_offset = 0

    def decode(self, token_id: int) -> str:
        self._ids.append(int(token_id))
        prefix_text = self._tokenizer.decode(
            self._ids[self._prefix_offset : self._read_offset], skip_special_tokens=True
        )
        new_text = self._tokenizer.decode(self._ids[self._prefix_offset :], skip_special_tokens=True)
        if len(new_text) > len(prefix_text) and not new_text.endswith("\ufffd"):
            self._prefix_offset = self._read_offset
            self._read_offset = len(self._ids)
            return new_text[len(prefix_text) :]
        return ""

    def flush(self) -> str:
        """Return the text still held back; a trailing partial character decodes as U+FFFD."""
        if self._read_offset >= len(self._ids):
            return ""
        prefix_text = self._tokenizer.decode(
            self._ids[self._prefix_offset : self._read_offset], skip_special_tokens=True
        )
        new_text = self._tokenizer.decode(self._ids[self._prefix_offset :], skip_special_tokens=True)
        self._prefix_offset = self._read_offset = len(self._ids)
        return new_text[len(prefix_text) :]

    def close(self) -> None:
        self._ids.clear()


class _Tokenizer:
    def __init__(self, hf_tokenizer: Any) -> None:
        self._tokenizer = hf_tokenizer

    def encode(self, text: str) -> list[list[int]]:
        return [list(self._tokenizer.encode(text))]

    def decode(self, token_ids: Sequence[int]) -> str:
        return self._tokenizer.decode([int(t) for t in token_ids], skip_special_tokens=True)

    def create_stream(self) -> _TokenizerStream:
        return _TokenizerStream(self._tokenizer)


# =============================================================================
# Logits processing / sampling
# =============================================================================


def apply_repetition_penalty(logits: torch.Tensor, token_ids: Sequence[int], penalty: float) -> torch.Tensor:
    """Scale down logits of tokens already present in the sequence. Shape (1, vocab)."""
    if penalty == 1.0 or not token_ids:
        return logits
    import torch

    ids = torch.tensor(sorted(set(int(t) for t in token_ids)), device=logits.device, dtype=torch.long)
    ids = ids[ids < logits.size(-1)]
    scores = logits.gather(-1, ids.unsqueeze(0))
    scores = torch.where(scores > 0, scores / penalty, scores * penalty)
    return logits.scatter(-1, ids.unsqueeze(0), scores)


def banned_ngram_tokens(token_ids: Sequence[int], ngram_size: int) -> set[int]:
    """Tokens that would complete an n-gram already present in `token_ids`."""
    if ngram_size <= 0 or len(token_ids) < ngram_size:
        return set()
    prefix = tuple(token_ids[len(token_ids) - ngram_size + 1 :])
    banned: set[int] = set()
    for start in range(len(token_ids) - ngram_size + 1):
        ngram = tuple(token_ids[start : start + ngram_size])
        if ngram[:-1] == prefix:
            banned.add(int(ngram[-1]))
    return banned


def sample_token(logits: torch.Tensor, *, temperature: float, top_k: int, top_p: float) -> int:
    """Sample one token id from logits of shape (1, vocab)."""
    import torch

    if temperature <= 0:
        raise ValueError(f"Temperature must be > 0, got {temperature}")

    # Softmax in fp32 avoids overflow with fp16 logits at low temperature.
    logits = logits.float() / float(temperature)

    if top_k > 0:
        v, _ = torch.topk(logits, min(top_k, logits.size(-1)))
        logits[logits < v[:, [-1]]] = float("-inf")

    if 0.0 < top_p < 1.0:
        sorted_logits, sorted_indices = torch.sort(logits, descending=True)
        cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)
        sorted_indices_to_remove = cumulative_probs > top_p
        sorted_indices_to_remove[:, 1:] = sorted_indices_to_remove[:, :-1].clone()
        sorted_indices_to_remove[:, 0] = False
        indices_to_remove = sorted_indices_to_remove.scatter(1, sorted_indices, sorted_indices_to_remove)
        logits[indices_to_remove] = float("-inf")

    probs = torch.softmax(logits, dim=-1)
    if torch.isnan(probs).any() or (probs.sum(dim=-1) <= 0).any():
        return int(torch.argmax(logits, dim=-1).item())
    return int(torch.multinomial(probs, 1).item())


# =============================================================================
# Generator
# =============================================================================


class _GeneratorParams:
    def __init__(self) -> None:
        self.search_options: dict[str, Any] = SearchConfig().to_runtime_parameters()
        self.input_ids: list[int] | None = None

    def set_search_option(self, name: str, value: Any) -> None:
        if name not in SEARCH_OPTION_NAMES:
            raise ValueError(f"Unknown search option {name!r}.")
        self.search_options[name] = value

    def set_input_sequences(self, sequences: Any) -> None:
        rows = list(sequences)
        if rows and not isinstance(rows[0], int):
            if len(rows) != 1:
                raise ValueError(f"Batch size must be 1, got {len(rows)}")
            rows = list(rows[0])
        self.input_ids = [int(t) for t in rows]

    def close(self) -> None:
        self.input_ids = None


class _Generator:
    """Step-wise decoder: compute_logits() then generate_next_token*()."""

    def __init__(self, loaded: _LoadedModel, params: _GeneratorParams) -> None:
        if not params.input_ids:
            raise ValueError("Generator params have no input sequences.")

        opts = dict(params.search_options)
        if int(opts["num_return_sequences"]) > 1:
            logger.warning(
                "transformers backend produces one sequence; num_return_sequences=%s ignored",
                opts["num_return_sequences"],
            )

        self._loaded = loaded
        self._opts = opts
        self._max_length = int(opts["max_length"])
        self._sequence: list[int] = list(params.input_ids)
        self._pending: list[int] = list(params.input_ids)
        self._past_key_values: Any = None
        self._logits: torch.Tensor | None = None
        self._done = len(self._sequence) >= self._max_length

    def is_done(self) -> bool:
        return self._done

    def compute_logits(self) -> None:
        if self._done or not self._pending:
            return
        import torch

        model = self._loaded.model
        input_ids = torch.tensor([self._pending], dtype=torch.long, device=self._loaded.device)
        with torch.no_grad():
            outputs = model(input_ids, past_key_values=self._past_key_values, use_cache=True)
        self._past_key_values = outputs.past_key_values
        self._logits = outputs.logits[:, -1, :].float()
        self._pending = []

    def generate_next_token(self) -> None:
        self._next_token(greedy=not bool(self._opts["do_sample"]))

    def generate_next_token_greedy(self) -> None:
        self._next_token(greedy=True)

    def get_sequence(self, index: int) -> list[int]:
        if index != 0:
            raise IndexError(f"Sequence index {index} out of range (1 sequence).")
        return list(self._sequence)

    def close(self) -> None:
        self._past_key_values = None
        self._logits = None

    def _next_token(self, *, greedy: bool) -> None:
        if self._done:
            raise RuntimeError("Generation is already done.")
        if self._logits is None:
            self.compute_logits()
        assert self._logits is not None

        import torch

        logits = apply_repetition_penalty(
            self._logits.clone(), self._sequence, float(self._opts["repetition_penalty"])
        )

        banned = banned_ngram_tokens(self._sequence, int(self._opts["no_repeat_ngram_size"]))
        if len(self._sequence) < int(self._opts["min_length"]):
            banned |= self._loaded.eos_token_ids
        banned = {t for t in banned if t < logits.size(-1)}
        if banned:
            logits[:, sorted(banned)] = float("-inf")

        if greedy:
            token_id = int(torch.argmax(logits, dim=-1).item())
        else:
            token_id = sample_token(
                logits,
                temperature=float(self._opts["temperature"]),
                top_k=int(self._opts["top_k"]),
                top_p=float(self._opts["top_p"]),
            )

        self._sequence.append(token_id)
        self._pending = [token_id]
        self._logits = None
        if token_id in self._loaded.eos_token_ids or len(self._sequence) >= self._max_length:
            self._done = True


# =============================================================================
# Backend
# =============================================================================


class TransformersBackend(RuntimeBackend):
    """
    Backend over `transformers` + PyTorch.

    Args:
        device: Torch device (default: cuda when available, else cpu).
        dtype: Torch dtype name: float16|bfloat16|float32 (default: model's own).
    """

    name = "transformers"

    def __init__(self, *, device: str | None = None, dtype: str | None = None) -> None:
        from genny.runtime import check_torch_required, default_device

        check_torch_required()
        self._device = device or default_device()
        self._dtype = dtype

    def load_model(self, model_path: str) -> _LoadedModel:
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        torch_dtype = getattr(torch, self._dtype) if self._dtype else "auto"
        hf_tokenizer = AutoTokenizer.from_pretrained(model_path)
        model = AutoModelForCausalLM.from_pretrained(model_path, torch_dtype=torch_dtype)
        model.to(self._device)
        model.eval()

        eos: set[int] = set()
        if hf_tokenizer.eos_token_id is not None:
            eos.add(int(hf_tokenizer.eos_token_id))
        config_eos = getattr(getattr(model, "generation_config", None), "eos_token_id", None)
        if isinstance(config_eos, int):
            eos.add(config_eos)
        elif isinstance(config_eos, (list, tuple)):
            eos.update(int(t) for t in config_eos)

        return _LoadedModel(
            model=model,
            hf_tokenizer=hf_tokenizer,
            model_path=model_path,
            device=self._device,
            eos_token_ids=frozenset(eos),
        )

    def create_tokenizer(self, model: _LoadedModel) -> _Tokenizer:
        return _Tokenizer(model.hf_tokenizer)

    def create_generator_params(self, model: _LoadedModel) -> _GeneratorParams:
        return _GeneratorParams()

    def create_generator(self, model: _LoadedModel, params: _GeneratorParams) -> _Generator:
        return _Generator(model, params)

    def release(self, resource: Any) -> None:
        super().release(resource)
        if isinstance(resource, _LoadedModel):
            import torch

            gc.collect()
            if torch.cuda.is_available():
                torch.cuda.empty_cache()

    def info(self, model: _LoadedModel) -> dict[str, Any]:
        return {
            "backend": self.name,
            "model_path": model.model_path,
            "device": model.device,
            "dtype": str(getattr(model.model, "dtype", None)),
        }
