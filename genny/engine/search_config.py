"""Decoding (search) parameters.

`SearchConfig` is an immutable value object. At the start of every
generation call it is copied into the runtime's native generator parameters
through `apply_to()`; the runtime owns range checking for that path.
`validate()` / `merged()` are used by the configuration layer (CLI flags,
persisted state, `/set` commands) so bad values are caught before they reach
the runtime.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)


SamplingMode = Literal["greedy", "top_k", "top_p", "both"]
SAMPLING_MODES: tuple[str, ...] = ("greedy", "top_k", "top_p", "both")

# Canonical runtime option names, in the order they are applied.
SEARCH_OPTION_NAMES: tuple[str, ...] = (
    "top_p",
    "top_k",
    "temperature",
    "repetition_penalty",
    "past_present_share_buffer",
    "num_return_sequences",
    "no_repeat_ngram_size",
    "min_length",
    "max_length",
    "length_penalty",
    "early_stopping",
    "do_sample",
    "diversity_penalty",
)

_INT_OPTIONS = frozenset(
    {"top_k", "num_return_sequences", "no_repeat_ngram_size", "min_length", "max_length"}
)
_BOOL_OPTIONS = frozenset({"past_present_share_buffer", "early_stopping", "do_sample"})
_FLOAT_OPTIONS = frozenset(
    {"top_p", "temperature", "repetition_penalty", "length_penalty", "diversity_penalty"}
)


@dataclass(frozen=True)
class SearchConfig:
    """Decoding parameters for one generation call.

    Notes:
    - `sampling_mode` is not a runtime option; it selects the next-token
      policy of the generation loop together with `do_sample`.
    - Defaults mirror the runtime's own defaults for a single greedy sequence.
    """

    sampling_mode: SamplingMode = "greedy"
    top_k: int = 50
    top_p: float = 0.9
    temperature: float = 1.0
    repetition_penalty: float = 1.0
    diversity_penalty: float = 0.0
    no_repeat_ngram_size: int = 0
    min_length: int = 0
    max_length: int = 1024
    length_penalty: float = 1.0
    early_stopping: bool = True
    do_sample: bool = False
    num_return_sequences: int = 1
    past_present_share_buffer: bool = True

    @property
    def uses_sampling(self) -> bool:
        """True when the next token is sampled rather than picked as the top-1."""
        return self.do_sample and self.sampling_mode != "greedy"

    def to_runtime_parameters(self) -> dict[str, int | float | bool]:
        """Map every field onto its runtime option name, coercing types.

        The runtime only sees the effective policy: `do_sample` is sent as
        `uses_sampling`, and the filter the sampling mode leaves out is
        neutralized (`top_p=1.0` for "top_k", `top_k=0` for "top_p").
        """
        out: dict[str, int | float | bool] = {}
        for name in SEARCH_OPTION_NAMES:
            value = getattr(self, name)
            if name in _BOOL_OPTIONS:
                out[name] = bool(value)
            elif name in _INT_OPTIONS:
                out[name] = int(value)
            else:
                out[name] = float(value)

        out["do_sample"] = self.uses_sampling
        if self.sampling_mode == "top_k":
            out["top_p"] = 1.0
        elif self.sampling_mode == "top_p":
            out["top_k"] = 0
        return out

    def apply_to(self, params: Any) -> None:
        """Copy the options into native generator parameters."""
        options = self.to_runtime_parameters()
        set_one = getattr(params, "set_search_option", None)
        if callable(set_one):
            for name, value in options.items():
                set_one(name, value)
        else:
            # Newer runtimes only expose the bulk setter.
            params.set_search_options(**options)
        logger.debug("Applied search options: %s", options)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        if self.sampling_mode not in SAMPLING_MODES:
            raise ValueError(
                f"'sampling_mode' must be one of {', '.join(SAMPLING_MODES)}; got {self.sampling_mode!r}."
            )
        if self.top_k < 0:
            raise ValueError("'top_k' must be >= 0.")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError("'top_p' must be within [0, 1].")
        if self.temperature <= 0:
            raise ValueError("'temperature' must be > 0.")
        if self.repetition_penalty < 1.0:
            raise ValueError("'repetition_penalty' must be >= 1.")
        if self.diversity_penalty < 0:
            raise ValueError("'diversity_penalty' must be >= 0.")
        if self.no_repeat_ngram_size < 0:
            raise ValueError("'no_repeat_ngram_size' must be >= 0.")
        if self.min_length < 0:
            raise ValueError("'min_length' must be >= 0.")
        if self.max_length < 1:
            raise ValueError("'max_length' must be >= 1.")
        if self.min_length > self.max_length:
            raise ValueError("'min_length' must be <= 'max_length'.")
        if self.num_return_sequences < 1:
            raise ValueError("'num_return_sequences' must be >= 1.")

    def merged(self, override: Any | None) -> "SearchConfig":
        """Return a new config with `override` (a dict or SearchConfig) applied."""
        if override is None:
            return self
        if isinstance(override, SearchConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("Search options override must be an object.")

        data = self.to_dict()
        for key, raw in override.items():
            if key not in data:
                raise ValueError(f"Unknown search option {key!r}.")
            if key == "sampling_mode":
                data[key] = str(raw).strip().lower().replace("-", "_")
            elif key in _BOOL_OPTIONS:
                data[key] = _coerce_bool(raw, key)
            elif key in _INT_OPTIONS:
                data[key] = _coerce_int(raw, key)
            else:
                data[key] = _coerce_float(raw, key)

        merged = SearchConfig(**data)
        merged.validate()
        return merged


def _coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ValueError(f"'{name}' must be a boolean.")


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be an integer.")
    try:
        return int(value)
    except Exception as exc:
        raise ValueError(f"'{name}' must be an integer.") from exc


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be a number.")
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"'{name}' must be a number.") from exc
