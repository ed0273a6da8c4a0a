"""Backend for the ONNX Runtime generate() API (onnxruntime-genai)."""

from __future__ import annotations

import logging
from typing import Any

from .base import RuntimeBackend

logger = logging.getLogger(__name__)


class _OnnxGeneratorParams:
    """Collects search options and inputs until the generator is created.

    Releases of onnxruntime-genai differ in how inputs are attached (a
    `input_ids` attribute on the params vs. `Generator.append_tokens`), so
    the native params object is only finalized in `create_generator()`.
    """

    def __init__(self, native: Any) -> None:
        self.native = native
        self.input_sequences: Any = None

    def set_search_option(self, name: str, value: Any) -> None:
        setter = getattr(self.native, "set_search_option", None)
        if callable(setter):
            setter(name, value)
        else:
            self.native.set_search_options(**{name: value})

    def set_input_sequences(self, sequences: Any) -> None:
        self.input_sequences = sequences


class _OnnxGenerator:
    def __init__(self, native: Any) -> None:
        self._native = native

    def is_done(self) -> bool:
        return bool(self._native.is_done())

    def compute_logits(self) -> None:
        # Folded into generate_next_token() from onnxruntime-genai 0.6 on.
        compute = getattr(self._native, "compute_logits", None)
        if callable(compute):
            compute()

    def generate_next_token(self) -> None:
        self._native.generate_next_token()

    def get_sequence(self, index: int) -> list[int]:
        return [int(t) for t in self._native.get_sequence(index)]


class OnnxGenAIBackend(RuntimeBackend):
    """
    Backend over onnxruntime-genai.

    Model folders are the ones produced by the onnxruntime-genai model
    builder (a `genai_config.json` next to the `.onnx` files). The decoding
    policy is chosen by the runtime from the `do_sample` search option.
    """

    name = "onnx"

    def __init__(self) -> None:
        from genny.runtime import check_onnxruntime_genai_required

        check_onnxruntime_genai_required()
        import onnxruntime_genai as og

        self._og = og

    def load_model(self, model_path: str) -> Any:
        return self._og.Model(model_path)

    def create_tokenizer(self, model: Any) -> Any:
        return self._og.Tokenizer(model)

    def create_generator_params(self, model: Any) -> _OnnxGeneratorParams:
        return _OnnxGeneratorParams(self._og.GeneratorParams(model))

    def create_generator(self, model: Any, params: _OnnxGeneratorParams) -> _OnnxGenerator:
        sequences = params.input_sequences
        if sequences is None:
            raise ValueError("Generator params have no input sequences.")

        native_params = params.native
        legacy_inputs = hasattr(native_params, "input_ids")
        if legacy_inputs:
            native_params.input_ids = sequences

        generator = self._og.Generator(model, native_params)
        if not legacy_inputs:
            generator.append_tokens(sequences)
        return _OnnxGenerator(generator)

    def release(self, resource: Any) -> None:
        # Native objects are freed when the last Python reference goes away.
        if isinstance(resource, _OnnxGenerator):
            resource._native = None
        elif isinstance(resource, _OnnxGeneratorParams):
            resource.native = None
            resource.input_sequences = None
        else:
            super().release(resource)

    def info(self, model: Any) -> dict[str, Any]:
        return {
            "backend": self.name,
            "device_type": getattr(model, "device_type", None),
            "type": getattr(model, "type", None),
        }
