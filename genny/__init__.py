"""
Genny - streaming chat over local language-model runtimes.

Loads a model folder through an inference runtime backend, turns prompts
into a cancellable stream of decoded token fragments, and keeps the chat
history for a front-end.

Quick Start:
    import asyncio
    from genny import ChatController, InferenceSession, get_backend

    session = InferenceSession(get_backend("onnx"))
    controller = ChatController(session)

    async def main():
        await controller.load_model("path/to/phi-3-mini-onnx")
        await controller.send_prompt("Hello!")
        print(controller.history[-1].content)

    asyncio.run(main())

Submodules:
    - genny.engine.controller: Chat orchestration and history
    - genny.engine.generation: Step-wise generation loop and async streaming
    - genny.engine.session: Model/tokenizer lifecycle
    - genny.engine.backends: Runtime backends (onnx, transformers)

Environment Variables:
    GENNY_MODEL_PATH: Default model folder used by the `genny` CLI.
"""

from genny._version import __version__

from genny.engine.controller import ChatController, ControllerConfig, parse_token_ids
from genny.engine.errors import (
    DecodeError,
    EncodeError,
    GenerationCancelled,
    GennyError,
    ModelLoadError,
    ParseError,
    UnclassifiedRuntimeError,
)
from genny.engine.generation import CancellationToken, GenerationLoop
from genny.engine.registry import get_backend, list_backends, register_backend
from genny.engine.search_config import SearchConfig
from genny.engine.session import InferenceSession, SessionState
from genny.engine.tokenizer import TokenizerSession, TokenizerStream
from genny.engine.types import ConversationEntry, GenerationStats, TokenFragment

# Runtime utilities
from genny.runtime import (
    is_cuda_available,
    is_onnxruntime_genai_available,
    is_torch_available,
)

__all__ = [
    # Version
    "__version__",
    # Orchestration
    "ChatController",
    "ControllerConfig",
    "parse_token_ids",
    # Generation
    "CancellationToken",
    "GenerationLoop",
    "InferenceSession",
    "SessionState",
    "SearchConfig",
    "TokenizerSession",
    "TokenizerStream",
    # Types
    "ConversationEntry",
    "GenerationStats",
    "TokenFragment",
    # Errors
    "GennyError",
    "ModelLoadError",
    "EncodeError",
    "DecodeError",
    "ParseError",
    "GenerationCancelled",
    "UnclassifiedRuntimeError",
    # Backends
    "get_backend",
    "list_backends",
    "register_backend",
    # Runtime
    "is_cuda_available",
    "is_onnxruntime_genai_available",
    "is_torch_available",
]
