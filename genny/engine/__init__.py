# Runtime-agnostic chat generation engine
#
# This package provides the incremental token-generation session that the
# front-ends drive.
#
# Key components:
#   - backends/         Inference-runtime specific backends
#   - registry.py       Maps backend names to backends
#   - search_config.py  Decoding parameters
#   - tokenizer.py      Encode/decode and incremental decode streams
#   - session.py        Model/tokenizer lifecycle
#   - generation.py     Cancellable step-wise generation + async streaming
#   - controller.py     Chat orchestration, history and notifications
