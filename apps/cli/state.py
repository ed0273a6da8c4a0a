from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from genny.engine.registry import DEFAULT_BACKEND
from genny.engine.search_config import SearchConfig


SCHEMA_VERSION = 1
_STATE_FILENAME = "state.json"


class StateError(RuntimeError):
    pass


@dataclass
class CliState:
    schema_version: int = SCHEMA_VERSION

    # Last model folder loaded with `/load` or `--model`.
    model_path: str | None = None
    backend: str = DEFAULT_BACKEND

    # Partial SearchConfig overrides (only keys the user changed).
    search_options: dict[str, Any] = field(default_factory=dict)

    def search_config(self) -> SearchConfig:
        return SearchConfig().merged(self.search_options or None)


def config_dir() -> Path:
    """`$XDG_CONFIG_HOME/genny`, falling back to `~/.config/genny`."""
    root = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(root) / "genny"


def state_path(*, base_dir: Path | None = None) -> Path:
    return Path(base_dir) / _STATE_FILENAME if base_dir is not None else config_dir() / _STATE_FILENAME


def _read_object(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise StateError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise StateError(f"Expected a JSON object in {path}, got {type(data).__name__}")
    return data


def load_state(*, path: Path | None = None) -> CliState:
    target = path or state_path()
    if not target.is_file():
        return CliState()

    data = _read_object(target)

    schema = data.get("schema_version", 0)
    if schema not in (0, SCHEMA_VERSION):
        raise StateError(f"{target}: schema_version {schema!r} is not supported")

    model_path = data.get("model_path")
    if not isinstance(model_path, str):
        model_path = None

    backend = data.get("backend")
    backend = backend.strip() if isinstance(backend, str) and backend.strip() else DEFAULT_BACKEND

    options = data.get("search_options") or {}
    if not isinstance(options, dict):
        raise StateError(f"{target}: 'search_options' must be an object")

    # Drop keys this version does not know rather than failing the whole file.
    known = SearchConfig().to_dict().keys()
    options = {k: v for k, v in options.items() if k in known}
    try:
        SearchConfig().merged(options)
    except ValueError as exc:
        raise StateError(f"{target}: invalid search_options ({exc})") from exc

    return CliState(model_path=model_path, backend=backend, search_options=options)


def save_state(state: CliState, *, path: Path | None = None) -> None:
    """Write `state` atomically (temp file in the same directory, then rename)."""
    target = path or state_path()
    target.parent.mkdir(parents=True, exist_ok=True)

    data = asdict(state)
    data["schema_version"] = SCHEMA_VERSION
    text = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False)

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text + "\n")
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def search_options_diff(config: SearchConfig) -> dict[str, Any]:
    """Fields of `config` that differ from the defaults (what gets persisted)."""
    defaults = SearchConfig().to_dict()
    return {k: v for k, v in config.to_dict().items() if defaults.get(k) != v}
