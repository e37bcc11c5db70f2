"""TOML settings for the speaking examiner."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python 3.10 fallback
    try:
        import tomli as tomllib  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - environment setup guard
        raise SystemExit(
            "TOML support is required. Install `tomli` for Python 3.10: uv pip install tomli."
        ) from exc

from evaluation.gemini_client import EvaluatorConfig
from history import HistoryConfig
from live.gemini_live import LiveConfig

from .session_controller import SessionControllerConfig

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")
PATH_FIELDS = {
    "session": ("recording_dir", "log_path"),
    "history": ("path",),
}


class SettingsError(RuntimeError):
    """Raised when the settings file is missing or invalid."""


@dataclass(frozen=True)
class AppSettings:
    live: LiveConfig = field(default_factory=LiveConfig)
    evaluation: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    session: SessionControllerConfig = field(default_factory=SessionControllerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    source: Optional[Path] = None


def _expand_path(raw: Optional[str], *, base: Path) -> Optional[Path]:
    if not raw:
        return None
    expanded = Path(os.path.expanduser(raw))
    if not expanded.is_absolute():
        expanded = (base / expanded).resolve()
    return expanded


def _env_api_key(env: Mapping[str, str]) -> str:
    for name in API_KEY_ENV_VARS:
        value = env.get(name)
        if value:
            return value
    return ""


def _build(cls: Any, table_name: str, raw: Any, *, base: Path, defaults: Dict[str, Any]) -> Any:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise SettingsError(f"[{table_name}] must be a table.")

    known = {item.name for item in dataclasses.fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise SettingsError(f"Unknown keys in [{table_name}]: {', '.join(unknown)}")

    values = dict(defaults)
    values.update(raw)
    for name in PATH_FIELDS.get(table_name, ()):
        if name in raw:
            if not isinstance(raw[name], str):
                raise SettingsError(f"[{table_name}] {name} must be a string path.")
            values[name] = _expand_path(raw[name], base=base)
            if values[name] is None:
                values.pop(name)
    try:
        return cls(**values)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Invalid [{table_name}] settings: {exc}") from exc


def load_settings(path: Optional[Path] = None, *, env: Optional[Mapping[str, str]] = None) -> AppSettings:
    """Read ``path`` (when given) and fill the API key from the environment.

    Relative paths inside the file resolve against the file's directory.
    A key set in a table wins over the top-level ``api_key``, which wins
    over ``GEMINI_API_KEY`` and then ``API_KEY``.
    """

    env = os.environ if env is None else env
    data: Dict[str, Any] = {}
    base_dir = Path.cwd()
    if path is not None:
        path = Path(path).expanduser()
        if not path.exists():
            raise SettingsError(f"Settings file not found: {path}")
        base_dir = path.parent.resolve()
        try:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise SettingsError(f"Could not parse {path}: {exc}") from exc

    unknown_tables = sorted(set(data) - {"api_key", "live", "evaluation", "session", "history"})
    if unknown_tables:
        raise SettingsError(f"Unknown settings: {', '.join(unknown_tables)}")

    api_key = data.get("api_key") or _env_api_key(env)
    if not isinstance(api_key, str):
        raise SettingsError("api_key must be a string.")

    return AppSettings(
        live=_build(LiveConfig, "live", data.get("live"), base=base_dir, defaults={"api_key": api_key}),
        evaluation=_build(
            EvaluatorConfig, "evaluation", data.get("evaluation"), base=base_dir, defaults={"api_key": api_key}
        ),
        session=_build(SessionControllerConfig, "session", data.get("session"), base=base_dir, defaults={}),
        history=_build(HistoryConfig, "history", data.get("history"), base=base_dir, defaults={}),
        source=path,
    )
