from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from xci.models import ConfigError, EventSpec, RunPreset
from xci.utils import ensure_within_base

DEFAULT_CONFIG_FILE = ".xci.yml"
DEFAULT_ENGINE = "act"
DEFAULT_ARCHITECTURE = "amd64"
_ALLOWED_CONTAINERS = {"docker", "podman"}
CONFIG_ALLOWED_KEYS = {
    "engine",
    "runtime",
    "env",
    "vars",
    "secrets",
    "presets",
    "defaultPreset",
    "envFile",
    "varsFile",
    "secretsFile",
}
_RUNTIME_ALLOWED_KEYS = {"container", "architecture", "image", "platformMap"}
_PRESET_ALLOWED_KEYS = {"jobs", "event", "matrix"}
_EVENT_ALLOWED_KEYS = {"name", "payloadPath"}
_INPUT_LABELS = ("env", "vars", "secrets")


@dataclass(frozen=True)
class RuntimeConfig:
    container: str = "docker"
    architecture: str = DEFAULT_ARCHITECTURE
    image: dict[str, str] = field(default_factory=dict)
    platform_map: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class XciConfig:
    engine: str = DEFAULT_ENGINE
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    env: dict[str, str] = field(default_factory=dict)
    vars: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    presets: dict[str, RunPreset] = field(default_factory=dict)
    default_preset: str | None = None
    env_file: str | None = None
    vars_file: str | None = None
    secrets_file: str | None = None
    path: Path | None = None


@dataclass(frozen=True)
class InputFiles:
    env_file: str | None = None
    vars_file: str | None = None
    secrets_file: str | None = None


def _require_mapping(value: Any, *, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a mapping")
    return {str(k): v for k, v in value.items()}


def _reject_unknown(data: dict[str, Any], allowed: set[str], *, label: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"{label} has unsupported keys: {unknown}")


def _coerce_optional_str(value: Any, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    trimmed = value.strip()
    return trimmed or None


def _coerce_str_map(value: Any, *, label: str) -> dict[str, str]:
    if value is None:
        return {}
    out: dict[str, str] = {}
    for key, item in _require_mapping(value, label=label).items():
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ConfigError(f"{label}.{key} must be a string")
        out[key] = str(item)
    return out


def _coerce_str_list(value: Any, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{label} must be a list of strings")
    return tuple(value)


def _parse_runtime(value: Any) -> RuntimeConfig:
    if value is None:
        return RuntimeConfig()
    data = _require_mapping(value, label="runtime")
    _reject_unknown(data, _RUNTIME_ALLOWED_KEYS, label="runtime")
    container = _coerce_optional_str(data.get("container"), label="runtime.container")
    container = container or "docker"
    if container not in _ALLOWED_CONTAINERS:
        raise ConfigError(
            f"runtime.container must be one of {sorted(_ALLOWED_CONTAINERS)}, "
            f"got {container!r}"
        )
    architecture = _coerce_optional_str(
        data.get("architecture"), label="runtime.architecture"
    )
    return RuntimeConfig(
        container=container,
        architecture=architecture or DEFAULT_ARCHITECTURE,
        image=_coerce_str_map(data.get("image"), label="runtime.image"),
        platform_map=_coerce_str_map(
            data.get("platformMap"), label="runtime.platformMap"
        ),
    )


def _parse_preset(preset_id: str, value: Any) -> RunPreset:
    label = f"presets.{preset_id}"
    data = _require_mapping(value if value is not None else {}, label=label)
    _reject_unknown(data, _PRESET_ALLOWED_KEYS, label=label)
    event: EventSpec | None = None
    if data.get("event") is not None:
        raw_event = _require_mapping(data["event"], label=f"{label}.event")
        _reject_unknown(raw_event, _EVENT_ALLOWED_KEYS, label=f"{label}.event")
        name = _coerce_optional_str(raw_event.get("name"), label=f"{label}.event.name")
        if name is None:
            raise ConfigError(f"{label}.event.name is required")
        event = EventSpec(
            name=name,
            payload_path=_coerce_optional_str(
                raw_event.get("payloadPath"), label=f"{label}.event.payloadPath"
            ),
        )
    matrix = data.get("matrix")
    return RunPreset(
        id=preset_id,
        label=preset_id,
        job_ids=_coerce_str_list(data.get("jobs"), label=f"{label}.jobs"),
        event=event,
        matrix=_coerce_str_list(matrix, label=f"{label}.matrix") if matrix is not None else None,
    )


def parse_config(raw: Any, *, path: Path | None = None) -> XciConfig:
    data = _require_mapping(raw if raw is not None else {}, label="config")
    _reject_unknown(data, CONFIG_ALLOWED_KEYS, label="config")
    engine = _coerce_optional_str(data.get("engine"), label="engine") or DEFAULT_ENGINE
    presets_raw = _require_mapping(data.get("presets") or {}, label="presets")
    return XciConfig(
        engine=engine,
        runtime=_parse_runtime(data.get("runtime")),
        env=_coerce_str_map(data.get("env"), label="env"),
        vars=_coerce_str_map(data.get("vars"), label="vars"),
        secrets=_coerce_str_map(data.get("secrets"), label="secrets"),
        presets={
            preset_id: _parse_preset(preset_id, value)
            for preset_id, value in presets_raw.items()
        },
        default_preset=_coerce_optional_str(
            data.get("defaultPreset"), label="defaultPreset"
        ),
        env_file=_coerce_optional_str(data.get("envFile"), label="envFile"),
        vars_file=_coerce_optional_str(data.get("varsFile"), label="varsFile"),
        secrets_file=_coerce_optional_str(data.get("secretsFile"), label="secretsFile"),
        path=path,
    )


def load_config(repo_root: str | Path) -> XciConfig:
    path = Path(repo_root) / DEFAULT_CONFIG_FILE
    if not path.exists():
        return XciConfig()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return parse_config(raw, path=path)


def _escape_env_value(value: str) -> str:
    return value.replace("\n", "\\n")


def _build_input_file(
    inputs_dir: Path,
    label: str,
    source_path: str | None,
    entries: dict[str, str],
    cwd: Path,
) -> str | None:
    if not source_path and not entries:
        return None

    content = ""
    if source_path:
        source = Path(source_path)
        if not source.is_absolute():
            source = cwd / source
        if not source.exists():
            raise ConfigError(f"Configured {label} file not found: {source_path}")
        resolved = ensure_within_base(cwd, source, label=f"{label} file")
        raw = resolved.read_text(encoding="utf-8")
        content = raw if not raw or raw.endswith("\n") else raw + "\n"

    if entries:
        content += "".join(
            f"{key}={_escape_env_value(value)}\n" for key, value in entries.items()
        )

    out_path = ensure_within_base(inputs_dir, inputs_dir / f"{label}.env", label=f"{label} file")
    out_path.write_text(content, encoding="utf-8")
    return str(out_path)


def prepare_input_files(
    run_dir: Path, config: XciConfig, *, cwd: Path | None = None
) -> InputFiles:
    """Write ``inputs/{env,vars,secrets}.env`` for act's ``--*-file`` flags."""
    base = Path(cwd) if cwd is not None else Path.cwd()
    inputs_dir = ensure_within_base(run_dir, Path(run_dir) / "inputs", label="inputs dir")
    inputs_dir.mkdir(parents=True, exist_ok=True)
    sources = {
        "env": (config.env_file, config.env),
        "vars": (config.vars_file, config.vars),
        "secrets": (config.secrets_file, config.secrets),
    }
    paths = {
        label: _build_input_file(inputs_dir, label, *sources[label], base)
        for label in _INPUT_LABELS
    }
    return InputFiles(
        env_file=paths["env"],
        vars_file=paths["vars"],
        secrets_file=paths["secrets"],
    )
