from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

OutputLevel = Literal["quiet", "progress", "verbose"]
VerificationDepth = Literal["quick", "standard", "deep"]
LayerName = Literal["default", "user", "project", "workspace", "cli"]

LAYER_ORDER: tuple[LayerName, ...] = ("default", "user", "project", "workspace", "cli")
OUTPUT_LEVELS: tuple[str, ...] = ("quiet", "progress", "verbose")
VERIFICATION_DEPTHS: tuple[str, ...] = ("quick", "standard", "deep")
DEFAULT_COMPLETION_MARKERS: tuple[str, ...] = (
    "Remaining: 0",
    "**Remaining**: 0",
    "TASK COMPLETE",
    "✅ TASK COMPLETE",
)

USER_CONFIG_ENV = "WORKLOOP_CONFIG_HOME"
USER_CONFIG_FILENAME = "config.toml"
PROJECT_CONFIG_FILENAME = ".workloop.toml"


class ConfigError(RuntimeError):
    """Raised when a configuration layer is rejected at load time."""

    def __init__(self, message: str, *, source: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.key = key


@dataclass(slots=True)
class ClaudeConfig:
    command: str = "claude"
    args: list[str] = field(default_factory=list)
    shutdown_grace_seconds: float = 5.0
    kill_backstop_seconds: float = 1.0
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class VerificationConfig:
    depth: VerificationDepth = "standard"
    auto_verify: bool = True
    resume_on_fail: bool = True
    max_attempts: int = 2
    report_filename: str = "verification-report.md"


@dataclass(slots=True)
class StatusWatchConfig:
    enabled: bool = True
    debounce_seconds: float = 2.0
    notify_only_meaningful: bool = True


@dataclass(slots=True)
class WorkloopSettings:
    workspaces_dir: str = "./workloop/workspaces"
    max_iterations: int = 50
    delay_seconds: float = 2.0
    stagnation_threshold: int = 2
    completion_markers: list[str] = field(
        default_factory=lambda: list(DEFAULT_COMPLETION_MARKERS)
    )
    output_level: OutputLevel = "progress"
    colors: bool = True
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    status_watch: StatusWatchConfig = field(default_factory=StatusWatchConfig)

    @classmethod
    def default(cls) -> WorkloopSettings:
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkloopSettings:
        flat = flatten_config(dict(data))
        values: dict[str, Any] = {}
        for key, default in _DEFAULT_FLAT.items():
            if key not in flat or flat[key] is None:
                continue
            ok, coerced = _coerce(key, default, flat[key])
            if ok:
                values[key] = coerced
        return _build_dataclass(cls, unflatten_config(values))

    def to_dict(self) -> dict[str, Any]:
        return _dataclass_to_dict(self)


def _dataclass_to_dict(instance: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for item in fields(instance):
        value = getattr(instance, item.name)
        if is_dataclass(value):
            payload[item.name] = _dataclass_to_dict(value)
        elif isinstance(value, list):
            payload[item.name] = list(value)
        else:
            payload[item.name] = value
    return payload


def _build_dataclass(cls: type, data: Mapping[str, Any]) -> Any:
    instance = cls()
    for item in fields(instance):
        if item.name not in data:
            continue
        current = getattr(instance, item.name)
        value = data[item.name]
        if is_dataclass(current):
            if isinstance(value, Mapping):
                setattr(instance, item.name, _build_dataclass(type(current), value))
            continue
        setattr(instance, item.name, list(value) if isinstance(value, list) else value)
    return instance


def flatten_config(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested tables to dotted keys. Lists and ``None`` are leaves."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            result.update(flatten_config(value, path))
        else:
            result[path] = value
    return result


def unflatten_config(flat: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in flat.items():
        parts = key.split(".")
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return result


_DEFAULT_FLAT: dict[str, Any] = flatten_config(WorkloopSettings().to_dict())
_SECTIONS: frozenset[str] = frozenset(
    key.split(".", maxsplit=1)[0] for key in _DEFAULT_FLAT if "." in key
)
_CHOICES: dict[str, tuple[str, ...]] = {
    "output_level": OUTPUT_LEVELS,
    "verification.depth": VERIFICATION_DEPTHS,
}
_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def known_keys() -> list[str]:
    return sorted(_DEFAULT_FLAT)


def default_value(key: str) -> Any:
    return _DEFAULT_FLAT.get(key)


def _coerce(key: str, default: Any, value: Any) -> tuple[bool, Any]:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return True, value
        if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
            return True, value.strip().lower() in _TRUE_STRINGS
        return False, value
    if isinstance(default, int):
        if isinstance(value, bool):
            return False, value
        if isinstance(value, int):
            return True, value
        if isinstance(value, float) and value.is_integer():
            return True, int(value)
        if isinstance(value, str):
            try:
                return True, int(value.strip())
            except ValueError:
                return False, value
        return False, value
    if isinstance(default, float):
        if isinstance(value, bool):
            return False, value
        if isinstance(value, (int, float)):
            return True, float(value)
        if isinstance(value, str):
            try:
                return True, float(value.strip())
            except ValueError:
                return False, value
        return False, value
    if isinstance(default, list):
        if isinstance(value, (list, tuple)) and all(
            isinstance(item, (str, int, float)) and not isinstance(item, bool) for item in value
        ):
            return True, [str(item) for item in value]
        return False, value
    if isinstance(default, str):
        if not isinstance(value, str):
            return False, value
        choices = _CHOICES.get(key)
        if choices is not None and value not in choices:
            return False, value
        return True, value
    return True, value


def _type_label(default: Any) -> str:
    if isinstance(default, bool):
        return "boolean"
    if isinstance(default, int):
        return "integer"
    if isinstance(default, float):
        return "number"
    if isinstance(default, list):
        return "list of strings"
    return "string"


def validate_layer(data: Any, source: str) -> dict[str, Any]:
    """Reject a malformed layer before it ever reaches the resolver."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"{source}: configuration must be a table/object.", source=source)
    for section in _SECTIONS:
        if section in data and not isinstance(data[section], Mapping):
            raise ConfigError(
                f"{source}: '{section}' must be a table, got {type(data[section]).__name__}.",
                source=source,
                key=section,
            )
    for key, value in flatten_config(data).items():
        parts = key.split(".")
        for index in range(1, len(parts)):
            prefix = ".".join(parts[:index])
            if prefix in _DEFAULT_FLAT:
                raise ConfigError(
                    f"{source}: '{prefix}' is a {_type_label(_DEFAULT_FLAT[prefix])}, not a table.",
                    source=source,
                    key=prefix,
                )
        if key not in _DEFAULT_FLAT or value is None:
            continue
        default = _DEFAULT_FLAT[key]
        ok, _ = _coerce(key, default, value)
        if ok:
            continue
        choices = _CHOICES.get(key)
        if choices is not None and isinstance(value, str):
            raise ConfigError(
                f"{source}: '{key}' must be one of {', '.join(choices)}; got {value!r}.",
                source=source,
                key=key,
            )
        raise ConfigError(
            f"{source}: '{key}' must be a {_type_label(default)}; got {value!r}.",
            source=source,
            key=key,
        )
    return dict(data)


def collapse_output_flags(cli: Mapping[str, Any]) -> dict[str, Any]:
    """Fold --verbose/--quiet/--output into a single ``output_level`` key."""
    flags = dict(cli)
    output = flags.pop("output", None)
    verbose = flags.pop("verbose", None)
    quiet = flags.pop("quiet", None)
    if output is not None:
        flags["output_level"] = output
    elif verbose:
        flags["output_level"] = "verbose"
    elif quiet:
        flags["output_level"] = "quiet"
    return flags


@dataclass(frozen=True, slots=True)
class EffectiveValue:
    key: str
    value: Any
    source: LayerName


@dataclass(frozen=True, slots=True)
class ResolvedConfig:
    settings: WorkloopSettings
    effective: Mapping[str, EffectiveValue]

    def get(self, key: str, default: Any = None) -> Any:
        item = self.effective.get(key)
        return default if item is None else item.value

    def source_of(self, key: str) -> LayerName | None:
        item = self.effective.get(key)
        return None if item is None else item.source

    def extras(self) -> dict[str, Any]:
        return {
            key: item.value for key, item in self.effective.items() if key not in _DEFAULT_FLAT
        }

    def __iter__(self) -> Iterator[EffectiveValue]:
        for key in sorted(self.effective):
            yield self.effective[key]

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {item.key: {"value": item.value, "source": item.source} for item in self}


def resolve_config(
    user: Mapping[str, Any] | None = None,
    project: Mapping[str, Any] | None = None,
    workspace: Mapping[str, Any] | None = None,
    cli: Mapping[str, Any] | None = None,
) -> ResolvedConfig:
    layers: dict[LayerName, dict[str, Any]] = {
        "default": dict(_DEFAULT_FLAT),
        "user": flatten_config(user or {}),
        "project": flatten_config(project or {}),
        "workspace": flatten_config(workspace or {}),
        "cli": flatten_config(collapse_output_flags(cli or {})),
    }

    ordered_keys: list[str] = []
    seen: set[str] = set()
    for name in LAYER_ORDER:
        for key in layers[name]:
            if key not in seen:
                seen.add(key)
                ordered_keys.append(key)

    effective: dict[str, EffectiveValue] = {}
    for key in ordered_keys:
        chosen: EffectiveValue | None = None
        first_seen: LayerName | None = None
        for name in LAYER_ORDER:
            layer = layers[name]
            if key not in layer:
                continue
            if first_seen is None:
                first_seen = name
            value = layer[key]
            if value is None:
                continue
            if key in _DEFAULT_FLAT:
                ok, coerced = _coerce(key, _DEFAULT_FLAT[key], value)
                if ok:
                    value = coerced
            chosen = EffectiveValue(key=key, value=_frozen_copy(value), source=name)
        if chosen is None and first_seen is not None:
            chosen = EffectiveValue(key=key, value=None, source=first_seen)
        if chosen is not None:
            effective[key] = chosen

    known = {key: item.value for key, item in effective.items() if key in _DEFAULT_FLAT}
    settings = WorkloopSettings.from_dict(unflatten_config(known))
    return ResolvedConfig(settings=settings, effective=MappingProxyType(effective))


def _frozen_copy(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_frozen_copy(item) for item in value)
    return value


def user_config_path() -> Path:
    override = os.environ.get(USER_CONFIG_ENV)
    base = Path(override).expanduser() if override else Path.home() / ".config" / "workloop"
    return base / USER_CONFIG_FILENAME


def project_config_path(cwd: Path | None = None) -> Path:
    return (cwd or Path.cwd()) / PROJECT_CONFIG_FILENAME


def load_layer_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            data = json.loads(raw) if raw.strip() else {}
        else:
            data = tomllib.loads(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"{path}: could not be parsed: {exc}", source=str(path)) from exc
    return validate_layer(data, str(path))


def load_config(
    *,
    cwd: Path | None = None,
    workspace_layer: Mapping[str, Any] | None = None,
    cli: Mapping[str, Any] | None = None,
) -> ResolvedConfig:
    user = load_layer_file(user_config_path())
    project = load_layer_file(project_config_path(cwd))
    workspace = validate_layer(workspace_layer or {}, "workspace metadata")
    return resolve_config(user=user, project=project, workspace=workspace, cli=cli)


def set_layer_value(data: Mapping[str, Any], key: str, value: Any) -> dict[str, Any]:
    flat = flatten_config(data)
    flat = {
        existing: item
        for existing, item in flat.items()
        if existing != key and not existing.startswith(f"{key}.")
    }
    flat[key] = value
    return unflatten_config(flat)


def unset_layer_value(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    flat = flatten_config(data)
    if key not in flat:
        raise ConfigError(f"Configuration key not set: {key}", key=key)
    del flat[key]
    return unflatten_config(flat)


def parse_cli_value(key: str, raw: str) -> Any:
    """Interpret a `config set` argument using the type of the key's default."""
    default = _DEFAULT_FLAT.get(key)
    if isinstance(default, list):
        text = raw.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"'{key}' expects a JSON list: {exc}", key=key) from exc
        else:
            parsed = [item.strip() for item in text.split(",") if item.strip()]
        value = parsed
    elif default is None:
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
    else:
        value = raw
    validate_layer(unflatten_config({key: value}), "command line")
    return _coerced(key, value)


def _coerced(key: str, value: Any) -> Any:
    if key not in _DEFAULT_FLAT:
        return value
    _, coerced = _coerce(key, _DEFAULT_FLAT[key], value)
    return coerced


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(char.isalnum() or char in "-_" for char in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(data: Mapping[str, Any]) -> str:
    lines: list[str] = []

    def _emit_table(table: Mapping[str, Any], path: list[str]) -> None:
        scalars = [(key, value) for key, value in table.items() if not isinstance(value, Mapping)]
        tables = [(key, value) for key, value in table.items() if isinstance(value, Mapping)]
        if path and scalars:
            lines.append("[" + ".".join(_toml_key(part) for part in path) + "]")
        for key, value in scalars:
            if value is None:
                continue
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        if scalars:
            lines.append("")
        for key, value in tables:
            _emit_table(value, [*path, key])

    _emit_table(data, [])
    return "\n".join(lines).strip() + "\n"


def save_layer_file(path: Path, data: Mapping[str, Any]) -> None:
    validate_layer(data, str(path))
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".json":
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        return
    path.write_text(dumps_toml(data), encoding="utf-8")
