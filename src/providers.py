from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import tomllib


logger = logging.getLogger(__name__)

# [profile] keys accepted from the registry file and their types.
PROFILE_DEFAULT_FIELDS: dict[str, type] = {
    "iterations": int,
    "concurrency": int,
    "rate_limit_rps": float,
    "burst": int,
    "warmup": int,
    "timeout_s": float,
    "run_deadline_s": float,
    "stall_timeout_s": float,
    "max_attempts": int,
    "initial_backoff_s": float,
    "backoff_multiplier": float,
    "max_backoff_s": float,
    "jitter": float,
}


def _escape_toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return escaped.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def _coerce_optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


def _coerce_optional(data: dict[str, object], key: str, kind: type) -> object | None:
    value = data.get(key)
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be a {kind.__name__}, got {value!r}") from exc


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        return f'"{_escape_toml_string(value)}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_format_toml_value(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML value type: {type(value)!r}")


def _format_table(header: str, table: dict[str, object]) -> list[str]:
    lines = [f"[{header}]"]
    nested: list[tuple[str, dict[str, object]]] = []
    for key in sorted(table):
        value = table[key]
        if isinstance(value, dict):
            nested.append((key, value))
            continue
        lines.append(f'"{_escape_toml_string(str(key))}" = {_format_toml_value(value)}')
    for key, value in nested:
        if value:
            lines.append("")
            lines.extend(_format_table(f'{header}."{_escape_toml_string(key)}"', value))
    return lines


def _string_mapping(name: str, value: object) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a mapping")
    return {str(key): str(item) for key, item in value.items()}


@dataclass(slots=True)
class ProviderConfig:
    name: str
    model: str
    api_base: str | None = None
    api_key_env: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, object] = field(default_factory=dict)
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_s: float | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"model": self.model}
        optional = {
            "api_base": self.api_base,
            "api_key_env": self.api_key_env,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout_s": self.timeout_s,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.extra_headers:
            data["extra_headers"] = dict(self.extra_headers)
        if self.params:
            data["params"] = dict(self.params)
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, object]) -> "ProviderConfig":
        model = _coerce_optional_string(data.get("model"))
        if model is None:
            raise ValueError(f"Provider {name!r} missing required field 'model'")

        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError(f"Provider {name!r}.params must be a table")

        return cls(
            name=name,
            model=model,
            api_base=_coerce_optional_string(data.get("api_base")),
            api_key_env=_coerce_optional_string(data.get("api_key_env")),
            extra_headers=_string_mapping("extra_headers", data.get("extra_headers")),
            params=dict(params),
            temperature=_coerce_optional(data, "temperature", float),
            max_tokens=_coerce_optional(data, "max_tokens", int),
            timeout_s=_coerce_optional(data, "timeout_s", float),
        )


class ProviderRegistry:
    """Reads and writes ``providers.toml``: ``[providers.*]`` tables plus ``[profile]`` defaults."""

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path

    def load(self) -> dict[str, ProviderConfig]:
        providers_raw = self._providers_table(self._read_raw())
        loaded: dict[str, ProviderConfig] = {}
        for name, data in providers_raw.items():
            if not isinstance(data, dict):
                raise ValueError(f"Provider {name!r} entry must be a table")
            loaded[str(name)] = ProviderConfig.from_dict(str(name), data)
        logger.debug("Loaded %d provider(s) from %s", len(loaded), self.config_path)
        return loaded

    def list_providers(self) -> list[ProviderConfig]:
        providers = self.load()
        return [providers[name] for name in sorted(providers)]

    def get_provider(self, name: str) -> ProviderConfig:
        providers = self.load()
        if name not in providers:
            raise KeyError(name)
        return providers[name]

    def save_provider(self, provider: ProviderConfig) -> None:
        if not provider.name.strip():
            raise ValueError("Provider name cannot be empty")
        raw = self._read_raw()
        self._providers_table(raw)[provider.name] = provider.to_dict()
        self._write_raw(raw)
        logger.debug("Saved provider %r to %s", provider.name, self.config_path)

    def remove_provider(self, name: str) -> None:
        raw = self._read_raw()
        providers_raw = self._providers_table(raw)
        if name not in providers_raw:
            raise KeyError(name)
        del providers_raw[name]
        self._write_raw(raw)
        logger.debug("Removed provider %r from %s", name, self.config_path)

    def load_profile_defaults(self) -> dict[str, object]:
        """Run settings from the ``[profile]`` table, validated against known keys."""
        profile = self._read_raw().get("profile", {})
        if not isinstance(profile, dict):
            raise ValueError("Top-level 'profile' must be a table")
        unknown = sorted(set(profile) - set(PROFILE_DEFAULT_FIELDS))
        if unknown:
            raise ValueError(f"Unknown profile setting(s): {', '.join(unknown)}")
        return {
            key: _coerce_optional(profile, key, PROFILE_DEFAULT_FIELDS[key])
            for key in profile
            if profile[key] is not None
        }

    @staticmethod
    def _providers_table(raw: dict[str, object]) -> dict[str, object]:
        providers_raw = raw.setdefault("providers", {})
        if not isinstance(providers_raw, dict):
            raise ValueError("Top-level 'providers' must be a table")
        return providers_raw

    def _read_raw(self) -> dict[str, object]:
        if not self.config_path.exists():
            return {"providers": {}}
        with self.config_path.open("rb") as handle:
            return tomllib.load(handle)

    def _write_raw(self, data: dict[str, object]) -> None:
        lines: list[str] = []
        profile = data.get("profile")
        if isinstance(profile, dict) and profile:
            lines.extend(_format_table("profile", profile))
            lines.append("")

        providers_raw = self._providers_table(data)
        for provider_name in sorted(providers_raw):
            provider_data = providers_raw[provider_name]
            if not isinstance(provider_data, dict):
                raise ValueError(f"Provider {provider_name!r} entry must be a table")
            lines.extend(_format_table(f'providers."{_escape_toml_string(str(provider_name))}"', provider_data))
            lines.append("")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(lines).strip()
        self.config_path.write_text(content + ("\n" if content else ""), encoding="utf-8")
