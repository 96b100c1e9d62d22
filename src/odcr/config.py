"""Run settings.

Precedence, lowest first: defaults, YAML config file, environment, CLI.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from odcr.errors import ConfigurationError
from odcr.models import Scope
from odcr.utils import env_flag, load_yaml

DEFAULT_CAPABILITY = "Microsoft.Compute"

# env var -> (settings field, kind)
ENV_VARS = {
    "AZURE_SUBSCRIPTION_ID": ("subscription_id", "str"),
    "ODCR_SUBSCRIPTION_ID": ("subscription_id", "str"),
    "ODCR_RESOURCE_GROUP": ("resource_group", "str"),
    "ODCR_LOCATION": ("location", "str"),
    "ODCR_GROUP_NAME": ("group_name", "str"),
    "ODCR_DRY_RUN": ("dry_run", "bool"),
    "ODCR_SKIP_PREFLIGHT": ("skip_preflight", "bool"),
    "ODCR_PROBE_SIZE": ("probe_size_class", "str"),
    "ODCR_CAPABILITY": ("capability_id", "str"),
    "ODCR_BIND_RATE": ("bind_rate_per_second", "float"),
    "ODCR_BIND_BURST": ("bind_burst", "int"),
    "ODCR_RUN_TIMEOUT_SEC": ("run_timeout_sec", "float"),
    "ODCR_LRO_TIMEOUT_SEC": ("lro_timeout_sec", "float"),
    "ODCR_ACCEPT_PARTIAL": ("accept_partial", "bool"),
    "ODCR_OUTPUT": ("output_format", "str"),
    "ODCR_JSON_OUT": ("json_out", "str"),
    "ODCR_WEBHOOK_URL": ("webhook_url", "str"),
}

OUTPUT_FORMATS = ("text", "json")


@dataclass
class Settings:
    subscription_id: str = ""
    resource_group: str = ""
    location: str = ""
    group_name: str = ""
    dry_run: bool = False
    skip_preflight: bool = False
    # empty: smallest reservable size in the probe zone
    probe_size_class: str = ""
    capability_id: str = DEFAULT_CAPABILITY
    bind_rate_per_second: float = 1.0
    bind_burst: int = 1
    run_timeout_sec: float = 1800.0
    lro_timeout_sec: float = 600.0
    accept_partial: bool = True
    output_format: str = "text"
    json_out: str = ""
    webhook_url: str = ""

    @property
    def scope(self) -> Scope:
        return Scope(subscription_id=self.subscription_id, resource_group=self.resource_group)

    @property
    def effective_group_name(self) -> str:
        return self.group_name or f"{self.resource_group}-crg"

    @property
    def run_timeout(self) -> Optional[float]:
        return self.run_timeout_sec if self.run_timeout_sec > 0 else None

    def validate(self) -> "Settings":
        if not self.resource_group:
            raise ConfigurationError("Resource group is required (--resource-group or ODCR_RESOURCE_GROUP)")
        if not self.subscription_id:
            raise ConfigurationError(
                "Subscription id is required (--subscription or AZURE_SUBSCRIPTION_ID)"
            )
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigurationError(
                f"Unknown output format '{self.output_format}' (valid: {', '.join(OUTPUT_FORMATS)})"
            )
        if self.bind_rate_per_second <= 0:
            raise ConfigurationError("Bind rate must be positive")
        if self.bind_burst < 1:
            raise ConfigurationError("Bind burst must be >= 1")
        return self


def _coerce(name: str, kind: str, raw: Any) -> Any:
    try:
        if kind == "bool":
            return raw if isinstance(raw, bool) else env_flag(str(raw))
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e


_FIELD_KINDS = {
    f.name: {"bool": "bool", "int": "int", "float": "float"}.get(str(f.type), "str")
    for f in fields(Settings)
}


def settings_from_file(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Config file not found: {p}")
    raw = load_yaml(p)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {p} must contain a mapping")
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        name = str(key).replace("-", "_")
        if name not in _FIELD_KINDS:
            raise ConfigurationError(f"Unknown setting '{key}' in {p}")
        if value is not None:
            values[name] = _coerce(name, _FIELD_KINDS[name], value)
    return values


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for var, (name, kind) in ENV_VARS.items():
        raw = environ.get(var, "")
        if raw.strip():
            values[name] = _coerce(var, kind, raw.strip())
    return values


def load_settings(
    config_path: str | Path | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    values: Dict[str, Any] = {}
    if config_path:
        values.update(settings_from_file(config_path))
    values.update(settings_from_env(environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    return Settings(**values)
