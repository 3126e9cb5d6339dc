#!/usr/bin/env python3
"""
KUBEDASH SETTINGS
-----------------
Layered configuration: built-in defaults, then an optional YAML file, then
KUBEDASH_* environment variables (secrets such as the GitLab token are
expected to arrive this way from the CronJob's Secret).

Author: KubeDash Team
Date: 2026-10-19
"""

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Any, List, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubedash.core.errors import ConfigError
from kubedash.discovery.discovery import KIND_LISTERS

logger = logging.getLogger("kubedash.config")

ENV_PREFIX = "KUBEDASH_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class Settings:
    # Repository (template source, registry, repository sink)
    gitlab_url: str = ""
    gitlab_token: str = ""
    repository: str = ""                  # GitLab project path ("group/repo") or numeric id
    branch: str = "main"
    dashboard_path: str = "dashboards"
    template_path: str = "templates/dashboard.json"
    registry_path: str = "registry/identities.yaml"
    registry_file: Optional[str] = None   # local registry instead of the repository copy

    # Cluster
    kubeconfig: Optional[str] = None
    cluster_namespace: str = "monitoring"
    marker_label: str = "grafana-dashboards/enabled=true"
    marker_annotation: Optional[str] = None
    workload_kinds: List[str] = field(default_factory=lambda: ["Deployment"])
    configmap_prefix: str = "grafana-dashboard-"
    sidecar_label: str = "grafana_dashboard"
    sidecar_label_value: str = "1"
    folder_annotation: Optional[str] = None
    folder: Optional[str] = None

    # Sink policy
    cluster_prune: bool = True
    repository_prune: bool = False

    # Timing and retry
    request_timeout: float = 10.0
    cycle_timeout: float = 300.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    allocation_attempts: int = 5
    render_workers: int = 4

    REQUIRED = ("gitlab_url", "gitlab_token", "repository")

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Builds settings from defaults, then `path` (YAML), then the environment."""
        settings = cls()
        if path:
            settings.update(cls._read_file(path))
        settings.update(cls._read_env(os.environ if environ is None else environ))
        return settings

    @staticmethod
    def _read_file(path: str) -> Dict[str, Any]:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            data = YAML(typ="safe").load(config_path.read_text(encoding="utf-8"))
        except YAMLError as e:
            raise ConfigError(f"Config file {config_path} is not valid YAML: {e}")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        return {str(k).replace("-", "_"): v for k, v in data.items()}

    @classmethod
    def _read_env(cls, environ) -> Dict[str, Any]:
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                values[f.name] = raw
        return values

    def update(self, values: Dict[str, Any]):
        known = {f.name: f for f in fields(self)}
        for name, raw in values.items():
            if name not in known:
                logger.warning(f"Ignoring unknown setting '{name}'")
                continue
            setattr(self, name, self._coerce(name, raw, getattr(self, name)))

    @staticmethod
    def _coerce(name: str, raw: Any, current: Any) -> Any:
        # The current value's type decides how strings from env/YAML are read
        if raw is None:
            return None
        if isinstance(current, bool):
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ConfigError(f"Setting '{name}' expects a boolean, got '{raw}'")
        if isinstance(current, list):
            if isinstance(raw, (list, tuple)):
                return [str(v) for v in raw]
            return [part.strip() for part in str(raw).split(",") if part.strip()]
        if isinstance(current, (int, float)):
            try:
                return type(current)(raw)
            except (TypeError, ValueError):
                raise ConfigError(f"Setting '{name}' expects a number, got '{raw}'")
        return str(raw)

    def missing(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    def validate(self) -> "Settings":
        missing = self.missing()
        if missing:
            env_names = ", ".join(ENV_PREFIX + m.upper() for m in missing)
            raise ConfigError(f"Missing required settings: {', '.join(missing)} (set {env_names})")
        if not self.marker_label and not self.marker_annotation:
            raise ConfigError("One of marker_label or marker_annotation must be set")
        unknown = [k for k in self.workload_kinds if k not in KIND_LISTERS]
        if unknown:
            raise ConfigError(f"Unsupported workload_kinds: {', '.join(unknown)}")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1")
        if self.cycle_timeout <= 0 or self.request_timeout <= 0:
            raise ConfigError("Timeouts must be positive")
        return self
