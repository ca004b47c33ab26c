import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# ${VAR} or ${VAR:default}
_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(.*))?\}$')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def resolve_env_vars(node: Any) -> Any:
    """Expand ``${VAR}`` / ``${VAR:default}`` scalars anywhere in a YAML tree."""
    if isinstance(node, dict):
        return {key: resolve_env_vars(value) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_env_vars(item) for item in node]
    if not isinstance(node, str):
        return node
    match = _ENV_PATTERN.match(node)
    if not match:
        return node
    env_key, default = match.groups()
    value = os.getenv(env_key)
    if value is not None:
        return value
    return node if default is None else default


class SectionProxy(Mapping):
    """Read-only view of one config section; nested mappings come back wrapped."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def section(self, key: str) -> 'SectionProxy':
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """Static YAML configuration with ``${VAR:default}`` environment expansion."""

    def __init__(self, config_path: Union[str, Path, None] = None, data: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        super().__init__(resolve_env_vars(data) if data is not None else self._load_config())

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")
        return resolve_env_vars(raw)

    def reload(self) -> None:
        self._data = self._load_config()


def load_config(config_path: Union[str, Path, None] = None) -> Config:
    """Load configuration from ``config_path``, ``$FLOW_MONITOR_CONFIG`` or the bundled default."""
    path = config_path or os.getenv('FLOW_MONITOR_CONFIG') or DEFAULT_CONFIG_PATH
    return Config(path)
