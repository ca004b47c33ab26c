from .config_loader import Config, SectionProxy, load_config
from .runtime import ConfigError, InstrumentConfig, RuntimeConfig

__all__ = ['Config', 'SectionProxy', 'load_config', 'ConfigError', 'InstrumentConfig', 'RuntimeConfig']
