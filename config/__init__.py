from .config_loader import config
from .settings import (
    ConfigurationError,
    InferenceSettings,
    MarketDataSettings,
    MonitoringSettings,
    OrchestratorConfig,
    PersistenceSettings,
    load_settings,
)

__all__ = [
    'config',
    'ConfigurationError',
    'InferenceSettings',
    'MarketDataSettings',
    'MonitoringSettings',
    'OrchestratorConfig',
    'PersistenceSettings',
    'load_settings',
]
