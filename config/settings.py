"""Immutable runtime settings built once from the YAML configuration.

Every component receives the same ``OrchestratorConfig`` instance through its
constructor; nothing reads the environment after startup.
"""
from __future__ import annotations

import logging
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Fatal configuration problem detected before any task starts."""


@dataclass(frozen=True)
class MarketDataSettings:
    source: str = 'simulated'
    base_url: str = 'https://api.ethereal.exchange'
    markets_path: str = '/v1/markets'
    timeout_s: float = 10.0
    simulated_seed: Optional[int] = None


@dataclass(frozen=True)
class InferenceSettings:
    enabled: bool = False
    api_key: Optional[str] = None
    api_url: str = 'https://api.groq.com/openai/v1/chat/completions'
    model: str = 'llama-3.3-70b-versatile'
    temperature: float = 0.2
    max_tokens: int = 500
    timeout_s: float = 15.0


@dataclass(frozen=True)
class DatabaseSettings:
    enabled: bool = False
    host: Optional[str] = None
    port: int = 5432
    database: str = 'orchestrator'
    user: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class PersistenceSettings:
    results_dir: str = 'trade-results/orchestrator'
    database: DatabaseSettings = field(default_factory=DatabaseSettings)


@dataclass(frozen=True)
class MonitoringSettings:
    log_level: str = 'INFO'
    prometheus_port: Optional[int] = None
    alert_webhook: Optional[str] = None
    fetch_failure_alert_threshold: int = 3


@dataclass(frozen=True)
class OrchestratorConfig:
    total_capital: float = 5.0
    dry_run: bool = True
    run_duration_s: Optional[float] = 120.0
    max_concurrent_positions: int = 3
    max_position_fraction: float = 0.30
    max_leverage: int = 5
    min_confidence: float = 70.0
    min_signal_age_s: float = 10.0
    signal_expiry_s: float = 120.0
    cooldown_s: float = 20.0
    market_poll_interval_s: float = 5.0
    deep_scan_interval_s: float = 15.0
    position_check_interval_s: float = 3.0
    promotion_tick_s: float = 3.0
    status_interval_s: float = 10.0
    history_window: int = 60
    dry_run_exit_delay_s: Tuple[float, float] = (5.0, 15.0)
    market_data: MarketDataSettings = field(default_factory=MarketDataSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    def __post_init__(self):
        self._check_bounds()

    def _check_bounds(self) -> None:
        intervals = {
            'market_poll_interval_s': self.market_poll_interval_s,
            'deep_scan_interval_s': self.deep_scan_interval_s,
            'position_check_interval_s': self.position_check_interval_s,
            'promotion_tick_s': self.promotion_tick_s,
            'status_interval_s': self.status_interval_s,
            'signal_expiry_s': self.signal_expiry_s,
        }
        for name, value in intervals.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.total_capital <= 0:
            raise ConfigurationError(f"total_capital must be positive, got {self.total_capital}")
        if self.max_concurrent_positions < 1:
            raise ConfigurationError("max_concurrent_positions must be at least 1")
        if not 0 < self.max_position_fraction <= 1:
            raise ConfigurationError("max_position_fraction must be within (0, 1]")
        if self.max_leverage < 1:
            raise ConfigurationError("max_leverage must be at least 1")
        if not 0 <= self.min_confidence <= 100:
            raise ConfigurationError("min_confidence must be within [0, 100]")
        if self.min_signal_age_s < 0 or self.cooldown_s < 0:
            raise ConfigurationError("min_signal_age_s and cooldown_s cannot be negative")
        if self.history_window < 10:
            raise ConfigurationError("history_window must keep at least 10 snapshots")
        if self.run_duration_s is not None and self.run_duration_s <= 0:
            raise ConfigurationError("run_duration_s must be positive or null")
        low, high = self.dry_run_exit_delay_s
        if low < 0 or high < low:
            raise ConfigurationError("dry_run_exit_delay_s must be an ordered, non-negative pair")
        if self.market_data.source not in ('simulated', 'rest'):
            raise ConfigurationError(f"Unknown market_data.source '{self.market_data.source}'")

    def validate_credentials(self) -> None:
        """Raise when a collaborator needs a credential that was not supplied."""
        if self.inference.enabled and not self.inference.api_key:
            raise ConfigurationError("GROQ_API_KEY is required when inference is enabled")
        if not self.dry_run and self.market_data.source == 'simulated':
            raise ConfigurationError("Live mode requires market_data.source = 'rest'")
        database = self.persistence.database
        if database.enabled and not (database.host and database.user):
            raise ConfigurationError("Database mirror enabled without host/user credentials")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'OrchestratorConfig':
        orchestrator = dict(data.get('orchestrator') or {})
        delay = orchestrator.get('dry_run_exit_delay_s')
        if delay is not None:
            orchestrator['dry_run_exit_delay_s'] = tuple(float(v) for v in delay)
        persistence = dict(data.get('persistence') or {})
        database = _build(DatabaseSettings, persistence.pop('database', None) or {})
        return _build(
            cls,
            orchestrator,
            market_data=_build(MarketDataSettings, data.get('market_data') or {}),
            inference=_build(InferenceSettings, data.get('inference') or {}),
            persistence=_build(PersistenceSettings, persistence, database=database),
            monitoring=_build(MonitoringSettings, data.get('monitoring') or {}),
        )


def _build(cls, section: Mapping[str, Any], **nested: Any):
    known = {f.name: f for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown %s option '%s'", cls.__name__, key)
            continue
        if value is None:
            continue
        kwargs[key] = _coerce(known[key].default, value)
    kwargs.update(nested)
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {cls.__name__} options: {exc}") from exc


def _coerce(default: Any, value: Any) -> Any:
    if default is MISSING or default is None:
        return value
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() not in ('false', '0', 'no', 'off')
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def load_settings(source: Optional[Any] = None) -> OrchestratorConfig:
    """Build the settings object from a ``Config`` loader or a plain mapping."""
    if source is None:
        from .config_loader import config as source
    data = source.to_dict() if hasattr(source, 'to_dict') else source
    return OrchestratorConfig.from_mapping(data or {})
