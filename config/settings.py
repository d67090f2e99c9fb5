"""Typed, validated views over the raw configuration sections.

Every component receives one of these frozen dataclasses instead of reading the
raw mapping, so a bad value is caught once at startup and reported as a
``ConfigurationError``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .config_loader import ConfigurationError


_RISK_LEVEL_KEYS = ('medium', 'high', 'critical')


def is_placeholder(value: Any) -> bool:
    """True for unresolved ``${ENV}`` values and empty strings."""
    if value is None:
        return True
    if isinstance(value, str):
        stripped = value.strip()
        return not stripped or (stripped.startswith('${') and stripped.endswith('}'))
    return False


def _section(source: Any, name: str) -> Dict[str, Any]:
    if source is None:
        return {}
    if isinstance(source, Mapping):
        value = source.get(name, {})
    else:
        getter = getattr(source, 'get', None)
        value = getter(name, {}) if callable(getter) else {}
    if hasattr(value, 'to_dict'):
        value = value.to_dict()
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return dict(value)


def _number(section: Mapping, key: str, default: Any = None, *, minimum: Optional[float] = None,
            strictly_positive: bool = False, integer: bool = False, where: str = '') -> Any:
    raw = section.get(key, default)
    label = f"{where}.{key}" if where else key
    if raw is None or is_placeholder(raw):
        if default is None:
            raise ConfigurationError(f"Missing required configuration value '{label}'")
        raw = default
    try:
        value = int(raw) if integer else float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration value '{label}' must be numeric, got {raw!r}") from exc
    if integer and float(raw) != value:
        raise ConfigurationError(f"Configuration value '{label}' must be an integer, got {raw!r}")
    if strictly_positive and value <= 0:
        raise ConfigurationError(f"Configuration value '{label}' must be > 0, got {value}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"Configuration value '{label}' must be >= {minimum}, got {value}")
    return value


def _flag(section: Mapping, key: str, default: bool) -> bool:
    raw = section.get(key, default)
    if is_placeholder(raw):
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in ('1', 'true', 'yes', 'on'):
            return True
        if lowered in ('0', 'false', 'no', 'off'):
            return False
    raise ConfigurationError(f"Configuration flag '{key}' must be boolean, got {raw!r}")


@dataclass(frozen=True)
class DetectorSettings:
    threshold: float
    buffer: float
    sample_interval_s: float = 1.0
    confirmation_window: int = 3
    max_tokens_to_monitor: int = 50
    request_timeout_s: float = 5.0
    max_sample_attempts: int = 3
    retry_backoff_base_s: float = 0.25
    retry_backoff_max_s: float = 2.0
    history_size: int = 120
    minimum_estimate_s: float = 1.0
    progress_rate_floor: float = 1e-6

    @classmethod
    def from_mapping(cls, section: Mapping) -> 'DetectorSettings':
        where = 'detector'
        threshold = _number(section, 'threshold', strictly_positive=True, where=where)
        buffer = _number(section, 'buffer', 0.0, minimum=0.0, where=where)
        if buffer >= threshold:
            raise ConfigurationError(
                f"detector.buffer ({buffer}) must be smaller than detector.threshold ({threshold})"
            )
        max_backoff = _number(section, 'retry_backoff_max_s', 2.0, minimum=0.0, where=where)
        base_backoff = _number(section, 'retry_backoff_base_s', 0.25, minimum=0.0, where=where)
        if base_backoff > max_backoff:
            raise ConfigurationError("detector.retry_backoff_base_s must not exceed retry_backoff_max_s")
        return cls(
            threshold=threshold,
            buffer=buffer,
            sample_interval_s=_number(section, 'sample_interval_s', 1.0, strictly_positive=True, where=where),
            confirmation_window=_number(section, 'confirmation_window', 3, minimum=1, integer=True, where=where),
            max_tokens_to_monitor=_number(section, 'max_tokens_to_monitor', 50, minimum=1, integer=True, where=where),
            request_timeout_s=_number(section, 'request_timeout_s', 5.0, strictly_positive=True, where=where),
            max_sample_attempts=_number(section, 'max_sample_attempts', 3, minimum=1, integer=True, where=where),
            retry_backoff_base_s=base_backoff,
            retry_backoff_max_s=max_backoff,
            history_size=_number(section, 'history_size', 120, minimum=2, integer=True, where=where),
            minimum_estimate_s=_number(section, 'minimum_estimate_s', 1.0, strictly_positive=True, where=where),
            progress_rate_floor=_number(section, 'progress_rate_floor', 1e-6, strictly_positive=True, where=where),
        )


@dataclass(frozen=True)
class Strategy:
    name: str
    buy_amount: float
    sell_threshold: float
    stop_loss_threshold: float
    max_hold_duration_s: float
    partial_sell_ladder: Tuple[float, ...] = ()
    partial_sell_fraction: float = 0.25
    slippage_tolerance: float = 0.05
    description: str = ''

    @property
    def enable_partial_sells(self) -> bool:
        return bool(self.partial_sell_ladder)

    @classmethod
    def from_mapping(cls, name: str, section: Mapping) -> 'Strategy':
        where = f"trading.strategies.{name}"
        ladder_raw = section.get('partial_sell_ladder') or []
        if not isinstance(ladder_raw, (list, tuple)):
            raise ConfigurationError(f"{where}.partial_sell_ladder must be a list")
        try:
            ladder = tuple(float(rung) for rung in ladder_raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{where}.partial_sell_ladder must contain numbers") from exc
        if any(rung <= 0 for rung in ladder):
            raise ConfigurationError(f"{where}.partial_sell_ladder rungs must be positive")
        if any(b <= a for a, b in zip(ladder, ladder[1:])):
            raise ConfigurationError(f"{where}.partial_sell_ladder must be strictly ascending")
        fraction = _number(section, 'partial_sell_fraction', 0.25, strictly_positive=True, where=where)
        if fraction >= 1:
            raise ConfigurationError(f"{where}.partial_sell_fraction must be below 1")
        slippage = _number(section, 'slippage_tolerance', 0.05, minimum=0.0, where=where)
        if slippage >= 1:
            raise ConfigurationError(f"{where}.slippage_tolerance must be below 1")
        return cls(
            name=name,
            description=str(section.get('description') or ''),
            buy_amount=_number(section, 'buy_amount', strictly_positive=True, where=where),
            sell_threshold=_number(section, 'sell_threshold', strictly_positive=True, where=where),
            stop_loss_threshold=_number(section, 'stop_loss_threshold', strictly_positive=True, where=where),
            max_hold_duration_s=_number(section, 'max_hold_duration_s', strictly_positive=True, where=where),
            partial_sell_ladder=ladder,
            partial_sell_fraction=fraction,
            slippage_tolerance=slippage,
        )


@dataclass(frozen=True)
class TradingSettings:
    strategies: Dict[str, Strategy]
    default_strategy: str
    monitor_interval_s: float = 5.0
    max_exit_attempts: int = 3
    deadline_s: float = 300.0
    request_timeout_s: float = 10.0
    enable_stop_losses: bool = True
    enable_profit_taking: bool = True
    paper_mode: bool = True
    paper_fee_rate: float = 0.01
    paper_initial_equity: float = 10.0

    @property
    def strategy(self) -> Strategy:
        return self.strategies[self.default_strategy]

    @classmethod
    def from_mapping(cls, section: Mapping) -> 'TradingSettings':
        where = 'trading'
        raw_strategies = section.get('strategies') or {}
        if hasattr(raw_strategies, 'to_dict'):
            raw_strategies = raw_strategies.to_dict()
        if not isinstance(raw_strategies, Mapping) or not raw_strategies:
            raise ConfigurationError("trading.strategies must define at least one strategy")
        strategies = {}
        for name, body in raw_strategies.items():
            if not isinstance(body, Mapping):
                raise ConfigurationError(f"trading.strategies.{name} must be a mapping")
            strategies[str(name)] = Strategy.from_mapping(str(name), body)
        default = section.get('default_strategy') or next(iter(strategies))
        if default not in strategies:
            raise ConfigurationError(f"trading.default_strategy '{default}' is not a defined strategy")
        paper = _section(section, 'paper')
        fee_rate = _number(paper, 'fee_rate', 0.01, minimum=0.0, where='trading.paper')
        if fee_rate >= 1:
            raise ConfigurationError("trading.paper.fee_rate must be below 1")
        return cls(
            strategies=strategies,
            default_strategy=default,
            monitor_interval_s=_number(section, 'monitor_interval_s', 5.0, strictly_positive=True, where=where),
            max_exit_attempts=_number(section, 'max_exit_attempts', 3, minimum=1, integer=True, where=where),
            deadline_s=_number(section, 'deadline_s', 300, strictly_positive=True, where=where),
            request_timeout_s=_number(section, 'request_timeout_s', 10.0, strictly_positive=True, where=where),
            enable_stop_losses=_flag(section, 'enable_stop_losses', True),
            enable_profit_taking=_flag(section, 'enable_profit_taking', True),
            paper_mode=_flag(section, 'paper_mode', True),
            paper_fee_rate=fee_rate,
            paper_initial_equity=_number(paper, 'initial_equity', 10.0, strictly_positive=True,
                                         where='trading.paper'),
        )


@dataclass(frozen=True)
class RiskSettings:
    max_concurrent_trades: int
    max_total_exposure: float
    window_s: float = 86400.0
    drawdown_levels_pct: Dict[str, float] = field(
        default_factory=lambda: {'medium': 10.0, 'high': 25.0, 'critical': 50.0}
    )
    failed_exit_levels: Dict[str, int] = field(
        default_factory=lambda: {'medium': 1, 'high': 2, 'critical': 3}
    )

    @classmethod
    def from_mapping(cls, section: Mapping) -> 'RiskSettings':
        where = 'risk'
        defaults = cls(max_concurrent_trades=1, max_total_exposure=1.0)
        drawdown = _levels(section.get('drawdown_levels_pct'), defaults.drawdown_levels_pct,
                           f"{where}.drawdown_levels_pct", integer=False)
        failed = _levels(section.get('failed_exit_levels'), defaults.failed_exit_levels,
                         f"{where}.failed_exit_levels", integer=True)
        return cls(
            max_concurrent_trades=_number(section, 'max_concurrent_trades', minimum=1, integer=True, where=where),
            max_total_exposure=_number(section, 'max_total_exposure', strictly_positive=True, where=where),
            window_s=_number(section, 'window_s', 86400, strictly_positive=True, where=where),
            drawdown_levels_pct=drawdown,
            failed_exit_levels=failed,
        )


def _levels(raw: Any, defaults: Dict[str, Any], where: str, integer: bool) -> Dict[str, Any]:
    if raw is None:
        return dict(defaults)
    if hasattr(raw, 'to_dict'):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where} must be a mapping of medium/high/critical")
    levels = {}
    for key in _RISK_LEVEL_KEYS:
        levels[key] = _number(raw, key, defaults[key], strictly_positive=True, integer=integer, where=where)
    if not levels['medium'] <= levels['high'] <= levels['critical']:
        raise ConfigurationError(f"{where} must satisfy medium <= high <= critical")
    return levels


@dataclass(frozen=True)
class EventSettings:
    queue_size: int = 1000
    overflow_policy: str = 'drop_oldest'
    history_size: int = 100

    @classmethod
    def from_mapping(cls, section: Mapping) -> 'EventSettings':
        where = 'events'
        policy = str(section.get('overflow_policy') or 'drop_oldest').strip().lower()
        if policy not in ('drop_oldest', 'block'):
            raise ConfigurationError(f"events.overflow_policy must be 'drop_oldest' or 'block', got {policy!r}")
        return cls(
            queue_size=_number(section, 'queue_size', 1000, minimum=1, integer=True, where=where),
            overflow_policy=policy,
            history_size=_number(section, 'history_size', 100, minimum=0, integer=True, where=where),
        )


@dataclass(frozen=True)
class SniperSettings:
    detector: DetectorSettings
    trading: TradingSettings
    risk: RiskSettings
    events: EventSettings
    monitoring: Dict[str, Any] = field(default_factory=dict)
    market_data: Dict[str, Any] = field(default_factory=dict)
    gateway: Dict[str, Any] = field(default_factory=dict)
    api: Dict[str, Any] = field(default_factory=dict)

    @property
    def shutdown_grace_s(self) -> float:
        return _number(self.monitoring, 'shutdown_grace_s', 5.0, minimum=0.0, where='monitoring')


def load_settings(source: Any) -> SniperSettings:
    """Validate a ``Config`` (or plain dict) and return typed settings."""
    return SniperSettings(
        detector=DetectorSettings.from_mapping(_section(source, 'detector')),
        trading=TradingSettings.from_mapping(_section(source, 'trading')),
        risk=RiskSettings.from_mapping(_section(source, 'risk')),
        events=EventSettings.from_mapping(_section(source, 'events')),
        monitoring=_section(source, 'monitoring'),
        market_data=_section(source, 'market_data'),
        gateway=_section(source, 'gateway'),
        api=_section(source, 'api'),
    )
