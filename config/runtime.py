"""Mutable configuration store shared by the stream, decision and command paths.

Every write goes through a validated setter; a failed validation raises
``ConfigError`` and leaves the stored value untouched. Reads hand out copies so
a reader never observes a half-applied update.
"""
import copy
import logging
import math
import threading
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration change names an unknown field or an invalid value."""


@dataclass(frozen=True)
class InstrumentConfig:
    symbol: str
    min_volume_usd: float
    min_dominance: float
    min_price_change: float
    cooldown_minutes: float
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


INSTRUMENT_PARAMS = ('min_volume_usd', 'min_dominance', 'min_price_change', 'cooldown_minutes')

INSTRUMENT_ALIASES = {
    'min_volume': 'min_volume_usd',
    'minVolume': 'min_volume_usd',
    'minVolumeUSD': 'min_volume_usd',
    'minDominance': 'min_dominance',
    'minPriceChange': 'min_price_change',
    'cooldownMinutes': 'cooldown_minutes',
}


def _parse_number(field_name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name}: invalid value {value!r} (must be a number)")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field_name}: invalid value {value!r} (must be a number)") from None
    if math.isnan(number) or math.isinf(number):
        raise ConfigError(f"{field_name}: invalid value {value!r} (must be finite)")
    return number


def _parse_bool(field_name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('true', 'on', 'yes', '1'):
        return True
    if text in ('false', 'off', 'no', '0'):
        return False
    raise ConfigError(f"{field_name}: invalid value {value!r} (must be true or false)")


def _bounded(low: Optional[float] = None, high: Optional[float] = None,
             integer: bool = False, exclusive_low: bool = False) -> Callable[[str, Any], float]:
    def parse(field_name: str, value: Any) -> float:
        number = _parse_number(field_name, value)
        if integer:
            if number != int(number):
                raise ConfigError(f"{field_name}: invalid value {value!r} (must be an integer)")
            number = int(number)
        if low is not None:
            if exclusive_low and number <= low:
                raise ConfigError(f"{field_name} must be > {low:g}")
            if not exclusive_low and number < low:
                raise ConfigError(f"{field_name} must be >= {low:g}")
        if high is not None and number > high:
            raise ConfigError(f"{field_name} must be <= {high:g}")
        return number
    return parse


def _int_list(low: int, high: int) -> Callable[[str, Any], List[int]]:
    def parse(field_name: str, value: Any) -> List[int]:
        if isinstance(value, str):
            items = [part.strip() for part in value.split(',') if part.strip()]
        elif isinstance(value, (list, tuple, set)):
            items = list(value)
        else:
            raise ConfigError(f"{field_name}: invalid value {value!r} (must be a list of integers)")
        parsed = []
        for item in items:
            number = _bounded(low, high, integer=True)(field_name, item)
            parsed.append(int(number))
        return sorted(set(parsed))
    return parse


def _symbol(field_name: str, value: Any) -> str:
    text = str(value).strip().upper()
    if not text or not text.isalnum():
        raise ConfigError(f"{field_name}: invalid symbol {value!r}")
    return text


_INSTRUMENT_VALIDATORS = {
    'min_volume_usd': _bounded(0),
    'min_dominance': _bounded(50, 100),
    'min_price_change': _bounded(0),
    'cooldown_minutes': _bounded(0),
}

FILTER_SCHEMAS: Dict[str, Dict[str, Callable[[str, Any], Any]]] = {
    'aggression_decay': {
        'enabled': _parse_bool,
        'lookback_minutes': _bounded(0),
        'decay_threshold': _bounded(0, exclusive_low=True),
        'min_history': _bounded(0, integer=True),
    },
    'stop_cluster': {
        'enabled': _parse_bool,
        'max_stops': _bounded(1, integer=True),
        'time_window_minutes': _bounded(0),
        'pause_minutes': _bounded(0),
    },
    'time_based': {
        'enabled': _parse_bool,
        'blocked_days': _int_list(0, 6),
        'blocked_hours': _int_list(0, 23),
        'allowed_hours_start': _bounded(0, 24, integer=True),
        'allowed_hours_end': _bounded(0, 24, integer=True),
    },
    'market_volatility': {
        'enabled': _parse_bool,
        'reference_symbol': _symbol,
        'check_interval_minutes': _bounded(0, exclusive_low=True),
        'timeframe_minutes': _bounded(0, exclusive_low=True),
        'threshold_percent': _bounded(0, exclusive_low=True),
        'pause_minutes': _bounded(0),
    },
}

FILTER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'aggression_decay': {
        'enabled': True,
        'lookback_minutes': 3,
        'decay_threshold': 0.85,
        'min_history': 2,
    },
    'stop_cluster': {
        'enabled': True,
        'max_stops': 2,
        'time_window_minutes': 30,
        'pause_minutes': 30,
    },
    'time_based': {
        'enabled': True,
        'blocked_days': [],
        'blocked_hours': [],
        'allowed_hours_start': 6,
        'allowed_hours_end': 18,
    },
    'market_volatility': {
        'enabled': True,
        'reference_symbol': 'BTCUSDT',
        'check_interval_minutes': 1,
        'timeframe_minutes': 10,
        'threshold_percent': 2.0,
        'pause_minutes': 15,
    },
}


def _check_hour_band(name: str, start: int, end: int) -> None:
    if start > end:
        raise ConfigError(
            f"{name}: allowed_hours_start ({start}) must not exceed allowed_hours_end ({end}); "
            "each end is checked on its own, so move allowed_hours_end first when shifting the band later"
        )


def build_instrument(symbol: str, raw: Mapping[str, Any]) -> InstrumentConfig:
    values: Dict[str, Any] = {}
    for param in INSTRUMENT_PARAMS:
        if param not in raw:
            raise ConfigError(f"{symbol}.{param} is required")
        values[param] = _INSTRUMENT_VALIDATORS[param](f"{symbol}.{param}", raw[param])
    enabled = _parse_bool(f"{symbol}.enabled", raw.get('enabled', True))
    return InstrumentConfig(symbol=_symbol('symbol', symbol), enabled=enabled, **values)


class RuntimeConfig:
    """Validated, lock-guarded store of per-instrument and per-filter parameters."""

    def __init__(self, instruments: Mapping[str, Mapping[str, Any]],
                 filters: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._lock = threading.RLock()
        self._instruments: Dict[str, InstrumentConfig] = {}
        for symbol, raw in (instruments or {}).items():
            instrument = build_instrument(symbol, raw)
            self._instruments[instrument.symbol] = instrument

        self._filters: Dict[str, Dict[str, Any]] = copy.deepcopy(FILTER_DEFAULTS)
        for name, raw in (filters or {}).items():
            if name not in FILTER_SCHEMAS:
                raise ConfigError(f"Filter {name} not found. Valid: {', '.join(FILTER_SCHEMAS)}")
            for param, value in dict(raw).items():
                self._filters[name][param] = self._validate_filter_param(name, param, value)
        band = self._filters['time_based']
        _check_hour_band('time_based', band['allowed_hours_start'], band['allowed_hours_end'])

    @classmethod
    def from_config(cls, config) -> 'RuntimeConfig':
        instruments = config.get('instruments', {}) or {}
        filters = config.get('filters', {}) or {}
        return cls(
            {symbol: dict(values) for symbol, values in instruments.items()},
            {name: dict(values) for name, values in filters.items()},
        )

    # Instruments

    def get(self, symbol: str) -> Optional[InstrumentConfig]:
        with self._lock:
            return self._instruments.get(symbol)

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._instruments)

    def enabled_symbols(self) -> List[str]:
        with self._lock:
            return [symbol for symbol, cfg in self._instruments.items() if cfg.enabled]

    def _require(self, symbol: str) -> InstrumentConfig:
        instrument = self._instruments.get(symbol)
        if instrument is None:
            raise ConfigError(f"Symbol {symbol} not found")
        return instrument

    def set_instrument_param(self, symbol: str, param: str, value: Any) -> Tuple[Any, Any]:
        field_name = INSTRUMENT_ALIASES.get(param, param)
        if field_name not in INSTRUMENT_PARAMS:
            raise ConfigError(f"Invalid parameter: {param}. Valid: {', '.join(INSTRUMENT_PARAMS)}")
        new_value = _INSTRUMENT_VALIDATORS[field_name](field_name, value)
        with self._lock:
            instrument = self._require(symbol)
            old_value = getattr(instrument, field_name)
            self._instruments[symbol] = replace(instrument, **{field_name: new_value})
        logger.info("[CONFIG] %s.%s: %s -> %s", symbol, field_name, old_value, new_value)
        return old_value, new_value

    def set_enabled(self, symbol: str, enabled: Any) -> Tuple[bool, bool]:
        new_value = _parse_bool('enabled', enabled)
        with self._lock:
            instrument = self._require(symbol)
            old_value = instrument.enabled
            self._instruments[symbol] = replace(instrument, enabled=new_value)
        logger.info("[CONFIG] %s %s", symbol, 'ENABLED' if new_value else 'DISABLED')
        return old_value, new_value

    # Filters

    def filter_names(self) -> List[str]:
        return list(FILTER_SCHEMAS)

    def get_filter(self, name: str) -> Dict[str, Any]:
        with self._lock:
            if name not in self._filters:
                raise ConfigError(f"Filter {name} not found")
            return copy.deepcopy(self._filters[name])

    def _validate_filter_param(self, name: str, param: str, value: Any) -> Any:
        schema = FILTER_SCHEMAS[name]
        if param not in schema:
            raise ConfigError(f"Invalid parameter for {name}: {param}. Valid: {', '.join(schema)}")
        return schema[param](f"{name}.{param}", value)

    def set_filter_param(self, name: str, param: str, value: Any) -> Tuple[Any, Any]:
        if name not in FILTER_SCHEMAS:
            raise ConfigError(f"Filter {name} not found. Valid: {', '.join(FILTER_SCHEMAS)}")
        new_value = self._validate_filter_param(name, param, value)
        with self._lock:
            current = self._filters[name]
            if param in ('allowed_hours_start', 'allowed_hours_end'):
                start = new_value if param == 'allowed_hours_start' else current['allowed_hours_start']
                end = new_value if param == 'allowed_hours_end' else current['allowed_hours_end']
                _check_hour_band(name, start, end)
            old_value = copy.deepcopy(current.get(param))
            current[param] = new_value
        logger.info("[FILTER] %s.%s: %s -> %s", name, param, old_value, new_value)
        return old_value, new_value

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'instruments': {symbol: cfg.to_dict() for symbol, cfg in self._instruments.items()},
                'filters': copy.deepcopy(self._filters),
            }
