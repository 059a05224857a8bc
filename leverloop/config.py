"""
config.py - Engine configuration

EngineConfig is an explicit value owned by one LoopEngine. It is frozen;
the engine replaces it through pause(), unpause() and update_config(), so a
running invocation always sees a single consistent configuration.

load_config() reads the same fields from a YAML mapping, either at the top
level or under an "engine" key:

    engine:
      paused: false
      min_health_factor_floor: "1.05"
      max_slippage: "0.05"
      max_leverage: 10
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .core import (
    HEALTH_FACTOR_FLOOR, DEFAULT_MAX_SLIPPAGE, DEFAULT_DUST_VALUE,
    MIN_TARGET_LEVERAGE, MAX_TARGET_LEVERAGE, MAX_LOOP_ITERATIONS,
    ZERO, ONE, to_decimal,
)


_DECIMAL_FIELDS = (
    'min_health_factor_floor', 'max_slippage', 'min_leverage', 'max_leverage', 'dust_value',
)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Engine-wide limits.

    Attributes:
        paused: Reject new loops (unwinds and previews stay available)
        min_health_factor_floor: Lowest min_health_factor a caller may request
        max_slippage: Highest slippage tolerance a caller may request
        min_leverage: Lowest admissible target leverage
        max_leverage: Highest admissible target leverage
        max_iterations: Iteration cap per invocation (also caps unwind chunks)
        dust_value: Canonical value below which a borrow increment is not worth a step
        fail_on_iteration_cap: Raise IterationCapReached instead of returning CAPPED
    """
    paused: bool = False
    min_health_factor_floor: Decimal = HEALTH_FACTOR_FLOOR
    max_slippage: Decimal = DEFAULT_MAX_SLIPPAGE
    min_leverage: Decimal = MIN_TARGET_LEVERAGE
    max_leverage: Decimal = MAX_TARGET_LEVERAGE
    max_iterations: int = MAX_LOOP_ITERATIONS
    dust_value: Decimal = DEFAULT_DUST_VALUE
    fail_on_iteration_cap: bool = False

    def __post_init__(self):
        for name in _DECIMAL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if not isinstance(self.max_iterations, int) or isinstance(self.max_iterations, bool):
            raise ValueError(f"max_iterations must be an int, got {self.max_iterations!r}")

        if self.min_health_factor_floor < ONE:
            raise ValueError(
                f"min_health_factor_floor must be >= 1, got {self.min_health_factor_floor}"
            )
        if not ZERO <= self.max_slippage < ONE:
            raise ValueError(f"max_slippage must be in [0, 1), got {self.max_slippage}")
        if self.min_leverage < ONE:
            raise ValueError(f"min_leverage must be >= 1, got {self.min_leverage}")
        if self.max_leverage < self.min_leverage:
            raise ValueError(
                f"max_leverage {self.max_leverage} < min_leverage {self.min_leverage}"
            )
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.dust_value < ZERO:
            raise ValueError(f"dust_value must be non-negative, got {self.dust_value}")

    def with_updates(self, **changes: Any) -> 'EngineConfig':
        """Return a validated copy with `changes` applied."""
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_CONFIG = EngineConfig()


def config_from_mapping(data: Dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig from a plain mapping; unknown keys are rejected."""
    if 'engine' in data and isinstance(data['engine'], dict):
        data = data['engine']
    return DEFAULT_CONFIG.with_updates(**data)


def load_config(path: Union[str, Path]) -> EngineConfig:
    """
    Load an EngineConfig from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the document is not a mapping or holds invalid values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config must be a YAML mapping (dict); got {type(data).__name__}")
    return config_from_mapping(data)
