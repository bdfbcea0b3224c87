"""Engine configuration.

Policy switches that govern defaulted names, short positions, base
correlation strikes and the parallel sensitivity loop. A ``BasketConfig`` is
passed explicitly to every engine; ``from_env`` builds one from
``TRANCHE_BASKET_*`` environment variables.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "TRANCHE_BASKET_"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def _get_env(key: str, default: Any, value_type: type = str, prefix: str = ENV_PREFIX) -> Any:
    """Read an environment variable with a prefix and type conversion.

    Args:
        key: Variable name without prefix
        default: Value returned when the variable is unset or empty
        value_type: Target type (bool, int, float or str)
        prefix: Variable name prefix

    Returns:
        The converted value, or ``default``
    """
    raw = os.environ.get(f"{prefix}{key}")
    if raw is None or raw.strip() == "":
        return default
    raw = raw.strip()
    if value_type is bool:
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"Invalid boolean for {prefix}{key}: {raw!r}")
    return value_type(raw)


@dataclass(frozen=True)
class BasketConfig:
    """Policy settings shared by basket engines.

    Attributes:
        use_natural_settlement: Measure correlation tenors from the portfolio
            start instead of the as-of date
        subtract_shorted_from_principal: Fold short principal into the total
            principal instead of tracking it as a separate ratio
        use_curve_recovery_for_base_correlation: Resolve strikes with the
            recoveries carried by the survival curves when the basket has
            fixed recoveries
        exact_jump_to_default: Treat names marked WILL_DEFAULT as defaulted and
            re-price exactly when an evaluator reports a default change
        consistent_sensitivity: Build base-correlation sensitivity baskets by
            duplicating the calculator instead of rebuilding them
        deep_cloning_in_parallel_sensitivity: Give every parallel worker a
            deep copy of the engine and evaluators
        parallel_sensitivity: Allow the per-name sensitivity loop to run on a
            thread pool
        parallel_threshold: Minimum basket size (exclusive) for the parallel loop
        max_workers: Thread pool size, ``None`` for the executor default
    """
    use_natural_settlement: bool = True
    subtract_shorted_from_principal: bool = False
    use_curve_recovery_for_base_correlation: bool = True
    exact_jump_to_default: bool = False
    consistent_sensitivity: bool = True
    deep_cloning_in_parallel_sensitivity: bool = False
    parallel_sensitivity: bool = True
    parallel_threshold: int = 4
    max_workers: Optional[int] = None

    def __post_init__(self):
        if self.parallel_threshold < 0:
            raise ValueError(f"parallel_threshold must be non-negative, got {self.parallel_threshold}")
        if self.max_workers is not None and self.max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "BasketConfig":
        """Build a configuration from environment variables.

        Every field maps to ``<prefix><FIELD_NAME_UPPERCASE>``; unset variables
        keep the dataclass default.
        """
        values = {}
        for f in fields(cls):
            default = f.default
            if f.name == "max_workers":
                raw = _get_env("MAX_WORKERS", None, int, prefix)
                values[f.name] = raw
                continue
            values[f.name] = _get_env(f.name.upper(), default, type(default), prefix)
        config = cls(**values)
        logger.debug("Loaded basket configuration from environment: %s", config)
        return config

    def with_options(self, **changes) -> "BasketConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


DEFAULT_CONFIG = BasketConfig()
