"""
Engine configuration.

Keys may be given in camelCase (``maxBacktracks``) or snake_case
(``max_backtracks``). Unknown keys are logged and ignored; missing keys
take their defaults.
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .models.entities import ConstraintKind, DEFAULT_WEIGHTS, SOFT_KINDS

logger = logging.getLogger(__name__)

ENV_PREFIX = 'TIMETABLER_'


def _snake_case(key: str) -> str:
    if '_' in key or key.isupper():
        return key.lower()
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


@dataclass(frozen=True)
class EngineConfig:
    """Tunable limits and weights of one engine handle."""
    max_backtracks: int = 20000
    search_deadline_ms: int = 30000
    improve_deadline_ms: int = 10000
    improve_iterations: int = 4000
    random_seed: int = 0
    multi_start: int = 1
    plateau_acceptance: float = 0.1
    soft_weights: Mapping[ConstraintKind, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def __post_init__(self):
        for name in ('max_backtracks', 'search_deadline_ms', 'improve_deadline_ms',
                     'improve_iterations', 'random_seed'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ConfigError(f"{name} must not be negative, got {value}")
        if isinstance(self.multi_start, bool) or not isinstance(self.multi_start, int) or self.multi_start < 1:
            raise ConfigError(f"multi_start must be a positive integer, got {self.multi_start!r}")
        if isinstance(self.plateau_acceptance, bool) or not isinstance(self.plateau_acceptance, (int, float)) \
                or not 0.0 <= self.plateau_acceptance <= 1.0:
            raise ConfigError(f"plateau_acceptance must be a number in [0, 1], got {self.plateau_acceptance!r}")
        object.__setattr__(self, 'soft_weights', self._parse_weights(self.soft_weights))

    @staticmethod
    def _parse_weights(raw: Any) -> Dict[ConstraintKind, float]:
        if not isinstance(raw, Mapping):
            raise ConfigError(f"soft_weights must be a mapping, got {raw!r}")
        weights = dict(DEFAULT_WEIGHTS)
        for key, value in raw.items():
            try:
                kind = key if isinstance(key, ConstraintKind) else ConstraintKind(_snake_case(str(key)))
            except ValueError:
                raise ConfigError(f"Unknown soft constraint kind: {key!r}")
            if kind not in SOFT_KINDS:
                raise ConfigError(f"{kind.value} is a hard constraint and cannot be weighted")
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"Weight of {kind.value} must be a non-negative number, got {value!r}")
            weights[kind] = float(value)
        return weights

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> 'EngineConfig':
        """Build a config from a mapping with camelCase or snake_case keys."""
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Configuration must be a mapping, got {type(raw).__name__}")
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in raw.items():
            name = _snake_case(str(key))
            if name not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            values[name] = value
        return cls(**values)

    @classmethod
    def from_file(cls, path: str) -> 'EngineConfig':
        """Load a JSON configuration file."""
        try:
            with open(path, 'r') as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
        logger.info(f"Loaded configuration from {path}")
        return cls.from_mapping(raw)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, base: Optional['EngineConfig'] = None) -> 'EngineConfig':
        """
        Override ``base`` (or the defaults) with ``TIMETABLER_*`` variables.

        A ``.env`` file is loaded first when present; variables already set in
        the environment win. ``TIMETABLER_SOFT_WEIGHTS`` holds a JSON object.
        """
        if env_file is None or Path(env_file).exists():
            load_dotenv(env_file)
        config = base or cls()
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            value = os.environ.get(ENV_PREFIX + f.name.upper())
            if value is None or value == '':
                continue
            try:
                if f.name == 'soft_weights':
                    overrides[f.name] = json.loads(value)
                elif f.name == 'plateau_acceptance':
                    overrides[f.name] = float(value)
                else:
                    overrides[f.name] = int(value)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {value!r}") from e
        return replace(config, **overrides) if overrides else config

    def to_dict(self) -> Dict[str, Any]:
        return {
            'maxBacktracks': self.max_backtracks,
            'searchDeadlineMs': self.search_deadline_ms,
            'improveDeadlineMs': self.improve_deadline_ms,
            'improveIterations': self.improve_iterations,
            'randomSeed': self.random_seed,
            'multiStart': self.multi_start,
            'plateauAcceptance': self.plateau_acceptance,
            'softWeights': {kind.value: weight for kind, weight in self.soft_weights.items()},
        }
