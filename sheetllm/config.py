"""
SheetLLM Configuration Module

Layered settings for the batch pipeline, the provider adapters and the server.

Layers, highest priority first:
    1. Arguments      - Config.set() / Config.load_args() (CLI flags)
    2. Environment    - SHEETLLM_<SECTION>__<KEY>=value
    3. Files          - TOML, JSON or YAML; later files override earlier ones
    4. Defaults       - DEFAULTS, then the packaged config.toml

Usage:
    from sheetllm.config import Config, load_config

    config = load_config(filepath='sheetllm.toml')
    batch_size = config.get('batch.size', type=int)
    config['server.port'] = 8080

    # Manual layering
    config = Config(defaults={'http.timeout': 30}).load_file('sheetllm.yaml').load_env()
    config.validate()  # ValueError listing every violated constraint
"""

from __future__ import annotations

import os
import json
import copy
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type, TypeVar, Union
from dataclasses import dataclass, field
from enum import Enum

__all__ = [
    'Config',
    'ConfigSchema',
    'ConfigValue',
    'ConfigSource',
    'ConfigFormat',
    'DEFAULTS',
    'default_schema',
    'load_config',
    'create_sample_config',
]

T = TypeVar('T')

logger = logging.getLogger("SheetLLM.Config")

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

PACKAGED_CONFIG = Path(__file__).parent / "config.toml"

DEFAULTS: Dict[str, Any] = {
    'batch.size': 10,
    'http.timeout': 60.0,
    'http.ssl_mode': 'certifi',
    'http.ca_bundle': '',
    'providers.default': 'openai',
    'providers.openai.base_url': 'https://api.openai.com/v1',
    'providers.clova.token_url': 'https://clovastudio.apigw.ntruss.com/v1/auth/token',
    'providers.clova.host': 'clovastudio.apigw.ntruss.com',
    'inference.max_tokens': 400,
    'inference.temperature': 0.5,
    'inference.top_p': 0.8,
    'inference.frequency_penalty': 0.0,
    'inference.presence_penalty': 0.0,
    'inference.top_k': 0,
    'inference.repeat_penalty': 5.0,
    'inference.per_model_column': True,
    'augment.model': 'gpt-4',
    'evaluate.rationale_column': 'LLM_Eval_rationale',
    'evaluate.score_column': 'LLM_Eval',
    'credentials.keyring_fallback': False,
    'server.host': '127.0.0.1',
    'server.port': 5000,
    'server.expose_stack': False,
}


class ConfigSource(Enum):
    """Where a value came from, lowest priority first."""
    DEFAULT = "default"
    FILE = "file"
    ENVIRONMENT = "environment"
    ARGUMENT = "argument"


# Lookup order
PRIORITY = (ConfigSource.ARGUMENT, ConfigSource.ENVIRONMENT, ConfigSource.FILE, ConfigSource.DEFAULT)


class ConfigFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TOML = "toml"


FORMAT_BY_SUFFIX = {
    '.json': ConfigFormat.JSON,
    '.yaml': ConfigFormat.YAML,
    '.yml': ConfigFormat.YAML,
    '.toml': ConfigFormat.TOML,
}


@dataclass
class ConfigValue:
    """A resolved value and the layer that holds it."""
    value: Any
    source: ConfigSource = ConfigSource.DEFAULT
    key: str = ""


def flatten(data: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, Any]]:
    """Yields ``(dotted.key, value)`` for every leaf of a nested mapping."""
    for key, value in data.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            yield from flatten(value, dotted)
        else:
            yield dotted, value


def nest(values: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of flatten: builds nested sections from dotted keys."""
    tree: Dict[str, Any] = {}
    for dotted, value in values.items():
        *sections, leaf = dotted.split('.')
        node = tree
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = value
    return tree


_ENV_BOOLEANS = {'true': True, 'yes': True, 'on': True, 'false': False, 'no': False, 'off': False}


def coerce_env_value(raw: str) -> Any:
    """
    Converts an environment string to the value it spells.

    Booleans (true/yes/on, false/no/off), JSON numbers, arrays and objects are
    decoded; anything else stays a string.
    """
    lowered = raw.strip().lower()
    if lowered in _ENV_BOOLEANS:
        return _ENV_BOOLEANS[lowered]
    try:
        decoded = json.loads(raw)
    except ValueError:
        return raw
    return decoded if isinstance(decoded, (int, float, list, dict)) else raw


def _read_toml(path: Path) -> Dict[str, Any]:
    with open(path, 'rb') as fb:
        return tomllib.load(fb)


def _read_json(path: Path) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _read_yaml(path: Path) -> Dict[str, Any]:
    import yaml
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


READERS: Dict[ConfigFormat, Callable[[Path], Dict[str, Any]]] = {
    ConfigFormat.TOML: _read_toml,
    ConfigFormat.JSON: _read_json,
    ConfigFormat.YAML: _read_yaml,
}


@dataclass
class ConfigSchema:
    """
    Constraints checked by Config.validate().

    Example:
        schema = ConfigSchema().add_field('batch.size', type=int, required=True, min_value=1)
    """

    @dataclass
    class Field:
        name: str
        type: Optional[Type] = None
        required: bool = False
        default: Any = None
        choices: List[Any] = field(default_factory=list)
        min_value: Optional[float] = None
        max_value: Optional[float] = None

        def check(self, value: Any) -> Optional[str]:
            """Returns the violated constraint, or None when ``value`` is acceptable."""
            if value is None:
                return f"'{self.name}' is required" if self.required else None
            if self.type is not None and not self._type_matches(value):
                return f"'{self.name}' must be of type {self.type.__name__}, got {type(value).__name__}"
            if self.choices and value not in self.choices:
                return f"'{self.name}' must be one of {self.choices}, got {value!r}"
            numeric = isinstance(value, (int, float)) and not isinstance(value, bool)
            if numeric and self.min_value is not None and value < self.min_value:
                return f"'{self.name}' must be >= {self.min_value}, got {value}"
            if numeric and self.max_value is not None and value > self.max_value:
                return f"'{self.name}' must be <= {self.max_value}, got {value}"
            return None

        def _type_matches(self, value: Any) -> bool:
            if self.type is float:
                return isinstance(value, (int, float)) and not isinstance(value, bool)
            if self.type is int:
                return isinstance(value, int) and not isinstance(value, bool)
            return isinstance(value, self.type)

    fields: List[Field] = field(default_factory=list)

    def add_field(self, name: str, **kwargs) -> ConfigSchema:
        self.fields.append(ConfigSchema.Field(name=name, **kwargs))
        return self

    def validate(self, values: Dict[str, Any]) -> Tuple[bool, List[str]]:
        errors = []
        for constraint in self.fields:
            problem = constraint.check(values.get(constraint.name, constraint.default))
            if problem:
                errors.append(problem)
        return not errors, errors


def default_schema() -> ConfigSchema:
    """Constraints on the keys the batch pipeline and the server rely on."""
    return (
        ConfigSchema()
        .add_field('batch.size', type=int, required=True, min_value=1)
        .add_field('http.timeout', type=float, required=True, min_value=1)
        .add_field('http.ssl_mode', type=str, choices=['certifi', 'insecure', 'custom'])
        .add_field('inference.max_tokens', type=int, min_value=1)
        .add_field('inference.temperature', type=float, min_value=0, max_value=2)
        .add_field('inference.top_p', type=float, min_value=0, max_value=1)
        .add_field('inference.per_model_column', type=bool)
        .add_field('server.port', type=int, min_value=1, max_value=65535)
        .add_field('server.expose_stack', type=bool)
    )


class Config:
    """
    Layered configuration with dotted keys.

    Each layer maps dotted keys to ConfigValue; a lookup walks the layers in
    PRIORITY order and returns the first hit.
    """

    def __init__(self, defaults: Optional[Dict[str, Any]] = None, schema: Optional[ConfigSchema] = None):
        """
        Args:
            defaults: Default values, either dotted keys or nested sections.
            schema: Constraints checked by validate().
        """
        self.schema = schema
        self._layers: Dict[ConfigSource, Dict[str, ConfigValue]] = {source: {} for source in ConfigSource}
        if defaults:
            self._merge(ConfigSource.DEFAULT, flatten(defaults))

    def _merge(self, source: ConfigSource, items: Iterator[Tuple[str, Any]]) -> None:
        layer = self._layers[source]
        for key, value in items:
            layer[key] = ConfigValue(value=value, source=source, key=key)

    def _lookup(self, key: str) -> Optional[ConfigValue]:
        for source in PRIORITY:
            found = self._layers[source].get(key)
            if found is not None:
                return found
        return None

    # -- loading ------------------------------------------------------------

    def load_file(self, filepath: Union[str, Path], format: Optional[ConfigFormat] = None,
                  source: ConfigSource = ConfigSource.FILE) -> Config:
        """
        Merges a TOML, JSON or YAML file into ``source`` (FILE by default).

        The format follows the extension unless given; unknown extensions are
        read as TOML. A missing or unreadable file is logged and skipped.
        """
        path = Path(filepath)
        if not path.is_file():
            logger.warning(f"Config file not found: {path}")
            return self

        reader = READERS[format or FORMAT_BY_SUFFIX.get(path.suffix.lower(), ConfigFormat.TOML)]
        try:
            data = reader(path)
        except Exception as e:
            logger.warning(f"Could not read config file {path}: {e}")
            return self
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {path}: top level must be a mapping")
            return self

        self._merge(source, flatten(data))
        logger.debug(f"Config layer {source.value} <- {path}")
        return self

    def load_env(self, prefix: str = "SHEETLLM_") -> Config:
        """
        Reads ``<prefix><SECTION>__<KEY>`` variables; ``__`` separates sections.

        Example: SHEETLLM_PROVIDERS__CLOVA__HOST -> providers.clova.host
        """
        matches = (
            (name[len(prefix):].lower().replace('__', '.'), coerce_env_value(raw))
            for name, raw in os.environ.items()
            if name.startswith(prefix) and len(name) > len(prefix)
        )
        self._merge(ConfigSource.ENVIRONMENT, matches)
        return self

    def load_args(self, args: Union[Dict[str, Any], object]) -> Config:
        """Merges CLI arguments (dict or argparse.Namespace); None values are skipped."""
        values = args if isinstance(args, dict) else vars(args)
        self._merge(ConfigSource.ARGUMENT, ((k, v) for k, v in values.items() if v is not None))
        return self

    # -- access -------------------------------------------------------------

    def get(self, key: str, default: Any = None, type: Optional[Type[T]] = None) -> T:
        """
        Returns the highest-priority value for ``key``.

        Args:
            key: Dotted key, e.g. 'providers.clova.host'.
            default: Returned when no layer holds the key.
            type: Optional converter (int, float, ...); a value it rejects is
                returned unconverted.
        """
        found = self._lookup(key)
        if found is None:
            return default
        if type is None:
            return found.value
        try:
            return type(found.value)
        except (TypeError, ValueError):
            return found.value

    def set(self, key: str, value: Any) -> Config:
        """Sets ``key`` in the argument layer, above every other source."""
        self._merge(ConfigSource.ARGUMENT, iter([(key, value)]))
        return self

    def require(self, key: str, message: Optional[str] = None) -> Any:
        value = self.get(key)
        if value is None:
            raise ValueError(message or f"Missing required setting '{key}'")
        return value

    def get_source(self, key: str) -> Optional[ConfigSource]:
        found = self._lookup(key)
        return found.source if found else None

    def all(self) -> Dict[str, Any]:
        """Every key with its resolved value."""
        resolved: Dict[str, Any] = {}
        for source in reversed(PRIORITY):
            resolved.update({key: cv.value for key, cv in self._layers[source].items()})
        return resolved

    def validate(self, raise_on_error: bool = True) -> Tuple[bool, List[str]]:
        """
        Checks the resolved values against the schema.

        Raises:
            ValueError: When ``raise_on_error`` and at least one constraint fails.
        """
        if self.schema is None:
            return True, []
        is_valid, errors = self.schema.validate(self.all())
        if errors and raise_on_error:
            raise ValueError("Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors))
        return is_valid, errors

    def copy(self) -> Config:
        duplicate = Config(schema=self.schema)
        duplicate._layers = copy.deepcopy(self._layers)
        return duplicate

    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not None

    def __repr__(self) -> str:
        sizes = ", ".join(f"{source.value}={len(self._layers[source])}" for source in PRIORITY)
        return f"Config({sizes})"


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def load_config(
    filepath: Optional[Union[str, Path]] = None,
    defaults: Optional[Dict[str, Any]] = None,
    env_prefix: Optional[str] = "SHEETLLM_"
) -> Config:
    """
    Builds the configuration used by the CLI, the server and the tests.

    DEFAULTS (updated with ``defaults``) and the packaged config.toml form the
    default layer; ``filepath`` is the file layer; ``env_prefix`` selects the
    environment layer (None skips it).

    Example:
        config = load_config(filepath='sheetllm.toml')
    """
    config = Config(defaults={**DEFAULTS, **(defaults or {})}, schema=default_schema())
    if PACKAGED_CONFIG.is_file():
        config.load_file(PACKAGED_CONFIG, source=ConfigSource.DEFAULT)
    if filepath:
        config.load_file(filepath)
    if env_prefix:
        config.load_env(prefix=env_prefix)
    return config


def create_sample_config(filepath: str) -> bool:
    """
    Writes every default as nested sections: YAML for .yaml/.yml, JSON otherwise.

    Returns:
        False when the file cannot be written.
    """
    sample = nest(DEFAULTS)
    try:
        with open(filepath, 'w', encoding='utf-8') as f:
            if filepath.endswith(('.yaml', '.yml')):
                import yaml
                yaml.safe_dump(sample, f, sort_keys=False)
            else:
                json.dump(sample, f, indent=2)
    except OSError as e:
        logger.error(f"Could not write sample config to {filepath}: {e}")
        return False
    return True
