import numbers
import os
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Literal, Mapping, Optional, Union

from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field, ValidationError

from luggage_cache.cache.models import CacheCategory

MEGABYTE = 1024 * 1024


# --- LLM provider settings ---


@dataclass
class GeminiSettings:
    model_name: str = "gemini-2.5-flash"
    response_mime_type: str = "application/json"


@dataclass
class OpenAISettings:
    model_name: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    response_format: str = "json_object"


class ModelConfig:
    """LLM provider selection and sampling parameters, seeded from the environment."""

    def __init__(self) -> None:
        self.provider: str = os.getenv("MODEL_PROVIDER", "gemini").lower()
        self.temperature: float = float(os.getenv("MODEL_TEMPERATURE", "0.3"))
        self.max_retries: int = int(os.getenv("MODEL_MAX_RETRIES", "3"))

        self.gemini = GeminiSettings(
            model_name=os.getenv("GEMINI_MODEL", os.getenv("MODEL_NAME", "gemini-2.5-flash")),
            response_mime_type=os.getenv("GEMINI_RESPONSE_MIME_TYPE", "application/json"),
        )
        self.openai = OpenAISettings(
            model_name=os.getenv("OPENAI_MODEL", os.getenv("MODEL_NAME", "gpt-4o-mini")),
            base_url=os.getenv("OPENAI_BASE_URL"),
            response_format=os.getenv("OPENAI_RESPONSE_FORMAT", "json_object"),
        )

    def _get_attr(self, cfg: Any, key: str, default: Any = None) -> Any:
        if cfg is None:
            return default
        if isinstance(cfg, dict):
            return cfg.get(key, default)
        return getattr(cfg, key, default)

    def update_from_config(self, cfg: Any) -> None:
        if cfg is None:
            return

        provider = self._get_attr(cfg, "provider", self.provider)
        if provider:
            self.provider = str(provider).lower()

        name = self._get_attr(cfg, "name", None)
        if name:
            if self.provider == "gemini":
                self.gemini.model_name = name
            elif self.provider == "openai":
                self.openai.model_name = name

        base_url = self._get_attr(cfg, "base_url", None)
        if base_url:
            self.openai.base_url = base_url

        temperature = self._get_attr(cfg, "temperature", None)
        if temperature is not None:
            self.temperature = float(temperature)

        max_retries = self._get_attr(cfg, "max_retries", None)
        if max_retries is not None:
            self.max_retries = max(1, int(max_retries))

    @property
    def model_name(self) -> str:
        return self.openai.model_name if self.provider == "openai" else self.gemini.model_name

    @property
    def openai_base_url(self) -> Optional[str]:
        return self.openai.base_url


# --- Validated component configuration ---


class ValidatedConfig:
    """Configuration object validated against a ``FIELD_META`` table, Hydra compatible.

    Each subclass declares its fields as ``name -> meta``. Supported meta keys:
    ``type`` (int/float/bool/str), ``default``, ``nullable``, ``choices``,
    ``normalize``, ``min``, ``min_exclusive``, ``max``. All problems found in a
    mapping are reported together in a single ``ValueError``.
    """

    FIELD_META: ClassVar[Dict[str, Dict[str, Any]]] = {}
    LABEL: ClassVar[str] = "configuration"

    TYPE_LABELS = {
        "int": "an integer",
        "float": "a float",
        "bool": "a boolean",
        "str": "a string",
    }

    def __init__(self, **kwargs: Any):
        unknown = set(kwargs) - set(self.FIELD_META)
        if unknown:
            raise KeyError(f"Unknown {self.LABEL} parameters: " + ", ".join(sorted(unknown)))
        for key, value in self._normalized_values(kwargs).items():
            setattr(self, key, value)

    @classmethod
    def from_omegaconf(cls, config: Union[DictConfig, Mapping[str, Any], None]):
        """Create an instance from a DictConfig, a mapping, or ``None`` for all defaults."""
        if config is None:
            return cls()
        if isinstance(config, DictConfig):
            config = OmegaConf.to_container(config, resolve=True)
        if not isinstance(config, Mapping):
            raise TypeError(f"The {cls.LABEL} must be a mapping or DictConfig-compatible object.")
        return cls(**config)

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.FIELD_META}

    def apply_overrides(self, **overrides: Any) -> None:
        merged = self.as_dict()
        merged.update(overrides)
        validated = type(self)(**merged)
        self.__dict__.update(vars(validated))

    @classmethod
    def _normalized_values(cls, overrides: Mapping[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        errors: List[str] = []
        missing: List[str] = []

        for name, meta in cls.FIELD_META.items():
            if name in overrides:
                raw_value = overrides[name]
            elif "default" in meta:
                raw_value = meta["default"]
            else:
                missing.append(name)
                continue

            if raw_value is None and meta.get("nullable"):
                data[name] = None
                continue

            try:
                value = cls._cast_value(name, raw_value, meta)
                cls._validate_constraints(name, value, meta)
            except (TypeError, ValueError) as exc:
                errors.append(str(exc))
                continue
            data[name] = value

        if missing:
            errors.insert(0, f"Missing required parameters: {', '.join(sorted(missing))}")
        if errors:
            raise ValueError(f"Invalid {cls.LABEL}: " + "; ".join(errors))
        return data

    @classmethod
    def _cast_value(cls, name: str, value: Any, meta: Dict[str, Any]) -> Any:
        if value is None:
            raise TypeError(f"Parameter '{name}' cannot be null.")
        if isinstance(value, bool) and meta["type"] != "bool":
            raise cls._type_error(name, meta["type"], value)

        type_name = meta["type"]
        if type_name == "int":
            if isinstance(value, numbers.Integral):
                return int(value)
            if isinstance(value, (numbers.Real, str)):
                try:
                    converted = float(str(value).strip())
                except ValueError as exc:
                    raise cls._type_error(name, "int", value) from exc
                if converted.is_integer():
                    return int(converted)
            raise cls._type_error(name, "int", value)
        if type_name == "float":
            if isinstance(value, numbers.Real):
                return float(value)
            if isinstance(value, str) and value.strip():
                try:
                    return float(value.strip())
                except ValueError as exc:
                    raise cls._type_error(name, "float", value) from exc
            raise cls._type_error(name, "float", value)
        if type_name == "bool":
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                normalized = value.strip().lower()
                if normalized in {"true", "yes", "1", "on"}:
                    return True
                if normalized in {"false", "no", "0", "off"}:
                    return False
            if isinstance(value, numbers.Integral) and value in (0, 1):
                return bool(value)
            raise cls._type_error(name, "bool", value)
        if type_name == "str":
            text = str(value).strip()
            if meta.get("normalize") == "lower":
                text = text.lower()
            return text
        raise TypeError(f"Unsupported type declaration for '{name}'.")

    @classmethod
    def _type_error(cls, name: str, type_name: str, value: Any) -> TypeError:
        label = cls.TYPE_LABELS.get(type_name, type_name)
        return TypeError(
            f"Parameter '{name}' must be {label} (received {value!r} of type {type(value).__name__})."
        )

    @staticmethod
    def _validate_constraints(name: str, value: Any, meta: Dict[str, Any]) -> None:
        if meta.get("allow_blank") is False and value == "":
            raise ValueError(f"Parameter '{name}' cannot be empty.")

        choices = meta.get("choices")
        if choices and value not in choices:
            allowed = ", ".join(sorted(choices))
            raise ValueError(f"Parameter '{name}' must be one of: {allowed} (received {value!r}).")

        min_value = meta.get("min")
        if min_value is not None and value < min_value:
            raise ValueError(
                f"Parameter '{name}' must be greater than or equal to {min_value} (received {value})."
            )

        min_exclusive = meta.get("min_exclusive")
        if min_exclusive is not None and value <= min_exclusive:
            raise ValueError(f"Parameter '{name}' must be greater than {min_exclusive} (received {value}).")

        max_value = meta.get("max")
        if max_value is not None and value > max_value:
            raise ValueError(
                f"Parameter '{name}' must be less than or equal to {max_value} (received {value})."
            )


class CacheConfig(ValidatedConfig):
    """Budget, persistence and expiry settings of the CacheStore."""

    LABEL = "cache configuration"
    FIELD_META = {
        "max_size_bytes": {"type": "int", "min": 1, "default": 50 * MEGABYTE},
        "max_entries": {"type": "int", "min": 1, "nullable": True, "default": None},
        "backend": {
            "type": "str",
            "choices": {"memory", "sqlite", "json"},
            "normalize": "lower",
            "default": "sqlite",
        },
        "path": {"type": "str", "allow_blank": False, "default": "ai_cache.db"},
        "compress_threshold": {"type": "int", "min": 0, "nullable": True, "default": None},
        "cleanup_interval_seconds": {"type": "float", "min": 0.0, "default": 3600.0},
    }

    def __init__(self, ttl_overrides: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.ttl_overrides = self._parse_ttl_overrides(ttl_overrides or {})

    @staticmethod
    def _parse_ttl_overrides(raw: Mapping[str, Any]) -> Dict[CacheCategory, float]:
        parsed: Dict[CacheCategory, float] = {}
        errors: List[str] = []
        for name, seconds in raw.items():
            try:
                category = CacheCategory.parse(name)
                ttl = float(seconds)
            except (TypeError, ValueError) as exc:
                errors.append(str(exc))
                continue
            if ttl <= 0:
                errors.append(f"TTL override for '{name}' must be greater than 0 (received {ttl}).")
                continue
            parsed[category] = ttl
        if errors:
            raise ValueError("Invalid cache configuration: " + "; ".join(errors))
        return parsed

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        data["ttl_overrides"] = {category.value: ttl for category, ttl in self.ttl_overrides.items()}
        return data

    def ttl_for(self, category: CacheCategory) -> float:
        return self.ttl_overrides.get(category, category.default_ttl)


class CoordinatorConfig(ValidatedConfig):
    """Concurrency and result policy of the RequestCoordinator."""

    LABEL = "coordinator configuration"
    FIELD_META = {
        "max_concurrent_requests": {"type": "int", "min": 1, "default": 3},
        "default_timeout_seconds": {
            "type": "float",
            "min_exclusive": 0.0,
            "nullable": True,
            "default": None,
        },
        "cache_degraded_results": {"type": "bool", "default": False},
    }


class WarningRule(BaseModel):
    """A threshold on one aggregate metric of the PerformanceMonitor."""

    metric: Literal["success_rate", "cache_hit_rate", "average_response_time"]
    comparison: Literal["lt", "gt"] = "lt"
    threshold: float
    severity: Literal["low", "medium", "high", "critical"] = "medium"


DEFAULT_WARNING_RULES: List[Dict[str, Any]] = [
    {"metric": "success_rate", "comparison": "lt", "threshold": 0.9, "severity": "medium"},
    {"metric": "success_rate", "comparison": "lt", "threshold": 0.75, "severity": "high"},
    {"metric": "average_response_time", "comparison": "gt", "threshold": 2000.0, "severity": "medium"},
    {"metric": "average_response_time", "comparison": "gt", "threshold": 5000.0, "severity": "high"},
    {"metric": "cache_hit_rate", "comparison": "lt", "threshold": 0.5, "severity": "low"},
]

DEFAULT_LATENCY_BUCKETS_MS: List[float] = [100.0, 250.0, 500.0, 1000.0, 2000.0, 5000.0, 10000.0]


class MonitorConfig(ValidatedConfig):
    """Rolling window bounds and warning thresholds of the PerformanceMonitor."""

    LABEL = "monitor configuration"
    FIELD_META = {
        "max_samples": {"type": "int", "min": 1, "default": 1000},
        "max_sample_age_seconds": {
            "type": "float",
            "min_exclusive": 0.0,
            "nullable": True,
            "default": None,
        },
        "min_samples_for_warnings": {"type": "int", "min": 1, "default": 1},
        "state_file": {"type": "str", "allow_blank": False, "nullable": True, "default": None},
    }

    def __init__(
        self,
        warning_rules: Optional[List[Mapping[str, Any]]] = None,
        latency_buckets_ms: Optional[List[float]] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        rules = DEFAULT_WARNING_RULES if warning_rules is None else warning_rules
        self.warning_rules: List[WarningRule] = []
        errors: List[str] = []
        for index, rule in enumerate(rules):
            if isinstance(rule, WarningRule):
                self.warning_rules.append(rule)
                continue
            try:
                self.warning_rules.append(WarningRule.model_validate(dict(rule)))
            except ValidationError as exc:
                problems = ", ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors())
                errors.append(f"warning_rules[{index}] {problems}")
        buckets = DEFAULT_LATENCY_BUCKETS_MS if latency_buckets_ms is None else latency_buckets_ms
        self.latency_buckets_ms: List[float] = sorted(float(edge) for edge in buckets)
        if errors:
            raise ValueError("Invalid monitor configuration: " + "; ".join(errors))

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        data["warning_rules"] = [rule.model_dump() for rule in self.warning_rules]
        data["latency_buckets_ms"] = list(self.latency_buckets_ms)
        return data
