import logging
import math
import os
from dataclasses import dataclass, field

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised via tests
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError

from .credentials import CredentialPool, dedupe_credentials, parse_credential_list
from .timeouts import (
    DEFAULT_IDLE_TIMEOUT_S,
    DEFAULT_TIMEOUT_S,
    TIMEOUT_BACKOFF_STEP_S,
    TIMEOUT_MAX_ATTEMPTS,
    TimeoutPolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
DEFAULT_MODEL = "qwen3-max"
DEFAULT_AUTH_ENV = "GATEWAY_API_KEYS"
DEFAULT_TEMPERATURE = 0.6
DEFAULT_MAX_OUTPUT_TOKENS = 520931
MAX_SAFE_OUTPUT_TOKENS = 16384

UPSTREAM_FILE = "upstream.toml"
POLICY_FILE = "policy.yaml"


@dataclass(frozen=True)
class UpstreamDef:
    base_url: str
    model: str
    auth_env: str | None
    api_keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class GenerationDefaults:
    temperature: float
    max_output_tokens: int


@dataclass(frozen=True)
class GatewayConfig:
    upstream: UpstreamDef
    defaults: GenerationDefaults
    timeouts: TimeoutPolicy
    credentials: tuple[str, ...]
    sources: tuple[str, ...] = field(default_factory=tuple)

    def credential_pool(self) -> CredentialPool:
        return CredentialPool(self.credentials)


class _UpstreamModel(BaseModel):
    base_url: str = Field(default=DEFAULT_BASE_URL)
    model: str = Field(default=DEFAULT_MODEL)
    auth_env: str | None = Field(default=DEFAULT_AUTH_ENV)
    api_keys: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class _UpstreamFileModel(BaseModel):
    upstream: _UpstreamModel = Field(default_factory=_UpstreamModel)

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0)
    max_output_tokens: PositiveInt = Field(default=DEFAULT_MAX_OUTPUT_TOKENS)

    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)


class _TimeoutsModel(BaseModel):
    base_s: PositiveFloat = Field(default=DEFAULT_TIMEOUT_S)
    backoff_step_s: float = Field(default=TIMEOUT_BACKOFF_STEP_S, ge=0.0)
    max_attempts: PositiveInt = Field(default=TIMEOUT_MAX_ATTEMPTS)
    idle_s: PositiveFloat = Field(default=DEFAULT_IDLE_TIMEOUT_S)

    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)


class _PolicyModel(BaseModel):
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    timeouts: _TimeoutsModel = Field(default_factory=_TimeoutsModel)

    model_config = ConfigDict(extra="forbid")


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _env_var_as_float(name: str, *, default: float, allow_zero: bool = False) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        value = -1.0
    if math.isfinite(value) and (value > 0 or (allow_zero and value == 0)):
        return value
    logger.warning(f"Invalid value for {name}: {raw}. Using default: {default}")
    return default


def _env_var_as_int(name: str, *, default: int) -> int:
    value = _env_var_as_float(name, default=float(default))
    return int(value)


def _env_var_as_str(name: str, *, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip() or default


def clamp_output_tokens(configured: int) -> int:
    if configured > MAX_SAFE_OUTPUT_TOKENS:
        logger.warning(
            f"max_output_tokens={configured} exceeds ceiling; clamped to {MAX_SAFE_OUTPUT_TOKENS}"
        )
        return MAX_SAFE_OUTPUT_TOKENS
    return configured


def _read_upstream(path: str) -> _UpstreamFileModel:
    if not os.path.exists(path):
        return _UpstreamFileModel()
    with open(path, "rb") as f:
        data = tomllib.load(f)
    try:
        return _UpstreamFileModel.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"{UPSTREAM_FILE}: {_format_validation_error(exc)}") from exc


def _read_policy(path: str) -> _PolicyModel:
    if not os.path.exists(path):
        return _PolicyModel()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    try:
        return _PolicyModel.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"{POLICY_FILE}: {_format_validation_error(exc)}") from exc


def load_config(config_dir: str | None = None) -> GatewayConfig:
    sources: list[str] = []
    upstream_file = _UpstreamFileModel()
    policy = _PolicyModel()
    if config_dir is not None:
        upstream_path = os.path.join(config_dir, UPSTREAM_FILE)
        policy_path = os.path.join(config_dir, POLICY_FILE)
        upstream_file = _read_upstream(upstream_path)
        policy = _read_policy(policy_path)
        sources.extend(path for path in (upstream_path, policy_path) if os.path.exists(path))

    upstream_model = upstream_file.upstream
    auth_env = upstream_model.auth_env
    env_keys = parse_credential_list(os.environ.get(auth_env)) if auth_env else []
    upstream = UpstreamDef(
        base_url=_env_var_as_str("GATEWAY_BASE_URL", default=upstream_model.base_url),
        model=_env_var_as_str("GATEWAY_MODEL", default=upstream_model.model),
        auth_env=auth_env,
        api_keys=tuple(upstream_model.api_keys),
    )
    defaults = GenerationDefaults(
        temperature=_env_var_as_float(
            "GATEWAY_TEMPERATURE",
            default=float(policy.defaults.temperature),
            allow_zero=True,
        ),
        max_output_tokens=clamp_output_tokens(
            _env_var_as_int(
                "GATEWAY_MAX_OUTPUT_TOKENS", default=int(policy.defaults.max_output_tokens)
            )
        ),
    )
    timeouts = TimeoutPolicy(
        base_timeout_s=_env_var_as_float("GATEWAY_TIMEOUT_S", default=float(policy.timeouts.base_s)),
        backoff_step_s=_env_var_as_float(
            "GATEWAY_BACKOFF_STEP_S",
            default=float(policy.timeouts.backoff_step_s),
            allow_zero=True,
        ),
        max_attempts=int(policy.timeouts.max_attempts),
        idle_timeout_s=_env_var_as_float(
            "GATEWAY_IDLE_TIMEOUT_S", default=float(policy.timeouts.idle_s)
        ),
    )
    return GatewayConfig(
        upstream=upstream,
        defaults=defaults,
        timeouts=timeouts,
        credentials=dedupe_credentials([*env_keys, *upstream.api_keys]),
        sources=tuple(sources),
    )
