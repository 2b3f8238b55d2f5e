"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for test generation, the
language-model provider, rate limiting, execution, and storage. Time
values are milliseconds throughout, matching the values operators put in
YAML.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from testsmith.exceptions import ConfigurationError
from testsmith.models.domain import Language, TestType


class TestGenerationConfig(BaseModel):
    """How changed files become generation units."""

    __test__ = False

    max_tests_per_file: int = Field(default=10, ge=1, le=100, description="Cap on generated cases per file")
    default_timeout: int = Field(default=30000, ge=1, description="Per-case execution timeout (ms)")
    supported_languages: set[Language] = Field(
        default_factory=lambda: {
            Language.JAVA,
            Language.JAVASCRIPT,
            Language.TYPESCRIPT,
            Language.PYTHON,
            Language.CSHARP,
        },
        description="Languages eligible for generation",
    )
    test_types: set[TestType] = Field(
        default_factory=lambda: {TestType.UNIT, TestType.INTEGRATION, TestType.E2E},
        description="Test types the partitioner may target",
    )
    parallelism: int = Field(default=4, ge=1, le=64, description="Concurrent provider calls per job")

    @field_validator("supported_languages", mode="before")
    @classmethod
    def _normalize_languages(cls, value: object) -> object:
        if isinstance(value, (list, tuple, set)):
            return {str(v).lower() for v in value}
        return value

    @field_validator("test_types", mode="before")
    @classmethod
    def _normalize_test_types(cls, value: object) -> object:
        if isinstance(value, (list, tuple, set)):
            return {str(v).lower() for v in value}
        return value

    @field_validator("supported_languages")
    @classmethod
    def _reject_unknown_language(cls, value: set[Language]) -> set[Language]:
        if Language.UNKNOWN in value:
            raise ValueError("'unknown' cannot be a supported language")
        return value


class LlmConfig(BaseModel):
    """Generation provider settings.

    The provider speaks the OpenAI chat-completions protocol (OpenAI,
    Ollama's /v1 endpoint, vLLM, LM Studio, ...).
    """

    provider: str = Field(default="openai", description="Provider label used in logs")
    api_key: SecretStr | None = Field(default=None, description="Bearer token for the provider")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    max_tokens: int = Field(default=4000, ge=1, description="Maximum tokens per response")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Sampling temperature")
    timeout: int = Field(default=30000, ge=1, description="Per-call timeout (ms)")
    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per unit for transient failures")
    backoff_base: float = Field(default=1.0, ge=0.0, description="Delay after the first failure (s)")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Backoff multiplier")

    @field_validator("base_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not (value.startswith("http://") or value.startswith("https://")):
            raise ValueError(f"base_url must start with http:// or https://, got: {value}")
        return value.rstrip("/")


class RateLimitConfig(BaseModel):
    """Fixed-window limits."""

    window_ms: int = Field(default=900000, ge=1, description="Window length (ms)")
    max_requests: int = Field(default=100, ge=1, description="Requests admitted per window")


class ExecutionConfig(BaseModel):
    """Execution engine settings."""

    max_concurrent_cases: int = Field(default=4, ge=1, le=64, description="Concurrent case runs per execution")
    working_directory: str | None = Field(default=None, description="Directory the case runner executes in")


class StorageConfig(BaseModel):
    """Where entities are persisted."""

    backend: Literal["memory", "json"] = Field(default="json", description="Store implementation")
    state_directory: str = Field(default=".testsmith/state", description="Directory for JSON state files")


class TestsmithSettings(BaseSettings):
    """Main testsmith settings.

    Combines all configuration sections and supports loading from YAML
    files with environment variable interpolation. Individual values can
    also be overridden with ``TESTSMITH_<SECTION>__<FIELD>`` variables.
    """

    __test__ = False

    model_config = SettingsConfigDict(
        env_prefix="TESTSMITH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    test_generation: TestGenerationConfig = Field(default_factory=TestGenerationConfig)
    llm: LlmConfig = Field(default_factory=LlmConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    provider_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(window_ms=60000, max_requests=60),
        description="Limits applied to outgoing generation requests",
    )
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.storage.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> TestsmithSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            TestsmithSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
