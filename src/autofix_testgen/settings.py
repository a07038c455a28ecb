from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

DEFAULT_JUNIT_JAR_URL = (
    "https://repo1.maven.org/maven2/org/junit/platform/junit-platform-console-standalone/"
    "1.10.0/junit-platform-console-standalone-1.10.0.jar"
)
LLM_PROVIDERS = frozenset({"openai", "azure"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    llm_provider: str = "openai"
    model_name: str = "gpt-4o"
    temperature: float = 0.2
    max_completion_tokens: int = 2_000
    work_dir: str = "temp"
    compile_timeout_seconds: int = 15
    run_timeout_seconds: int = 30
    jest_command: str = "npx jest"
    junit_jar: str = "junit-platform-console-standalone.jar"
    junit_jar_url: str = DEFAULT_JUNIT_JAR_URL
    max_retries: int = 3
    ably_api_key: str = ""
    ably_rest_url: str = "https://rest.ably.io"
    server_host: str = "0.0.0.0"
    server_port: int = 3002

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            llm_provider=os.getenv("AUTOFIX_LLM_PROVIDER", "openai"),
            model_name=os.getenv("AUTOFIX_MODEL", "gpt-4o"),
            temperature=_get_env_float("AUTOFIX_TEMPERATURE", default=0.2, minimum=0.0, maximum=2.0),
            max_completion_tokens=_get_env_int("AUTOFIX_MAX_COMPLETION_TOKENS", default=2_000, minimum=64),
            work_dir=os.getenv("AUTOFIX_WORK_DIR", "temp"),
            compile_timeout_seconds=_get_env_int("AUTOFIX_COMPILE_TIMEOUT", default=15, minimum=1, maximum=3_600),
            run_timeout_seconds=_get_env_int("AUTOFIX_RUN_TIMEOUT", default=30, minimum=1, maximum=3_600),
            jest_command=os.getenv("AUTOFIX_JEST_COMMAND", "npx jest"),
            junit_jar=os.getenv("AUTOFIX_JUNIT_JAR", "junit-platform-console-standalone.jar"),
            junit_jar_url=os.getenv("AUTOFIX_JUNIT_JAR_URL", DEFAULT_JUNIT_JAR_URL),
            max_retries=_get_env_int("AUTOFIX_MAX_RETRIES", default=3, minimum=0, maximum=50),
            ably_api_key=os.getenv("ABLY_API_KEY", ""),
            ably_rest_url=os.getenv("AUTOFIX_ABLY_REST_URL", "https://rest.ably.io"),
            server_host=os.getenv("AUTOFIX_SERVER_HOST", "0.0.0.0"),
            server_port=_get_env_int("AUTOFIX_SERVER_PORT", default=3002, minimum=1, maximum=65_535),
        ).normalized()

    @property
    def work_dir_path(self) -> Path:
        return Path(self.work_dir).resolve()

    @property
    def junit_jar_path(self) -> Path:
        return Path(self.junit_jar).resolve()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        provider = self.llm_provider.strip().lower()
        if provider not in LLM_PROVIDERS:
            raise ValueError(f"AUTOFIX_LLM_PROVIDER must be one of: {', '.join(sorted(LLM_PROVIDERS))}")
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("AUTOFIX_MODEL must be non-empty")
        if not self.work_dir.strip():
            raise ValueError("AUTOFIX_WORK_DIR must be non-empty")
        if not self.jest_command.strip():
            raise ValueError("AUTOFIX_JEST_COMMAND must be non-empty")
        if not self.junit_jar.strip():
            raise ValueError("AUTOFIX_JUNIT_JAR must be non-empty")
        return replace(
            self,
            llm_provider=provider,
            model_name=model_name,
            ably_api_key=self.ably_api_key.strip(),
            ably_rest_url=self.ably_rest_url.strip().rstrip("/"),
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got: {parsed}")
    return parsed
