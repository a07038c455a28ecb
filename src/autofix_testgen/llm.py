from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3
_CODE_FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n?")

AZURE_REQUIRED_ENV = (
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_API_VERSION",
    "AZURE_OPENAI_API_DEPLOYMENT_NAME",
)


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class TextGenerator(Protocol):
    """Plain text in, plain text out."""

    def generate(self, prompt: str) -> str:
        ...


def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence markers (with optional language tag) and trim."""
    return _CODE_FENCE_RE.sub("", text).strip()


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                    continue
                nested = item.get("content")
                if nested is not None:
                    chunks.append(content_to_text(nested))
                    continue
                chunks.append(json.dumps(item, sort_keys=True))
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    content_attr = getattr(content, "content", None)
    if content_attr is not None:
        return content_to_text(content_attr)
    return str(content)


@dataclass(slots=True)
class ChatModelGenerator:
    """TextGenerator backed by a chat model runnable.

    Responses are flattened to text and stripped of code fences so callers
    always receive bare source text.
    """

    runnable: SupportsInvoke

    def generate(self, prompt: str) -> str:
        response = self.runnable.invoke(prompt)
        text = strip_code_fences(content_to_text(response))
        logger.debug("Generated %d characters for prompt of %d characters", len(text), len(prompt))
        return text


def load_env_file(repo_root: Path | None = None) -> None:
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def ensure_credentials(provider: str, repo_root: Path | None = None) -> dict[str, str]:
    """Load provider credentials from environment or .env and return them.

    Raises:
        RuntimeError: If any required variable is unavailable after all sources are checked.
    """
    load_env_file(repo_root)
    required = AZURE_REQUIRED_ENV if provider == "azure" else ("OPENAI_API_KEY",)
    values = {name: os.getenv(name, "").strip() for name in required}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise RuntimeError(f"Missing {provider} environment variables: {', '.join(missing)}")
    return values


def get_chat_model(
    *,
    settings: RuntimeSettings,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> BaseChatModel:
    """Construct an OpenAI or Azure OpenAI chat model with validated credentials.

    Args:
        settings: Runtime settings naming the provider, model and sampling limits.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        repo_root: Optional repo root for .env file resolution.

    Returns:
        Configured chat model.

    Raises:
        RuntimeError: If provider credentials are not available.
    """
    credentials = ensure_credentials(settings.llm_provider, repo_root=repo_root)
    if settings.llm_provider == "azure":
        return AzureChatOpenAI(
            azure_endpoint=credentials["AZURE_OPENAI_ENDPOINT"],
            azure_deployment=credentials["AZURE_OPENAI_API_DEPLOYMENT_NAME"],
            api_version=credentials["AZURE_OPENAI_API_VERSION"],
            api_key=credentials["AZURE_OPENAI_API_KEY"],
            temperature=settings.temperature,
            max_tokens=settings.max_completion_tokens,
            timeout=timeout,
            max_retries=max_retries,
        )
    return ChatOpenAI(
        model=settings.model_name,
        temperature=settings.temperature,
        max_completion_tokens=settings.max_completion_tokens,
        timeout=timeout,
        max_retries=max_retries,
    )


def build_text_generator(settings: RuntimeSettings, repo_root: Path | None = None) -> ChatModelGenerator:
    return ChatModelGenerator(runnable=get_chat_model(settings=settings, repo_root=repo_root))
