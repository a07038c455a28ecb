from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from autofix_testgen.llm import ChatModelGenerator, content_to_text, ensure_credentials, strip_code_fences


class FakeMessage:
    def __init__(self, content: Any) -> None:
        self.content = content


class FakeRunnable:
    def __init__(self, content: Any) -> None:
        self.content = content
        self.inputs: list[Any] = []

    def invoke(self, input: Any) -> FakeMessage:  # noqa: A002
        self.inputs.append(input)
        return FakeMessage(self.content)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("```typescript\nconst x = 1;\n```", "const x = 1;"),
        ("```java\nclass A {}\n```\n", "class A {}"),
        ("```\nplain\n```", "plain"),
        ("  SOURCE  ", "SOURCE"),
    ],
)
def test_strip_code_fences(raw: str, expected: str) -> None:
    assert strip_code_fences(raw) == expected


def test_content_to_text_flattens_blocks() -> None:
    blocks = [{"type": "text", "text": "first"}, {"content": "second"}, "third", {"other": 1}]
    assert content_to_text(blocks) == 'first\nsecond\nthird\n{"other": 1}'
    assert content_to_text({"content": "nested"}) == "nested"
    assert content_to_text(FakeMessage("attr")) == "attr"


def test_chat_model_generator_returns_bare_text() -> None:
    runnable = FakeRunnable([{"type": "text", "text": "```ts\nexpect(1).toBe(1);\n```"}])

    text = ChatModelGenerator(runnable=runnable).generate("write a test")

    assert text == "expect(1).toBe(1);"
    assert runnable.inputs == ["write a test"]


def test_missing_credentials_raise(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_credentials("openai", repo_root=tmp_path)


def test_credentials_load_from_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # registers the variable so the value loaded from .env is undone afterwards
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-from-file\n", encoding="utf-8")

    assert ensure_credentials("openai", repo_root=tmp_path) == {"OPENAI_API_KEY": "sk-from-file"}
