"""Pattern-based metadata extraction for Java and TypeScript/JavaScript sources.

This is deliberately shallow: declarations are found with regular expressions
and a function's end line is found by brace matching. Anything the patterns do
not recognise (generic return types, overloads spread over several lines) is
simply not reported.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .models import CodeMetadata, FunctionMetadata, Parameter, Requirement

logger = logging.getLogger(__name__)

JAVA_CLASS_RE = re.compile(r"^\s*public\s+(?:(?:abstract|final)\s+)*class\s+(\w+)", re.MULTILINE)
JAVA_METHOD_RE = re.compile(r"(public|private|protected)\s+(static\s+)?(\w+)\s+(\w+)\s*\(([^)]*)\)")
TS_IMPORT_RE = re.compile(r"import\s+.*\s+from\s+['\"]([^'\"]+)['\"]")
TS_FUNCTION_RE = re.compile(r"(?:export\s+)?(?:async\s+)?function\s+(\w+)\s*\(([^)]*)\)\s*:\s*(\w+)")
TS_ARROW_RE = re.compile(
    r"(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?\(([^)]*)\)\s*:\s*(\w+)\s*=>"
)
JAVA_KEYWORDS = frozenset({"new", "return", "else", "throw"})
SUPPORTED_EXTENSIONS = frozenset({".java", ".ts", ".js"})


class UnsupportedFileTypeError(ValueError):
    """Raised for source files whose extension has no parser."""


def _line_of(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def _block_end_line(lines: list[str], line_start: int) -> int:
    """Return the 1-based line on which the brace block opened at ``line_start`` closes."""
    depth = 0
    opened = False
    for idx in range(line_start - 1, len(lines)):
        for char in lines[idx]:
            if char == "{":
                depth += 1
                opened = True
            elif char == "}":
                depth -= 1
                if opened and depth == 0:
                    return idx + 1
        if not opened and lines[idx].rstrip().endswith(";"):
            return idx + 1
    return len(lines)


def extract_documentation(content: str, line_start: int) -> str | None:
    """Collect the comment block directly above a declaration, if any."""
    lines = content.splitlines()
    doc_lines: list[str] = []
    for idx in range(line_start - 2, -1, -1):
        line = lines[idx].strip()
        if line.startswith(("//", "*", "/**", "/*")):
            doc_lines.insert(0, line)
        elif not line:
            continue
        else:
            break
    return "\n".join(doc_lines) if doc_lines else None


def parse_java(file_path: str, content: str) -> CodeMetadata:
    lines = content.splitlines()
    class_match = JAVA_CLASS_RE.search(content)
    functions: list[FunctionMetadata] = []
    for match in JAVA_METHOD_RE.finditer(content):
        visibility, static, return_type, name, params = match.groups()
        if return_type in JAVA_KEYWORDS:
            continue
        line_start = _line_of(content, match.start())
        parameters: list[Parameter] = []
        for raw in params.split(","):
            parts = raw.strip().split()
            if len(parts) >= 2:
                parameters.append(Parameter(name=parts[-1], type=" ".join(parts[:-1])))
        functions.append(
            FunctionMetadata(
                name=name,
                parameters=parameters,
                return_type=return_type,
                visibility=visibility,
                is_static=bool(static),
                line_start=line_start,
                line_end=_block_end_line(lines, line_start),
                documentation=extract_documentation(content, line_start),
            )
        )
    return CodeMetadata(
        file_path=file_path,
        language="java",
        class_name=class_match.group(1) if class_match else None,
        functions=functions,
    )


def parse_typescript_parameters(params: str) -> list[Parameter]:
    parameters: list[Parameter] = []
    for raw in params.split(","):
        trimmed = raw.strip()
        if not trimmed:
            continue
        optional = "?" in trimmed or "=" in trimmed
        name, _, type_part = trimmed.replace("?", "", 1).partition(":")
        type_name = type_part.split("=")[0].strip() or "any"
        parameters.append(Parameter(name=name.split("=")[0].strip(), type=type_name, optional=optional))
    return parameters


def parse_typescript(file_path: str, content: str) -> CodeMetadata:
    lines = content.splitlines()
    functions: list[FunctionMetadata] = []
    for pattern in (TS_FUNCTION_RE, TS_ARROW_RE):
        for match in pattern.finditer(content):
            name, params, return_type = match.groups()
            line_start = _line_of(content, match.start())
            functions.append(
                FunctionMetadata(
                    name=name,
                    parameters=parse_typescript_parameters(params),
                    return_type=return_type,
                    line_start=line_start,
                    line_end=_block_end_line(lines, line_start),
                    documentation=extract_documentation(content, line_start),
                )
            )
    functions.sort(key=lambda item: item.line_start)
    return CodeMetadata(
        file_path=file_path,
        language="typescript" if file_path.endswith(".ts") else "javascript",
        functions=functions,
        imports=TS_IMPORT_RE.findall(content),
    )


def check_supported_file(file_path: str) -> str:
    """Return the file extension, raising UnsupportedFileTypeError if no parser handles it."""
    ext = Path(file_path).suffix
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileTypeError(f"Unsupported file type: {ext or file_path}")
    return ext


def parse_code_metadata(file_path: str, content: str | None = None) -> CodeMetadata:
    """Parse a source file (or provided content) into CodeMetadata.

    Raises:
        UnsupportedFileTypeError: For extensions other than .java, .ts and .js.
        FileNotFoundError: If ``content`` is omitted and the file does not exist.
    """
    ext = check_supported_file(file_path)
    if content is None:
        content = Path(file_path).read_text(encoding="utf-8")
    metadata = parse_java(file_path, content) if ext == ".java" else parse_typescript(file_path, content)
    logger.info("Parsed %s: %d function(s)", file_path, len(metadata.functions))
    return metadata


def parse_requirements(payload: Any) -> list[Requirement]:
    """Accept a list of plain strings and/or requirement objects.

    Plain strings become functional, medium-priority requirements with ids
    ``req-<n>`` (1-based). Raises ValueError for anything else.
    """
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise ValueError("requirements must be a list")
    requirements: list[Requirement] = []
    for idx, item in enumerate(payload, start=1):
        if isinstance(item, Requirement):
            requirements.append(item)
        elif isinstance(item, str):
            if not item.strip():
                raise ValueError(f"requirements[{idx - 1}] must be non-empty")
            requirements.append(Requirement(id=f"req-{idx}", description=item.strip()))
        elif isinstance(item, dict):
            candidate = {"id": f"req-{idx}", **item}
            try:
                requirements.append(Requirement.model_validate(candidate))
            except ValidationError as exc:
                raise ValueError(f"Invalid requirement at index {idx - 1}: {exc}") from exc
        else:
            raise ValueError(f"requirements[{idx - 1}] must be a string or object")
    return requirements
