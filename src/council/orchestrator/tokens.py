"""``{{token}}`` discovery and substitution."""

from __future__ import annotations

import re
from typing import Callable, List, Optional, Sequence

from ..state.agents import PromptStackItem, StackItemType

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.:\-]*)\s*\}\}")

BUILTIN_TOKENS = (
    "input",
    "previousResponse",
    "participant.name",
    "phase.input",
    "phase.output",
    "run.input",
    "ragContext",
)


def find_tokens(text: str) -> List[str]:
    """Token names in order of first appearance."""
    seen: List[str] = []
    for match in TOKEN_PATTERN.finditer(text or ""):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def substitute(text: str, resolve: Callable[[str], Optional[str]]) -> str:
    """Replace each token with ``resolve(name)``; ``None`` leaves it verbatim."""

    def _replace(match: "re.Match[str]") -> str:
        value = resolve(match.group(1))
        return match.group(0) if value is None else value

    return TOKEN_PATTERN.sub(_replace, text or "")


def strip_braces(token: str) -> str:
    token = token.strip()
    if token.startswith("{{") and token.endswith("}}"):
        token = token[2:-2]
    return token.strip()


def apply_transforms(text: str, transforms: Sequence[str]) -> str:
    for transform in transforms:
        name, _, param = transform.partition(":")
        if name == "uppercase":
            text = text.upper()
        elif name == "lowercase":
            text = text.lower()
        elif name == "capitalize":
            text = text[:1].upper() + text[1:]
        elif name == "trim":
            text = text.strip()
        elif name == "truncate":
            limit = int(param) if param.isdigit() else 100
            if len(text) > limit:
                text = text[:limit] + "..."
    return text


def build_prompt(stack: Sequence[PromptStackItem], render: Callable[[str], str], separator: str = "\n\n") -> str:
    """Assemble a prompt from stack blocks, skipping disabled and empty ones."""
    parts: List[str] = []
    for item in stack:
        if not item.enabled:
            continue
        if item.type in (StackItemType.TEXT, StackItemType.STATIC):
            content = item.content
        elif item.type == StackItemType.TOKEN:
            content = render("{{%s}}" % strip_braces(item.token)) if item.token else ""
        elif item.type == StackItemType.CONDITIONAL:
            content = render(item.content) if _is_truthy(item.condition, render) else ""
        else:
            content = render(item.content)
        if content and item.transforms:
            content = apply_transforms(content, item.transforms)
        content = content.strip()
        if content:
            parts.append(content)
    return separator.join(parts).strip()


def _is_truthy(condition: str, render: Callable[[str], str]) -> bool:
    name = strip_braces(condition)
    if not name:
        return False
    placeholder = "{{%s}}" % name
    value = render(placeholder)
    return bool(value.strip()) and value != placeholder
