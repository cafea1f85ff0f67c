"""
Input sanitization.

Removes data-store operator keys and markup from every inbound field,
collapses repeated parameters to a single value, and redacts
password-like fields before anything is logged.

Every transformation is applied until it reaches a fixed point,
so cleaning already-clean input is a no-op.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from apishield.domain.entities import SanitizedRequest

OPERATOR_PREFIX = "$"
REDACTION_MARKER = "[REDACTED]"

# Tag patterns never cross a "<", so each "<" is scanned at most once per pass.
_OPEN_BLOCK_TAG = re.compile(r"<\s*(script|style)\b[^<>]*>", re.IGNORECASE)
_CLOSE_BLOCK_TAGS = {
    name: re.compile(rf"<\s*/\s*{name}\s*>", re.IGNORECASE) for name in ("script", "style")
}
_ANY_TAG = re.compile(r"<[^<>]*>")
_JS_SCHEME = re.compile(r"javascript\s*:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\son[a-z]+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)

_SECRET_KEYS = frozenset(
    {"token", "accesstoken", "refreshtoken", "secret", "clientsecret", "apikey"}
)


def is_sensitive_key(key: str) -> bool:
    """Return True for keys whose values must never be logged."""
    normalized = key.replace("_", "").replace("-", "").lower()
    return "password" in normalized or normalized in _SECRET_KEYS


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with password-like fields masked at any depth."""
    if isinstance(value, Mapping):
        return {
            key: REDACTION_MARKER if is_sensitive_key(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _fixed_point(text: str, step) -> str:
    while True:
        cleaned = step(text)
        if cleaned == text:
            return cleaned
        text = cleaned


def _remove_blocks(text: str) -> str:
    """Drop script/style blocks in a single left-to-right scan.

    An opening tag with no closing tag after it is dropped on its own.
    The last closing-tag lookup per tag name is reused while it still
    lies ahead, so the text is searched at most once per tag name.
    """
    pieces = []
    pos = 0
    closing_tags: dict[str, Optional[re.Match]] = {}
    while True:
        opening = _OPEN_BLOCK_TAG.search(text, pos)
        if opening is None:
            break
        name = opening.group(1).lower()
        closing = closing_tags.get(name)
        if name not in closing_tags or (closing is not None and closing.start() < opening.end()):
            closing = _CLOSE_BLOCK_TAGS[name].search(text, opening.end())
            closing_tags[name] = closing
        pieces.append(text[pos:opening.start()])
        pos = closing.end() if closing is not None else opening.end()
    pieces.append(text[pos:])
    return "".join(pieces)


def _strip_markup_once(text: str) -> str:
    text = _remove_blocks(text)
    text = _ANY_TAG.sub("", text)
    return _JS_SCHEME.sub("", text)


def _strip_active_content_once(text: str) -> str:
    text = _remove_blocks(text)
    text = _ANY_TAG.sub(lambda tag: _EVENT_HANDLER.sub("", tag.group(0)), text)
    return _JS_SCHEME.sub("", text)


def strip_markup(text: str) -> str:
    """Remove every tag, script/style block and javascript: scheme."""
    return _fixed_point(text, _strip_markup_once)


def strip_active_content(text: str) -> str:
    """Remove script/style blocks, inline handlers and javascript: schemes, keep other markup."""
    return _fixed_point(text, _strip_active_content_once)


class Sanitizer:
    """Cleans request body, query and path parameters.

    Args:
        allowed_html_fields: Body keys whose string values keep non-active markup.
        allowed_repeated_params: Query/form keys that may legitimately repeat.
        operator_prefix: Key prefix the data store interprets as an operator.
    """

    def __init__(
        self,
        allowed_html_fields: Iterable[str] = (),
        allowed_repeated_params: Iterable[str] = (),
        operator_prefix: str = OPERATOR_PREFIX,
    ) -> None:
        self._html_fields = frozenset(allowed_html_fields)
        self._repeated = frozenset(allowed_repeated_params)
        self._prefix = operator_prefix

    def clean(
        self,
        body: Any = None,
        query: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> SanitizedRequest:
        """Sanitize all three inbound field groups.

        ``query`` and a form ``body`` may be given as ``(key, value)`` pairs
        or as a mapping whose values are lists; repeated keys keep their
        last value.
        """
        if _is_pair_list(body):
            body = self.collapse(body)
        return SanitizedRequest(
            body=self.clean_value(body),
            query=self.clean_value(self.collapse(query or {})),
            params=self.clean_value(dict(params or {})),
        )

    def collapse(self, pairs: Any) -> dict[str, Any]:
        """Collapse repeated parameters, keeping the last occurrence."""
        items = pairs.items() if isinstance(pairs, Mapping) else pairs
        collapsed: dict[str, Any] = {}
        for key, value in items:
            if key in self._repeated:
                values = value if isinstance(value, list) else [value]
                collapsed.setdefault(key, []).extend(values)
            elif isinstance(value, list):
                if value:
                    collapsed[key] = value[-1]
            else:
                collapsed[key] = value
        return collapsed

    def clean_value(self, value: Any, html_allowed: bool = False) -> Any:
        """Recursively strip operator keys and markup from a structured value."""
        if isinstance(value, Mapping):
            cleaned = {}
            for key, item in value.items():
                key = str(key)
                if self._is_operator_key(key):
                    continue
                cleaned[key] = self.clean_value(item, key in self._html_fields)
            return cleaned
        if isinstance(value, (list, tuple)):
            return [self.clean_value(item, html_allowed) for item in value]
        if isinstance(value, str):
            return strip_active_content(value) if html_allowed else strip_markup(value)
        return value

    def _is_operator_key(self, key: str) -> bool:
        return key.startswith(self._prefix) or "." in key


def _is_pair_list(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(item, tuple) and len(item) == 2 for item in value)
    )
