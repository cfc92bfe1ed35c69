"""Tokenizer for ``{{scope.path | default}}`` expressions.

Expressions appear in node configs, input bindings, edge conditions, prompt
templates and expression-typed parameters. The scanner understands nested
braces and quoted literals, so a default such as ``{{input.note | 'a|b}}'}}``
is one expression with the default ``a|b}}``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

_QUOTES = ("'", '"')
_BARE_PARAM_RE = re.compile(r"(?<![\w.])params\.([A-Za-z0-9_][A-Za-z0-9_.\-]*)")


@dataclass(frozen=True)
class Expression:
    raw: str
    inner: str
    reference: str
    default: Optional[str]
    start: int
    end: int

    @property
    def is_field_reference(self) -> bool:
        dot = self.reference.find(".")
        return 0 < dot < len(self.reference) - 1

    @property
    def scope(self) -> Optional[str]:
        if not self.is_field_reference:
            return None
        return self.reference.split(".", 1)[0].strip()

    @property
    def path(self) -> Optional[str]:
        if not self.is_field_reference:
            return None
        return self.reference.split(".", 1)[1].strip()


def _find_close(text: str, pos: int, *, honor_quotes: bool) -> int:
    """Index just past the ``}}`` closing an expression opened before ``pos``."""
    depth = 0
    quote: Optional[str] = None
    i = pos
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if honor_quotes and ch in _QUOTES:
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            if depth > 0:
                depth -= 1
            elif text.startswith("}}", i):
                return i + 2
        i += 1
    return -1


def _split_top_level_pipe(inner: str) -> Tuple[str, Optional[str]]:
    depth = 0
    quote: Optional[str] = None
    for i, ch in enumerate(inner):
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in _QUOTES:
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
        elif ch == "|" and depth == 0:
            return inner[:i], inner[i + 1 :]
    return inner, None


def _parse_default(text: str) -> str:
    value = text.strip()
    if value.startswith("default"):
        rest = value[len("default") :].lstrip()
        if rest.startswith(":"):
            value = rest[1:].strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
        value = value[1:-1]
    return value


def iter_expressions(text: str) -> Iterator[Expression]:
    """Yield every ``{{...}}`` segment of ``text`` in order of appearance.

    Unterminated segments are ignored. A stray quote inside a segment that
    would otherwise swallow the rest of the text is treated literally.
    """
    if not isinstance(text, str):
        return
    pos = 0
    while True:
        start = text.find("{{", pos)
        if start < 0:
            return
        end = _find_close(text, start + 2, honor_quotes=True)
        if end < 0:
            end = _find_close(text, start + 2, honor_quotes=False)
        if end < 0:
            return
        inner = text[start + 2 : end - 2].strip()
        reference, default = _split_top_level_pipe(inner)
        yield Expression(
            raw=text[start:end],
            inner=inner,
            reference=reference.strip(),
            default=_parse_default(default) if default is not None else None,
            start=start,
            end=end,
        )
        pos = end


def extract_references(text: str) -> List[Expression]:
    """Field references (``scope.path``) found in ``text``."""
    return [expr for expr in iter_expressions(text) if expr.is_field_reference]


def extract_param_codes(text: str) -> Set[str]:
    """Parameter codes referenced as ``{{params.<code>}}`` or bare ``params.<code>``."""
    if not isinstance(text, str):
        return set()
    codes: Set[str] = set()
    for expr in extract_references(text):
        if expr.scope == "params" and expr.path:
            codes.add(expr.path)
    for match in _BARE_PARAM_RE.finditer(text):
        code = match.group(1).rstrip(".-")
        if code:
            codes.add(code)
    return codes


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{{name}}`` tokens from ``variables``.

    A token is looked up by its full inner text, then by the part before the
    pipe. Tokens without a matching variable are left verbatim.
    """
    if not template:
        return template or ""
    parts: List[str] = []
    cursor = 0
    for expr in iter_expressions(template):
        parts.append(template[cursor : expr.start])
        if expr.inner in variables:
            parts.append(str(variables[expr.inner]))
        elif expr.reference in variables:
            parts.append(str(variables[expr.reference]))
        else:
            parts.append(expr.raw)
        cursor = expr.end
    parts.append(template[cursor:])
    return "".join(parts)


def collect_string_leaves(value: Any) -> List[str]:
    """All string leaves of a nested dict/list structure."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, Mapping):
        leaves: List[str] = []
        for nested in value.values():
            leaves.extend(collect_string_leaves(nested))
        return leaves
    if isinstance(value, (list, tuple)):
        leaves = []
        for nested in value:
            leaves.extend(collect_string_leaves(nested))
        return leaves
    return []


def flatten_leaf_entries(value: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, Any]]:
    """(dotted path, leaf) pairs of a nested mapping; lists count as leaves."""
    entries: List[Tuple[str, Any]] = []
    for key, nested in value.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(nested, Mapping):
            entries.extend(flatten_leaf_entries(nested, path))
        else:
            entries.append((path, nested))
    return entries


def stringify_variables(values: Mapping[str, Any], prefix: str) -> Dict[str, str]:
    """Prefix keys and JSON-encode non-string values for template rendering."""
    rendered: Dict[str, str] = {}
    for key, value in values.items():
        if isinstance(value, str):
            rendered[f"{prefix}.{key}"] = value
        else:
            rendered[f"{prefix}.{key}"] = json.dumps(value, ensure_ascii=False, default=str)
    return rendered
