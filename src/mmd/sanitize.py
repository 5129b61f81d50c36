"""SVG sanitizer for renderer output.

Renderer output is untrusted: diagram labels are user-controlled and end up
inside the markup. ``sanitize`` validates and rewrites it in one pass:

- rejects any script element, malformed or unterminated markup, mismatched
  nesting, anything but a single ``<svg>`` root, DOCTYPE internal subsets
  and named entity references beyond the five XML predefined ones;
- converts every ``<foreignObject>`` (HTML labels, unsupported by most
  Markdown viewers) into a native ``<text>`` element centred on the same box;
- strips ``on*`` event handler attributes and ``javascript:`` links.

The tokenizer walks the input left to right and never revisits a character,
so run time is linear in the input length whatever its shape. There are no
backtracking patterns over markup: the only regular expression runs anchored
at a single ``&`` and cannot overlap itself.

The module is pure: no I/O, no logging, deterministic output.
"""

from __future__ import annotations

import html
import math
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from mmd.errors import SanitizeRejected

__all__ = ["SanitizeReport", "Token", "TokenType", "sanitize", "sanitize_with_report", "tokenize"]

_WHITESPACE = " \t\r\n"
_NAME_STOP = frozenset(_WHITESPACE + "/><=\"'")
_REFERENCE = re.compile(r"&(?P<name>#[0-9]+|#x[0-9A-Fa-f]+|[A-Za-z_][A-Za-z0-9._-]*);")
# The only named references an XML consumer resolves without a DTD
_XML_PREDEFINED = frozenset({"amp", "lt", "gt", "quot", "apos"})

# HTML elements that never have a closing tag; only honoured inside labels
_VOID_ELEMENTS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"}
)
# Elements that start a new visual line inside an HTML label
_BREAK_ELEMENTS = frozenset({"br", "div", "p", "li", "tr", "hr"})

LABEL_FONT_FAMILY = "'trebuchet ms',verdana,arial,sans-serif"
LABEL_FONT_SIZE = "16px"
LABEL_FILL = "#333"


class TokenType(Enum):
    TEXT = "text"
    START = "start"
    END = "end"
    COMMENT = "comment"
    CDATA = "cdata"
    PI = "pi"
    DOCTYPE = "doctype"


@dataclass
class Token:
    """One lexical unit of markup.

    ``raw`` is the exact slice of the input, so untouched tokens are
    re-emitted byte for byte.
    """

    type: TokenType
    raw: str
    offset: int
    name: str = ""
    # (name, value, quote); value is None for a bare attribute, quote "" if unquoted
    attrs: list[tuple[str, str | None, str]] = field(default_factory=list)
    self_closing: bool = False

    def attr(self, name: str) -> str | None:
        for attr_name, value, _ in self.attrs:
            if attr_name == name:
                return value
        return None


@dataclass
class SanitizeReport:
    """What the sanitizer changed."""

    labels_converted: int = 0
    labels_dropped: int = 0
    attributes_removed: int = 0


def _local_name(name: str) -> str:
    return name.rsplit(":", 1)[-1].lower()


def _skip_ws(s: str, i: int) -> int:
    n = len(s)
    while i < n and s[i] in _WHITESPACE:
        i += 1
    return i


def _read_name(s: str, i: int) -> tuple[str, int]:
    start = i
    n = len(s)
    while i < n and s[i] not in _NAME_STOP:
        i += 1
    return s[start:i], i


def _find_or_reject(s: str, needle: str, start: int, what: str, offset: int) -> int:
    end = s.find(needle, start)
    if end == -1:
        raise SanitizeRejected(f"Unterminated {what} at offset {offset}")
    return end


def _scan_doctype(s: str, lt: int) -> int:
    """Return the index just past a <!DOCTYPE ...> including an internal subset."""
    i = lt + 2
    n = len(s)
    depth = 0
    quote = ""
    while i < n:
        c = s[i]
        if quote:
            if c == quote:
                quote = ""
        elif c in "\"'":
            quote = c
        elif c == "[":
            depth += 1
        elif c == "]":
            depth -= 1
        elif c == ">" and depth <= 0:
            return i + 1
        i += 1
    raise SanitizeRejected(f"Unterminated declaration at offset {lt}")


def _parse_start_tag(s: str, lt: int) -> Token:
    n = len(s)
    name, i = _read_name(s, lt + 1)
    if not name or not (name[0].isalpha() or name[0] in "_:"):
        raise SanitizeRejected(f"Malformed tag at offset {lt}")

    attrs: list[tuple[str, str | None, str]] = []
    while True:
        i = _skip_ws(s, i)
        if i >= n:
            raise SanitizeRejected(f"Unterminated element <{name}> at offset {lt}")
        if s[i] == ">":
            return Token(TokenType.START, s[lt : i + 1], lt, name, attrs, False)
        if s.startswith("/>", i):
            return Token(TokenType.START, s[lt : i + 2], lt, name, attrs, True)

        attr_name, i = _read_name(s, i)
        if not attr_name:
            raise SanitizeRejected(f"Malformed attribute in <{name}> at offset {i}")

        j = _skip_ws(s, i)
        if j < n and s[j] == "=":
            j = _skip_ws(s, j + 1)
            if j >= n:
                raise SanitizeRejected(f"Unterminated element <{name}> at offset {lt}")
            quote = s[j]
            if quote in "\"'":
                close = _find_or_reject(s, quote, j + 1, "attribute value", j)
                attrs.append((attr_name, s[j + 1 : close], quote))
                i = close + 1
            else:
                start = j
                while j < n and s[j] not in _WHITESPACE and s[j] != ">":
                    j += 1
                value = s[start:j]
                if value.endswith("/") and j < n and s[j] == ">":
                    # <rect width=10/> : the slash closes the tag
                    value = value[:-1]
                    j -= 1
                if not value or "<" in value or "\"" in value or "'" in value:
                    raise SanitizeRejected(f"Malformed attribute value in <{name}> at offset {start}")
                attrs.append((attr_name, value, ""))
                i = j
        else:
            attrs.append((attr_name, None, ""))
            i = j


def tokenize(markup: str) -> Iterator[Token]:
    """Split markup into tokens in a single forward pass.

    Raises:
        SanitizeRejected: On any malformed or unterminated construct
    """
    s = markup
    n = len(s)
    pos = 0
    while pos < n:
        lt = s.find("<", pos)
        if lt == -1:
            yield Token(TokenType.TEXT, s[pos:], pos)
            return
        if lt > pos:
            yield Token(TokenType.TEXT, s[pos:lt], pos)

        if s.startswith("<!--", lt):
            end = _find_or_reject(s, "-->", lt + 4, "comment", lt)
            pos = end + 3
            yield Token(TokenType.COMMENT, s[lt:pos], lt)
        elif s.startswith("<![CDATA[", lt):
            end = _find_or_reject(s, "]]>", lt + 9, "CDATA section", lt)
            pos = end + 3
            yield Token(TokenType.CDATA, s[lt:pos], lt)
        elif s.startswith("<?", lt):
            end = _find_or_reject(s, "?>", lt + 2, "processing instruction", lt)
            pos = end + 2
            yield Token(TokenType.PI, s[lt:pos], lt)
        elif s.startswith("<!", lt):
            pos = _scan_doctype(s, lt)
            yield Token(TokenType.DOCTYPE, s[lt:pos], lt)
        elif s.startswith("</", lt):
            name, i = _read_name(s, lt + 2)
            i = _skip_ws(s, i)
            if not name or i >= n or s[i] != ">":
                raise SanitizeRejected(f"Malformed closing tag at offset {lt}")
            pos = i + 1
            yield Token(TokenType.END, s[lt:pos], lt, name)
        else:
            token = _parse_start_tag(s, lt)
            pos = lt + len(token.raw)
            yield token


def _check_references(text: str, offset: int, *, html_names: bool = False) -> None:
    """Every '&' must open a character reference or a known entity.

    Outside labels only the XML predefined entities are allowed; anything
    else would need a DTD declaration. Label text is unescaped with the HTML
    entity table and re-escaped, so any name is harmless there.
    """
    amp = text.find("&")
    while amp != -1:
        match = _REFERENCE.match(text, amp)
        if match is None:
            raise SanitizeRejected(f"Bare '&' at offset {offset + amp}")
        name = match.group("name")
        if not html_names and not name.startswith("#") and name not in _XML_PREDEFINED:
            raise SanitizeRejected(f"Undeclared entity reference &{name}; at offset {offset + amp}")
        amp = text.find("&", match.end())


def _check_declaration(token: Token, seen_root: bool) -> None:
    """Allow only a plain DOCTYPE ahead of the root.

    An internal subset can declare entities (external file references,
    exponential expansion), so it is never passed on.
    """
    if seen_root:
        raise SanitizeRejected(f"Declaration after the root element at offset {token.offset}")
    if token.raw[2:9].upper() != "DOCTYPE":
        raise SanitizeRejected(f"Unexpected declaration at offset {token.offset}")
    if "[" in token.raw or "<!ENTITY" in token.raw.upper():
        raise SanitizeRejected(f"DOCTYPE with an internal subset at offset {token.offset}")


def _is_script_url(value: str) -> bool:
    compact = "".join(ch for ch in html.unescape(value) if ch > " ").lower()
    return compact.startswith("javascript:")


def _clean_start_tag(token: Token, report: SanitizeReport) -> str:
    kept: list[tuple[str, str | None, str]] = []
    rebuild = False
    for name, value, quote in token.attrs:
        local = _local_name(name)
        if local.startswith("on") or (local == "href" and value is not None and _is_script_url(value)):
            report.attributes_removed += 1
            rebuild = True
            continue
        if value is not None:
            _check_references(value, token.offset)
        if value is None or not quote or "<" in value:
            rebuild = True
        kept.append((name, value, quote))

    if not rebuild:
        return token.raw

    parts = [f"<{token.name}"]
    for name, value, quote in kept:
        text = (value or "").replace("<", "&lt;")
        if quote == "'":
            parts.append(f" {name}='{text}'")
        else:
            parts.append(f' {name}="{text}"')
    parts.append("/>" if token.self_closing else ">")
    return "".join(parts)


def _number(value: str | None) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value.strip().removesuffix("px"))
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _format_number(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


@dataclass
class _Label:
    """Text captured from one foreignObject."""

    token: Token
    depth: int
    parts: list[str] = field(default_factory=list)

    def text(self) -> str:
        flat = " ".join(html.unescape("".join(self.parts)).split())
        return html.escape(flat, quote=False)

    def to_text_element(self, label: str) -> str:
        x = _number(self.token.attr("x"))
        y = _number(self.token.attr("y"))
        width = _number(self.token.attr("width"))
        height = _number(self.token.attr("height"))
        attrs = [
            f'x="{_format_number(x + width / 2)}"',
            f'y="{_format_number(y + height / 2)}"',
            'text-anchor="middle"',
            'dominant-baseline="middle"',
            f"font-family=\"{LABEL_FONT_FAMILY}\"",
            f'font-size="{LABEL_FONT_SIZE}"',
            f'fill="{LABEL_FILL}"',
        ]
        transform = self.token.attr("transform")
        if transform:
            _check_references(transform, self.token.offset)
            attrs.append(f'transform="{transform.replace(chr(34), "&quot;").replace("<", "&lt;")}"')
        return f"<text {' '.join(attrs)}>{label}</text>"


def sanitize_with_report(raw: str) -> tuple[str, SanitizeReport]:
    """Validate and rewrite renderer output.

    Returns:
        Tuple of (safe markup, report of changes)

    Raises:
        SanitizeRejected: If the markup is unsafe or cannot be proven well formed
    """
    report = SanitizeReport()
    markup = raw.removeprefix("\ufeff")
    if not markup.strip():
        raise SanitizeRejected("Renderer output is empty")
    if "<script" in markup.lower():
        raise SanitizeRejected("SVG contains <script> elements")

    out: list[str] = []
    stack: list[str] = []
    seen_root = False
    label: _Label | None = None

    for token in tokenize(markup):
        kind = token.type

        if kind is TokenType.TEXT:
            _check_references(token.raw, token.offset, html_names=label is not None)
            if not stack:
                if token.raw.strip():
                    raise SanitizeRejected(f"Text outside the root element at offset {token.offset}")
                out.append(token.raw)
            elif label is not None:
                label.parts.append(token.raw)
            else:
                out.append(token.raw)

        elif kind is TokenType.START:
            local = _local_name(token.name)
            if local == "script":
                raise SanitizeRejected("SVG contains <script> elements")
            if not stack:
                if seen_root:
                    raise SanitizeRejected(f"Second root element <{token.name}> at offset {token.offset}")
                if local != "svg":
                    raise SanitizeRejected(f"Root element must be <svg>, got <{token.name}>")
                seen_root = True

            if label is not None:
                if local in _BREAK_ELEMENTS:
                    label.parts.append(" ")
                if not token.self_closing and local not in _VOID_ELEMENTS:
                    stack.append(token.name)
                continue

            if local == "foreignobject":
                if token.self_closing:
                    report.labels_dropped += 1
                else:
                    label = _Label(token=token, depth=len(stack))
                    stack.append(token.name)
                continue

            out.append(_clean_start_tag(token, report))
            if not token.self_closing:
                stack.append(token.name)

        elif kind is TokenType.END:
            if label is not None and _local_name(token.name) in _VOID_ELEMENTS:
                if not stack or stack[-1] != token.name:
                    continue
            if not stack or stack[-1] != token.name:
                expected = f"</{stack[-1]}>" if stack else "no closing tag"
                raise SanitizeRejected(
                    f"Mismatched </{token.name}> at offset {token.offset}, expected {expected}"
                )
            stack.pop()
            if label is not None:
                if len(stack) == label.depth:
                    text = label.text()
                    if text:
                        out.append(label.to_text_element(text))
                        report.labels_converted += 1
                    else:
                        report.labels_dropped += 1
                    label = None
                continue
            out.append(token.raw)

        elif kind is TokenType.CDATA:
            if not stack:
                raise SanitizeRejected(f"CDATA outside the root element at offset {token.offset}")
            if label is not None:
                label.parts.append(html.escape(token.raw[9:-3], quote=False))
            else:
                out.append(token.raw)

        elif kind is TokenType.DOCTYPE:
            _check_declaration(token, seen_root)
            out.append(token.raw)

        else:
            # Comments and processing instructions
            if label is None:
                out.append(token.raw)

    if stack:
        raise SanitizeRejected(f"Unclosed element <{stack[-1]}>")
    if not seen_root:
        raise SanitizeRejected("No <svg> root element")

    return "".join(out), report


def sanitize(raw: str) -> str:
    """Validate and rewrite renderer output into safe SVG.

    Raises:
        SanitizeRejected: If the markup is unsafe or malformed
    """
    markup, _ = sanitize_with_report(raw)
    return markup
