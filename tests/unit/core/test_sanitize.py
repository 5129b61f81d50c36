"""Unit tests for the SVG sanitizer.

Covers rejection of unsafe or malformed markup, foreignObject label
conversion, attribute stripping, and bounded run time on hostile input.
"""

from __future__ import annotations

import time

import pytest

from mmd.errors import ErrorKind, SanitizeRejected
from mmd.sanitize import TokenType, sanitize, sanitize_with_report, tokenize

SVG_NS = 'xmlns="http://www.w3.org/2000/svg"'


def _svg(body: str) -> str:
    return f"<svg {SVG_NS}>{body}</svg>"


# =============================================================================
# PASS-THROUGH
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestPassThrough:
    """Safe markup comes back unchanged."""

    def test_plain_svg_unchanged(self) -> None:
        """Tokens without anything to rewrite are emitted byte for byte."""
        markup = _svg('<g class="node"><rect x="0" y="0" width="10" height="5"/><text>A &amp; B</text></g>')
        assert sanitize(markup) == markup

    def test_prolog_and_comments_kept(self) -> None:
        """XML declaration, doctype and comments survive."""
        markup = (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<!DOCTYPE svg PUBLIC "-//W3C//DTD SVG 1.1//EN" "http://www.w3.org/Graphics/SVG/1.1/DTD/svg11.dtd">\n'
            + _svg("<!-- edge --><path d=\"M0 0L1 1\"/>")
            + "\n"
        )
        assert sanitize(markup) == markup

    def test_style_cdata_kept(self) -> None:
        """CDATA inside the root is allowed."""
        markup = _svg("<style><![CDATA[.a > .b { fill: red; }]]></style>")
        assert sanitize(markup) == markup

    def test_byte_order_mark_removed(self) -> None:
        """A leading BOM is dropped."""
        assert sanitize("\ufeff" + _svg("")) == _svg("")

    def test_deterministic(self) -> None:
        """Same input, same output."""
        markup = _svg('<foreignObject x="0" y="0" width="10" height="10"><div>Hi</div></foreignObject>')
        assert sanitize(markup) == sanitize(markup)


# =============================================================================
# REJECTION
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestRejection:
    """Unsafe or malformed markup is rejected."""

    @pytest.mark.parametrize(
        "markup",
        [
            _svg("<script>alert(1)</script>"),
            _svg("<SCRIPT>alert(1)</SCRIPT>"),
            _svg('<svg:script xlink:href="evil.js"/>'),
            _svg("<g><script/></g>"),
        ],
    )
    def test_script_rejected(self, markup: str) -> None:
        """Any script element rejects the whole document."""
        with pytest.raises(SanitizeRejected) as exc_info:
            sanitize(markup)
        assert exc_info.value.kind is ErrorKind.SANITIZE_REJECTED

    @pytest.mark.parametrize(
        "markup",
        [
            "",
            "   \n",
            "<html></html>",
            "just text",
            _svg("") + "<svg></svg>",
            _svg("") + "trailing",
            "<svg><g></svg>",
            "<svg><g>",
            "<svg></g></svg>",
            "<svg><rect width=\"10\"</svg>",
            "<svg><rect width=\"10/></svg>",
            "<svg><!-- never closed </svg>",
            "<svg><![CDATA[ open </svg>",
            "<svg><text>Fish & Chips</text></svg>",
            '<svg><a href="?a=1&b=2"/></svg>',
            "<svg>< rect/></svg>",
            "<svg><rect =\"x\"/></svg>",
        ],
    )
    def test_malformed_rejected(self, markup: str) -> None:
        """Malformed, unterminated or foreign-rooted markup is rejected."""
        with pytest.raises(SanitizeRejected):
            sanitize(markup)

    def test_entity_references_allowed(self) -> None:
        """Predefined, decimal and hex references are not bare ampersands."""
        markup = _svg("<text>&lt;a&gt; &#38; &#x26; &quot;&apos;&amp;</text>")
        assert sanitize(markup) == markup

    @pytest.mark.parametrize(
        "markup",
        [
            _svg("<text>&nbsp;</text>"),
            _svg("<text>&xxe;</text>"),
            _svg('<rect class="&b;"/>'),
        ],
    )
    def test_undeclared_entity_rejected(self, markup: str) -> None:
        """Named references outside the XML predefined set need a DTD."""
        with pytest.raises(SanitizeRejected):
            sanitize(markup)

    def test_entity_declarations_rejected(self) -> None:
        """A DOCTYPE internal subset never passes through."""
        markup = (
            '<!DOCTYPE svg [<!ENTITY xxe SYSTEM "file:///etc/passwd">'
            '<!ENTITY a "lol"><!ENTITY b "&a;&a;&a;&a;">]>'
            + _svg("<text>&xxe;&b;</text>")
        )
        with pytest.raises(SanitizeRejected, match="internal subset"):
            sanitize(markup)

    @pytest.mark.parametrize(
        "markup",
        [
            '<!DOCTYPE svg [ ]><svg></svg>',
            '<!ENTITY xxe SYSTEM "file:///etc/passwd"><svg></svg>',
            '<!ELEMENT svg ANY><svg></svg>',
            '<svg><!DOCTYPE svg></svg>',
            '<svg></svg><!DOCTYPE svg>',
        ],
    )
    def test_declarations_rejected(self, markup: str) -> None:
        """Only a plain DOCTYPE before the root is accepted."""
        with pytest.raises(SanitizeRejected):
            sanitize(markup)

    def test_html_entities_inside_labels(self) -> None:
        """Label text goes through the HTML entity table and is re-escaped."""
        markup = _svg('<foreignObject width="10" height="10"><div>A&nbsp;B &xxe;</div></foreignObject>')
        assert ">A B &amp;xxe;</text>" in sanitize(markup)

    def test_hostile_input_bounded_time(self) -> None:
        """A long run of unterminated tags is rejected in well under a second."""
        hostile = "<foreignObject " * 10_000

        start = time.monotonic()
        with pytest.raises(SanitizeRejected):
            sanitize(hostile)
        assert time.monotonic() - start < 1.0

    def test_hostile_input_inside_root_bounded_time(self) -> None:
        """Nesting thousands of labels deep is still linear."""
        hostile = "<svg>" + "<foreignObject><div>" * 10_000

        start = time.monotonic()
        with pytest.raises(SanitizeRejected):
            sanitize(hostile)
        assert time.monotonic() - start < 1.0


# =============================================================================
# LABEL CONVERSION
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestLabelConversion:
    """foreignObject labels become native text elements."""

    def test_label_centred_on_box(self) -> None:
        """Text is placed at the centre of the foreignObject box."""
        markup = _svg(
            '<foreignObject x="10" y="20" width="100" height="40">'
            '<div xmlns="http://www.w3.org/1999/xhtml"><span class="nodeLabel">Hello</span></div>'
            "</foreignObject>"
        )
        safe, report = sanitize_with_report(markup)

        assert "foreignObject" not in safe
        assert (
            '<text x="60" y="40" text-anchor="middle" dominant-baseline="middle" '
            "font-family=\"'trebuchet ms',verdana,arial,sans-serif\" "
            'font-size="16px" fill="#333">Hello</text>'
        ) in safe
        assert report.labels_converted == 1

    def test_missing_geometry_defaults_to_zero(self) -> None:
        """Absent or garbage dimensions count as zero."""
        markup = _svg('<foreignObject width="abc"><div>Hi</div></foreignObject>')
        assert '<text x="0" y="0"' in sanitize(markup)

    def test_fractional_geometry(self) -> None:
        """Centre coordinates keep fractional precision."""
        markup = _svg('<foreignObject x="0.5" y="1" width="3" height="2.5px"><p>Hi</p></foreignObject>')
        assert '<text x="2" y="2.25"' in sanitize(markup)

    def test_label_text_flattened_and_escaped(self) -> None:
        """Nested markup is flattened; entities are normalised and re-escaped."""
        markup = _svg(
            '<foreignObject width="10" height="10"><div><b>A</b> &amp;\n  <i>B</i>'
            "<br/>C &lt;D&gt;</div></foreignObject>"
        )
        safe = sanitize(markup)

        assert ">A &amp; B C &lt;D&gt;</text>" in safe

    def test_html_void_break_inside_label(self) -> None:
        """An HTML <br> without a closing tag is tolerated inside a label."""
        markup = _svg('<foreignObject width="10" height="10"><div>one<br>two</div></foreignObject>')
        assert ">one two</text>" in sanitize(markup)

    def test_transform_carried_over(self) -> None:
        """A transform on the foreignObject moves to the text element."""
        markup = _svg(
            '<foreignObject width="10" height="10" transform="translate(5, 5)"><div>T</div></foreignObject>'
        )
        assert 'transform="translate(5, 5)">T</text>' in sanitize(markup)

    def test_empty_label_dropped(self) -> None:
        """foreignObjects with no visible text disappear."""
        markup = _svg('<g><foreignObject width="10" height="10"><div> </div></foreignObject></g>')
        safe, report = sanitize_with_report(markup)

        assert safe == _svg("<g></g>")
        assert report.labels_dropped == 1

    def test_self_closing_foreign_object_dropped(self) -> None:
        """A self-closing foreignObject has no label."""
        assert sanitize(_svg("<foreignObject/>")) == _svg("")

    def test_multiple_labels(self) -> None:
        """Every foreignObject is converted independently."""
        label = '<foreignObject width="2" height="2"><div>{}</div></foreignObject>'
        markup = _svg(label.format("one") + label.format("two"))
        safe, report = sanitize_with_report(markup)

        assert ">one</text>" in safe
        assert ">two</text>" in safe
        assert report.labels_converted == 2

    def test_mismatched_label_content_rejected(self) -> None:
        """Nesting errors inside a label still reject."""
        with pytest.raises(SanitizeRejected):
            sanitize(_svg("<foreignObject><div><span></div></span></foreignObject>"))


# =============================================================================
# ATTRIBUTE STRIPPING
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestAttributeStripping:
    """Event handlers and script URLs are removed."""

    def test_event_handler_removed(self) -> None:
        """on* attributes are stripped."""
        safe, report = sanitize_with_report(_svg('<rect onclick="alert(1)" width="1"/>'))

        assert "onclick" not in safe
        assert '<rect width="1"/>' in safe
        assert report.attributes_removed == 1

    def test_onload_on_root_removed(self) -> None:
        """Handlers on the root element are stripped too."""
        safe = sanitize('<svg onload="alert(1)"></svg>')
        assert safe == "<svg></svg>"

    @pytest.mark.parametrize(
        "href",
        ["javascript:alert(1)", "JavaScript:alert(1)", " java\tscript:alert(1)", "&#106;avascript:alert(1)"],
    )
    def test_javascript_href_removed(self, href: str) -> None:
        """javascript: links are stripped however they are spelt."""
        safe = sanitize(_svg(f'<a xlink:href="{href}"><text>x</text></a>'))
        assert "href" not in safe

    def test_ordinary_href_kept(self) -> None:
        """Fragment and http links stay."""
        markup = _svg('<a href="#node"><use xlink:href="https://example.com/a.svg#x"/></a>')
        assert sanitize(markup) == markup

    def test_unquoted_and_bare_attributes_quoted(self) -> None:
        """Unquoted and valueless attributes are re-emitted quoted."""
        safe = sanitize(_svg("<rect width=10 hidden/>"))
        assert '<rect width="10" hidden=""/>' in safe


@pytest.mark.unit
@pytest.mark.core
def test_tokenize_yields_exact_slices() -> None:
    """Token raw text concatenates back to the input."""
    markup = '<?xml version="1.0"?><svg a="1"><!--c--><g/>text</svg>'
    tokens = list(tokenize(markup))

    assert "".join(t.raw for t in tokens) == markup
    assert [t.type for t in tokens] == [
        TokenType.PI,
        TokenType.START,
        TokenType.COMMENT,
        TokenType.START,
        TokenType.TEXT,
        TokenType.END,
    ]
