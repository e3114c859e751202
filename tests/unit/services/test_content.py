"""Tests for boilerplate stripping and text extraction."""

import random

import pytest
from bs4 import BeautifulSoup

from bookmark_pipeline.services.content import (
    clean_text,
    compute_content_hash,
    extract_html_text,
    extract_main_content,
    extract_snapshot_text,
    snapshot_kind,
    word_count,
)

PAGE = """<html><head><title>A &amp; B</title></head><body>
<nav>Home | About</nav>
<div class="advertisement">Buy now</div>
<main>
  <h1>Heading</h1>
  <p>First paragraph.</p>
  <div><span></span></div>
  <p><img src="/figure.png"></p>
  <aside>Related links</aside>
</main>
<footer>Footer text</footer>
<script>track()</script>
</body></html>"""


class TestExtractMainContent:
    def test_strips_boilerplate_and_prefers_main(self):
        out = extract_main_content(PAGE)
        soup = BeautifulSoup(out, "html.parser")

        body_text = soup.body.get_text()
        assert "First paragraph." in body_text
        for chrome in ("Home | About", "Buy now", "Related links", "Footer text", "track()"):
            assert chrome not in out
        assert soup.title.get_text() == "A & B"
        assert soup.find("main") is not None

    def test_removes_empty_leaves_but_keeps_images(self):
        soup = BeautifulSoup(extract_main_content(PAGE), "html.parser")
        assert soup.find("span") is None
        assert soup.find("img")["src"] == "/figure.png"

    def test_falls_back_to_body(self):
        html = "<html><body><nav>Menu</nav><div><p>Only text</p></div></body></html>"
        out = extract_main_content(html)
        assert "Only text" in out
        assert "Menu" not in out

    def test_empty_article_is_skipped(self):
        html = "<body><article> </article><div id='content'><p>Real body</p></div></body>"
        soup = BeautifulSoup(extract_main_content(html), "html.parser")
        assert soup.find(id="content") is not None


class TestExtractText:
    def test_excludes_script_and_style(self):
        html = "<body><style>.a{}</style><p>Visible</p><script>hidden()</script></body>"
        assert clean_text(extract_html_text(html)) == "Visible"

    def test_blocks_become_lines(self):
        text = clean_text(extract_html_text("<body><h1>Title</h1><p>One<br>Two</p></body>"))
        assert text == "Title\n\nOne\nTwo"

    def test_clean_text(self):
        assert clean_text("  a \t b\r\nc\r\r\r\n\n\nd  ") == "a b\nc\n\nd"
        assert clean_text("") == ""

    def test_clean_text_idempotent(self):
        once = clean_text(" x \n\n\n\n y\r\n z ")
        assert clean_text(once) == once


WHITESPACE_SAMPLES = [
    "plain words only",
    "  leading and trailing  ",
    "tabs\tbetween\t\twords",
    "windows\r\nline\r\nendings\r\n",
    "old mac\rline\rendings",
    "mixed \r\n\r\n\r\n\r\n blank runs",
    "non\u00a0breaking\u00a0\u00a0spaces",
    "form\x0cfeed and\x0bvertical tab",
    "line\u2028separator and\u2029paragraph",
    "\n\n\n\nonly\n\n\n\n\nnewlines\n\n\n",
    "  \t \n \t \n  indented\n\t\tlines \n   \n   \n end",
    "unicode caf\u00e9 na\u00efve \u65e5\u672c\u8a9e   text",
    "a" * 3 + " " * 40 + "b" * 3 + "\n" * 40 + "c",
]


def random_text(rng: random.Random) -> str:
    words = ["alpha", "beta", "gamma", "delta", "\u00e9t\u00e9", "x", "42", "end."]
    gaps = [" ", "  ", "\t", "\n", "\r\n", "\r", "\n\n\n\n", " \n \n ", "\u00a0", "\r\r\r"]
    parts = [rng.choice(gaps)] if rng.random() < 0.5 else []
    for _ in range(rng.randint(1, 60)):
        parts.append(rng.choice(words))
        parts.append(rng.choice(gaps))
    return "".join(parts)


RANDOM_SAMPLES = [random_text(random.Random(seed)) for seed in range(40)]


class TestCleanTextInvariants:
    @pytest.mark.parametrize("raw", WHITESPACE_SAMPLES + RANDOM_SAMPLES)
    def test_normalized_output(self, raw):
        out = clean_text(raw)

        assert word_count(out) >= 0.9 * word_count(raw)
        assert "\r" not in out
        assert "  " not in out
        assert "\n\n\n" not in out
        assert out == out.strip()
        assert clean_text(out) == out

    @pytest.mark.parametrize("raw", RANDOM_SAMPLES)
    def test_words_kept_in_order(self, raw):
        assert clean_text(raw).split() == raw.split()


INTERLEAVED_PAGE = """<html><head>
<style>p { color: red; } .secret-style { display: none; }</style>
<script>var headSecret = "<p>not a paragraph</p>";</script>
</head><body>
<p>First visible paragraph.</p>
<script type="text/javascript">
  document.write("scriptSecret one");
</script>
<p>Second   visible\r\nparagraph.</p>
<style>.styleSecret { margin: 0; }</style>
<div><p>Third <script>inlineSecret()</script>visible paragraph.</p></div>
<noscript>noscriptSecret fallback</noscript>
<p>Fourth<style>b{}</style> visible paragraph.</p>
<script type="application/ld+json">{"jsonSecret": true}</script>
</body></html>"""

VISIBLE = [
    "First visible paragraph.",
    "Second visible paragraph.",
    "Third visible paragraph.",
    "Fourth visible paragraph.",
]
HIDDEN = [
    "headSecret", "not a paragraph", "scriptSecret", "styleSecret", "secret-style",
    "inlineSecret", "noscriptSecret", "jsonSecret", "color: red", "b{}",
]


class TestInterleavedScriptAndStyle:
    def test_text_excludes_every_script_and_style_block(self):
        text = clean_text(extract_html_text(INTERLEAVED_PAGE))

        for hidden in HIDDEN:
            assert hidden not in text
        flat = " ".join(text.split())
        positions = [flat.find(v) for v in VISIBLE]
        assert -1 not in positions, text
        assert positions == sorted(positions)
        assert "\r" not in text
        assert "  " not in text
        assert "\n\n\n" not in text

    def test_archived_snapshot_keeps_visible_text_only(self):
        archived = extract_main_content(INTERLEAVED_PAGE)
        text = clean_text(extract_html_text(archived))

        assert "<script" not in archived
        assert "<style" not in archived
        flat = " ".join(text.split())
        for hidden in HIDDEN:
            assert hidden not in text
        for visible in VISIBLE:
            assert visible in flat

    @pytest.mark.parametrize("tag", ["script", "style"])
    def test_many_blocks_between_paragraphs(self, tag):
        body = "".join(
            f"<p>Paragraph number {i}.</p><{tag}>hidden_{tag}_{i}</{tag}>" for i in range(20)
        )
        text = clean_text(extract_html_text(f"<html><body>{body}</body></html>"))

        assert f"hidden_{tag}" not in text
        assert text.split("\n\n") == [f"Paragraph number {i}." for i in range(20)]


class TestSnapshotKind:
    def test_content_type_wins(self):
        assert snapshot_kind(b"%PDF-1.7", "text/html; charset=utf-8") == "html"
        assert snapshot_kind(b"<html>", "application/pdf") == "pdf"

    def test_extension_then_magic(self):
        assert snapshot_kind(b"", None, "snapshots/u1/b1/paper.PDF") == "pdf"
        assert snapshot_kind(b"%PDF-1.4 ...", None, "snapshots/u1/b1/blob") == "pdf"
        assert snapshot_kind(b"<html></html>") == "html"


class TestExtractSnapshotText:
    def test_uses_declared_charset(self):
        data = "<p>café</p>".encode("latin-1")
        text, kind = extract_snapshot_text(data, "text/html; charset=iso-8859-1")
        assert kind == "html"
        assert text == "café"

    def test_unknown_charset_falls_back_to_utf8(self):
        text, _ = extract_snapshot_text("<p>ok</p>".encode(), "text/html; charset=bogus-9")
        assert text == "ok"

    def test_unreadable_pdf_yields_empty_text(self):
        text, kind = extract_snapshot_text(b"%PDF-1.4 garbage", "application/pdf")
        assert (text, kind) == ("", "pdf")


class TestContentHash:
    def test_case_and_whitespace_insensitive(self):
        assert compute_content_hash("Hello   World\n") == compute_content_hash("hello world")

    def test_different_text(self):
        assert compute_content_hash("a") != compute_content_hash("b")


def test_word_count():
    assert word_count("one two\nthree") == 3
