from __future__ import annotations

import pytest

from conftest import build_epub, png_bytes
from lounge.core import (
    extract_epub,
    extract_manuscript,
    extract_text,
    is_sparse,
    text_to_html,
)
from lounge.errors import EmptyManuscriptError, ParseError


def test_epub_chapters_follow_spine_order(epub_path) -> None:
    manuscript = extract_epub(epub_path)

    assert [chapter.chapter_number for chapter in manuscript.chapters] == [1, 2]
    assert [chapter.title for chapter in manuscript.chapters] == ["ch1", "ch2"]
    assert "This is the first chapter." in manuscript.chapters[0].content
    assert "This is the second chapter." in manuscript.chapters[1].content
    assert "<head" not in manuscript.chapters[0].content
    assert manuscript.title == "Sample Book"
    assert manuscript.author == "Sample Author"


def test_epub_skips_non_html_and_missing_spine_entries() -> None:
    data = build_epub(
        [("intro", "<p>Opening words of the story, long enough to matter.</p>")],
        extra_spine=[
            ("pic", "images/plate.png", "image/png"),
            ("ghost", "ghost.xhtml", "application/xhtml+xml"),
        ],
    )

    manuscript = extract_epub(data)

    assert [chapter.chapter_number for chapter in manuscript.chapters] == [1]
    assert manuscript.chapters[0].title == "intro"


def test_epub_numbering_has_no_gaps_after_skipped_entries() -> None:
    data = build_epub(
        [("a", "<p>First.</p>"), ("c", "<p>Third.</p>")],
        extra_spine=[("b", "missing.xhtml", "application/xhtml+xml")],
    )

    manuscript = extract_epub(data)

    assert [chapter.chapter_number for chapter in manuscript.chapters] == [1, 2]


def test_sparse_chapters_are_kept() -> None:
    data = build_epub([("title-page", "<p>Hi</p>"), ("ch1", "<p>" + "word " * 30 + "</p>")])

    manuscript = extract_epub(data)

    assert len(manuscript.chapters) == 2
    assert is_sparse(manuscript.chapters[0].content)
    assert not is_sparse(manuscript.chapters[1].content)


def test_scripts_and_styles_are_stripped() -> None:
    data = build_epub([("ch1", "<style>p {}</style><p>Body text.</p><script>x()</script>")])

    content = extract_epub(data).chapters[0].content

    assert "Body text." in content
    assert "<script" not in content
    assert "<style" not in content


def test_epub_cover_is_found_by_properties() -> None:
    cover = png_bytes()
    data = build_epub([("ch1", "<p>Text.</p>")], cover=cover)

    manuscript = extract_epub(data)

    assert manuscript.cover is not None
    assert manuscript.cover.data == cover
    assert manuscript.cover.media_type == "image/png"


def test_unreadable_container_raises_parse_error() -> None:
    with pytest.raises(ParseError) as excinfo:
        extract_epub(b"PK-not-really-a-zip")
    assert excinfo.value.user_message.startswith("Nothing was saved")


def test_epub_without_loadable_documents_is_empty() -> None:
    data = build_epub([], extra_spine=[("ghost", "ghost.xhtml", "application/xhtml+xml")])

    with pytest.raises(EmptyManuscriptError):
        extract_epub(data)


def test_text_always_yields_one_chapter() -> None:
    chapters = extract_text("First paragraph.\n\nSecond <paragraph>.")

    assert len(chapters) == 1
    assert chapters[0].chapter_number == 1
    assert chapters[0].title == "Chapter 1"
    assert chapters[0].content == "<p>First paragraph.</p><p>Second &lt;paragraph&gt;.</p>"


def test_text_uses_supplied_number_and_title() -> None:
    chapters = extract_text("Body", chapter_number=5, title="  The Fifth  ")

    assert chapters[0].chapter_number == 5
    assert chapters[0].title == "The Fifth"


def test_text_rejects_empty_body_and_bad_numbers() -> None:
    with pytest.raises(EmptyManuscriptError):
        extract_text("   \n  ")
    with pytest.raises(ValueError):
        extract_text("Body", chapter_number=0)


def test_text_to_html_normalizes_line_endings() -> None:
    assert text_to_html("a\r\n\r\nb") == "<p>a</p><p>b</p>"


def test_manuscript_dispatches_on_content() -> None:
    epub = extract_manuscript(data=build_epub([("ch1", "<p>Text.</p>")]), filename="book.epub")
    text = extract_manuscript(data="Plain upload.".encode("utf-8"), filename="chapter.txt")

    assert epub.title == "Sample Book"
    assert text.title is None
    assert [chapter.chapter_number for chapter in text.chapters] == [1]


def test_manuscript_requires_some_input() -> None:
    with pytest.raises(EmptyManuscriptError):
        extract_manuscript()


def _flip_byte(data: bytes, payload: bytes) -> bytes:
    offset = data.index(payload) + len(payload) // 2
    return data[:offset] + bytes([data[offset] ^ 0xFF]) + data[offset + 1 :]


def test_damaged_cover_is_dropped_and_chapters_survive() -> None:
    cover = png_bytes()
    data = _flip_byte(build_epub([("ch1", "<p>Text.</p>")], cover=cover), cover)

    manuscript = extract_epub(data)

    assert manuscript.cover is None
    assert [chapter.chapter_number for chapter in manuscript.chapters] == [1]


def test_damaged_package_document_raises_parse_error() -> None:
    data = build_epub([("ch1", "<p>Text.</p>")])
    opf_marker = b"<spine>"

    with pytest.raises(ParseError):
        extract_epub(_flip_byte(data, opf_marker))
