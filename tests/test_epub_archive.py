#!/usr/bin/env python3
"""
Tests for reading and writing EPUB archives (app/Python/epub_archive.py)

Run: pytest tests/test_epub_archive.py -v
"""

import sys
import zipfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "app" / "Python"))

from epub_archive import (
    BinaryFile,
    EpubBook,
    TextFile,
    decode_text,
    enclosed_name,
    file_extension,
    is_text_file,
    read_epub,
    write_epub,
)


# ─── Helpers ───────────────────────────────────────────────────────────────

def make_zip(path: Path, entries) -> Path:
    """Write (name, bytes|str) entries to a zip in the given order."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return path


def zip_entries(path: Path):
    with zipfile.ZipFile(path) as zf:
        return [(info.filename, zf.read(info)) for info in zf.infolist()]


PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\xff\xfe"


# ═══════════════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestIsTextFile:
    @pytest.mark.parametrize("name", [
        "mimetype", "OEBPS/ch1.xhtml", "ch1.html", "old.htm", "META-INF/container.xml",
        "cover.svg", "style.css", "content.opf", "toc.ncx",
    ])
    def test_text_suffixes(self, name):
        assert is_text_file(name)

    @pytest.mark.parametrize("name", ["cover.jpg", "font.otf", "image.PNG", "OEBPS/"])
    def test_binary(self, name):
        assert not is_text_file(name)

    def test_suffix_not_extension(self):
        # No dot needed; names merely ending with a suffix count as text
        assert is_text_file("chapterxhtml")
        assert is_text_file("notes_css")

    def test_case_sensitive(self):
        assert not is_text_file("CH1.XHTML")


class TestFileExtension:
    def test_simple(self):
        assert file_extension("OEBPS/ch1.xhtml") == "xhtml"

    def test_no_extension(self):
        assert file_extension("chapterxhtml") == ""
        assert file_extension("mimetype") == ""

    def test_dot_in_directory(self):
        assert file_extension("v1.0/readme") == ""


# ═══════════════════════════════════════════════════════════════════════════
# Path handling
# ═══════════════════════════════════════════════════════════════════════════

class TestEnclosedName:
    def test_plain(self):
        assert enclosed_name("OEBPS/Text/ch1.xhtml") == "OEBPS/Text/ch1.xhtml"

    def test_normalizes_dots(self):
        assert enclosed_name("OEBPS/./Text/../ch1.xhtml") == "OEBPS/ch1.xhtml"

    def test_backslashes(self):
        assert enclosed_name("OEBPS\\ch1.xhtml") == "OEBPS/ch1.xhtml"

    def test_keeps_directory_slash(self):
        assert enclosed_name("OEBPS/images/") == "OEBPS/images/"

    @pytest.mark.parametrize("name", ["../evil.xhtml", "OEBPS/../../evil", "/etc/passwd", "C:/evil"])
    def test_rejects_escape(self, name):
        with pytest.raises(ValueError):
            enclosed_name(name)


class TestDecodeText:
    def test_utf8(self):
        assert decode_text("café".encode("utf-8")) == "café"

    def test_bom_dropped(self):
        assert decode_text(b"\xef\xbb\xbf<html/>") == "<html/>"

    def test_invalid_is_empty(self):
        messages = []
        assert decode_text(b"\xff\xfe\xfa", messages.append) == ""
        assert len(messages) == 1


# ═══════════════════════════════════════════════════════════════════════════
# read_epub
# ═══════════════════════════════════════════════════════════════════════════

class TestReadEpub:
    def test_splits_text_and_binary(self, tmp_path):
        path = make_zip(tmp_path / "book.epub", [
            ("mimetype", "application/epub+zip"),
            ("OEBPS/cover.jpg", PNG_BYTES),
            ("OEBPS/ch1.xhtml", "<html><body>Hi</body></html>"),
        ])
        book = read_epub(path)

        assert [f.path for f in book.files] == ["mimetype", "OEBPS/ch1.xhtml"]
        assert [f.path for f in book.binary_files] == ["OEBPS/cover.jpg"]
        assert book.get_file("mimetype").data == "application/epub+zip"
        assert book.binary_files[0].data == PNG_BYTES

    def test_skips_directories(self, tmp_path):
        path = make_zip(tmp_path / "book.epub", [
            ("OEBPS/", b""),
            ("OEBPS/images/", b""),
            ("OEBPS/images/a.png", PNG_BYTES),
        ])
        book = read_epub(path)

        assert book.files == ()
        assert [f.path for f in book.binary_files] == ["OEBPS/images/a.png"]

    def test_invalid_utf8_becomes_empty(self, tmp_path):
        path = make_zip(tmp_path / "book.epub", [("OEBPS/bad.xhtml", b"\xff\xfe<html>")])
        book = read_epub(path)

        assert book.get_file("OEBPS/bad.xhtml").data == ""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_epub(tmp_path / "nope.epub")

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "book.epub"
        path.write_bytes(b"this is not a zip file")
        with pytest.raises(zipfile.BadZipFile):
            read_epub(path)

    def test_path_traversal_is_fatal(self, tmp_path):
        path = make_zip(tmp_path / "book.epub", [("../evil.xhtml", "<html/>")])
        with pytest.raises(ValueError):
            read_epub(path)

    def test_get_file_missing(self, tmp_path):
        path = make_zip(tmp_path / "book.epub", [("mimetype", "application/epub+zip")])
        assert read_epub(path).get_file("content.opf") is None


# ═══════════════════════════════════════════════════════════════════════════
# write_epub
# ═══════════════════════════════════════════════════════════════════════════

class TestWriteEpub:
    def make_book(self):
        return EpubBook(
            files=(
                TextFile("mimetype", "application/epub+zip"),
                TextFile("OEBPS/a.xhtml", "<html>a</html>"),
                TextFile("OEBPS/b.xhtml", "<html>b</html>"),
            ),
            binary_files=(BinaryFile("OEBPS/cover.png", PNG_BYTES),),
        )

    def test_order_and_content(self, tmp_path):
        out = tmp_path / "out.epub"
        write_epub(self.make_book(), {}, out)

        assert zip_entries(out) == [
            ("mimetype", b"application/epub+zip"),
            ("OEBPS/a.xhtml", b"<html>a</html>"),
            ("OEBPS/b.xhtml", b"<html>b</html>"),
            ("OEBPS/cover.png", PNG_BYTES),
        ]

    def test_altered_files_replace_content(self, tmp_path):
        out = tmp_path / "out.epub"
        write_epub(self.make_book(), {"OEBPS/b.xhtml": "<html>fixed é</html>"}, out)

        entries = dict(zip_entries(out))
        assert entries["OEBPS/a.xhtml"] == b"<html>a</html>"
        assert entries["OEBPS/b.xhtml"] == "<html>fixed é</html>".encode("utf-8")

    def test_mimetype_stored_uncompressed(self, tmp_path):
        out = tmp_path / "out.epub"
        write_epub(self.make_book(), {}, out)

        with zipfile.ZipFile(out) as zf:
            assert zf.getinfo("mimetype").compress_type == zipfile.ZIP_STORED
            assert zf.getinfo("OEBPS/a.xhtml").compress_type == zipfile.ZIP_DEFLATED

    def test_unwritable_destination(self, tmp_path):
        with pytest.raises(OSError):
            write_epub(self.make_book(), {}, tmp_path / "missing_dir" / "out.epub")

    def test_read_write_preserves_entries(self, tmp_path):
        src = make_zip(tmp_path / "in.epub", [
            ("mimetype", "application/epub+zip"),
            ("META-INF/container.xml", "<container/>"),
            ("OEBPS/fonts/f.otf", b"\x00\x01\x02\x03"),
            ("OEBPS/ch1.xhtml", "<html/>"),
            ("OEBPS/cover.png", PNG_BYTES),
        ])
        out = tmp_path / "out.epub"
        write_epub(read_epub(src), {}, out)

        # text entries first, then binary ones
        assert [name for name, _ in zip_entries(out)] == [
            "mimetype", "META-INF/container.xml", "OEBPS/ch1.xhtml",
            "OEBPS/fonts/f.otf", "OEBPS/cover.png",
        ]
        assert dict(zip_entries(out))["OEBPS/fonts/f.otf"] == b"\x00\x01\x02\x03"
