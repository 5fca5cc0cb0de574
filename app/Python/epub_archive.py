"""
EPUB Archive - read an .epub into memory and write it back out
===============================================================

An EPUB is a zip file. For fixing we only care about two kinds of entries:

- TEXT files (xhtml, opf, ncx, css, ...) which get decoded to str so the
  fixes can search and replace in them
- BINARY files (images, fonts, ...) which are carried through byte for byte

Directories are not kept as entries; the zip writer recreates them from the
file paths.

Nothing here edits content. The fixes record their changes in a separate
"altered files" dict (path -> new text) and write_epub() swaps those in when
it re-packs the book, keeping the original entry order.
"""

import posixpath
import re
import zipfile
from dataclasses import dataclass


# Matched with endswith() on the raw entry name, NOT on the extension.
# "chapterxhtml" counts as text too - kept that way on purpose.
TEXT_FILE_SUFFIXES = (
    'mimetype', 'html', 'xhtml', 'htm', 'xml', 'svg', 'css', 'opf', 'ncx'
)

# OCF requires this entry to be stored without compression
MIMETYPE_ENTRY = 'mimetype'

DRIVE_LETTER = re.compile(r'^[A-Za-z]:')


# =============================================================================
# DATA
# =============================================================================

@dataclass(frozen=True)
class TextFile:
    """A decoded text entry. Never modified after reading."""
    path: str
    data: str


@dataclass(frozen=True)
class BinaryFile:
    """A raw entry (image, font, ...) passed through untouched."""
    path: str
    data: bytes


@dataclass(frozen=True)
class EpubBook:
    """Everything read from the source archive, in archive order."""
    files: tuple
    binary_files: tuple

    def get_file(self, path):
        """Return the TextFile stored at path, or None."""
        for f in self.files:
            if f.path == path:
                return f
        return None

    @property
    def paths(self):
        return [f.path for f in self.files] + [f.path for f in self.binary_files]


# =============================================================================
# HELPERS
# =============================================================================

def is_text_file(name: str) -> bool:
    return name.endswith(TEXT_FILE_SUFFIXES)


def file_extension(path: str) -> str:
    """'OEBPS/ch1.xhtml' -> 'xhtml'. Empty string when there is no extension."""
    return posixpath.splitext(path)[1][1:]


def enclosed_name(name: str) -> str:
    """
    Canonicalize a zip entry name relative to the archive root.

    Raises ValueError for names that point outside the archive (absolute
    paths, drive letters, or '..' escaping the root).
    """
    cleaned = name.replace('\\', '/')
    if cleaned.startswith('/') or DRIVE_LETTER.match(cleaned):
        raise ValueError(f"Unsafe absolute path in archive: {name}")

    normalized = posixpath.normpath(cleaned)
    if normalized == '..' or normalized.startswith('../'):
        raise ValueError(f"Path escapes the archive root: {name}")

    # normpath drops the trailing slash that marks a directory
    if cleaned.endswith('/'):
        normalized += '/'
    return normalized


def decode_text(raw: bytes, log=None) -> str:
    """Decode as UTF-8, dropping a BOM. Undecodable entries become empty rather than aborting."""
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        if log:
            log(f"  Could not decode as UTF-8, using empty content: {e}")
        return ''


# =============================================================================
# READ / WRITE
# =============================================================================

def read_epub(path, log=None) -> EpubBook:
    """
    Read every entry of the archive at path into memory.

    Args:
        path: Path to the .epub file
        log: Optional function for debug messages (log(message))

    Returns:
        EpubBook with text and binary entries in archive order

    Raises:
        FileNotFoundError / OSError if the file can't be opened,
        zipfile.BadZipFile if it isn't a zip,
        ValueError on path traversal.
    """
    files = []
    binary_files = []

    with zipfile.ZipFile(path, 'r') as zip_ref:
        for info in zip_ref.infolist():
            name = enclosed_name(info.filename)

            if is_text_file(info.filename):
                if log:
                    log(f"  TEXT:   {name}")
                data = decode_text(zip_ref.read(info), log)
                files.append(TextFile(name, data))
            elif not name.endswith('/'):
                if log:
                    log(f"  BINARY: {name}")
                binary_files.append(BinaryFile(name, zip_ref.read(info)))

    if log:
        log(f"Read {len(files)} text files and {len(binary_files)} binary files")

    return EpubBook(tuple(files), tuple(binary_files))


def write_epub(book: EpubBook, altered_files: dict, path, log=None) -> None:
    """
    Re-pack the book to path.

    Text files come first, then binary files, each in the order they were
    read. A text file whose path is in altered_files is written with the
    altered content instead of the original.
    """
    with zipfile.ZipFile(path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for f in book.files:
            if f.path in altered_files:
                data = altered_files[f.path]
                if log:
                    log(f"  ALTERED:  {f.path}")
            else:
                data = f.data
            zipf.writestr(f.path, data.encode('utf-8'), compress_type=_compression_for(f.path))

        for f in book.binary_files:
            zipf.writestr(f.path, f.data, compress_type=_compression_for(f.path))

    if log:
        log(f"Wrote {len(book.files) + len(book.binary_files)} entries to {path}")


def _compression_for(path):
    if path == MIMETYPE_ENTRY:
        return zipfile.ZIP_STORED
    return zipfile.ZIP_DEFLATED
