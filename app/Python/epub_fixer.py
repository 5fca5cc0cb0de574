"""
EPUB Fixer - Fix Pipeline Architecture
======================================

THE PROBLEM:
Some EPUBs are rejected by readers (Kindle's Send-to-Kindle in particular)
because of a handful of small, well-known defects: xhtml without an XML
encoding declaration, links written as "chapter.xhtml + # + bodyid", and a
missing or unsupported <dc:language>.

THE SOLUTION:
Read the whole book into memory, run a fixed pipeline of independent fixes
over the ORIGINAL text files, collect the replacements in an "altered files"
dict, then re-pack the book with the replacements swapped in. Binary files and
entry order are left exactly as they were.

Each fix:
1. DECIDES what to change by looking at the original file contents
2. PATCHES the latest version of the file (a previous fix's output if there
   is one, the original otherwise), so fixes that touch the same file stack
   instead of overwriting each other
3. REPORTS one message per correction it made

ADDING NEW FIXES:
1. Create a new class inheriting from EpubFix
2. Implement fix(book, altered_files, log) -> (altered_files, problems)
3. Add it to build_pipeline() in the order it should run

CURRENT FIXES (in order):
- EncodingDeclarationFix: Prefixes <?xml ... encoding="utf-8"?> to html/xhtml
- BodyIdLinkFix: Rewrites "file + # + bodyid" link targets to "file"
- BookLanguageFix: Makes <dc:language> a supported language, adding it if absent

DEBUG OUTPUT:
Pass --debug-log FILE to see which fixes ran and on which files.
"""

import argparse
import os
import re
import sys
import traceback
from abc import ABC, abstractmethod

from bs4 import BeautifulSoup

from epub_archive import EpubBook, file_extension, read_epub, write_epub


XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>'
XML_DECLARATION_PATTERN = re.compile(
    r'<\?xml\s+version=["\'][\d.]+["\']\s+encoding=["\'][a-zA-Z\d\-.]+["\'].*?\?>'
)

HTML_EXTENSIONS = ('html', 'xhtml')

CONTAINER_PATH = 'META-INF/container.xml'
OPF_MEDIA_TYPE = 'application/oebps-package+xml'

# bs4 can't select namespaced tags reliably, so dc:language is renamed first
LANGUAGE_TAG = 'dc:language'
LANGUAGE_PLACEHOLDER = 'dclanguage'

METADATA_CLOSE = re.compile(r'</metadata\s*>')


class LanguageConfig:
    """
    Which book languages are accepted, and what to use instead.

    preferred is always accepted: LanguageConfig('fr', ()) accepts 'fr' only,
    LanguageConfig('fr') accepts 'fr' and 'en'.
    """

    def __init__(self, preferred='en', supported=('en',)):
        self.preferred = preferred
        self.supported = tuple(dict.fromkeys((preferred,) + tuple(supported)))

    def is_supported(self, language) -> bool:
        return language in self.supported

    def __repr__(self):
        return f"LanguageConfig(preferred={self.preferred!r}, supported={self.supported!r})"


DEFAULT_LANGUAGE_CONFIG = LanguageConfig()


def is_html_file(path) -> bool:
    return file_extension(path) in HTML_EXTENSIONS


def trim_start(text) -> str:
    """Drop leading whitespace and byte-order marks."""
    return text.lstrip().lstrip('\ufeff').lstrip()


def current_content(book, altered_files, path) -> str:
    """Latest version of a file: a previous fix's output, else the original."""
    if path in altered_files:
        return altered_files[path]
    return book.get_file(path).data


# =============================================================================
# BASE FIX CLASS
# =============================================================================

class EpubFix(ABC):
    """
    Base class for all EPUB fixes.

    Fixes never modify the book. They return a NEW altered_files dict
    (the one passed in plus their own replacements) and the list of problems
    they fixed. No problems means nothing needed fixing.
    """

    name = "BaseFix"  # Override in subclass
    description = "Base fix class"  # Override in subclass

    @abstractmethod
    def fix(self, book: EpubBook, altered_files: dict, log) -> tuple:
        """
        Apply the fix.

        Args:
            book: EpubBook with the original files
            altered_files: path -> replacement text from earlier fixes
            log: Function to call for debug logging (log(message))

        Returns:
            (altered_files, fixed_problems)
        """
        pass


# =============================================================================
# FIXES
# =============================================================================

class EncodingDeclarationFix(EpubFix):
    """
    Ensures every html/xhtml file starts with an XML declaration.

    Leading whitespace and any BOM are trimmed either way (a declaration must
    be the very first thing in the file). Files that already declare an
    encoding are kept as-is, whichever encoding they declare.
    """

    name = "EncodingDeclarationFix"
    description = "Prefix the XML encoding declaration to html files"

    def fix(self, book, altered_files, log) -> tuple:
        altered = dict(altered_files)
        problems = []

        for f in book.files:
            if not is_html_file(f.path):
                continue

            html = trim_start(current_content(book, altered, f.path))
            if XML_DECLARATION_PATTERN.match(trim_start(f.data)):
                altered[f.path] = html
            else:
                altered[f.path] = f"{XML_DECLARATION}\n{html}"
                problems.append(f"Prefixed correct encoding to html for {f.path}")
                log(f"  Prefixed declaration: {f.path}")

        return altered, problems


class BodyIdLinkFix(EpubFix):
    """
    Repairs links that point at another file's <body id>.

    Some converters write these cross-file links as the literal text
    "chapter.xhtml + # + bodyid". Readers can't follow that, and since the
    id is on the body the link target is just the file itself.

    Phase 1 collects "path + # + id" for every html file whose first <body>
    has an id. Phase 2 replaces each of those strings, in every text file,
    with the bare path.
    """

    name = "BodyIdLinkFix"
    description = "Replace 'file + # + bodyid' link targets with 'file'"

    def collect_body_ids(self, book) -> list:
        """Return [(link_target, path)] for every html file with a body id."""
        body_ids = []
        for f in book.files:
            if not is_html_file(f.path):
                continue

            soup = BeautifulSoup(trim_start(f.data), 'html.parser')
            body = soup.find('body')
            if body and body.get('id'):
                body_ids.append((f"{f.path} + # + {body['id']}", f.path))

        return body_ids

    def fix(self, book, altered_files, log) -> tuple:
        altered = dict(altered_files)
        problems = []

        body_ids = self.collect_body_ids(book)
        log(f"  Found {len(body_ids)} files with a body id")

        for f in book.files:
            for link_target, target in body_ids:
                if link_target not in f.data:
                    continue

                content = current_content(book, altered, f.path)
                altered[f.path] = content.replace(link_target, target)
                problems.append(
                    f"Replaced link target with {link_target} in {target} in file {f.path}"
                )
                log(f"  Replaced '{link_target}' in {f.path}")

        return altered, problems


class BookLanguageFix(EpubFix):
    """
    Makes sure the OPF declares a supported <dc:language>.

    Finds the OPF through META-INF/container.xml. An unsupported language is
    replaced with the preferred one; a missing language tag is added as the
    last child of <metadata>.

    Raises FileNotFoundError when container.xml or the OPF is missing, and
    ValueError when the rootfile or <metadata> can't be found. The book can't
    be fixed without them.
    """

    name = "BookLanguageFix"
    description = "Replace or add <dc:language>"

    def __init__(self, config=None):
        self.config = config or DEFAULT_LANGUAGE_CONFIG

    def find_opf_path(self, book) -> str:
        container = book.get_file(CONTAINER_PATH)
        if container is None:
            raise FileNotFoundError(f"Cannot find {CONTAINER_PATH}")

        soup = BeautifulSoup(container.data, 'html.parser')
        rootfile = soup.find('rootfile')
        if (rootfile is None
                or rootfile.get('media-type') != OPF_MEDIA_TYPE
                or not rootfile.get('full-path')):
            raise ValueError(f"Cannot find OPF rootfile in {CONTAINER_PATH}")

        return rootfile['full-path']

    def fix(self, book, altered_files, log) -> tuple:
        altered = dict(altered_files)
        preferred = self.config.preferred

        opf_path = self.find_opf_path(book)
        opf_file = book.get_file(opf_path)
        if opf_file is None:
            raise FileNotFoundError(f"Cannot find OPF file {opf_path}")
        log(f"  OPF: {opf_path}")

        soup = BeautifulSoup(
            opf_file.data.replace(LANGUAGE_TAG, LANGUAGE_PLACEHOLDER),
            'html.parser'
        )
        language_tag = soup.find(LANGUAGE_PLACEHOLDER)
        metadata_tag = soup.find('metadata')
        if metadata_tag is None:
            raise ValueError(f"Metadata tag missing in {opf_path}")

        content = current_content(book, altered, opf_path)

        if language_tag is not None:
            original_language = language_tag.decode_contents()
            if self.config.is_supported(original_language):
                log(f"  Language '{original_language}' is supported")
                return altered, []

            pattern = re.compile(
                r'(<' + LANGUAGE_TAG + r'\b[^>]*?)(?:>'
                + re.escape(original_language)
                + r'</' + LANGUAGE_TAG + r'>'
                + (r'|\s*/>)' if not original_language else r')')
            )
            fixed, count = pattern.subn(
                lambda m: f"{m.group(1)}>{preferred}</{LANGUAGE_TAG}>", content
            )
            if not count:
                log(f"  Could not find <{LANGUAGE_TAG}>{original_language}</{LANGUAGE_TAG}> to replace")
                return altered, []

            altered[opf_path] = fixed
            log(f"  Changed language {original_language!r} -> {preferred!r}")
            return altered, [
                f"Fixed language to be supported language from {original_language}"
            ]

        new_tag = f"\n<{LANGUAGE_TAG}>{preferred}</{LANGUAGE_TAG}>"
        altered[opf_path] = METADATA_CLOSE.sub(lambda m: new_tag + m.group(0), content, count=1)
        log(f"  Added <{LANGUAGE_TAG}>{preferred}</{LANGUAGE_TAG}>")
        return altered, ["Added missing language tag"]


# =============================================================================
# PIPELINE
# =============================================================================

def build_pipeline(language_config=None) -> list:
    """Fixes in the order they run."""
    return [
        EncodingDeclarationFix(),
        BodyIdLinkFix(),
        BookLanguageFix(language_config),
    ]


class EpubFixer:
    """
    Reads an EPUB, runs the fix pipeline, and writes the fixed copy.

    Usage:
        fixer = EpubFixer('book.epub', 'fixed_book.epub')
        problems = fixer.process()
    """

    def __init__(self, input_path, output_path, language_config=None,
                 debug_log_path=None):
        self.input_path = input_path
        self.output_path = output_path
        self.pipeline = build_pipeline(language_config)
        self.debug_log_path = debug_log_path
        self.debug_log = None

        self.book = None
        self.altered_files = {}
        self.fixed_problems = []

    def process(self) -> list:
        """Run the whole conversion. Returns the list of fixed problems."""
        if not self.debug_log_path:
            return self._process()

        with open(self.debug_log_path, 'w', encoding='utf-8') as debug_log:
            self.debug_log = debug_log
            try:
                return self._process()
            finally:
                self.debug_log = None

    def _process(self) -> list:
        self.altered_files = {}
        self.fixed_problems = []

        self._log("=" * 70)
        self._log("EPUB FIXER")
        self._log("=" * 70)
        self._log(f"Input: {self.input_path}")
        self._log(f"Output: {self.output_path}")
        self._log("")

        try:
            self._log("--- Reading EPUB ---")
            self.book = read_epub(self.input_path, self._log)

            self._log("\n--- Running Fix Pipeline ---")
            self._run_pipeline()

            self._log("\n--- Writing EPUB ---")
            write_epub(self.book, self.altered_files, self.output_path, self._log)

            self._log("\n" + "=" * 70)
            self._log(f"COMPLETE: {len(self.fixed_problems)} problems fixed")
            self._log("=" * 70)

        except Exception as e:
            self._log(f"\n--- ERROR ---\n{str(e)}")
            self._log(traceback.format_exc())
            raise

        return self.fixed_problems

    def _log(self, message):
        """Log to the debug file, if there is one."""
        if self.debug_log:
            self.debug_log.write(message + "\n")

    def _run_pipeline(self):
        """Run all fixes in order, threading altered_files through them."""
        for fix in self.pipeline:
            self._log(f"\n[{fix.name}]")
            self.altered_files, problems = fix.fix(self.book, self.altered_files, self._log)
            self.fixed_problems.extend(problems)
            self._log(f"  {len(problems)} problems fixed")

    def output_fixed_problems(self):
        for problem in self.fixed_problems:
            print(problem)


def convert_epub(input_path, output_path, verbose=False, language_config=None,
                 debug_log_path=None) -> list:
    """
    Fix the EPUB at input_path and write the result to output_path.

    With verbose=True every fixed problem is printed, one per line, after the
    output has been written.

    Returns:
        List of fixed problem messages
    """
    fixer = EpubFixer(input_path, output_path, language_config, debug_log_path)
    problems = fixer.process()

    if verbose:
        fixer.output_fixed_problems()

    return problems


# =============================================================================
# MAIN
# =============================================================================

def default_output_path(input_path, prefix='fixed_'):
    directory, name = os.path.split(input_path)
    return os.path.join(directory, f"{prefix}{name}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Fix common EPUB problems (encoding declaration, body id links, language)."
    )
    parser.add_argument("input", help="Path to the .epub file to fix.")
    parser.add_argument("output", nargs="?",
                        help="Where to write the fixed .epub (default: fixed_<name> next to input).")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Print every problem that was fixed.")
    parser.add_argument("--language", default=DEFAULT_LANGUAGE_CONFIG.preferred,
                        help="Language to use when the book's language is missing or unsupported.")
    parser.add_argument("--supported-language", action="append", default=[],
                        help="Extra language code to accept as-is (repeatable).")
    parser.add_argument("--debug-log", help="Write a debug log of the run to this file.")
    args = parser.parse_args(argv)

    if not os.path.isfile(args.input):
        print(f"Error: Input file not found at {args.input}", file=sys.stderr)
        sys.exit(1)

    output_path = args.output or default_output_path(args.input)
    config = LanguageConfig(args.language, args.supported_language)

    try:
        convert_epub(args.input, output_path, args.verbose, config, args.debug_log)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
