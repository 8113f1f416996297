"""
EPUB container assembly from reflowed chapters.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .reflow import Section
from .zip_writer import ArchiveEntry, with_directories, write_archive

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR = "Unknown Author"
EPUB_MIMETYPE = "application/epub+zip"
PACKAGE_PATH = "OEBPS/content.opf"
MAX_FILENAME_PART = 100

XHTML_NS = "http://www.w3.org/1999/xhtml"
EPUB_OPS_NS = "http://www.idpf.org/2007/ops"

STYLESHEET = """\
body { font-family: serif; line-height: 1.5; margin: 0 1em; }
h1, h2, h3 { text-align: center; page-break-after: avoid; }
p { text-indent: 0; margin: 0 0 0.8em; }
img { display: block; max-width: 100%; margin: 1em auto; }
table { border-collapse: collapse; }
td, th { border: 1px solid #999; padding: 0.2em 0.5em; }
.page-error { color: #900; }
"""


class EPUBError(ValueError):
    """Raised when chapters cannot be assembled into an EPUB."""


def escape_xml(text: str) -> str:
    """Escape the five reserved XML characters."""
    return (
        text
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def sanitize_filename(name: str) -> str:
    """Keep letters, digits, hyphen, underscore and whitespace; whitespace runs become '_'."""
    kept = re.sub(r"[^A-Za-z0-9\-_\s]", "", name)
    return re.sub(r"\s+", "_", kept)[:MAX_FILENAME_PART]


def epub_filename(title: str, author: str | None = None) -> str:
    """Delivered artifact name: '<title> - <author>.epub'."""
    return f"{sanitize_filename(title)} - {sanitize_filename(author or UNKNOWN_AUTHOR)}.epub"


@dataclass(frozen=True)
class Chapter:
    """A finished chapter ready for the container."""

    id: str
    title: str
    markup: str

    @classmethod
    def from_section(cls, section: Section) -> "Chapter":
        return cls(id=section.id, title=section.title, markup=section.rendered_markup)


@dataclass
class EPUBMetadata:
    """Metadata for EPUB file."""

    title: str
    author: str = UNKNOWN_AUTHOR
    language: str = "en"
    identifier: str = ""
    date: str = ""
    modified: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        if not self.author or not self.author.strip():
            self.author = UNKNOWN_AUTHOR
        now = datetime.now(timezone.utc)
        if not self.identifier:
            self.identifier = f"urn:uuid:{uuid.uuid4()}"
        if not self.date:
            self.date = now.strftime("%Y-%m-%d")
        if not self.modified:
            self.modified = now.strftime("%Y-%m-%dT%H:%M:%SZ")


class EPUBBuilder:
    """Builds EPUB archives from a list of chapters."""

    def __init__(self, metadata: EPUBMetadata) -> None:
        """Initialize EPUB builder.

        Args:
            metadata: Book metadata
        """
        self.metadata = metadata

    def build_entries(self, chapters: list[Chapter]) -> list[ArchiveEntry]:
        """Assemble the ordered archive entries for an EPUB.

        Args:
            chapters: Chapters in reading order

        Returns:
            Entries with ``mimetype`` first, directories included

        Raises:
            EPUBError: If there are no chapters or chapter ids collide
        """
        if not chapters:
            raise EPUBError("Cannot build an EPUB without chapters")

        ids = [c.id for c in chapters]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise EPUBError(f"Duplicate chapter ids: {sorted(duplicates)}")

        entries = [
            ArchiveEntry.file("mimetype", EPUB_MIMETYPE),
            ArchiveEntry.file("META-INF/container.xml", self._container_xml()),
            ArchiveEntry.file(PACKAGE_PATH, self._content_opf(chapters)),
            ArchiveEntry.file("OEBPS/toc.ncx", self._toc_ncx(chapters)),
            ArchiveEntry.file("OEBPS/nav.xhtml", self._nav_xhtml(chapters)),
            ArchiveEntry.file("OEBPS/stylesheet.css", STYLESHEET),
        ]
        for chapter in chapters:
            entries.append(ArchiveEntry.file(f"OEBPS/{chapter.id}.xhtml", self._chapter_xhtml(chapter)))

        return with_directories(entries)

    def build(self, chapters: list[Chapter]) -> bytes:
        """Build the EPUB archive bytes."""
        data = write_archive(self.build_entries(chapters))
        logger.info(f"Built EPUB with {len(chapters)} chapters ({len(data)} bytes)")
        return data

    def write(self, chapters: list[Chapter], output_path: Path) -> Path:
        """Build the EPUB and save it to output_path."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.build(chapters))
        logger.info(f"Created EPUB: {output_path}")
        return output_path

    def _xhtml_document(self, title: str, body: str, namespaces: str = "") -> str:
        lang = escape_xml(self.metadata.language)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            "<!DOCTYPE html>\n"
            f'<html xmlns="{XHTML_NS}"{namespaces} xml:lang="{lang}" lang="{lang}">\n'
            f"<head>\n  <title>{escape_xml(title)}</title>\n"
            '  <link rel="stylesheet" type="text/css" href="stylesheet.css"/>\n'
            f"</head>\n<body>\n{body}\n</body>\n</html>\n"
        )

    def _chapter_xhtml(self, chapter: Chapter) -> str:
        return self._xhtml_document(chapter.title, chapter.markup)

    def _container_xml(self) -> str:
        """META-INF/container.xml, pointing at the package document."""
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">\n'
            f'  <rootfiles>\n    <rootfile full-path="{PACKAGE_PATH}" '
            'media-type="application/oebps-package+xml"/>\n  </rootfiles>\n'
            "</container>\n"
        )

    def _content_opf(self, chapters: list[Chapter]) -> str:
        """Package document: metadata, manifest and a linear spine."""
        meta = self.metadata
        manifest = [
            '<item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>',
            '<item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>',
            '<item id="css" href="stylesheet.css" media-type="text/css"/>',
        ]
        manifest += [
            f'<item id="{escape_xml(c.id)}" href="{escape_xml(c.id)}.xhtml" media-type="application/xhtml+xml"/>'
            for c in chapters
        ]
        spine = [f'<itemref idref="{escape_xml(c.id)}"/>' for c in chapters]

        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="BookId">\n'
            '  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">\n'
            f'    <dc:identifier id="BookId">{escape_xml(meta.identifier)}</dc:identifier>\n'
            f"    <dc:title>{escape_xml(meta.title)}</dc:title>\n"
            f"    <dc:creator>{escape_xml(meta.author)}</dc:creator>\n"
            f"    <dc:language>{escape_xml(meta.language)}</dc:language>\n"
            f"    <dc:date>{meta.date}</dc:date>\n"
            f'    <meta property="dcterms:modified">{meta.modified}</meta>\n'
            "  </metadata>\n"
            f"  <manifest>\n    {_indent_lines(manifest, 4)}\n  </manifest>\n"
            f'  <spine toc="ncx">\n    {_indent_lines(spine, 4)}\n  </spine>\n'
            "</package>\n"
        )

    def _toc_ncx(self, chapters: list[Chapter]) -> str:
        """NCX navigation map for EPUB 2 readers."""
        points = [
            f'<navPoint id="navpoint-{order}" playOrder="{order}">'
            f"<navLabel><text>{escape_xml(c.title)}</text></navLabel>"
            f'<content src="{escape_xml(c.id)}.xhtml"/></navPoint>'
            for order, c in enumerate(chapters, start=1)
        ]
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">\n'
            "  <head>\n"
            f'    <meta name="dtb:uid" content="{escape_xml(self.metadata.identifier)}"/>\n'
            '    <meta name="dtb:depth" content="1"/>\n'
            "  </head>\n"
            f"  <docTitle><text>{escape_xml(self.metadata.title)}</text></docTitle>\n"
            f"  <navMap>\n    {_indent_lines(points, 4)}\n  </navMap>\n"
            "</ncx>\n"
        )

    def _nav_xhtml(self, chapters: list[Chapter]) -> str:
        links = [f'<li><a href="{escape_xml(c.id)}.xhtml">{escape_xml(c.title)}</a></li>' for c in chapters]
        body = (
            '<nav epub:type="toc" id="toc">\n'
            f"  <h1>{escape_xml(self.metadata.title)}</h1>\n"
            f"  <ol>\n    {_indent_lines(links, 4)}\n  </ol>\n"
            "</nav>"
        )
        return self._xhtml_document(self.metadata.title, body, namespaces=f' xmlns:epub="{EPUB_OPS_NS}"')


def _indent_lines(lines: list[str], width: int) -> str:
    return ("\n" + " " * width).join(lines)
