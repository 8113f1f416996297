"""
Reflow of per-page fragments into chapters and paragraphs.

Pages are folded one at a time into a ``ReflowState``. Text that continues
across a page boundary is joined with a space, anything else with a paragraph
break. Closing a section renders its markdown to XHTML.
"""

import base64
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from html import escape

import markdown

from .models import ExtractedFragment

logger = logging.getLogger(__name__)

# Characters inspected on each side of a page boundary
BOUNDARY_WINDOW = 50

QUOTES = "'\"“”‘’‚„‹›«»"
_Q = re.escape(QUOTES)

ABBREVIATIONS = (
    "dr", "mr", "mrs", "ms", "prof", "vs", "etc", "inc", "ltd", "corp", "co", "st",
    "ave", "blvd", "rd", "jr", "sr", "phd", "md", "ba", "ma", "bs", "am", "pm",
    "vol", "no", "pg", "ch", "sec", "min", "max", "approx", "est", "fig", "ref",
    "ed", "eds", "trans", "repr", "orig", "pub", "univ", "dept", "govt", "assoc",
    "org", "admin", "tech", "info", "bio", "geo", "psych", "econ", "hist", "lit",
    "math", "sci", "eng", "med", "law", "bus", "art", "mus", "phil", "relig",
    "sociol", "anthro", "archaeol", "astron", "biol", "bot", "chem", "comp",
    "ecol", "geol", "meteorol", "oceanol", "phys", "stat", "zool",
)

CONTINUATION_WORDS = (
    "and", "but", "or", "so", "yet", "for", "nor", "the", "a", "an", "he", "she",
    "it", "they", "we", "you", "i", "his", "her", "its", "their", "our", "your",
    "my", "this", "that", "these", "those", "then", "now", "here", "there",
    "when", "where", "who", "what", "why", "how", "however", "therefore", "thus",
    "meanwhile", "furthermore", "moreover", "nevertheless", "nonetheless",
    "otherwise", "likewise", "similarly", "consequently", "accordingly",
    "subsequently", "eventually", "finally", "initially", "originally",
    "previously", "recently", "currently", "presently", "immediately",
    "suddenly", "gradually", "slowly", "quickly", "briefly", "shortly", "soon",
    "later", "earlier", "before", "after", "during", "while", "since", "until",
    "unless", "although", "though", "whereas", "because", "if", "as", "than",
    "like", "unlike", "despite", "regarding", "concerning", "including",
    "excluding", "except", "besides", "among", "between", "within", "without",
    "beyond", "beneath", "above", "below", "across", "through", "throughout",
    "around", "toward", "towards", "against", "along", "beside", "behind",
    "ahead", "inside", "outside", "nearby", "far", "close", "near",
)

TRAILING_ABBREVIATION = re.compile(
    r"\b(?:" + "|".join(ABBREVIATIONS) + r")\.\s*$", re.IGNORECASE
)
SENTENCE_END = re.compile(
    rf"[.!?:;][{_Q}]?\s*$|[.!?:;]\s*[{_Q}]\s*$|\.{{3,}}\s*$"
)
CONTINUATION_PUNCTUATION = re.compile(
    rf"[,\-—…][{_Q}]?\s*$|[,\-—…]\s*[{_Q}]\s*$"
)
LOWERCASE_START = re.compile(r"^[a-z]")
CONTINUATION_WORD_START = re.compile(
    r"^(?:" + "|".join(CONTINUATION_WORDS) + r")\b", re.IGNORECASE
)
CLOSING_PUNCTUATION_START = re.compile(rf"^[{_Q})\]}}>]")
WORD_END = re.compile(rf"\w[{_Q}]?\s*$")
UPPERCASE_START = re.compile(r"^[A-Z]")

MARKDOWN_EXTENSIONS = ["tables", "fenced_code", "nl2br", "sane_lists"]


class JoinDecision(Enum):
    """How to join text appended to an open section."""

    SPACE = "space"  # Sentence continues across the page
    PARAGRAPH = "paragraph"  # New paragraph

    @property
    def separator(self) -> str:
        return " " if self is JoinDecision.SPACE else "\n\n"


class SectionKind(Enum):
    CHAPTER = "chapter"
    SECTION = "section"
    ERROR = "error"


def decide_join(previous: str, new: str) -> tuple[JoinDecision, str]:
    """Decide whether new text continues the previous sentence.

    The rules are checked in a fixed priority order; the first one that
    matches wins.

    Args:
        previous: Accumulated text of the open section
        new: Text of the page being appended

    Returns:
        Tuple of (JoinDecision, reason string)
    """
    tail = previous.strip()[-BOUNDARY_WINDOW:].strip()
    head = new.strip()[:BOUNDARY_WINDOW].strip()

    if not tail or not head:
        return JoinDecision.PARAGRAPH, "Empty text at boundary"

    if TRAILING_ABBREVIATION.search(tail):
        return JoinDecision.SPACE, "Abbreviation before boundary"
    if SENTENCE_END.search(tail):
        return JoinDecision.PARAGRAPH, "Complete sentence at boundary"
    if CONTINUATION_PUNCTUATION.search(tail):
        return JoinDecision.SPACE, "Continuation punctuation before boundary"
    if LOWERCASE_START.match(head):
        return JoinDecision.SPACE, "Lowercase continuation"
    if CONTINUATION_WORD_START.match(head):
        return JoinDecision.SPACE, "Continuation word after boundary"
    if CLOSING_PUNCTUATION_START.match(head):
        return JoinDecision.SPACE, "Closing punctuation after boundary"
    if not WORD_END.search(tail):
        return JoinDecision.PARAGRAPH, "Non-word character before boundary"
    if UPPERCASE_START.match(head):
        return JoinDecision.PARAGRAPH, "Capitalized start after boundary"
    return JoinDecision.SPACE, "Ambiguous boundary, defaulting to continuation"


def render_markdown(text: str) -> str:
    """Convert section markdown to XHTML, falling back to escaped plain text."""
    try:
        md = markdown.Markdown(extensions=MARKDOWN_EXTENSIONS, output_format="xhtml")
        return md.convert(text)
    except Exception as e:
        logger.warning(f"Markdown conversion failed, using plain text: {e}")
        return "<p>" + escape(text, quote=False).replace("\n", "<br />") + "</p>"


def render_error_markup(page_index: int, message: str, image_data: bytes, mime_type: str) -> str:
    """Markup for a page whose extraction failed: the message plus the page image."""
    markup = (
        f'<p class="page-error"><em>Error processing page {page_index}: '
        f"{escape(message, quote=False)}</em></p>"
    )
    if image_data:
        encoded = base64.b64encode(image_data).decode("ascii")
        markup += (
            f'<p><img src="data:{escape(mime_type or "image/png")};base64,{encoded}" '
            f'alt="Page {page_index}" /></p>'
        )
    return markup


@dataclass(frozen=True)
class Section:
    """A chapter or sub-chapter span of pages."""

    id: str
    title: str
    kind: SectionKind
    accumulated_text: str = ""
    rendered_markup: str = ""
    page_indices: tuple[int, ...] = ()

    def append(self, text: str, page_index: int) -> "Section":
        """Return a copy with text joined onto the accumulated text."""
        pages = self.page_indices + (page_index,)
        if not text.strip():
            return replace(self, page_indices=pages)

        if not self.accumulated_text.strip():
            return replace(self, accumulated_text=text, page_indices=pages)

        decision, reason = decide_join(self.accumulated_text, text)
        logger.debug(f"Page {page_index} joins '{self.title}' with {decision.value}: {reason}")
        return replace(
            self,
            accumulated_text=self.accumulated_text + decision.separator + text,
            page_indices=pages,
        )

    def close(self) -> "Section":
        """Freeze the section, rendering its markdown."""
        return replace(self, rendered_markup=render_markdown(self.accumulated_text))


@dataclass(frozen=True)
class ReflowState:
    """Reducer state: finished sections plus the (at most one) open section."""

    finished: tuple[Section, ...] = field(default_factory=tuple)
    open: Section | None = None

    @classmethod
    def initial(cls) -> "ReflowState":
        return cls()

    def _close_open(self) -> tuple[tuple[Section, ...], tuple[int, ...]]:
        """Close the open section.

        Returns the finished sections and the page indices of an untitled
        section that never got text. Those pages are not emitted on their
        own; the caller carries them into the next section. A chapter is
        always emitted, even when its page held only the marker.
        """
        if self.open is None:
            return self.finished, ()
        if self.open.kind is SectionKind.SECTION and not self.open.accumulated_text.strip():
            logger.debug(f"Dropping empty section '{self.open.title}', pages {self.open.page_indices} carried over")
            return self.finished, self.open.page_indices
        return self.finished + (self.open.close(),), ()


def reduce_fragment(state: ReflowState, fragment: ExtractedFragment) -> ReflowState:
    """Fold one page fragment into the reflow state.

    Args:
        state: Current state
        fragment: Next fragment in page order

    Returns:
        New state (the input state is not modified)
    """
    if fragment.extraction_failed:
        error_section = Section(
            id=f"error-page-{fragment.page_index}",
            title=f"Page {fragment.page_index} (Error)",
            kind=SectionKind.ERROR,
            rendered_markup=render_error_markup(
                fragment.page_index,
                fragment.error_message or "extraction failed",
                fragment.image_data,
                fragment.mime_type,
            ),
            page_indices=(fragment.page_index,),
        )
        return replace(state, finished=state.finished + (error_section,))

    if fragment.is_chapter_start:
        finished, carried = state._close_open()
        number = len(finished) + 1
        chapter = Section(
            id=f"section-{number}",
            title=fragment.chapter_title or f"Chapter {number}",
            kind=SectionKind.CHAPTER,
            accumulated_text=fragment.raw_text,
            page_indices=carried + (fragment.page_index,),
        )
        logger.debug(f"Started chapter '{chapter.title}' at page {fragment.page_index}")
        return ReflowState(finished=finished, open=chapter)

    if state.open is None:
        number = len(state.finished) + 1
        section = Section(
            id=f"section-{number}",
            title=f"Section {number}",
            kind=SectionKind.SECTION,
            accumulated_text=fragment.raw_text,
            page_indices=(fragment.page_index,),
        )
        return replace(state, open=section)

    return replace(state, open=state.open.append(fragment.raw_text, fragment.page_index))


def finish(state: ReflowState) -> list[Section]:
    """Close the open section and return all sections.

    An untitled section with no text at the end means no page had text, so
    there is nothing to carry its pages into and it is dropped.
    """
    finished, _ = state._close_open()
    return list(finished)


def reflow_fragments(fragments: list[ExtractedFragment]) -> list[Section]:
    """Reflow fragments (in page order) into closed sections."""
    state = ReflowState.initial()
    for fragment in fragments:
        state = reduce_fragment(state, fragment)

    sections = finish(state)
    log_sections(sections, len(fragments))
    return sections


def log_sections(sections: list[Section], page_count: int) -> None:
    logger.info(f"Created {len(sections)} sections from {page_count} pages")
    for section in sections:
        pages = ", ".join(str(p) for p in section.page_indices)
        logger.debug(f"Section '{section.title}' ({section.kind.value}) - pages: {pages}")
