"""
Page and fragment records shared across the pipeline.
"""

import base64
from dataclasses import dataclass


@dataclass(frozen=True)
class Page:
    """A captured page image.

    Attributes:
        index: 1-based capture position, unique within a book
        image_data: Raw encoded image bytes
        mime_type: Image MIME type (e.g. 'image/png')
    """

    index: int
    image_data: bytes
    mime_type: str

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.image_data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class ExtractedFragment:
    """Extraction result for one page, consumed once by the reflow engine.

    Failed fragments keep the page image and the last error message so the
    reflow engine can render an error section in place of the text.
    """

    page_index: int
    raw_text: str
    is_chapter_start: bool = False
    chapter_title: str | None = None
    extraction_failed: bool = False
    error_message: str | None = None
    image_data: bytes = b""
    mime_type: str = ""

    @classmethod
    def failed(cls, page: Page, error_message: str) -> "ExtractedFragment":
        return cls(
            page_index=page.index,
            raw_text="",
            extraction_failed=True,
            error_message=error_message,
            image_data=page.image_data,
            mime_type=page.mime_type,
        )
