"""
Page loading from disk: discovery, capture-order sorting, MIME detection.
"""

import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from PIL import Image, ImageOps
from PIL.ExifTags import TAGS

from .models import Page

logger = logging.getLogger(__name__)

# Common filename patterns with embedded timestamps
FILENAME_TIMESTAMP_PATTERNS = [
    # IMG_YYYYMMDD_HHMMSS (Android/common)
    re.compile(r'IMG_(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})'),
    # YYYYMMDD_HHMMSS
    re.compile(r'(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})'),
    # YYYY-MM-DD_HH-MM-SS
    re.compile(r'(\d{4})-(\d{2})-(\d{2})_(\d{2})-(\d{2})-(\d{2})'),
]

EXIF_ORIENTATION = 0x0112

FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


@dataclass
class ImageInfo:
    """Information about an image file."""

    path: Path
    timestamp: datetime | None


class PageLoader:
    """Finds page images, orders them by capture, and loads them as Pages."""

    def __init__(
        self,
        supported_extensions: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp"),
        max_edge: int = 0,
    ) -> None:
        """Initialize page loader.

        Args:
            supported_extensions: Image extensions to pick up
            max_edge: Downscale pages whose long edge exceeds this (0 to disable)
        """
        if max_edge < 0:
            raise ValueError(f"max_edge must be >= 0, got {max_edge}")
        self.supported_extensions = supported_extensions
        self.max_edge = max_edge

    def discover_images(self, input_dir: Path) -> list[Path]:
        """Find all supported images in directory (unsorted)."""
        images = {
            path
            for path in Path(input_dir).iterdir()
            if path.is_file() and path.suffix.lower() in self.supported_extensions
        }
        logger.info(f"Found {len(images)} images in {input_dir}")
        return list(images)

    def get_image_info(self, image_path: Path) -> ImageInfo:
        """Extract a capture timestamp.

        Tries EXIF DateTimeOriginal, then a timestamp embedded in the
        filename, then the file modification time.
        """
        timestamp = None

        try:
            with Image.open(image_path) as img:
                exif = img.getexif()
                for tag_id, value in exif.items():
                    if TAGS.get(tag_id, tag_id) == "DateTimeOriginal":
                        timestamp = _parse_exif_datetime(value)
                        break

                if timestamp is None:
                    dto = exif.get_ifd(0x8769).get(36867)  # EXIF IFD DateTimeOriginal
                    if dto:
                        timestamp = _parse_exif_datetime(dto)
        except Exception as e:
            logger.debug(f"Could not read EXIF from {image_path}: {e}")

        if timestamp is None:
            timestamp = self._parse_filename_timestamp(image_path.name)

        if timestamp is None:
            timestamp = datetime.fromtimestamp(image_path.stat().st_mtime)

        return ImageInfo(path=image_path, timestamp=timestamp)

    def _parse_filename_timestamp(self, filename: str) -> datetime | None:
        for pattern in FILENAME_TIMESTAMP_PATTERNS:
            match = pattern.search(filename)
            if match:
                try:
                    return datetime(*(int(g) for g in match.groups()))
                except ValueError:
                    continue
        return None

    def sort_by_timestamp(self, images: list[Path]) -> list[Path]:
        """Sort images by their capture timestamp."""
        infos = [self.get_image_info(img) for img in images]
        ordered = sorted(infos, key=lambda x: (x.timestamp or datetime.min, x.path.name))
        logger.info(f"Sorted {len(ordered)} images by timestamp")
        return [info.path for info in ordered]

    def sort_by_filename(self, images: list[Path]) -> list[Path]:
        """Sort images by filename (alphabetically)."""
        return sorted(images, key=lambda p: p.name)

    def load_page(self, index: int, image_path: Path) -> Page:
        """Read one image as a Page, applying EXIF rotation and optional downscaling."""
        data = Path(image_path).read_bytes()

        with Image.open(io.BytesIO(data)) as img:
            mime_type = FORMAT_MIME_TYPES.get(img.format or "", "image/jpeg")
            rotated = img.getexif().get(EXIF_ORIENTATION, 1) != 1
            needs_resize = bool(self.max_edge) and max(img.size) > self.max_edge

            # Unchanged pages keep their original bytes
            if rotated or needs_resize:
                corrected = ImageOps.exif_transpose(img)
                if needs_resize:
                    corrected.thumbnail((self.max_edge, self.max_edge), Image.LANCZOS)
                buffer = io.BytesIO()
                corrected.convert("RGB").save(buffer, "JPEG", quality=90)
                data = buffer.getvalue()
                mime_type = "image/jpeg"

        return Page(index=index, image_data=data, mime_type=mime_type)

    def load_pages(self, image_paths: list[Path]) -> list[Page]:
        """Load ordered images as Pages numbered from 1."""
        pages = [self.load_page(i, path) for i, path in enumerate(image_paths, start=1)]
        logger.info(f"Loaded {len(pages)} pages")
        return pages

    def load_directory(self, input_dir: Path, sort_by_timestamp: bool = True) -> list[Page]:
        images = self.discover_images(input_dir)
        ordered = self.sort_by_timestamp(images) if sort_by_timestamp else self.sort_by_filename(images)
        return self.load_pages(ordered)


def _parse_exif_datetime(value) -> datetime | None:
    try:
        return datetime.strptime(value, "%Y:%m:%d %H:%M:%S")
    except (ValueError, TypeError):
        return None
