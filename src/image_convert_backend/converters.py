"""
Rendering of an ordered image batch into a single PDF, DOCX or PPTX document.

ImageConverter owns the per-image loop: it decodes every staged image with
Pillow, asks the concrete format to place it on its own page or slide, and
substitutes a labelled placeholder unit when an image cannot be decoded or
placed. Output unit N always corresponds to input image N. A render only
fails (RenderError) when no image at all could be placed.

Sizes are handled in points; one image pixel is treated as one point, and
images are only ever scaled down to fit the content area.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Pt as DocxPt
from omegaconf import DictConfig
from PIL import Image, ImageOps
from pptx import Presentation
from pptx.enum.text import PP_ALIGN
from pptx.util import Pt as PptxPt
from reportlab.lib.pagesizes import A4, letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import RenderError
from .models import TargetFormat
from .staging import StagedImage
from .utils import display_name, mime_type_for

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Converted Images Document"
PLACEHOLDER_NOTE = "(could not be processed)"

PDF_PAGE_SIZES = {"A4": A4, "LETTER": letter}

# Index of the "Blank" layout in the default python-pptx template
PPTX_BLANK_LAYOUT = 6


@dataclass(frozen=True)
class RenderSettings:
    quality: str = "high"
    jpeg_quality: int = 90
    caption_font_size: int = 10
    caption_band: float = 30
    pdf_page: str = "A4"
    pdf_margin: float = 50
    docx_page_width: float = 595.27
    docx_page_height: float = 841.89
    docx_margin: float = 50
    pptx_width: float = 960
    pptx_height: float = 540
    pptx_margin: float = 36

    @classmethod
    def from_config(cls, config: DictConfig) -> "RenderSettings":
        render = config.render
        return cls(
            quality=str(render.quality),
            jpeg_quality=int(render.jpeg_quality),
            caption_font_size=int(render.caption_font_size),
            caption_band=float(render.caption_band),
            pdf_page=str(render.pdf.page).upper(),
            pdf_margin=float(render.pdf.margin),
            docx_page_width=float(render.docx.page_width),
            docx_page_height=float(render.docx.page_height),
            docx_margin=float(render.docx.margin),
            pptx_width=float(render.pptx.width),
            pptx_height=float(render.pptx.height),
            pptx_margin=float(render.pptx.margin),
        )


@dataclass
class PreparedImage:
    """A decoded, orientation-corrected RGB image re-encoded as PNG or JPEG."""

    data: bytes
    width: int
    height: int
    format: str

    def stream(self) -> BytesIO:
        return BytesIO(self.data)


@dataclass
class RenderResult:
    content: bytes
    mime_type: str
    extension: str
    unit_count: int
    placeholder_indices: List[int] = field(default_factory=list)

    @property
    def rendered_count(self) -> int:
        return self.unit_count - len(self.placeholder_indices)


def fit_within(width: float, height: float, box_width: float, box_height: float) -> Tuple[float, float]:
    """
    Scale (width, height) to fit inside the box, keeping the aspect ratio.

    Never scales up: an image that already fits keeps its native size.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image dimensions {width}x{height}")
    scale = min(box_width / width, box_height / height, 1.0)
    return width * scale, height * scale


def _flatten(image: Image.Image) -> Image.Image:
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def prepare_image(path: Path, jpeg_quality: int = 90) -> PreparedImage:
    """
    Decode a staged image and normalise it for embedding.

    Multi-frame images (GIF, TIFF) contribute their first frame. JPEG sources
    stay JPEG; everything else becomes PNG.

    Raises:
        OSError: If Pillow cannot identify or fully decode the file
    """
    with Image.open(path) as source:
        source_format = source.format
        source.seek(0)
        frame = _flatten(ImageOps.exif_transpose(source))
        buffer = BytesIO()
        if source_format in ("JPEG", "MPO"):
            frame.save(buffer, format="JPEG", quality=jpeg_quality)
            encoded_as = "JPEG"
        else:
            frame.save(buffer, format="PNG")
            encoded_as = "PNG"
        return PreparedImage(data=buffer.getvalue(), width=frame.width, height=frame.height, format=encoded_as)


class ImageConverter(ABC):
    """
    Base class for the three output formats.

    Subclasses create the document, open one unit (page or slide) per image,
    place either the image or a placeholder into it, and serialise the result.
    """

    target_format: TargetFormat

    def __init__(self, settings: Optional[RenderSettings] = None) -> None:
        self.settings = settings or RenderSettings()

    @property
    def mime_type(self) -> str:
        return mime_type_for(self.target_format)

    @property
    def extension(self) -> str:
        return self.target_format.value

    def render(self, images: Sequence[StagedImage], title: str = DEFAULT_TITLE) -> RenderResult:
        """
        Render the images, in order, into one document.

        Args:
            images: Staged images in submission order
            title: Document title stored in the file metadata

        Returns:
            RenderResult with the serialised document and the 1-based positions
            of any placeholder units

        Raises:
            RenderError: If none of the images could be rendered
        """
        if not images:
            raise RenderError()

        document = self._new_document(title)
        placeholders: List[int] = []
        total = len(images)

        for position, image in enumerate(images, start=1):
            caption = f"Image {position}: {display_name(image.original_name)}"
            unit = self._open_unit(document, position)
            try:
                prepared = prepare_image(image.path, self.settings.jpeg_quality)
                self._place_image(document, unit, prepared, caption)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Could not process image {position} ({image.original_name}): {exc}")
                self._place_placeholder_safely(document, unit, caption, position)
                placeholders.append(position)
            self._close_unit(document, unit, is_last=position == total)

        if len(placeholders) == total:
            raise RenderError()

        content = self._finish(document)
        logger.debug(
            f"Rendered {total} {self.extension} unit(s), {len(placeholders)} placeholder(s), {len(content)} bytes"
        )
        return RenderResult(
            content=content,
            mime_type=self.mime_type,
            extension=self.extension,
            unit_count=total,
            placeholder_indices=placeholders,
        )

    def _place_placeholder_safely(self, document: Any, unit: Any, caption: str, position: int) -> None:
        try:
            self._place_placeholder(document, unit, caption)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Placeholder caption for image {position} was rejected ({exc}), using a bare caption")
            self._place_placeholder(document, unit, f"Image {position}")

    @abstractmethod
    def _new_document(self, title: str) -> Any:
        ...

    def _open_unit(self, document: Any, position: int) -> Any:
        return None

    @abstractmethod
    def _place_image(self, document: Any, unit: Any, prepared: PreparedImage, caption: str) -> None:
        ...

    @abstractmethod
    def _place_placeholder(self, document: Any, unit: Any, caption: str) -> None:
        ...

    def _close_unit(self, document: Any, unit: Any, is_last: bool) -> None:
        return None

    @abstractmethod
    def _finish(self, document: Any) -> bytes:
        ...


@dataclass
class _PdfDocument:
    canvas: canvas.Canvas
    buffer: BytesIO
    page_width: float
    page_height: float


class PdfConverter(ImageConverter):
    target_format = TargetFormat.PDF

    def _new_document(self, title: str) -> _PdfDocument:
        page_width, page_height = PDF_PAGE_SIZES.get(self.settings.pdf_page, A4)
        buffer = BytesIO()
        pdf_canvas = canvas.Canvas(buffer, pagesize=(page_width, page_height))
        pdf_canvas.setTitle(title)
        return _PdfDocument(canvas=pdf_canvas, buffer=buffer, page_width=page_width, page_height=page_height)

    def _place_image(self, document: _PdfDocument, unit: Any, prepared: PreparedImage, caption: str) -> None:
        s = self.settings
        box_width = document.page_width - 2 * s.pdf_margin
        box_height = document.page_height - 2 * s.pdf_margin - s.caption_band
        width, height = fit_within(prepared.width, prepared.height, box_width, box_height)

        # Image and caption are centred as one block
        block_bottom = (document.page_height - height - s.caption_band) / 2
        x = (document.page_width - width) / 2
        document.canvas.drawImage(
            ImageReader(prepared.stream()), x, block_bottom + s.caption_band, width=width, height=height
        )
        document.canvas.setFont("Helvetica", s.caption_font_size)
        document.canvas.drawCentredString(document.page_width / 2, block_bottom + s.caption_band / 2, caption)

    def _place_placeholder(self, document: _PdfDocument, unit: Any, caption: str) -> None:
        margin = self.settings.pdf_margin
        top = document.page_height - margin
        document.canvas.setFont("Helvetica-Bold", 16)
        document.canvas.drawString(margin, top - 16, caption)
        document.canvas.setFont("Helvetica", 12)
        document.canvas.drawString(margin, top - 40, PLACEHOLDER_NOTE)

    def _close_unit(self, document: _PdfDocument, unit: Any, is_last: bool) -> None:
        document.canvas.showPage()

    def _finish(self, document: _PdfDocument) -> bytes:
        document.canvas.save()
        return document.buffer.getvalue()


class DocxConverter(ImageConverter):
    target_format = TargetFormat.DOCX

    def _new_document(self, title: str) -> Any:
        s = self.settings
        document = Document()
        document.core_properties.title = title
        section = document.sections[0]
        section.page_width = DocxPt(s.docx_page_width)
        section.page_height = DocxPt(s.docx_page_height)
        section.left_margin = section.right_margin = DocxPt(s.docx_margin)
        section.top_margin = section.bottom_margin = DocxPt(s.docx_margin)
        return document

    def _place_image(self, document: Any, unit: Any, prepared: PreparedImage, caption: str) -> None:
        s = self.settings
        box_width = s.docx_page_width - 2 * s.docx_margin
        # Word adds line spacing around the picture and caption paragraphs
        box_height = s.docx_page_height - 2 * s.docx_margin - 2 * s.caption_band
        width, height = fit_within(prepared.width, prepared.height, box_width, box_height)

        picture_paragraph = document.add_paragraph()
        picture_paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
        picture_paragraph.add_run().add_picture(prepared.stream(), width=DocxPt(width), height=DocxPt(height))

        caption_paragraph = document.add_paragraph()
        caption_paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
        caption_paragraph.add_run(caption).font.size = DocxPt(s.caption_font_size)

    def _place_placeholder(self, document: Any, unit: Any, caption: str) -> None:
        heading = document.add_paragraph()
        heading.add_run(caption).bold = True
        document.add_paragraph(PLACEHOLDER_NOTE)

    def _close_unit(self, document: Any, unit: Any, is_last: bool) -> None:
        if not is_last:
            document.add_page_break()

    def _finish(self, document: Any) -> bytes:
        buffer = BytesIO()
        document.save(buffer)
        return buffer.getvalue()


class PptxConverter(ImageConverter):
    target_format = TargetFormat.PPTX

    def _new_document(self, title: str) -> Any:
        presentation = Presentation()
        presentation.slide_width = PptxPt(self.settings.pptx_width)
        presentation.slide_height = PptxPt(self.settings.pptx_height)
        presentation.core_properties.title = title
        return presentation

    def _open_unit(self, document: Any, position: int) -> Any:
        return document.slides.add_slide(document.slide_layouts[PPTX_BLANK_LAYOUT])

    def _place_image(self, document: Any, unit: Any, prepared: PreparedImage, caption: str) -> None:
        s = self.settings
        box_width = s.pptx_width - 2 * s.pptx_margin
        box_height = s.pptx_height - 2 * s.pptx_margin - s.caption_band
        width, height = fit_within(prepared.width, prepared.height, box_width, box_height)

        left = (s.pptx_width - width) / 2
        top = s.pptx_margin + (box_height - height) / 2
        unit.shapes.add_picture(prepared.stream(), PptxPt(left), PptxPt(top), PptxPt(width), PptxPt(height))
        self._add_text(
            unit, [caption], top=s.pptx_height - s.pptx_margin - s.caption_band, height=s.caption_band, font_size=s.caption_font_size
        )

    def _place_placeholder(self, document: Any, unit: Any, caption: str) -> None:
        s = self.settings
        self._add_text(unit, [caption, PLACEHOLDER_NOTE], top=s.pptx_height / 2 - s.caption_band, height=2 * s.caption_band, font_size=16)

    def _add_text(self, slide: Any, lines: Sequence[str], top: float, height: float, font_size: float) -> None:
        s = self.settings
        textbox = slide.shapes.add_textbox(
            PptxPt(s.pptx_margin), PptxPt(top), PptxPt(s.pptx_width - 2 * s.pptx_margin), PptxPt(height)
        )
        text_frame = textbox.text_frame
        text_frame.word_wrap = True
        for index, line in enumerate(lines):
            paragraph = text_frame.paragraphs[0] if index == 0 else text_frame.add_paragraph()
            paragraph.alignment = PP_ALIGN.CENTER
            run = paragraph.add_run()
            run.text = line
            run.font.size = PptxPt(font_size)

    def _finish(self, document: Any) -> bytes:
        buffer = BytesIO()
        document.save(buffer)
        return buffer.getvalue()


CONVERTERS: Dict[TargetFormat, Type[ImageConverter]] = {
    TargetFormat.PDF: PdfConverter,
    TargetFormat.DOCX: DocxConverter,
    TargetFormat.PPTX: PptxConverter,
}


def get_converter(target_format: TargetFormat, settings: Optional[RenderSettings] = None) -> ImageConverter:
    """Return a fresh converter for the format; converters hold no state between renders."""
    try:
        converter_cls = CONVERTERS[TargetFormat(target_format)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported conversion type: {target_format}") from None
    return converter_cls(settings)
