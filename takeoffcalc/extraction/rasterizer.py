"""PDF rasterizer backed by pypdfium2."""

from __future__ import annotations

import asyncio
import io
import logging

from pypdfium2 import PdfDocument

from takeoffcalc.extraction.provider import RenderedPage

logger = logging.getLogger(__name__)

PDF_BASE_DPI = 72


class PdfiumRasterizer:
    """Renders PDF pages to PNG with their text layer.

    A page that fails to render is returned with ``error`` set so the rest
    of the batch still goes through.
    """

    async def rasterize(self, document: bytes, dpi: int, max_pages: int) -> list[RenderedPage]:
        return await asyncio.to_thread(self.render, document, dpi, max_pages)

    def render(self, document: bytes, dpi: int, max_pages: int) -> list[RenderedPage]:
        pdf = PdfDocument(document)
        try:
            total = len(pdf)
            if total > max_pages:
                logger.warning(f"Document has {total} pages; rendering the first {max_pages}")
            return [self.render_page(pdf, index, dpi) for index in range(min(total, max_pages))]
        finally:
            pdf.close()

    def render_page(self, pdf: PdfDocument, index: int, dpi: int) -> RenderedPage:
        try:
            page = pdf[index]
            image = page.render(scale=dpi / PDF_BASE_DPI).to_pil()
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            textpage = page.get_textpage()
            text = textpage.get_text_range()
        except Exception as e:
            logger.warning(f"Failed to render page {index + 1}: {e}")
            return RenderedPage(index=index, error=str(e))

        logger.debug(f"Rendered page {index + 1}: {image.size[0]}x{image.size[1]}px")
        return RenderedPage(
            index=index,
            image=buffer.getvalue(),
            width_px=image.size[0],
            height_px=image.size[1],
            text=text or None,
        )
