import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from playwright.async_api import Error as PlaywrightError

from barrier import CompletionBarrier
from errors import CaptureFailed
from scroll import (
    ScrollSettings, measure_height, scroll_to_bottom, track_max_height
)

logger = logging.getLogger("capture")

PNG_DATA_URI_PREFIX = "data:image/png;base64,"


class OutputKind(str, Enum):
    SCREENSHOT = "screenshot"
    PDF = "pdf"
    PDF_STREAM = "pdf-stream"

    @property
    def is_pdf(self) -> bool:
        return self is not OutputKind.SCREENSHOT


@dataclass
class CaptureResult:
    kind: OutputKind
    width: int
    height: int
    # PNG data URI for screenshots, PDF bytes once the executor printed the page
    data: Optional[Union[str, bytes]] = None


class FullPageCapturer:
    """Turns a navigated page into a correctly sized artifact."""

    def __init__(self, settings: ScrollSettings = ScrollSettings(), barrier_timeout: float = 30.0):
        self.settings = settings
        self.barrier_timeout = barrier_timeout

    async def measure(self, page, task_id: str) -> int:
        """Scroll down once, then back up, returning the tallest height seen."""
        await scroll_to_bottom(page, self.settings)
        max_height = await measure_height(page)
        return await track_max_height(page, max_height, self.settings, task_id)

    async def capture(
        self,
        page,
        task_id: str,
        kind: OutputKind = OutputKind.SCREENSHOT,
        barrier: Optional[CompletionBarrier] = None,
    ) -> CaptureResult:
        try:
            max_height = await self.measure(page, task_id)
            width = (page.viewport_size or {}).get("width")
            if not width:
                raise CaptureFailed("Page has no viewport to resize", task_id)
            await page.set_viewport_size({"width": width, "height": max(max_height, 1)})

            # lazy content revealed by the taller viewport
            await scroll_to_bottom(page, self.settings)

            if barrier is not None:
                await barrier.wait(self.barrier_timeout, task_id)

            if kind.is_pdf:
                return CaptureResult(kind=kind, width=width, height=max_height)

            logger.info("[%s] Capturing screenshot with height: %s", task_id, max_height)
            png = await page.screenshot(type="png")
        except PlaywrightError as exc:
            raise CaptureFailed(f"Page evaluation failed: {exc}", task_id) from exc

        encoded = base64.b64encode(png).decode()
        return CaptureResult(
            kind=kind, width=width, height=max_height,
            data=PNG_DATA_URI_PREFIX + encoded,
        )
