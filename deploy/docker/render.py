"""
Render task model and the per-task executor that runs inside a pooled page.
"""
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from html import escape
from typing import Callable, Dict, List, Optional
from urllib.parse import quote, urlparse

from playwright.async_api import Error as PlaywrightError

from barrier import CompletionBarrier, barrier_factory
from capture import CaptureResult, FullPageCapturer, OutputKind
from devices import DEFAULT_DEVICE, get_device
from errors import CaptureFailed, NavigationFailed, ValidationError
from scroll import ScrollSettings

logger = logging.getLogger("render")

# ── PDF layout ───────────────────────────────────────────────
A4_WIDTH_PX = 794
MIN_PDF_SCALE = 0.1
MAX_PDF_SCALE = 2.0

EMPTY_TEMPLATE = "<span></span>"
PAGE_NUMBER_FOOTER = """
<div style="width: 100%; font-size: 10px; text-align: center; color: #808080; position: relative;">
    <span style="position: absolute; left: 0; right: 0; top: -5px;">
        <span class="pageNumber"></span>/<span class="totalPages"></span>
    </span>
</div>
"""

PRINT_CSS = """
@page:first { margin-top: 0; margin-bottom: 0; }
@page { margin-top: 5mm; margin-bottom: 10mm; }
body, html { background-color: white !important; }
"""


@dataclass(frozen=True)
class Watermark:
    text: str
    opacity: float = 0.12
    font_size: int = 28
    color: str = "#808080"

    @classmethod
    def from_config(cls, cfg: Optional[Dict]) -> Optional["Watermark"]:
        if not cfg or not cfg.get("text"):
            return None
        return cls(
            text=cfg["text"],
            opacity=float(cfg.get("opacity", 0.12)),
            font_size=int(cfg.get("font_size", 28)),
            color=cfg.get("color", "#808080"),
        )

    def css(self) -> str:
        svg = (
            "<svg xmlns='http://www.w3.org/2000/svg' width='320' height='220'>"
            f"<text x='160' y='110' fill='{self.color}' fill-opacity='{self.opacity}' "
            f"font-size='{self.font_size}' font-family='sans-serif' text-anchor='middle' "
            f"transform='rotate(-30 160 110)'>{escape(self.text)}</text></svg>"
        )
        uri = "data:image/svg+xml;utf8," + quote(svg)
        return (
            "body::after {"
            ' content: ""; position: fixed; top: 0; left: 0; right: 0; bottom: 0;'
            " pointer-events: none; z-index: 2147483647;"
            f' background-image: url("{uri}"); background-repeat: repeat;'
            " }"
        )


def build_print_css(watermark: Optional[Watermark] = None) -> str:
    if watermark is None:
        return PRINT_CSS
    return PRINT_CSS + watermark.css() + "\n"


def pdf_scale(content_width: int) -> float:
    """Scale mapping the captured width onto A4's printable width."""
    return max(MIN_PDF_SCALE, min(A4_WIDTH_PX / content_width, MAX_PDF_SCALE))


def pdf_options(content_width: int, show_page_numbers: bool) -> Dict:
    return {
        "format": "A4",
        "print_background": True,
        "scale": pdf_scale(content_width),
        "display_header_footer": show_page_numbers,
        "header_template": EMPTY_TEMPLATE,
        "footer_template": PAGE_NUMBER_FOOTER if show_page_numbers else EMPTY_TEMPLATE,
    }


# ── task model ───────────────────────────────────────────────
class TaskState(str, Enum):
    VALIDATED = "validated"
    DISPATCHED = "dispatched"
    PAGE_ACQUIRED = "page_acquired"
    CONFIGURED = "configured"
    NAVIGATED = "navigated"
    CAPTURED = "captured"
    ARTIFACT_READY = "artifact_ready"
    PERSISTED = "persisted"
    STREAMED = "streamed"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RenderTask:
    target_url: str
    filename_stem: str
    kind: OutputKind
    task_id: str
    device_name: str = DEFAULT_DEVICE
    width_override: Optional[int] = None
    show_page_numbers: bool = True

    @classmethod
    def build(
        cls,
        kind: OutputKind,
        url: Optional[str],
        filename: Optional[str],
        device_name: Optional[str] = None,
        width=None,
        show_page_numbers: bool = True,
        task_id: Optional[str] = None,
    ) -> "RenderTask":
        """
        Validate raw request fields into a task. Raises ValidationError or
        DeviceNotFound before any browser resource is touched.
        """
        task_id = task_id or f"task_{uuid.uuid4().hex[:12]}"
        if not url:
            raise ValidationError("URL is required", task_id)
        if urlparse(url).scheme not in ("http", "https"):
            raise ValidationError("URL must be an absolute http(s) URL", task_id)
        if not filename:
            raise ValidationError("Filename is required", task_id)

        width_override = None
        if width is not None and width != "":
            try:
                width_override = int(width)
            except (TypeError, ValueError):
                raise ValidationError("Width must be a positive integer", task_id) from None
            if width_override <= 0:
                raise ValidationError("Width must be a positive integer", task_id)

        device = get_device(device_name)
        return cls(
            target_url=url,
            filename_stem=filename,
            kind=OutputKind(kind),
            task_id=task_id,
            device_name=device.name,
            width_override=width_override,
            show_page_numbers=show_page_numbers,
        )


@dataclass
class TaskRun:
    """Mutable progress record of one task; the task itself stays frozen."""
    task: RenderTask
    state: TaskState = TaskState.VALIDATED
    history: List[TaskState] = field(default_factory=lambda: [TaskState.VALIDATED])

    def advance(self, state: TaskState) -> None:
        logger.debug("[%s] %s -> %s", self.task.task_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, exc: BaseException) -> None:
        logger.error("[%s] Failed in state %s: %s", self.task.task_id, self.state.value, exc)
        self.advance(TaskState.FAILED)


async def _pass_through(route) -> None:
    await route.continue_()


# ── executor ─────────────────────────────────────────────────
class RenderTaskExecutor:
    """Configures, navigates and captures one task on a page lent by the pool."""

    def __init__(
        self,
        capturer: FullPageCapturer,
        wait_until: str = "networkidle",
        navigation_timeout: float = 60.0,
        request_interception: bool = False,
        barrier_factory: Optional[Callable[[], CompletionBarrier]] = None,
        watermark: Optional[Watermark] = None,
    ):
        self.capturer = capturer
        self.wait_until = wait_until
        self.navigation_timeout = navigation_timeout
        self.request_interception = request_interception
        self.barrier_factory = barrier_factory
        self.watermark = watermark

    @classmethod
    def from_config(cls, config: Dict) -> "RenderTaskExecutor":
        render_cfg = config.get("render", {})
        barrier_cfg = config.get("barrier", {})
        capturer = FullPageCapturer(
            ScrollSettings.from_config(render_cfg.get("scroll")),
            barrier_timeout=float(barrier_cfg.get("wait_timeout", 30.0)),
        )
        return cls(
            capturer,
            wait_until=render_cfg.get("wait_until", "networkidle"),
            navigation_timeout=float(render_cfg.get("navigation_timeout", 60.0)),
            request_interception=bool(render_cfg.get("request_interception", False)),
            barrier_factory=barrier_factory(barrier_cfg),
            watermark=Watermark.from_config(config.get("watermark")),
        )

    def context_options(self, task: RenderTask) -> Dict:
        return get_device(task.device_name).context_options(task.width_override)

    async def run(self, page, task: RenderTask, tracker: Optional[TaskRun] = None) -> CaptureResult:
        tracker = tracker or TaskRun(task)
        tracker.advance(TaskState.PAGE_ACQUIRED)
        barrier = None
        try:
            barrier = await self._configure(page, task)
            tracker.advance(TaskState.CONFIGURED)

            await self._navigate(page, task)
            tracker.advance(TaskState.NAVIGATED)

            result = await self.capturer.capture(page, task.task_id, task.kind, barrier)
            tracker.advance(TaskState.CAPTURED)

            if task.kind.is_pdf:
                result.data = await self._print(page, task, result)
            tracker.advance(TaskState.ARTIFACT_READY)
            return result
        except Exception as exc:
            tracker.fail(exc)
            raise
        finally:
            if barrier is not None:
                barrier.dispose()

    async def _configure(self, page, task: RenderTask) -> Optional[CompletionBarrier]:
        viewport = get_device(task.device_name).viewport_for(task.width_override)
        await page.set_viewport_size(viewport.size())
        if self.request_interception:
            await page.route("**/*", _pass_through)
        if task.kind.is_pdf and self.barrier_factory is not None:
            barrier = self.barrier_factory()
            barrier.install(page)
            return barrier
        return None

    async def _navigate(self, page, task: RenderTask) -> None:
        logger.info("[%s] Navigating to %s", task.task_id, task.target_url)
        try:
            await page.goto(
                task.target_url,
                wait_until=self.wait_until,
                timeout=self.navigation_timeout * 1000,
            )
        except PlaywrightError as exc:
            raise NavigationFailed(
                f"Navigation to {task.target_url} failed: {exc}", task.task_id
            ) from exc

    async def _print(self, page, task: RenderTask, result: CaptureResult) -> bytes:
        options = pdf_options(result.width, task.show_page_numbers)
        logger.info(
            "[%s] Printing PDF, content %sx%s at scale %.3f",
            task.task_id, result.width, result.height, options["scale"],
        )
        try:
            await page.add_style_tag(content=build_print_css(self.watermark))
            return await page.pdf(**options)
        except PlaywrightError as exc:
            raise CaptureFailed(f"PDF printing failed: {exc}", task.task_id) from exc
