# ───────────────────────── server.py ─────────────────────────
"""
Page Capture FastAPI entry‑point
• Browser pool manager + recycling janitor
• Rate‑limiting, security, metrics
• /screenshot, /pdf, /pdf/stream endpoints
"""

# ── stdlib & 3rd‑party imports ───────────────────────────────
import asyncio
import functools
import io
import logging
import os
import sys
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

# ── internal imports (after sys.path append) ─────────────────
sys.path.append(os.path.dirname(os.path.realpath(__file__)))

from browser_pool import BrowserPool, PoolManager, janitor
from capture import OutputKind
from devices import DEFAULT_DEVICE, DEVICES
from errors import CaptureServiceError, DeviceNotFound, PoolUnavailable, ValidationError
from render import RenderTask, RenderTaskExecutor, TaskRun, TaskState
from schemas import (
    ApiResponse,
    DevicesResponse,
    PDFRequest,
    ScreenshotRequest,
    describe_validation_error,
)
from storage import ArtifactWriter, artifact_name
from supervisor import Supervisor, terminate_for_restart
from utils import find_available_port, generate_request_id, load_config, now_ms, setup_logging

# ────────────────── configuration / logging ──────────────────
config = load_config()
setup_logging(config)
logger = logging.getLogger("server")

__version__ = config["app"]["version"]

UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again in a few moments."
FAILURE_PREFIX = {
    OutputKind.SCREENSHOT: "Failed to capture full page screenshot",
    OutputKind.PDF: "Failed to generate PDF",
    OutputKind.PDF_STREAM: "Failed to generate PDF stream",
}

# ── browser pool / render pipeline ───────────────────────────
pool_cfg = config["pool"]
recycle_cfg = pool_cfg.get("recycle", {})

pool_manager = PoolManager(
    functools.partial(
        BrowserPool.launch,
        headless=pool_cfg.get("headless", True),
        executable_path=pool_cfg.get("executable_path"),
        extra_args=pool_cfg.get("extra_args", []),
        launch_timeout=pool_cfg.get("launch_timeout", 60.0),
        max_concurrency=pool_cfg.get("max_concurrency", 10),
        retry_limit=pool_cfg.get("retry_limit", 3),
        retry_delay=pool_cfg.get("retry_delay", 5.0),
        task_timeout=pool_cfg.get("task_timeout", 120.0),
    ),
    swap_grace=recycle_cfg.get("swap_grace", 5.0),
    drain_grace=recycle_cfg.get("drain_grace", 10.0),
)
executor = RenderTaskExecutor.from_config(config)
writer = ArtifactWriter.from_config(config["storage"])

supervisor = Supervisor(
    pool_manager,
    drain_timeout=config["supervisor"].get("drain_timeout", 30.0),
    restart_exit_code=config["supervisor"].get("restart_exit_code", 3),
)
supervisor.add_listener(terminate_for_restart)


# ───────────────────── FastAPI lifespan ──────────────────────
@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("=" * 50)
    logger.info("New application session started")
    if config["supervisor"].get("enabled", True):
        supervisor.install()
    try:
        await pool_manager.get()                                   # warm‑up
        logger.info("Initial browser pool setup completed")
    except PoolUnavailable as exc:
        logger.error("Browser pool not ready, first request will retry: %s", exc)
    for name, profile in DEVICES.items():
        logger.info("Device available: %s (%sx%s)", name,
                    profile.viewport.width, profile.viewport.height)
    app.state.janitor = asyncio.create_task(janitor(
        pool_manager,
        interval=recycle_cfg.get("janitor_interval", 60),
        max_age=recycle_cfg.get("after_seconds", 0),
        max_requests=recycle_cfg.get("after_requests", 0),
    ))                                                             # recycling
    yield
    app.state.janitor.cancel()
    await pool_manager.shutdown()
    supervisor.uninstall()
    logger.info("Application shut down")

# ───────────────────── FastAPI instance ──────────────────────
app = FastAPI(
    title=config["app"]["title"],
    version=config["app"]["version"],
    lifespan=lifespan,
)

# ─────────────────── infra / middleware  ─────────────────────
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[config["rate_limiting"]["default_limit"]],
    storage_uri=config["rate_limiting"]["storage_uri"],
    enabled=config["rate_limiting"].get("enabled", True),
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def _setup_security(app_: FastAPI):
    sec = config["security"]
    if not sec["enabled"]:
        return
    if sec.get("https_redirect"):
        app_.add_middleware(HTTPSRedirectMiddleware)
    if sec.get("trusted_hosts", []) != ["*"]:
        app_.add_middleware(
            TrustedHostMiddleware, allowed_hosts=sec["trusted_hosts"]
        )


_setup_security(app)

if config["observability"]["prometheus"]["enabled"]:
    Instrumentator().instrument(app).expose(
        app, endpoint=config["observability"]["prometheus"]["endpoint"]
    )


@app.middleware("http")
async def add_request_id_and_headers(request: Request, call_next):
    request.state.request_id = generate_request_id()
    resp = await call_next(request)
    resp.headers["X-Request-ID"] = request.state.request_id
    if config["security"]["enabled"]:
        resp.headers.update({
            key.replace("_", "-"): value
            for key, value in config["security"]["headers"].items()
        })
    return resp

# ───────────────────── response envelope ─────────────────────


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or generate_request_id()


def envelope(code: int, message: str, request_id: str, file_name=None) -> JSONResponse:
    body = ApiResponse(
        code=code,
        message=message,
        file_name=file_name,
        success=200 <= code < 300,
        timestamp=now_ms(),
        request_id=request_id,
    )
    return JSONResponse(status_code=code, content=body.model_dump(by_alias=True))


def _error_detail(exc: BaseException) -> str:
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return f"{exc}\n\nStack trace:\n{stack}"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = describe_validation_error(exc.errors())
    request_id = _request_id(request)
    logger.info("[%s] Request rejected: %s", request_id, message)
    return envelope(400, message, request_id)


@app.exception_handler(CaptureServiceError)
async def capture_error_handler(request: Request, exc: CaptureServiceError):
    request_id = _request_id(request)
    if isinstance(exc, PoolUnavailable):
        logger.error("[%s] No available browser pool: %s", request_id, exc)
        return envelope(exc.status_code, UNAVAILABLE_MESSAGE, request_id)
    if exc.status_code < 500:
        logger.info("[%s] Request rejected: %s", request_id, exc.message)
        return envelope(exc.status_code, exc.message, request_id)
    logger.error("[%s] Error details: %s", request_id, exc)
    return envelope(exc.status_code, _error_detail(exc), request_id)

# ──────────────────────── pipeline ───────────────────────────


async def run_task(task: RenderTask, tracker: TaskRun):
    """Dispatch a validated task to the pool and wait for its capture."""
    tracker.advance(TaskState.DISPATCHED)
    return await pool_manager.execute(
        task,
        functools.partial(executor.run, tracker=tracker),
        context_options=executor.context_options(task),
    )


async def _capture(task: RenderTask):
    """
    Run a task end to end. Client and pool errors propagate to the exception
    handlers; anything else becomes a 500 envelope carrying the stack trace.
    """
    tracker = TaskRun(task)
    try:
        result = await run_task(task, tracker)
        file_name = None
        if task.kind is OutputKind.PDF_STREAM:
            tracker.advance(TaskState.STREAMED)
        else:
            file_name = await run_in_threadpool(writer.write, task.filename_stem, result)
            tracker.advance(TaskState.PERSISTED)
        tracker.advance(TaskState.DONE)
        return result, file_name, None
    except (ValidationError, DeviceNotFound, PoolUnavailable):
        raise
    except Exception as exc:
        if tracker.state is not TaskState.FAILED:
            tracker.fail(exc)
        logger.error("[%s] Error details: %s", task.task_id, exc)
        message = f"{FAILURE_PREFIX[task.kind]}: {_error_detail(exc)}"
        return None, None, envelope(500, message, task.task_id)

# ──────────────────────── Endpoints ──────────────────────────


@app.post("/screenshot")
@limiter.limit(config["rate_limiting"]["default_limit"])
async def generate_screenshot(request: Request, body: ScreenshotRequest):
    """
    📸 **Full-page screenshot**

    Emulates ``deviceName`` (default iPad Pro), scrolls the page down and back
    up to trigger lazy content, grows the viewport to the tallest height seen
    and saves a PNG under ``screenshots/``. ``width`` overrides the device
    width.

    **✅ SUCCESS RESPONSE:**
    ``{"code": 200, "fileName": "shot.png", "success": true, ...}``
    """
    request_id = _request_id(request)
    task = RenderTask.build(
        OutputKind.SCREENSHOT, body.url, body.filename,
        device_name=body.device_name, width=body.width, task_id=request_id,
    )
    logger.info("[%s] Starting screenshot capture for %s on %s",
                request_id, task.target_url, task.device_name)
    _, file_name, failure = await _capture(task)
    if failure is not None:
        return failure
    logger.info("[%s] Screenshot saved successfully as %s", request_id, file_name)
    return envelope(200, "Screenshot generated and saved successfully", request_id, file_name)


@app.post("/pdf")
@limiter.limit(config["rate_limiting"]["default_limit"])
async def generate_pdf(request: Request, body: PDFRequest):
    """
    📄 **Paginated A4 PDF**

    Captures the full page like /screenshot (iPad Pro profile), then prints it
    to A4 scaled to the content width and saves it under ``pdfs/``.
    ``showPageNo`` (default true) adds a ``page/total`` footer.
    """
    request_id = _request_id(request)
    task = RenderTask.build(
        OutputKind.PDF, body.url, body.filename,
        device_name=DEFAULT_DEVICE, show_page_numbers=body.show_page_no, task_id=request_id,
    )
    logger.info("[%s] Starting PDF generation for %s", request_id, task.target_url)
    _, file_name, failure = await _capture(task)
    if failure is not None:
        return failure
    logger.info("[%s] PDF saved successfully as %s", request_id, file_name)
    return envelope(200, "PDF generated and saved successfully", request_id, file_name)


@app.post("/pdf/stream")
@limiter.limit(config["rate_limiting"]["default_limit"])
async def stream_pdf(request: Request, body: PDFRequest):
    """
    📥 **PDF download**

    Same rendering as /pdf, but the bytes are sent back as an
    ``application/pdf`` attachment instead of being written to disk.
    """
    request_id = _request_id(request)
    task = RenderTask.build(
        OutputKind.PDF_STREAM, body.url, body.filename,
        device_name=DEFAULT_DEVICE, show_page_numbers=body.show_page_no, task_id=request_id,
    )
    logger.info("[%s] Starting PDF stream generation for %s", request_id, task.target_url)
    result, _, failure = await _capture(task)
    if failure is not None:
        return failure
    pdf_bytes = result.data
    logger.info("[%s] PDF stream sent successfully for %s", request_id, task.target_url)
    return StreamingResponse(
        io.BytesIO(pdf_bytes),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{artifact_name(task.filename_stem, "pdf")}"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


@app.get("/devices", response_model=DevicesResponse)
async def list_devices():
    return {
        "default": DEFAULT_DEVICE,
        "devices": [profile.describe() for profile in DEVICES.values()],
    }


@app.get("/pool/status")
async def pool_status():
    return pool_manager.stats()


@app.post("/pool/recycle", status_code=202)
async def recycle_pool(request: Request, background_tasks: BackgroundTasks):
    request_id = _request_id(request)
    if pool_manager.is_recycling:
        return envelope(202, "Recycling already in progress", request_id)
    background_tasks.add_task(pool_manager.recycle, "requested via API")
    logger.info("[%s] Browser pool recycling scheduled", request_id)
    return envelope(202, "Browser pool recycling scheduled", request_id)


@app.get(config["observability"]["health_check"]["endpoint"])
async def health():
    return {
        "status": "ok",
        "timestamp": time.time(),
        "version": __version__,
        "pool": pool_manager.stats(),
    }


# ────────────────────────── cli ──────────────────────────────
if __name__ == "__main__":
    import uvicorn
    port = find_available_port(config["app"]["port"], config["app"]["host"])
    if port != config["app"]["port"]:
        logger.warning("Port %s is busy, using %s", config["app"]["port"], port)
    uvicorn.run(
        "server:app" if config["app"]["reload"] else app,
        host=config["app"]["host"],
        port=port,
        reload=config["app"]["reload"],
        timeout_keep_alive=config["app"]["timeout_keep_alive"],
    )
    if supervisor.exit_code:
        sys.exit(supervisor.exit_code)
# ─────────────────────────────────────────────────────────────
