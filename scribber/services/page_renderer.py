import asyncio
import html
import logging
import re
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Route, async_playwright

from scribber.core import config
from scribber.core.errors import RenderFailure
from scribber.models.story_model import (
    DEFAULT_BACKGROUND_COLOR,
    DEFAULT_FONT_FAMILY,
    DEFAULT_TEXT_COLOR,
    PageImage,
    RenderOptions,
)
from scribber.services.image_store import ImageStore

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-extensions",
    "--disable-component-update",
    "--disable-sync",
    "--disable-default-apps",
    "--disable-preconnect",
]

BLOCKED_RESOURCE_TYPES = {"image", "stylesheet", "font", "media", "fetch", "xhr", "websocket", "eventsource"}

# resolves once web fonts are applied and two frames have been painted
SETTLE_SCRIPT = """() => document.fonts.ready.then(
    () => new Promise(resolve => requestAnimationFrame(() => requestAnimationFrame(() => resolve(true))))
)"""

HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")
FONT_FAMILY_UNSAFE_RE = re.compile(r"[^\w\s,\-'\"]")

# consecutive failures tolerated on a browser that still reports itself connected
MAX_SUSPECT_FAILURES = 3


def _safe_color(value: str, default: str) -> str:
    return value if value and HEX_COLOR_RE.match(value) else default


def _safe_font_family(value: str) -> str:
    cleaned = FONT_FAMILY_UNSAFE_RE.sub("", value or "").strip()
    return cleaned or DEFAULT_FONT_FAMILY


def font_stack(family: Optional[str]) -> str:
    """Wrap a single user chosen family with the system fallbacks."""
    name = FONT_FAMILY_UNSAFE_RE.sub("", (family or "").replace('"', "").replace("'", "")).strip()
    if not name:
        return DEFAULT_FONT_FAMILY
    return f'"{name}", "DejaVu Sans", sans-serif'


def build_page_html(text: str, options: RenderOptions) -> str:
    width, height, margin = options.width, options.height, options.margin
    font_family = _safe_font_family(options.font_family)
    text_color = _safe_color(options.text_color, DEFAULT_TEXT_COLOR)
    background = _safe_color(options.background_color, DEFAULT_BACKGROUND_COLOR)
    inner_w = max(width - 2 * margin, 0)
    inner_h = max(height - 2 * margin, 0)

    label = ""
    if options.page_number_label:
        label = f'<div class="page-number">{html.escape(options.page_number_label)}</div>'

    return f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width={width}, initial-scale=1.0">
    <style>
      html, body {{
        width: {width}px;
        height: {height}px;
        margin: 0;
        padding: 0;
        background: {background};
        display: flex;
        align-items: center;
        justify-content: center;
        position: relative;
        overflow: hidden;
      }}
      .content {{
        width: {inner_w}px;
        height: {inner_h}px;
        font-size: {options.font_size}px;
        font-family: {font_family};
        color: {text_color};
        white-space: pre-wrap;
        overflow-wrap: break-word;
        word-break: break-word;
        line-height: {options.line_height};
        box-sizing: border-box;
        overflow: hidden;
        display: flex;
        align-items: center;
        justify-content: center;
        text-align: center;
      }}
      .page-number {{
        position: absolute;
        right: 32px;
        bottom: 24px;
        font-size: 24px;
        font-family: {font_family};
        color: {text_color};
        opacity: 0.7;
        pointer-events: none;
      }}
    </style>
  </head>
  <body>
    <div class="content">{html.escape(text or "", quote=False)}</div>
    {label}
  </body>
</html>"""


class PoolState(str, Enum):
    IDLE = "idle"
    HEALTHY = "healthy"
    SUSPECT = "suspect"
    RECREATING = "recreating"
    CLOSED = "closed"


class BrowserPool:
    """Owns at most one live Chromium and hands out isolated contexts.

    IDLE -> HEALTHY on first acquire. A failed render moves the pool to SUSPECT;
    the next acquire goes back to HEALTHY if the browser is still connected, or
    through RECREATING to a fresh instance if it is not.
    """

    def __init__(
        self,
        launcher: Optional[Callable[[], Awaitable[Browser]]] = None,
        max_contexts: int = config.MAX_CONCURRENT_RENDERS,
        launch_timeout_ms: int = config.BROWSER_LAUNCH_TIMEOUT_MS,
        executable_path: Optional[str] = config.CHROMIUM_EXECUTABLE,
    ):
        self._launcher = launcher or self._launch_chromium
        self._launch_timeout_ms = launch_timeout_ms
        self._executable_path = executable_path
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._failures = 0
        self.state = PoolState.IDLE
        self._lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max(1, max_contexts))

    async def _launch_chromium(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=True,
            args=CHROMIUM_ARGS,
            timeout=self._launch_timeout_ms,
            executable_path=self._executable_path,
        )

    async def _discard_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except PlaywrightError as e:
            logger.warning("Error closing discarded browser: %s", e)

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self.state is PoolState.CLOSED:
                raise RenderFailure("Browser pool is closed.")
            if self.state is PoolState.SUSPECT:
                connected = self._browser is not None and self._browser.is_connected()
                if connected and self._failures < MAX_SUSPECT_FAILURES:
                    logger.info("Browser still connected after failure, keeping it")
                    self.state = PoolState.HEALTHY
                else:
                    logger.warning("Discarding browser (connected=%s, failures=%d)", connected, self._failures)
                    self.state = PoolState.RECREATING
                    await self._discard_browser()

            if self._browser is not None and not self._browser.is_connected():
                logger.warning("Cached browser disconnected, relaunching")
                self.state = PoolState.RECREATING
                await self._discard_browser()

            if self._browser is None:
                started = time.monotonic()
                self._browser = await self._launcher()
                self._failures = 0
                logger.info("Browser launched in %.0fms", (time.monotonic() - started) * 1000)
            self.state = PoolState.HEALTHY
            return self._browser

    async def acquire_context(self, width: int, height: int) -> BrowserContext:
        await self._slots.acquire()
        try:
            browser = await self._ensure_browser()
            return await browser.new_context(
                viewport={"width": width, "height": height},
                device_scale_factor=1,
            )
        except Exception:
            self._slots.release()
            self.mark_failed()
            raise

    async def release(self, context: BrowserContext, failed: bool = False) -> None:
        try:
            await context.close()
        except PlaywrightError as e:
            logger.warning("Error closing browser context: %s", e)
            failed = True
        finally:
            self._slots.release()
        if failed:
            self.mark_failed()
        else:
            self._failures = 0

    def mark_failed(self) -> None:
        if self.state is PoolState.CLOSED:
            return
        self._failures += 1
        self.state = PoolState.SUSPECT

    async def close(self) -> None:
        async with self._lock:
            await self._discard_browser()
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
            self.state = PoolState.CLOSED


class PageRenderer:
    def __init__(
        self,
        pool: BrowserPool,
        settle_ms: int = config.RENDER_SETTLE_MS,
        nav_timeout_ms: int = config.RENDER_NAV_TIMEOUT_MS,
    ):
        self.pool = pool
        self.settle_ms = settle_ms
        self.nav_timeout_ms = nav_timeout_ms

    @staticmethod
    async def _block_resources(route: Route) -> None:
        request = route.request
        if request.resource_type in BLOCKED_RESOURCE_TYPES or request.url.startswith(("http:", "https:")):
            await route.abort("blockedbyclient")
        else:
            await route.continue_()

    async def _settle(self, page) -> None:
        try:
            await asyncio.wait_for(page.evaluate(SETTLE_SCRIPT), timeout=max(self.settle_ms, 1) / 1000)
        except (asyncio.TimeoutError, PlaywrightError) as e:
            logger.debug("Layout signal unavailable (%s), waiting %dms", e, self.settle_ms)
            await page.wait_for_timeout(self.settle_ms)

    async def render(self, text: str, path: Union[str, Path], options: RenderOptions) -> Path:
        path = Path(path)
        started = time.monotonic()
        document = build_page_html(text, options)
        logger.debug("Rendering %s (%d chars, %dx%d)", path.name, len(text or ""), options.width, options.height)

        try:
            context = await self.pool.acquire_context(options.width, options.height)
        except PlaywrightError as e:
            raise RenderFailure(f"Could not start browser: {e}", cause=e) from e

        failed = False
        try:
            page = await context.new_page()
            page.set_default_navigation_timeout(self.nav_timeout_ms)
            page.set_default_timeout(self.nav_timeout_ms)
            await page.route("**/*", self._block_resources)
            try:
                await page.set_content(document, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
            except PlaywrightError as e:
                # capture whatever made it onto the page rather than lose the batch
                logger.warning("Loading content for %s failed: %s, attempting screenshot anyway", path.name, e)
            await self._settle(page)
            path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(
                path=str(path),
                clip={"x": 0, "y": 0, "width": options.width, "height": options.height},
                omit_background=False,
            )
        except PlaywrightError as e:
            failed = True
            logger.error("Rendering %s failed: %s", path.name, e)
            raise RenderFailure(f"Rendering {path.name} failed: {e}", cause=e) from e
        finally:
            await self.pool.release(context, failed=failed)

        logger.info("Rendered %s in %.0fms", path.name, (time.monotonic() - started) * 1000)
        return path


async def render_story_images(
    renderer: PageRenderer,
    store: ImageStore,
    session_id: str,
    title: Optional[str],
    pages: Sequence[str],
    options: RenderOptions,
    include_title: bool = True,
    concurrent: bool = False,
) -> List[PageImage]:
    """Render the title page (index 0) and every story page (1..N) for a session."""
    jobs = []
    if include_title:
        jobs.append(PageImage(0, title or "", options.for_title(), store.next_path(session_id, 0)))
    for number, text in enumerate(pages, start=1):
        jobs.append(PageImage(number, text, options.for_page(number), store.next_path(session_id, number)))

    async def _render(job: PageImage) -> PageImage:
        job.file_path = await renderer.render(job.source_text, job.file_path, job.options)
        return job

    if not concurrent:
        return [await _render(job) for job in jobs]

    tasks = [asyncio.ensure_future(_render(job)) for job in jobs]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        # stop sibling renders from writing files once the batch has failed
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


_pool: Optional[BrowserPool] = None
_renderer: Optional[PageRenderer] = None


def get_renderer() -> PageRenderer:
    global _pool, _renderer
    if _renderer is None:
        _pool = BrowserPool()
        _renderer = PageRenderer(_pool)
    return _renderer


def renderer_state() -> str:
    return _pool.state.value if _pool is not None else PoolState.IDLE.value


async def shutdown_renderer() -> None:
    global _pool, _renderer
    if _pool is not None:
        await _pool.close()
    _pool, _renderer = None, None
