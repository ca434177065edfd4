import asyncio
import struct
from pathlib import Path
from types import SimpleNamespace

import pytest
from playwright.async_api import Error as PlaywrightError

from scribber.core.errors import RenderFailure
from scribber.models.story_model import RenderOptions
from scribber.services.page_renderer import (
    BrowserPool,
    PageRenderer,
    PoolState,
    build_page_html,
    font_stack,
    render_story_images,
)


class FakeRoute:
    def __init__(self, resource_type, url="data:text/html,x"):
        self.request = SimpleNamespace(resource_type=resource_type, url=url)
        self.outcome = None

    async def abort(self, error_code=None):
        self.outcome = ("abort", error_code)

    async def continue_(self):
        self.outcome = ("continue", None)


class FakePage:
    def __init__(self, browser):
        self.browser = browser
        self.content = None
        self.route_handler = None

    def set_default_navigation_timeout(self, ms):
        self.nav_timeout = ms

    def set_default_timeout(self, ms):
        self.timeout = ms

    async def route(self, pattern, handler):
        self.route_handler = handler

    async def set_content(self, html, wait_until=None, timeout=None):
        if self.browser.fail_set_content:
            raise PlaywrightError("Timeout 30000ms exceeded")
        self.content = html

    async def evaluate(self, script):
        return True

    async def wait_for_timeout(self, ms):
        self.browser.waited.append(ms)

    async def screenshot(self, path, clip, omit_background=False):
        if self.browser.fail_screenshot:
            self.browser.connected = False
            raise PlaywrightError("Target page, context or browser has been closed")
        self.browser.shots.append((path, clip))
        Path(path).write_bytes(b"png")
        return b"png"


class FakeContext:
    def __init__(self, browser, viewport):
        self.browser = browser
        self.viewport = viewport
        self.closed = False

    async def new_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.connected = True
        self.closed = False
        self.contexts = []
        self.shots = []
        self.waited = []
        self.fail_set_content = False
        self.fail_screenshot = False

    def is_connected(self):
        return self.connected

    async def new_context(self, viewport, device_scale_factor=1):
        ctx = FakeContext(self, viewport)
        self.contexts.append(ctx)
        return ctx

    async def close(self):
        self.closed = True


class Launcher:
    def __init__(self):
        self.browsers = []

    async def __call__(self):
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser


@pytest.fixture
def launcher():
    return Launcher()


def _renderer(launcher, **kwargs):
    return PageRenderer(BrowserPool(launcher=launcher, **kwargs), settle_ms=10, nav_timeout_ms=1000)


def test_html_contains_layout_contract():
    options = RenderOptions(width=1080, height=1080, margin=120, font_size=32).for_page(4)
    document = build_page_html("Line one\nLine <two>", options)
    assert "width: 1080px;" in document and "height: 1080px;" in document
    assert "width: 840px;" in document and "height: 840px;" in document
    assert "white-space: pre-wrap;" in document
    assert "overflow: hidden;" in document
    assert "Line &lt;two&gt;" in document
    assert '<div class="page-number">Page 4</div>' in document


def test_title_page_omits_label():
    document = build_page_html("The Boulder", RenderOptions().for_title())
    assert 'class="page-number"' not in document
    assert "font-size: 48px;" in document


def test_unsafe_style_values_fall_back():
    options = RenderOptions(
        font_family="Georgia; } body { display:none",
        text_color="red;}",
        background_color="url(http://x)",
    )
    document = build_page_html("x", options)
    assert "display:none" not in document
    assert "background: #fffbe9;" in document
    assert "color: #222222;" in document


def test_font_stack_wraps_single_family():
    assert font_stack("Georgia") == '"Georgia", "DejaVu Sans", sans-serif'
    assert font_stack(None) == "Ubuntu, DejaVu Sans, sans-serif"


def test_render_produces_fixed_size_capture(launcher, tmp_path):
    renderer = _renderer(launcher)
    options = RenderOptions()

    async def go():
        first = await renderer.render("short", tmp_path / "a.png", options)
        second = await renderer.render("word " * 5000, tmp_path / "b.png", options)
        return first, second

    short, long = asyncio.run(go())

    shots = launcher.browsers[0].shots
    assert short.exists() and long.exists()
    assert [clip for _, clip in shots] == [{"x": 0, "y": 0, "width": 1080, "height": 1080}] * 2
    assert len(launcher.browsers) == 1
    assert all(ctx.closed for ctx in launcher.browsers[0].contexts)
    assert launcher.browsers[0].contexts[0].viewport == {"width": 1080, "height": 1080}
    assert renderer.pool.state is PoolState.HEALTHY


def test_navigation_failure_still_captures(launcher, tmp_path):
    renderer = _renderer(launcher)

    async def go():
        browser = await renderer.pool._ensure_browser()
        browser.fail_set_content = True
        return await renderer.render("text", tmp_path / "nav.png", RenderOptions())

    path = asyncio.run(go())
    assert path.exists()
    assert renderer.pool.state is PoolState.HEALTHY


def test_dead_browser_is_replaced_on_next_render(launcher, tmp_path):
    renderer = _renderer(launcher)

    async def go():
        browser = await renderer.pool._ensure_browser()
        browser.fail_screenshot = True
        with pytest.raises(RenderFailure):
            await renderer.render("text", tmp_path / "x.png", RenderOptions())
        assert renderer.pool.state is PoolState.SUSPECT
        return await renderer.render("text", tmp_path / "y.png", RenderOptions())

    path = asyncio.run(go())
    assert path.exists()
    assert len(launcher.browsers) == 2
    assert launcher.browsers[0].closed
    assert renderer.pool.state is PoolState.HEALTHY


def test_blocks_network_resources():
    for resource_type in ("image", "font", "stylesheet", "xhr"):
        route = FakeRoute(resource_type)
        asyncio.run(PageRenderer._block_resources(route))
        assert route.outcome == ("abort", "blockedbyclient")

    remote = FakeRoute("document", url="https://example.com/")
    asyncio.run(PageRenderer._block_resources(remote))
    assert remote.outcome[0] == "abort"

    local = FakeRoute("document")
    asyncio.run(PageRenderer._block_resources(local))
    assert local.outcome == ("continue", None)


def test_closed_pool_refuses_work(launcher, tmp_path):
    renderer = _renderer(launcher)

    async def go():
        await renderer.pool.close()
        await renderer.render("text", tmp_path / "z.png", RenderOptions())

    with pytest.raises(RenderFailure):
        asyncio.run(go())


@pytest.mark.parametrize("concurrent", [False, True])
def test_render_story_images_indexes_title_and_pages(launcher, store, concurrent):
    renderer = _renderer(launcher, max_contexts=3)
    session = store.new_session()
    images = asyncio.run(
        render_story_images(renderer, store, session, "Title", ["one", "two"], RenderOptions(), concurrent=concurrent)
    )
    assert [img.index for img in images] == [0, 1, 2]
    assert [img.source_text for img in images] == ["Title", "one", "two"]
    assert [img.file_path.name for img in images] == ["story_page_0.png", "story_page_1.png", "story_page_2.png"]
    assert [p.name for p in store.current_images(session)] == [img.file_path.name for img in images]
    assert images[0].options.page_number_label == ""
    assert images[2].options.page_number_label == "Page 2"


def test_render_story_images_can_skip_title(renderer, store):
    session = store.new_session()
    images = asyncio.run(render_story_images(renderer, store, session, "", ["one"], RenderOptions(), include_title=False))
    assert [img.file_path.name for img in images] == ["story_page_1.png"]
    text, _, options = renderer.calls[0]
    assert options.page_number_label == "Page 1"


class SlowRenderer:
    """Fails page 1 right away while every other page is still rendering."""

    def __init__(self):
        self.cancelled = []

    async def render(self, text, path, options):
        path = Path(path)
        if path.name == "story_page_1.png":
            raise RenderFailure("page 1 broke")
        try:
            await asyncio.sleep(0.5)
        except asyncio.CancelledError:
            self.cancelled.append(path.name)
            raise
        path.write_bytes(b"png")
        return path


def test_concurrent_failure_cancels_sibling_renders(store):
    renderer = SlowRenderer()
    session = store.new_session()

    async def go():
        with pytest.raises(RenderFailure):
            await render_story_images(renderer, store, session, "Title", ["a", "b", "c"], RenderOptions(), concurrent=True)
        # give any stray task the time it would have needed to finish writing
        await asyncio.sleep(0.6)

    asyncio.run(go())
    assert sorted(renderer.cancelled) == ["story_page_0.png", "story_page_2.png", "story_page_3.png"]
    assert store.current_images(session) == []


def _png_size(path):
    header = Path(path).read_bytes()[:24]
    assert header[:8] == b"\x89PNG\r\n\x1a\n"
    return struct.unpack(">II", header[16:24])


def test_chromium_capture_is_square_for_any_text_length(tmp_path):
    async def go():
        pool = BrowserPool(max_contexts=1)
        try:
            try:
                await pool._ensure_browser()
            except PlaywrightError as e:
                return None, str(e)
            renderer = PageRenderer(pool)
            short = await renderer.render("He pushed.", tmp_path / "short.png", RenderOptions().for_title())
            long = await renderer.render("word " * 5000, tmp_path / "long.png", RenderOptions().for_page(1))
            return (short, long), None
        finally:
            await pool.close()

    paths, error = asyncio.run(go())
    if paths is None:
        pytest.skip(f"Chromium is not installed: {error}")
    short, long = paths
    assert _png_size(short) == (1080, 1080)
    assert _png_size(long) == (1080, 1080)
