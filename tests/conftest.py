from pathlib import Path
from types import SimpleNamespace

import pytest

from scribber.services.image_store import ImageStore

SISYPHUS_TEXT = (
    "Title: The Boulder\n"
    "Page 1\nHe pushed.\n"
    "Page 2\nIt fell.\n"
    "Text Color: #111111\n"
    "Background Color: #eeeeee"
)


def make_response(text):
    part = SimpleNamespace(text=text)
    candidate = SimpleNamespace(content=SimpleNamespace(parts=[part]))
    return SimpleNamespace(candidates=[candidate])


class FakeModels:
    """Stands in for client.aio.models; each queued item is a text or an exception."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def generate_content(self, model, contents):
        self.calls.append((model, contents))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return make_response(outcome)


def fake_client(*outcomes):
    models = FakeModels(outcomes)
    return SimpleNamespace(aio=SimpleNamespace(models=models)), models


class FakeRenderer:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    async def render(self, text, path, options):
        path = Path(path)
        if self.fail_on is not None and path.name == self.fail_on:
            from scribber.core.errors import RenderFailure

            raise RenderFailure(f"boom on {path.name}")
        self.calls.append((text, path, options))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x89PNG fake " + text.encode())
        return path


@pytest.fixture
def store(tmp_path):
    return ImageStore(tmp_path / "images")


@pytest.fixture
def renderer():
    return FakeRenderer()
