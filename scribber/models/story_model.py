from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List

DEFAULT_TEXT_COLOR = "#222222"
DEFAULT_BACKGROUND_COLOR = "#fffbe9"
DEFAULT_FONT_FAMILY = "Ubuntu, DejaVu Sans, sans-serif"

TITLE_FONT_SIZE = 48
PAGE_FONT_SIZE = 32


@dataclass
class Story:
    title: str
    pages: List[str] = field(default_factory=list)
    text_color: str = DEFAULT_TEXT_COLOR
    background_color: str = DEFAULT_BACKGROUND_COLOR


@dataclass(frozen=True)
class RenderOptions:
    font_family: str = DEFAULT_FONT_FAMILY
    text_color: str = DEFAULT_TEXT_COLOR
    background_color: str = DEFAULT_BACKGROUND_COLOR
    font_size: int = PAGE_FONT_SIZE
    margin: int = 120
    width: int = 1080
    height: int = 1080
    page_number_label: str = ""
    line_height: float = 1.3

    def for_title(self) -> "RenderOptions":
        return replace(self, font_size=TITLE_FONT_SIZE, page_number_label="")

    def for_page(self, number: int) -> "RenderOptions":
        return replace(self, font_size=PAGE_FONT_SIZE, page_number_label=f"Page {number}")


@dataclass
class PageImage:
    index: int
    source_text: str
    options: RenderOptions
    file_path: Path
