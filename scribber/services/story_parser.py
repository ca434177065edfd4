import re

from scribber.models.story_model import Story, DEFAULT_TEXT_COLOR, DEFAULT_BACKGROUND_COLOR

# "Text Color: #112233 (deep ink)\nBackground Color: #fefefe (parchment)"
COLOR_BLOCK_RE = re.compile(
    r"Text Color:\s*(#[0-9a-fA-F]{6})(?:[ \t]*\([^)\n]*\))?[ \t]*\r?\n"
    r"\s*Background Color:\s*(#[0-9a-fA-F]{6})(?:[ \t]*\([^)\n]*\))?"
)
PAGE_MARKER_RE = re.compile(r"Page \d+")
TITLE_LABEL_RE = re.compile(r"^\s*title:\s*", re.IGNORECASE)


def extract_colors(text: str) -> tuple[str, str, str]:
    """Pull the trailing colour block off the generated text.

    Returns (remaining text, text color, background color). Everything from the
    start of the block onwards is dropped; without a block the text is
    returned untouched together with the default pair.
    """
    match = COLOR_BLOCK_RE.search(text)
    if not match:
        return text, DEFAULT_TEXT_COLOR, DEFAULT_BACKGROUND_COLOR
    return text[: match.start()], match.group(1), match.group(2)


def _clean_title(segment: str) -> str:
    return TITLE_LABEL_RE.sub("", segment.strip(), count=1).strip()


def parse_story(raw: str) -> Story:
    text, text_color, background_color = extract_colors(raw or "")
    segments = PAGE_MARKER_RE.split(text)
    title = _clean_title(segments[0])
    pages = [seg.strip() for seg in segments[1:]]
    pages = [p for p in pages if p]
    return Story(title=title, pages=pages, text_color=text_color, background_color=background_color)
