import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from google import genai
from google.genai import errors as genai_errors

from scribber.core import config
from scribber.core.errors import ConfigurationError, ErrorKind, GenerationFailure
from scribber.schemas.story_schemas import StoryRequest

logger = logging.getLogger(__name__)

PLACEHOLDER_STORY = "No story generated."

RATE_LIMITED_CODES = {429}
RATE_LIMITED_STATUSES = {"RESOURCE_EXHAUSTED"}
UNAVAILABLE_CODES = {503}
UNAVAILABLE_STATUSES = {"UNAVAILABLE"}


def build_story_prompt(params: StoryRequest) -> str:
    return (
        "You are a master storyteller, historian, and myth-weaver.\n\n"
        "Your task is to generate a complete, self-contained story inspired by mythology, philosophy, "
        "or history, written in an easy to understand yet engaging, immersive narrative style. The story "
        "should feel like it belongs in an ancient storybook: rich in atmosphere, emotion, and meaning.\n\n"
        f"Era / Culture / Tradition: {params.era_or_culture}\n"
        f"Specific Story / Character: {params.story_or_character or 'Random'}\n"
        f"Hook Style: {params.hook_style or 'Any'}\n"
        f"Darkness Level: {params.darkness_level or 'Any'}\n"
        f"Dialogue Density: {params.dialogue_density or 'Any'}\n"
        f"Moral Explicitness: {params.moral_explicitness or 'Any'}\n\n"
        "STORY REQUIREMENTS\n\n"
        "Story Structure\n"
        "The story must be divided into \"pages\", like a storybook.\n"
        "Total pages: minimum 6 pages, maximum 19 pages.\n"
        "Each page should be clearly labeled, for example:\nPage 1\nPage 2\netc.\n"
        "**CRITICAL: Each page MUST contain EXACTLY 1-2 paragraphs maximum. NEVER more than 2 paragraphs per page.**\n\n"
        "Narrative Style\n"
        "Use engaging, vivid storytelling.\n"
        "Include dialogues or exchanges of words wherever it adds depth.\n"
        "Maintain a slow, deliberate pace, as if the reader is turning pages one by one.\n"
        "Language should feel timeless, slightly poetic but still readable.\n\n"
        "Content & Tone\n"
        "The story should feel complete (clear beginning, middle, and end).\n"
        "Themes may include: Fate, morality, power, suffering, wisdom, betrayal, love, duty, faith, or philosophy.\n"
        "Avoid modern slang or references.\n"
        "The tone should match the era (solemn, mystical, tragic, contemplative, heroic, etc.).\n\n"
        "Authenticity\n"
        "Stay faithful to the spirit and worldview of the chosen era or philosophy.\n"
        "You may creatively expand events or conversations, but do not break historical or mythological plausibility.\n\n"
        "Ending\n"
        "End with a resonant conclusion: A lesson, reflection, prophecy, or quiet realization. "
        "The ending should feel earned and meaningful, not abrupt.\n\n"
        "OUTPUT FORMAT\n"
        "Start with a story title.\n"
        "Then begin page-by-page narration.\n"
        "Example structure:\n"
        "Title: The Weight of the Crown\n"
        "Page 1\n[1-2 paragraphs only]\n"
        "Page 2\n[1-2 paragraphs only]\n"
        "(Continue until the story concludes naturally within 6-19 pages.)\n\n"
        "At the very end, provide a recommended text color and background color for Instagram posts "
        "that would best fit the mood and theme of the story.\n"
        "Format:\n"
        "Text Color: #xxxxxx\n"
        "Background Color: #xxxxxx\n"
        "Generate the story now using provided parameters."
    )


def classify_api_error(exc: BaseException) -> ErrorKind:
    """Map a google-genai API error onto retry semantics using its code/status fields."""
    if not isinstance(exc, genai_errors.APIError):
        return ErrorKind.FATAL
    code = getattr(exc, "code", None)
    status = str(getattr(exc, "status", "") or "").upper()
    if code in RATE_LIMITED_CODES or status in RATE_LIMITED_STATUSES:
        return ErrorKind.RATE_LIMITED
    if code in UNAVAILABLE_CODES or status in UNAVAILABLE_STATUSES:
        return ErrorKind.UNAVAILABLE
    return ErrorKind.FATAL


def _response_text(response) -> str:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return ""
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    if not parts:
        return ""
    return getattr(parts[0], "text", None) or ""


@dataclass
class GeneratedText:
    text: str
    model_used: str


class TextGenerator:
    """Calls Gemini with an ordered list of fallback models."""

    def __init__(self, client: Optional[genai.Client], models: Sequence[str], allow_placeholder: bool = False):
        self.client = client
        self.models = list(models)
        self.allow_placeholder = allow_placeholder

    async def generate(self, prompt: str) -> GeneratedText:
        if self.client is None:
            raise ConfigurationError("GEMINI_API_KEY (or GOOGLE_API_KEY) is not set.")
        if not self.models:
            raise ConfigurationError("At least one Gemini model must be configured in GEMINI_MODELS.")

        tried: List[str] = []
        last_error: Optional[BaseException] = None
        last_kind = ErrorKind.FATAL

        for model in self.models:
            tried.append(model)
            logger.info("Attempting story generation with model %s", model)
            try:
                response = await self.client.aio.models.generate_content(model=model, contents=prompt)
            except genai_errors.APIError as e:
                kind = classify_api_error(e)
                logger.warning("Model %s failed: [%s %s] %s", model, e.code, e.status, e.message)
                if not kind.retryable:
                    raise GenerationFailure(
                        f"Model {model} failed: {e}", kind=kind, models_tried=tried, cause=e
                    ) from e
                last_error, last_kind = e, kind
                continue
            except Exception as e:
                logger.error("Model %s call failed: %r", model, e)
                raise GenerationFailure(
                    f"Model {model} failed: {e}", kind=classify_api_error(e), models_tried=tried, cause=e
                ) from e

            text = _response_text(response)
            if text.strip():
                logger.info("Story generated with model %s (%d chars)", model, len(text))
                return GeneratedText(text=text, model_used=model)

            if self.allow_placeholder:
                logger.warning("Model %s returned no text, using placeholder story", model)
                return GeneratedText(text=PLACEHOLDER_STORY, model_used=model)

            logger.warning("Model %s returned no text, trying next model", model)
            # an earlier real error outranks an empty response
            if last_error is None:
                last_kind = ErrorKind.EMPTY

        logger.error("All Gemini models exhausted: %s", ", ".join(tried))
        raise GenerationFailure(
            f"All models failed ({', '.join(tried)}): {last_error or 'empty response'}",
            kind=last_kind,
            models_tried=tried,
            cause=last_error,
        )


_generator: Optional[TextGenerator] = None


def get_text_generator() -> TextGenerator:
    global _generator
    if _generator is None:
        client = genai.Client(api_key=config.GEMINI_API_KEY) if config.GEMINI_API_KEY else None
        _generator = TextGenerator(client, config.GEMINI_MODELS, allow_placeholder=config.ALLOW_PLACEHOLDER_STORY)
    return _generator
