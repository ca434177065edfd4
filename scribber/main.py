import io
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from scribber.core import config
from scribber.core.errors import ScribberError, ValidationFailure
from scribber.models.story_model import RenderOptions
from scribber.schemas.story_schemas import (
    EmailRequest,
    ImagesResponse,
    InstagramRequest,
    RerenderRequest,
    StoryRequest,
    StoryResponse,
    SuccessResponse,
)
from scribber.services.delivery import (
    DEFAULT_ARCHIVE_NAME,
    MailSender,
    archive_name,
    build_zip,
    get_mail_sender,
    post_to_instagram,
    validate_recipient,
)
from scribber.services.image_store import PUBLIC_PREFIX, ImageStore
from scribber.services.page_renderer import (
    PageRenderer,
    font_stack,
    get_renderer,
    render_story_images,
    renderer_state,
    shutdown_renderer,
)
from scribber.services.story_parser import parse_story
from scribber.services.story_service import TextGenerator, build_story_prompt, get_text_generator

config.configure_logging()
logger = logging.getLogger(__name__)

_image_store: Optional[ImageStore] = None


def get_image_store() -> ImageStore:
    global _image_store
    if _image_store is None:
        _image_store = ImageStore(config.IMAGES_DIR)
    return _image_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    for name in config.missing_credentials():
        logger.warning("%s is not set; endpoints that need it will fail until it is configured", name)
    get_image_store()
    yield
    await shutdown_renderer()


app = FastAPI(title="Scribber", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ScribberError)
async def scribber_error_handler(request: Request, exc: ScribberError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse({"error": exc.public_message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request."
    if errors:
        field = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        message = f"Invalid {field}: {errors[0].get('msg')}" if field else errors[0].get("msg", message)
    return JSONResponse({"error": message}, status_code=400)


def _render_concurrently() -> bool:
    return config.MAX_CONCURRENT_RENDERS > 1


async def _render_gallery(renderer, store: ImageStore, session_id: str, title, pages, options, include_title=True):
    try:
        images = await render_story_images(
            renderer, store, session_id, title, pages, options,
            include_title=include_title, concurrent=_render_concurrently(),
        )
    except Exception:
        # a failed batch leaves no partial gallery behind
        store.clear_prior_artifacts(session_id)
        raise
    return [store.public_url(img.file_path) for img in images]


@app.get("/api/health")
async def health():
    return {"status": "ok", "renderer": renderer_state()}


@app.post("/api/story", response_model=StoryResponse)
async def create_story(
    payload: StoryRequest = Body(...),
    store: ImageStore = Depends(get_image_store),
    generator: TextGenerator = Depends(get_text_generator),
    renderer: PageRenderer = Depends(get_renderer),
):
    if not (payload.era_or_culture or "").strip():
        raise ValidationFailure("ERA_OR_CULTURE is required.")

    session_id = store.use_session(payload.session_id)
    store.clear_prior_artifacts(session_id)
    store.prune_sessions(config.SESSION_MAX_AGE_SECONDS, keep=session_id)

    generated = await generator.generate(build_story_prompt(payload))
    story = parse_story(generated.text)
    logger.info("Parsed story %r with %d pages (model %s)", story.title, len(story.pages), generated.model_used)
    if not story.pages:
        logger.warning("Generated text contained no page markers; rendering title only")

    options = RenderOptions(text_color=story.text_color, background_color=story.background_color)
    image_paths = await _render_gallery(renderer, store, session_id, story.title, story.pages, options)

    return StoryResponse(
        title=story.title,
        pages=story.pages,
        image_paths=image_paths,
        text_color=story.text_color,
        background_color=story.background_color,
        model=generated.model_used,
        session_id=session_id,
    )


@app.post("/api/rerender-images", response_model=ImagesResponse)
async def rerender_images(
    payload: RerenderRequest = Body(...),
    store: ImageStore = Depends(get_image_store),
    renderer: PageRenderer = Depends(get_renderer),
):
    pages = payload.pages or []
    if not pages:
        raise ValidationFailure("No pages provided.")

    session_id = store.use_session(payload.session_id)
    store.clear_prior_artifacts(session_id)

    defaults = RenderOptions()
    options = RenderOptions(
        font_family=font_stack(payload.font_family),
        text_color=payload.font_color or defaults.text_color,
        background_color=payload.background_color or defaults.background_color,
    )
    title = (payload.title or "").strip()
    image_paths = await _render_gallery(renderer, store, session_id, title, pages, options, include_title=bool(title))
    return ImagesResponse(image_paths=image_paths, session_id=session_id)


@app.get("/api/download-images")
def download_images(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    store: ImageStore = Depends(get_image_store),
):
    if session_id:
        store.validate_session(session_id)
    images = store.current_images(session_id or store.latest_session())
    if not images:
        raise ValidationFailure("No story images found. Generate a story first.")

    data = build_zip(images)
    return StreamingResponse(
        io.BytesIO(data),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{DEFAULT_ARCHIVE_NAME}"'},
    )


@app.post("/api/send-images-email", response_model=SuccessResponse)
def send_images_email(
    payload: EmailRequest = Body(...),
    store: ImageStore = Depends(get_image_store),
    sender: MailSender = Depends(get_mail_sender),
):
    recipient = validate_recipient(payload.email)
    if not payload.image_paths:
        raise ValidationFailure("No images provided.")

    images = [store.resolve(p) for p in payload.image_paths]
    data = build_zip(images)
    sender.send(recipient, data, archive_name(payload.era_or_culture, payload.story_or_character))
    return SuccessResponse(success=True)


@app.post("/api/instagram", response_model=SuccessResponse)
def instagram(payload: InstagramRequest = Body(...)):
    result = post_to_instagram(payload.image_paths, payload.caption, payload.config)
    return SuccessResponse(success=True, result=result)


app.mount(PUBLIC_PREFIX, StaticFiles(directory=str(config.IMAGES_DIR), check_dir=False), name="images")

if config.FRONTEND_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(config.FRONTEND_DIR), html=True), name="frontend")


def run():
    import uvicorn

    uvicorn.run("scribber.main:app", host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())
