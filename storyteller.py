# storyteller.py
# Interactive fiction backend using FastAPI + httpx
# - POST /api/advance-story forwards the chat history to Gemini with a forced JSON schema
# - Each non-final story segment gets one illustration from Imagen (best effort)
# - Upstream calls retry with exponential backoff (1s, 2s, 4s, ...)
# - Configuration is read once from the environment (.env supported) and injected into the app
# - __main__ entry-point wraps uvicorn for local hosting

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Dict,
    Final,
    List,
    Mapping,
    Optional,
    Protocol,
    TypedDict,
)

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

APP_DIR = Path(__file__).parent
LOGGER_NAME = "storyteller"
logger = logging.getLogger(LOGGER_NAME)

# -------- Gemini endpoints (REST) --------
GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta"
GENERATE_CONTENT_URL = "{base}/models/{model}:generateContent"
PREDICT_URL = "{base}/models/{model}:predict"

DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "imagen-3.0-generate-002"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_REQUEST_TIMEOUT = 120.0
DEFAULT_HOST = "0.0.0.0"  # nosec B104
DEFAULT_PORT = 8000
DEFAULT_IMAGE_MIME = "image/png"
IMAGE_ASPECT_RATIO = "4:3"
IMAGE_SAMPLE_COUNT = 1

# "GAME OVER:" in Russian; the model prefixes the final segment with it.
DEFAULT_TERMINAL_MARKER = "КОНЕЦ ИГРЫ:"

# Markers used in prompt templates; not credentials.
TERMINAL_MARKER_TOKEN = "<<TERMINAL_MARKER>>"  # nosec B105
SCENE_TOKEN = "<<SCENE>>"  # nosec B105

INVALID_HISTORY_MESSAGE: Final = "Invalid chat history provided."
ADVANCE_FAILED_MESSAGE: Final = "Failed to advance the story."

SYSTEM_PROMPT_V1 = """\
You are the narrator of an interactive text adventure. The player drives the story by picking one of the options you offer.

Rules:
1. Write every piece of text in Russian, including the choices.
2. Reply with a single JSON object and nothing else, shaped exactly like:
   {"storySegment": "<the next part of the story>", "choices": ["<option 1>", "<option 2>", "<option 3>"]}
3. The "storySegment" field always comes first, followed by the "choices" array.
4. Offer exactly three distinct, meaningful choices that continue from the segment.
5. Keep each segment vivid but short: two or three paragraphs at most.
6. When the story reaches its end (the hero dies, wins, or the tale is otherwise over), start "storySegment" with "<<TERMINAL_MARKER>>" and return "choices": [].
"""

IMAGE_STYLE_TEMPLATE_V1 = (
    "Cinematic, dark and moody, photorealistic illustration of the following scene: <<SCENE>> "
    "Dramatic volumetric lighting, muted color palette, shallow depth of field, "
    "highly detailed, film still, no text."
)

FALLBACK_IMAGE_PROMPT = "A mysterious path leading into a dark, fog-covered forest at dusk."

# A sentence-like run of 20-100 characters closed by a terminator.
SCENE_PATTERN = re.compile(r"[^.!?]{20,100}[.!?]")


# -------------------- Errors --------------------
class ConfigError(Exception):
    """Raised when the process environment cannot produce a usable configuration."""


class StoryBackendError(Exception):
    """Base error for failures talking to the generation backends."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UpstreamRequestError(StoryBackendError):
    """The upstream call kept failing until the attempt budget ran out."""


class MalformedResponseError(StoryBackendError):
    """The upstream answered, but not in the shape we asked for."""


# -------------------- Configuration --------------------
def _env_str(environ: Mapping[str, str], name: str, default: str) -> str:
    value = (environ.get(name) or "").strip()
    return value or default


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    try:
        raw = environ.get(name)
        value = int(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    try:
        raw = environ.get(name)
        value = float(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def load_system_prompt(path: Path) -> str:
    """Read a system prompt template from disk."""
    if not path.is_file():
        raise ConfigError(f"Missing system prompt template: {path}")
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        raise ConfigError(f"System prompt template is empty: {path}")
    return text


@dataclass(frozen=True)
class StoryConfig:
    """Immutable settings shared by the generators and the request handler."""

    api_key: str
    text_model: str = DEFAULT_TEXT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    api_base: str = GEMINI_BASE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    terminal_marker: str = DEFAULT_TERMINAL_MARKER
    system_prompt: str = SYSTEM_PROMPT_V1
    image_style_template: str = IMAGE_STYLE_TEMPLATE_V1
    fallback_image_prompt: str = FALLBACK_IMAGE_PROMPT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StoryConfig":
        env = os.environ if environ is None else environ
        api_key = (env.get("GEMINI_API_KEY") or "").strip()
        if not api_key:
            raise ConfigError("GEMINI_API_KEY is not set.")

        system_prompt = SYSTEM_PROMPT_V1
        prompt_file = (env.get("STORY_SYSTEM_PROMPT_FILE") or "").strip()
        if prompt_file:
            prompt_path = Path(prompt_file)
            if not prompt_path.is_absolute():
                prompt_path = APP_DIR / prompt_path
            system_prompt = load_system_prompt(prompt_path)

        return cls(
            api_key=api_key,
            text_model=_env_str(env, "GEMINI_TEXT_MODEL", DEFAULT_TEXT_MODEL),
            image_model=_env_str(env, "GEMINI_IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
            api_base=_env_str(env, "GEMINI_API_BASE", GEMINI_BASE).rstrip("/"),
            max_attempts=_env_int(env, "STORY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            request_timeout=_env_float(env, "STORY_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            system_prompt=system_prompt,
            host=_env_str(env, "STORY_HOST", DEFAULT_HOST),
            port=_env_int(env, "PORT", DEFAULT_PORT),
        )

    def render_system_prompt(self) -> str:
        return self.system_prompt.replace(TERMINAL_MARKER_TOKEN, self.terminal_marker)

    def auth_headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single console handler to the service logger and return it."""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logger.setLevel(numeric_level)
    logger.propagate = False
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    return logger


# -------------------- Data models --------------------
class ConversationTurn(TypedDict, total=False):
    """One Gemini content entry; forwarded untouched."""

    role: str  # user|model
    parts: List[Dict[str, Any]]


class StoryResponse(BaseModel):
    """Structured output we expect from the text model per turn."""

    story_segment: str = Field(
        validation_alias=AliasChoices("storySegment", "story_segment"),
        serialization_alias="storySegment",
    )
    choices: List[str] = Field(default_factory=list)

    @field_validator("choices")
    @classmethod
    def _three_or_none(cls, value: List[str]) -> List[str]:
        if len(value) not in (0, 3):
            raise ValueError(f"expected 0 or 3 choices, got {len(value)}")
        return value


def build_story_schema() -> Dict[str, Any]:
    # Mirrors StoryResponse; propertyOrdering keeps storySegment ahead of choices.
    return {
        "type": "OBJECT",
        "properties": {
            "storySegment": {"type": "STRING"},
            "choices": {"type": "ARRAY", "items": {"type": "STRING"}},
        },
        "required": ["storySegment", "choices"],
        "propertyOrdering": ["storySegment", "choices"],
    }


# -------------------- Helpers: HTTP with retry --------------------
_sleep = asyncio.sleep


def _sanitize_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    sanitized: Dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in {"x-goog-api-key", "authorization"}:
            sanitized[key] = "***"
        else:
            sanitized[key] = value
    return sanitized


def _excerpt(text: Any, limit: int = 200) -> str:
    if not isinstance(text, str):
        return ""
    text = text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


async def post_json_with_retry(
    url: str,
    payload: Dict[str, Any],
    *,
    headers: Optional[Dict[str, str]] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> Any:
    """POST ``payload`` as JSON and return the decoded body of the first 2xx answer.

    Every transport error and every non-2xx status (4xx included) counts as a
    failed attempt. After attempt ``n`` (0-based) fails we wait ``2 ** n``
    seconds before trying again; the last attempt is not followed by a wait.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    request_headers = dict(headers or {"Content-Type": "application/json"})
    last_failure = ""

    for attempt in range(max_attempts):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, headers=request_headers, json=payload)
        except httpx.HTTPError as exc:
            last_failure = f"{exc.__class__.__name__}: {exc}"
        else:
            if 200 <= response.status_code < 300:
                try:
                    return response.json()
                except ValueError as exc:
                    raise MalformedResponseError(
                        f"Upstream returned a non-JSON body: {_excerpt(response.text)}"
                    ) from exc
            last_failure = f"HTTP {response.status_code}: {_excerpt(response.text)}"

        logger.warning(
            "Attempt %d/%d to %s failed (%s); headers=%s",
            attempt + 1,
            max_attempts,
            url,
            last_failure,
            _sanitize_request_headers(request_headers),
        )
        if attempt < max_attempts - 1:
            await _sleep(2**attempt)

    logger.error("Giving up on %s after %d attempts", url, max_attempts)
    raise UpstreamRequestError(f"Request failed after {max_attempts} attempts: {last_failure}")


# -------------------- Story segments (Gemini) --------------------
def _extract_candidate_text(data: Any) -> str:
    # Text is returned in candidates[0].content.parts[*].text
    try:
        parts = data["candidates"][0]["content"]["parts"]
        text = "".join(prt["text"] for prt in parts if isinstance(prt, dict) and prt.get("text"))
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedResponseError("Malformed response from text model: no candidate content.") from exc
    if not text:
        raise MalformedResponseError("Malformed response from text model: candidate has no text.")
    return text


def parse_story_payload(text: str) -> StoryResponse:
    """Decode the model's JSON text into a StoryResponse."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(
            f"Failed to parse story JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})"
        ) from exc
    try:
        return StoryResponse.model_validate(parsed)
    except ValidationError as exc:
        raise MalformedResponseError(f"Story payload failed validation: {exc}") from exc


class StorySource(Protocol):
    async def generate(self, history: List[ConversationTurn]) -> StoryResponse: ...


class IllustrationSource(Protocol):
    async def illustrate(self, segment: str) -> Optional[str]: ...


class GeminiStoryGenerator:
    """Asks the text model for the next story segment under a forced JSON schema."""

    def __init__(self, config: StoryConfig) -> None:
        self.config = config

    @property
    def url(self) -> str:
        return GENERATE_CONTENT_URL.format(base=self.config.api_base, model=self.config.text_model)

    def build_request_body(self, history: List[ConversationTurn]) -> Dict[str, Any]:
        return {
            "contents": list(history),
            "systemInstruction": {"parts": [{"text": self.config.render_system_prompt()}]},
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": build_story_schema(),
            },
        }

    async def generate(self, history: List[ConversationTurn]) -> StoryResponse:
        data = await post_json_with_retry(
            self.url,
            self.build_request_body(history),
            headers=self.config.auth_headers(),
            max_attempts=self.config.max_attempts,
            timeout=self.config.request_timeout,
        )
        story = parse_story_payload(_extract_candidate_text(data))
        logger.info(
            "Story segment generated (%d chars, %d choices)",
            len(story.story_segment),
            len(story.choices),
        )
        return story


# -------------------- Illustrations (Imagen) --------------------
def extract_scene(segment: str, fallback: str = FALLBACK_IMAGE_PROMPT) -> str:
    match = SCENE_PATTERN.search(segment or "")
    if not match:
        return fallback
    return match.group(0).strip()


def build_image_prompt(
    segment: str,
    template: str = IMAGE_STYLE_TEMPLATE_V1,
    fallback: str = FALLBACK_IMAGE_PROMPT,
) -> str:
    """Wrap the opening sentence of ``segment`` in the fixed style template."""
    scene = extract_scene(segment, fallback)
    if SCENE_TOKEN in template:
        return template.replace(SCENE_TOKEN, scene)
    return f"{template.rstrip()} {scene}"


def _extract_image_data_url(data: Any) -> Optional[str]:
    predictions = data.get("predictions") if isinstance(data, dict) else None
    first = predictions[0] if isinstance(predictions, list) and predictions else None
    if not isinstance(first, dict):
        logger.warning("Image model returned no predictions.")
        return None
    b64 = first.get("bytesBase64Encoded")
    if not isinstance(b64, str) or not b64.strip():
        logger.warning("Image model prediction carried no image data.")
        return None
    mime = first.get("mimeType") or DEFAULT_IMAGE_MIME
    return f"data:{mime};base64,{b64.strip()}"


class ImagenIllustrator:
    """Best-effort scene illustration; never raises for upstream trouble."""

    def __init__(self, config: StoryConfig) -> None:
        self.config = config

    @property
    def url(self) -> str:
        return PREDICT_URL.format(base=self.config.api_base, model=self.config.image_model)

    def build_request_body(self, segment: str) -> Dict[str, Any]:
        prompt = build_image_prompt(
            segment,
            self.config.image_style_template,
            self.config.fallback_image_prompt,
        )
        return {
            "instances": [{"prompt": prompt}],
            "parameters": {"sampleCount": IMAGE_SAMPLE_COUNT, "aspectRatio": IMAGE_ASPECT_RATIO},
        }

    async def illustrate(self, segment: str) -> Optional[str]:
        try:
            data = await post_json_with_retry(
                self.url,
                self.build_request_body(segment),
                headers=self.config.auth_headers(),
                max_attempts=self.config.max_attempts,
                timeout=self.config.request_timeout,
            )
        except StoryBackendError as exc:
            logger.warning("Illustration skipped: %s", exc.message)
            return None
        return _extract_image_data_url(data)


# -------------------- Turn engine --------------------
class StoryAdvancer:
    """Runs one story turn: text first, then (unless the story ended) an image."""

    def __init__(
        self,
        config: StoryConfig,
        story_generator: StorySource,
        illustrator: IllustrationSource,
    ) -> None:
        self.config = config
        self.story_generator = story_generator
        self.illustrator = illustrator

    def is_terminal(self, segment: str) -> bool:
        return self.config.terminal_marker.casefold() in (segment or "").casefold()

    async def advance(self, history: List[ConversationTurn]) -> Dict[str, Any]:
        story = await self.story_generator.generate(history)
        image_url: Optional[str] = None
        if self.is_terminal(story.story_segment):
            logger.info("Terminal segment reached; skipping illustration.")
        else:
            image_url = await self.illustrator.illustrate(story.story_segment)
        payload = story.model_dump(by_alias=True)
        payload["imageUrl"] = image_url
        return payload


# -------------------- FastAPI app --------------------
def create_app(
    config: StoryConfig,
    *,
    story_generator: Optional[StorySource] = None,
    illustrator: Optional[IllustrationSource] = None,
) -> FastAPI:
    app = FastAPI(title="Story Advancer")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config
    app.state.advancer = StoryAdvancer(
        config,
        story_generator or GeminiStoryGenerator(config),
        illustrator or ImagenIllustrator(config),
    )

    @app.get("/api/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "textModel": config.text_model, "imageModel": config.image_model}

    @app.post("/api/advance-story")
    async def advance_story(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            body = None
        history = body.get("chatHistory") if isinstance(body, dict) else None
        if not isinstance(history, list):
            return JSONResponse(status_code=400, content={"error": INVALID_HISTORY_MESSAGE})

        advancer: StoryAdvancer = request.app.state.advancer
        try:
            result = await advancer.advance(history)
        except Exception as exc:  # noqa: BLE001 - single boundary for the whole turn
            logger.exception("Story turn failed")
            return JSONResponse(
                status_code=500,
                content={"error": ADVANCE_FAILED_MESSAGE, "details": str(exc)},
            )
        return JSONResponse(content=result)

    return app


def main() -> None:
    # Provide a convenient CLI entry point for local running.
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    try:
        config = StoryConfig.from_env()
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    logger.info(
        "Serving story advancer on %s:%d (text=%s, image=%s)",
        config.host,
        config.port,
        config.text_model,
        config.image_model,
    )
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
