# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Illustration pipeline: prompt enhancement, model cascade, retry and cache.

An illustration is never fatal to a turn. obtain() always returns an
ImageResult; when every model in the cascade has failed on every retry the
result carries an empty URL and a classified ImageGenerationError.

Cache behavior:
- Keyed by the raw scene prompt and art style
- Entries expire after a TTL and are swept on every access
- Hits move an entry to the most-recently-used end; inserts evict from the
  least-recently-used end once the size limit is exceeded
- Only successful URLs are stored
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, List, Optional, Tuple
import httpx
import openai
from openai import AsyncOpenAI

from storyloom.logging import PhaseTimer, StructuredLogger, redact_secrets, sanitize_for_log
from storyloom.metrics import get_metrics_collector
from storyloom.models import AdventureDetails, ImageErrorType, ImageGenerationError, ImageResult
from storyloom.resilience import RetryConfig, with_deadline, with_retry
from storyloom.services.moderation import ModerationClient

logger = StructuredLogger(__name__)

MAX_PROMPT_LENGTH = 4000
TRUNCATED_PROMPT_LENGTH = 3950

STYLE_CONFIG = {
    "fantasy_art": {
        "prefix": "Fantasy digital art, detailed illustration,",
        "suffix": "epic lighting, high detail, artstation style, masterpiece",
    },
    "comic_book": {
        "prefix": "Comic book style illustration,",
        "suffix": "bold lines, vibrant colors, graphic novel art, dynamic composition",
    },
    "painterly": {
        "prefix": "Oil painting style,",
        "suffix": "impressionist brushstrokes, artistic lighting, fine art",
    },
}
DEFAULT_STYLE = "fantasy_art"

TONE_MODIFIERS = {
    "serious": ", moody lighting, dramatic atmosphere",
    "humorous": ", whimsical, lighthearted atmosphere",
    "dramatic": ", cinematic lighting, epic composition",
}

BLOCKED_TERMS = ("gore", "explicit", "nudity", "sexual")

# Models that accept the quality and style parameters
STYLED_MODELS = ("gpt-image-1", "dall-e-3")

STUB_IMAGE_URL = "https://example.com/storyloom/stub-scene.png"


@dataclass(frozen=True)
class ImageConfiguration:
    """One step of the model cascade."""
    model: str
    quality: str
    style: str
    size: str = "1024x1024"


IMAGE_CASCADE: Tuple[ImageConfiguration, ...] = (
    ImageConfiguration(model="gpt-image-1", quality="hd", style="vivid"),
    ImageConfiguration(model="dall-e-3", quality="standard", style="vivid"),
    ImageConfiguration(model="dall-e-3", quality="standard", style="natural"),
    ImageConfiguration(model="dall-e-2", quality="standard", style="vivid"),
)


class ImagePromptRejectedError(Exception):
    """Raised when an enhanced prompt fails local validation or moderation."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid image prompt: " + ", ".join(errors))


class IllustrationCascadeError(Exception):
    """Raised when every configuration in the cascade has failed.

    Attributes:
        last_error: The exception raised by the final configuration
        model: Model of the final configuration attempted
    """

    def __init__(self, last_error: Exception, model: str):
        self.last_error = last_error
        self.model = model
        super().__init__(f"All image models failed; last model {model}: {last_error}")


def enhance_prompt(prompt: str, style: str, adventure: Optional[AdventureDetails] = None) -> str:
    """Decorate a scene prompt with art-style and adventure modifiers.

    Args:
        prompt: Scene description from the narration reply
        style: Art style name; unknown styles fall back to fantasy_art
        adventure: Custom adventure whose setting and tone colour the image

    Returns:
        The enhanced prompt, at most MAX_PROMPT_LENGTH characters
    """
    config = STYLE_CONFIG.get(style, STYLE_CONFIG[DEFAULT_STYLE])
    enhanced = prompt

    if adventure is not None:
        period = adventure.setting.time_period
        display = period.display
        if display != "custom":
            enhanced += f", {display} time period"

        if period.type == "custom":
            if period.technological_level:
                enhanced += f", {period.technological_level} technology"
            if period.cultural_context:
                enhanced += f", {period.cultural_context}"

        enhanced += f", {adventure.setting.environment}"
        enhanced += TONE_MODIFIERS.get(adventure.style_preferences.tone, "")

    enhanced = f"{config['prefix']} {enhanced}, {config['suffix']}"

    if len(enhanced) > MAX_PROMPT_LENGTH:
        enhanced = enhanced[:TRUNCATED_PROMPT_LENGTH] + "..."
    return enhanced


def classify_image_error(error: Optional[BaseException]) -> ImageErrorType:
    """Map the last cascade failure to an ImageGenerationError type."""
    if isinstance(error, IllustrationCascadeError):
        error = error.last_error

    status_code = getattr(error, "status_code", None)
    if isinstance(error, openai.RateLimitError) or status_code == 429:
        return "rate_limit"
    if isinstance(error, openai.BadRequestError) or status_code == 400:
        return "content_policy"
    if isinstance(error, (openai.APIConnectionError, asyncio.TimeoutError, httpx.TransportError, OSError)):
        return "network"
    return "unknown"


class ImageCache:
    """Thread-safe TTL + LRU cache of generated image URLs."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the cache.

        Args:
            ttl_seconds: Age after which an entry is discarded
            max_entries: Size limit before least-recently-used eviction
            clock: Monotonic time source (injectable for tests)
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = Lock()
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()

    @staticmethod
    def key_for(prompt: str, style: str) -> str:
        return f"{prompt}_{style}"

    def _sweep(self, now: float) -> None:
        expired = [
            key for key, (_, stored_at) in self._entries.items()
            if now - stored_at > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]

    def get(self, key: str) -> Optional[str]:
        """Return the cached URL for key, refreshing its recency."""
        with self._lock:
            self._sweep(self._clock())
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry[0]

    def put(self, key: str, url: str) -> None:
        """Store a URL. Empty URLs are ignored."""
        if not url:
            return
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._entries[key] = (url, now)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class IllustrationPipeline:
    """Produces scene illustrations with fallback models, retries and caching."""

    def __init__(
        self,
        api_key: str,
        moderation: ModerationClient,
        cache: Optional[ImageCache] = None,
        timeout: float = 60.0,
        retry_config: Optional[RetryConfig] = None,
        stub_mode: bool = False,
        client: Optional[AsyncOpenAI] = None,
        cascade: Tuple[ImageConfiguration, ...] = IMAGE_CASCADE
    ):
        """Initialize the pipeline.

        Args:
            api_key: OpenAI API key
            moderation: Client used to screen enhanced prompts
            cache: Shared image cache (a default one is created)
            timeout: Deadline in seconds for one image generation call
            retry_config: Backoff for full-cascade retries; defaults to three
                retries starting at one second
            stub_mode: If True, returns a placeholder URL without calling the API
            client: Optional pre-built AsyncOpenAI client to share
            cascade: Ordered model configurations to try
        """
        self.moderation = moderation
        self.cache = cache or ImageCache()
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(
            max_retries=3,
            base_delay=1.0,
            retryable_exceptions=(IllustrationCascadeError,)
        )
        self.stub_mode = stub_mode
        self.cascade = cascade
        self.client = None if stub_mode else (client or AsyncOpenAI(api_key=api_key))

    async def obtain(
        self,
        prompt: str,
        style: str,
        adventure: Optional[AdventureDetails] = None
    ) -> ImageResult:
        """Return an illustration for the scene, from cache when possible.

        Never raises for provider failures; see the module docstring.
        """
        collector = get_metrics_collector()
        key = ImageCache.key_for(prompt, style)

        cached_url = self.cache.get(key)
        if cached_url:
            logger.debug("Image cache hit", prompt_preview=sanitize_for_log(prompt, 80))
            if collector:
                collector.record_image_outcome("cached")
            return ImageResult(url=cached_url, cached=True)

        enhanced = enhance_prompt(prompt, style, adventure)
        problems = await self.validate_prompt(enhanced)
        if problems:
            first_model = self.cascade[0].model if self.cascade else "unknown"
            return self._failure(IllustrationCascadeError(ImagePromptRejectedError(problems), first_model))

        run_cascade = with_retry(self.retry_config, "image_cascade")(self._run_cascade)

        try:
            with PhaseTimer("illustration", logger):
                url = await run_cascade(enhanced)
        except IllustrationCascadeError as e:
            return self._failure(e)

        self.cache.put(key, url)
        if collector:
            collector.record_image_outcome("generated")
        return ImageResult(url=url)

    def _failure(self, error: IllustrationCascadeError) -> ImageResult:
        error_type = classify_image_error(error)
        if (collector := get_metrics_collector()):
            collector.record_image_outcome(f"failed_{error_type}")
        logger.warning(
            "Illustration unavailable",
            error_type=error_type,
            last_model=error.model,
            error=redact_secrets(str(error.last_error))
        )
        return ImageResult(
            url="",
            error=ImageGenerationError(
                model=error.model,
                error_type=error_type,
                error_message=redact_secrets(str(error.last_error)) or type(error.last_error).__name__,
            ),
        )

    async def validate_prompt(self, prompt: str) -> List[str]:
        """Check an enhanced prompt before it is sent to the provider.

        Returns:
            A list of problems; empty when the prompt is acceptable
        """
        errors: List[str] = []

        if len(prompt) > MAX_PROMPT_LENGTH:
            errors.append(f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters")

        lowered = prompt.lower()
        for term in BLOCKED_TERMS:
            if term in lowered:
                errors.append(f"Prompt contains potentially inappropriate content: {term}")

        if await self.moderation.moderate(prompt):
            errors.append("Prompt flagged by content moderation")

        if "```" in prompt or '"""' in prompt:
            errors.append("Prompt contains invalid formatting characters")

        return errors

    async def _run_cascade(self, enhanced: str) -> str:
        """Try each configuration once, in order, with an already-validated prompt.

        Raises:
            IllustrationCascadeError: If every configuration failed
        """
        last_error: Optional[Exception] = None
        last_model = "unknown"

        for config in self.cascade:
            last_model = config.model
            try:
                return await self._generate_with_config(enhanced, config)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Image generation failed for model {config.model}",
                    quality=config.quality,
                    image_style=config.style,
                    error_type=type(e).__name__,
                    error=redact_secrets(str(e))
                )

        raise IllustrationCascadeError(last_error or RuntimeError("Empty cascade"), last_model)

    async def _generate_with_config(self, enhanced: str, config: ImageConfiguration) -> str:
        if self.stub_mode:
            return STUB_IMAGE_URL

        params = {
            "model": config.model,
            "prompt": enhanced,
            "n": 1,
            "size": config.size,
        }
        if config.model in STYLED_MODELS:
            params["quality"] = config.quality
            params["style"] = config.style

        start_time = time.time()
        response = await with_deadline(
            self.client.images.generate(**params),
            self.timeout,
            f"image_generation_{config.model}"
        )
        duration_ms = (time.time() - start_time) * 1000

        image = response.data[0] if response.data else None
        url = getattr(image, "url", None) if image is not None else None
        if not url and image is not None and getattr(image, "b64_json", None):
            url = f"data:image/png;base64,{image.b64_json}"
        if not url:
            raise ValueError(f"No image URL returned from {config.model}")

        if (collector := get_metrics_collector()):
            collector.record_latency(f"image_{config.model}", duration_ms)

        logger.info(
            "Image generated",
            model_name=config.model,
            duration_ms=f"{duration_ms:.2f}"
        )
        return url
