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
"""Narration generation using the OpenAI chat completions API."""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Tuple
from openai import AsyncOpenAI
import openai

from storyloom.logging import StructuredLogger, redact_secrets, get_turn_id
from storyloom.metrics import get_metrics_collector
from storyloom.models import (
    AdventureDetails,
    BEGIN_ADVENTURE,
    GameContext,
    NarrationResponse,
    StateChanges,
)
from storyloom.prompting.prompt_builder import PromptBlocks, PromptBuilder
from storyloom.resilience import with_deadline
from storyloom.services.recovery import parse_adventure, parse_narration
from storyloom.services.schema_validator import NarrationDefaults, validate_adventure

logger = StructuredLogger(__name__)

ParseKindOrFallback = Literal["strict", "recovered", "synthetic", "fallback"]

NARRATION_PARAMS: Dict[str, Any] = {
    "temperature": 0.8,
    "max_tokens": 800,
    "top_p": 0.9,
    "frequency_penalty": 0.3,
    "presence_penalty": 0.3,
}

PROLOGUE_PARAMS: Dict[str, Any] = {
    "temperature": 0.9,
    "max_tokens": 1000,
    "top_p": 0.95,
    "frequency_penalty": 0.2,
    "presence_penalty": 0.4,
}

ADVENTURE_PARAMS: Dict[str, Any] = {
    "temperature": 0.8,
    "max_tokens": 1000,
}

NARRATION_FALLBACK_TEXT = "The AI encountered an error. Please try again."
PROLOGUE_FALLBACK_TEXT = "Failed to generate adventure prologue. Please try again."

FALLBACK_ADVENTURE = AdventureDetails.model_validate({
    "title": "Default Adventure",
    "description": "A default adventure generated due to an error",
    "setting": {
        "world_description": (
            "A mysterious realm filled with ancient ruins and untold magical secrets, "
            "challenging every brave explorer who enters"
        ),
        "time_period": {"type": "predefined", "value": "medieval"},
        "environment": "Unknown territory",
    },
    "characters": {"player_role": "Adventurer", "key_npcs": []},
    "plot": {
        "main_objective": "Explore and discover",
        "secondary_goals": [],
        "plot_hooks": [],
        "victory_conditions": "Complete your journey",
    },
    "style_preferences": {"tone": "serious", "complexity": "moderate", "pacing": "moderate"},
})


class LLMClientError(Exception):
    """Base exception for LLM client errors."""
    pass


class LLMConfigurationError(LLMClientError):
    """Raised when the provider rejects our credentials or configuration."""
    pass


class LLMRateLimitError(LLMClientError):
    """Raised when the provider rate limits a generation call."""
    pass


class LLMInvalidRequestError(LLMClientError):
    """Raised when the provider rejects a request as malformed."""
    pass


class LLMResponseError(LLMClientError):
    """Raised when the provider returns no usable content."""
    pass


@dataclass
class NarrationResult:
    """Result of one narration or prologue generation.

    Attributes:
        response: The validated reply (always present)
        parse_kind: How the reply was obtained; "fallback" means the provider
            call itself failed and a canned reply was used
        tokens_used: Provider-reported total tokens (0 when unknown)
        provider_error: Description of the provider failure for fallbacks
    """
    response: NarrationResponse
    parse_kind: ParseKindOrFallback
    tokens_used: int = 0
    provider_error: Optional[str] = None


def map_provider_error(error: Exception) -> Optional[LLMClientError]:
    """Translate provider errors that must reach the caller.

    Returns:
        The exception to raise for 429/401/400 responses, or None when the
        failure should degrade to a fallback reply instead
    """
    if isinstance(error, openai.RateLimitError):
        return LLMRateLimitError("Rate limit exceeded. Please try again later.")
    if isinstance(error, openai.AuthenticationError):
        return LLMConfigurationError("Invalid OpenAI API key")
    if isinstance(error, openai.BadRequestError):
        return LLMInvalidRequestError(f"Invalid request to OpenAI API: {error.message}")

    status_code = getattr(error, "status_code", None)
    if status_code == 429:
        return LLMRateLimitError("Rate limit exceeded. Please try again later.")
    if status_code == 401:
        return LLMConfigurationError("Invalid OpenAI API key")
    if status_code == 400:
        return LLMInvalidRequestError(f"Invalid request to OpenAI API: {error}")
    return None


class NarrationGenerator:
    """Client for narrative generation through OpenAI chat completions.

    This client:
    - Builds prompts with PromptBuilder and calls the provider under a deadline
    - Runs replies through strict validation, then heuristic recovery
    - Raises only for rate limiting, bad credentials and rejected requests
    - Degrades every other provider failure to a canned fallback reply
    - Supports stub mode for offline development
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4",
        timeout: float = 30.0,
        stub_mode: bool = False,
        prompt_builder: Optional[PromptBuilder] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the narration generator.

        Args:
            api_key: OpenAI API key
            model: Chat model name
            timeout: Deadline in seconds for a single generation call
            stub_mode: If True, returns stub replies without calling the API
            prompt_builder: Optional PromptBuilder (a default one is created)
            client: Optional pre-built AsyncOpenAI client to share
        """
        if not api_key or api_key.strip() == "":
            raise LLMConfigurationError("API key cannot be empty")

        self.model = model
        self.timeout = timeout
        self.stub_mode = stub_mode
        self.prompt_builder = prompt_builder or PromptBuilder()

        if stub_mode:
            self.client = None
            logger.info("Initialized NarrationGenerator in STUB MODE (no API calls will be made)")
        else:
            self.client = client or AsyncOpenAI(api_key=api_key)
            logger.info(
                f"Initialized NarrationGenerator with model={self.model}, timeout={self.timeout}s"
            )

    async def generate(self, context: GameContext) -> NarrationResult:
        """Generate the narration for one turn.

        Args:
            context: Game context for the turn

        Returns:
            NarrationResult; never a malformed reply

        Raises:
            LLMRateLimitError: Provider returned 429
            LLMConfigurationError: Provider rejected the API key
            LLMInvalidRequestError: Provider rejected the request
        """
        defaults = NarrationDefaults.for_turn(context.world_state.location, context.genre)
        blocks = self.prompt_builder.build_turn_prompt(context)

        try:
            content, tokens = await self._complete(blocks, NARRATION_PARAMS, "narration", context.player_input)
        except Exception as e:
            return self._fallback_or_raise(e, "narration", defaults, NARRATION_FALLBACK_TEXT)

        parsed = parse_narration(content, defaults)
        self._record_outcome(parsed.kind, tokens)

        logger.info(
            "Narration generated",
            parse_kind=parsed.kind,
            strategy=parsed.strategy,
            narration_length=len(parsed.response.narration),
            tokens_used=tokens,
            turn_id=get_turn_id()
        )
        return NarrationResult(response=parsed.response, parse_kind=parsed.kind, tokens_used=tokens)

    async def generate_prologue(self, details: AdventureDetails) -> NarrationResult:
        """Generate the opening scene of a custom adventure."""
        defaults = NarrationDefaults.for_prologue(details.setting.world_description)
        blocks = self.prompt_builder.build_prologue_prompt(details)

        try:
            content, tokens = await self._complete(blocks, PROLOGUE_PARAMS, "prologue", BEGIN_ADVENTURE)
        except Exception as e:
            result = self._fallback_or_raise(e, "prologue", defaults, PROLOGUE_FALLBACK_TEXT)
            result.response.state_changes = StateChanges(flags={"prologue_failed": True})
            return result

        parsed = parse_narration(content, defaults)
        self._record_outcome(parsed.kind, tokens)

        logger.info(
            "Custom adventure prologue generated",
            title=details.title,
            parse_kind=parsed.kind,
            tokens_used=tokens
        )
        return NarrationResult(response=parsed.response, parse_kind=parsed.kind, tokens_used=tokens)

    async def generate_adventure(self, prompt: str) -> Tuple[AdventureDetails, ParseKindOrFallback]:
        """Turn a free-text idea into an adventure definition.

        Falls back to FALLBACK_ADVENTURE when nothing structured is found or
        the provider call fails transiently.

        Returns:
            (details, parse_kind)

        Raises:
            LLMRateLimitError, LLMConfigurationError, LLMInvalidRequestError
        """
        blocks = self.prompt_builder.build_adventure_prompt(prompt)

        try:
            content, tokens = await self._complete(blocks, ADVENTURE_PARAMS, "adventure", prompt)
        except Exception as e:
            mapped = map_provider_error(e)
            if mapped is not None:
                self._log_mapped_error(mapped, "adventure", e)
                raise mapped from e
            logger.error(
                "Adventure generation failed, using fallback adventure",
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )
            self._record_outcome("fallback", 0)
            return FALLBACK_ADVENTURE.model_copy(deep=True), "fallback"

        details, kind = parse_adventure(content)
        if details is None:
            logger.warning("No structured adventure in provider reply, using fallback adventure")
            self._record_outcome("fallback", tokens)
            return FALLBACK_ADVENTURE.model_copy(deep=True), "fallback"

        self._record_outcome(kind, tokens)
        logger.info("Adventure generated from prompt", title=details.title, parse_kind=kind)
        return details, kind

    async def _complete(
        self,
        blocks: PromptBlocks,
        params: Dict[str, Any],
        operation: str,
        subject: str
    ) -> Tuple[str, int]:
        """Call the provider and return (content, total_tokens)."""
        if self.stub_mode:
            return self._stub_content(operation, subject), 0

        messages = [{"role": "system", "content": blocks.system}]
        if blocks.context:
            messages.append({"role": "user", "content": blocks.context})
        messages.append({"role": "user", "content": blocks.user})

        start_time = time.time()
        response = await with_deadline(
            self.client.chat.completions.create(model=self.model, messages=messages, **params),
            self.timeout,
            f"{operation}_generation"
        )
        duration_ms = (time.time() - start_time) * 1000

        if (collector := get_metrics_collector()):
            collector.record_latency(f"llm_{operation}", duration_ms)

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise LLMResponseError("No response from OpenAI")

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0

        logger.debug(
            f"Provider call completed: {operation}",
            duration_ms=f"{duration_ms:.2f}",
            content_length=len(content),
            tokens_used=tokens
        )
        return content, tokens

    def _fallback_or_raise(
        self,
        error: Exception,
        operation: str,
        defaults: NarrationDefaults,
        fallback_text: str
    ) -> NarrationResult:
        mapped = map_provider_error(error)
        if mapped is not None:
            self._log_mapped_error(mapped, operation, error)
            raise mapped from error

        logger.error(
            f"{operation.capitalize()} generation failed, using fallback reply",
            error_type=type(error).__name__,
            error=redact_secrets(str(error)),
            turn_id=get_turn_id()
        )
        self._record_outcome("fallback", 0)
        if (collector := get_metrics_collector()):
            collector.record_error(f"llm_{type(error).__name__.lower()}")

        return NarrationResult(
            response=NarrationResponse(
                narration=fallback_text,
                image_prompt=defaults.image_prompt,
                quick_actions=list(defaults.quick_actions),
            ),
            parse_kind="fallback",
            provider_error=f"{type(error).__name__}: {redact_secrets(str(error))}",
        )

    def _log_mapped_error(self, mapped: LLMClientError, operation: str, error: Exception) -> None:
        log = logger.error if isinstance(mapped, LLMConfigurationError) else logger.warning
        log(
            f"Provider rejected {operation} request",
            error_type=type(mapped).__name__,
            provider_error=redact_secrets(str(error))
        )
        if (collector := get_metrics_collector()):
            collector.record_error(type(mapped).__name__)

    def _record_outcome(self, kind: str, tokens: int) -> None:
        if (collector := get_metrics_collector()):
            collector.record_parse_kind(kind)
            if tokens:
                collector.record_tokens(tokens)

    def _stub_content(self, operation: str, subject: str) -> str:
        """Deterministic provider text for offline development."""
        logger.debug("Generating stub content (API not called)", operation=operation)

        snippet = subject[:100]
        if operation == "adventure":
            return json.dumps(validate_adventure({
                "title": "The Stub Expedition",
                "description": f"[STUB MODE] An adventure based on: {snippet}",
                "setting": {
                    "world_description": (
                        "[STUB MODE] A quiet frontier valley of terraced farms and old watchtowers, "
                        "where travellers trade rumours of a buried archive."
                    ),
                    "time_period": {"type": "predefined", "value": "medieval"},
                    "environment": "A river valley",
                },
                "characters": {"player_role": "Wandering scholar", "key_npcs": []},
                "plot": {
                    "main_objective": "Find the buried archive",
                    "secondary_goals": [],
                    "plot_hooks": [],
                    "victory_conditions": "Recover the archive's index",
                },
            }).model_dump())

        flags: Dict[str, Any] = {"prologue_complete": True} if operation == "prologue" else {}
        return json.dumps({
            "narration": (
                f"[STUB MODE] This is a placeholder narrative response. "
                f"In production, this would be generated by {self.model}. "
                f"Based on your action: '{snippet}'"
            ),
            "image_prompt": "[STUB MODE] A placeholder scene",
            "quick_actions": ["Look around", "Continue", "Check inventory"],
            "state_changes": {"flags": flags},
        })
