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
"""Heuristic recovery of structured replies from malformed provider text.

The provider is asked for a bare JSON object but regularly wraps it in a
markdown fence, surrounds it with prose, or ignores the format entirely.
This module turns any such text into a usable reply and tags how it got
there:

- strict: the whole text decoded and was validated
- recovered: a JSON object was found inside the text, or the prose was kept
  as narration
- synthetic: nothing usable was present; the reply is built from defaults
"""

import json
import re
from dataclasses import dataclass
from typing import Any, List, Literal, Optional

from storyloom.logging import StructuredLogger, redact_secrets
from storyloom.models import AdventureDetails, NarrationResponse
from storyloom.services.schema_validator import (
    NarrationDefaults,
    validate_adventure,
    validate_narration,
)

logger = StructuredLogger(__name__)

# Maximum payload size to log (to prevent log flooding and secret leakage)
MAX_PAYLOAD_LOG_LENGTH = 500

MAX_HARVESTED_ACTIONS = 3

FENCED_OBJECT_PATTERN = re.compile(r'```(?:json)?\s*({[\s\S]*?})\s*```')

ACTION_PATTERNS = (
    re.compile(r'Actions?:\s*([^\n]+)', re.IGNORECASE),
    re.compile(r'Options?:\s*([^\n]+)', re.IGNORECASE),
    re.compile(r'You can:\s*([^\n]+)', re.IGNORECASE),
)

ACTION_SEPARATOR = re.compile(r'[,;]|\band\b')

ParseKind = Literal["strict", "recovered", "synthetic"]


@dataclass
class ParseResult:
    """Result of turning provider text into a narration reply.

    Attributes:
        response: The validated reply (always present)
        kind: How the reply was obtained
        strategy: Which recovery step produced it (None for strict parses)
    """
    response: NarrationResponse
    kind: ParseKind
    strategy: Optional[str] = None


def _truncate_for_log(text: str) -> str:
    redacted = redact_secrets(text)
    if len(redacted) > MAX_PAYLOAD_LOG_LENGTH:
        return redacted[:MAX_PAYLOAD_LOG_LENGTH] + "... (truncated)"
    return redacted


def extract_fenced_object(text: str) -> Optional[dict]:
    """Decode the first ```json fenced object in text, if any."""
    match = FENCED_OBJECT_PATTERN.search(text)
    if not match:
        return None
    try:
        decoded = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the brace closing the one at start, or None."""
    depth = 0
    in_string = False
    escaped = False

    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return index + 1
    return None


def extract_balanced_object(text: str) -> Optional[dict]:
    """Decode the first balanced-brace JSON object embedded in text.

    Braces inside string literals (including escaped quotes) do not count
    towards nesting. Candidates that fail to decode are skipped.
    """
    start = text.find('{')
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            return None
        try:
            decoded = json.loads(text[start:end])
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded
        start = text.find('{', start + 1)
    return None


def harvest_actions(text: str) -> Optional[List[str]]:
    """Pull suggested actions out of prose such as "Options: run, hide".

    The first matching pattern wins. Its line is split on commas,
    semicolons and the word "and", trimmed and cut to three entries before
    empty entries are dropped, so "a and b" may yield fewer than three.
    """
    for pattern in ACTION_PATTERNS:
        match = pattern.search(text)
        if match:
            actions = [action.strip() for action in ACTION_SEPARATOR.split(match.group(1))]
            return actions[:MAX_HARVESTED_ACTIONS]
    return None


def _synthetic(defaults: NarrationDefaults) -> ParseResult:
    return ParseResult(
        response=NarrationResponse(
            narration=defaults.narration,
            image_prompt=defaults.image_prompt,
            quick_actions=list(defaults.quick_actions),
        ),
        kind="synthetic",
        strategy="synthetic",
    )


def recover_narration(text: Any, defaults: NarrationDefaults) -> ParseResult:
    """Recover a narration reply from text that did not decode as JSON.

    Strategies, in order: fenced object, first balanced-brace object,
    whole text as narration with an action harvest, synthetic reply.

    Args:
        text: Raw provider text
        defaults: Call-site defaults for missing fields

    Returns:
        ParseResult tagged recovered or synthetic
    """
    if not isinstance(text, str) or not text.strip():
        logger.warning("Provider reply empty, using synthetic narration")
        return _synthetic(defaults)

    fenced = extract_fenced_object(text)
    if fenced is not None:
        logger.info("Recovered narration from fenced block")
        return ParseResult(validate_narration(fenced, defaults), "recovered", "fenced")

    embedded = extract_balanced_object(text)
    if embedded is not None:
        logger.info("Recovered narration from embedded object")
        return ParseResult(validate_narration(embedded, defaults), "recovered", "balanced")

    harvested = harvest_actions(text)
    logger.info(
        "Using provider prose as narration",
        harvested_actions=len(harvested) if harvested is not None else 0
    )
    payload = {
        "narration": text.strip(),
        "image_prompt": defaults.image_prompt,
        "quick_actions": harvested if harvested is not None else list(defaults.quick_actions),
        "state_changes": {},
    }
    return ParseResult(validate_narration(payload, defaults), "recovered", "prose")


def parse_narration(text: Any, defaults: NarrationDefaults) -> ParseResult:
    """Full parse chain: strict decode and validate, then recovery.

    Never raises. A well-formed object inside a fence yields the same
    response as a strict parse of that object.
    """
    if isinstance(text, str):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(
                "Provider reply is not valid JSON, attempting recovery",
                error=str(e),
                payload_preview=_truncate_for_log(text)
            )
        else:
            if isinstance(decoded, dict):
                return ParseResult(validate_narration(decoded, defaults), "strict")
            logger.warning(
                "Provider reply decoded to a non-object, attempting recovery",
                decoded_type=type(decoded).__name__
            )

    return recover_narration(text, defaults)


def recover_adventure(text: Any) -> Optional[AdventureDetails]:
    """Recover an adventure definition from a fenced or embedded object.

    Returns:
        AdventureDetails, or None when no structured data is found
    """
    if not isinstance(text, str):
        return None

    payload = extract_fenced_object(text)
    if payload is None:
        payload = extract_balanced_object(text)
    if payload is None:
        logger.warning(
            "No structured adventure data found in provider reply",
            payload_preview=_truncate_for_log(text)
        )
        return None

    return validate_adventure(payload)


def parse_adventure(text: Any) -> tuple[Optional[AdventureDetails], Optional[ParseKind]]:
    """Strict decode of an adventure definition, then recovery.

    Returns:
        (details, kind) where both are None if nothing could be recovered
    """
    if isinstance(text, str):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            return validate_adventure(decoded), "strict"

    recovered = recover_adventure(text)
    if recovered is None:
        return None, None
    return recovered, "recovered"
