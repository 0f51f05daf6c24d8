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
"""Validation, sanitisation and template cloning for custom adventures.

Validation works on the raw submitted object so that every problem can be
reported with a field path and a stable code, rather than failing on the
first type error.
"""

import re
from typing import Any, Dict, List, Optional

from storyloom.logging import StructuredLogger
from storyloom.models import (
    AdventureDetails,
    AdventureTemplate,
    AdventureValidationResult,
    CustomAdventure,
    ValidationIssue,
)
from storyloom.services.schema_validator import VALID_COMPLEXITIES, VALID_PACINGS, VALID_TONES

logger = StructuredLogger(__name__)

MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 100
MIN_DESCRIPTION_LENGTH = 10
MAX_DESCRIPTION_LENGTH = 1000
MIN_WORLD_DESCRIPTION_LENGTH = 50
MAX_WORLD_DESCRIPTION_LENGTH = 2000
MAX_ENVIRONMENT_LENGTH = 500
MAX_PLAYER_ROLE_LENGTH = 300
MAX_MAIN_OBJECTIVE_LENGTH = 500
MAX_VICTORY_CONDITIONS_LENGTH = 400
MAX_NPC_COUNT = 10
MAX_SECONDARY_GOALS = 5
MAX_PLOT_HOOKS = 5

PREDEFINED_TIME_PERIODS = ("ancient", "medieval", "renaissance", "industrial", "modern", "futuristic")

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f-\x9f]')
_JAVASCRIPT_SCHEME = re.compile(r'javascript:', re.IGNORECASE)
_WHITESPACE = re.compile(r'\s+')


def _section(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = payload.get(name)
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _count(value: Any) -> int:
    return len(value) if isinstance(value, list) else 0


class _Report:
    def __init__(self):
        self.errors: List[ValidationIssue] = []
        self.warnings: List[str] = []
        self.suggestions: List[str] = []

    def error(self, field: str, message: str, code: str) -> None:
        self.errors.append(ValidationIssue(field=field, message=message, code=code))

    def check_text(
        self,
        field: str,
        value: Any,
        label: str,
        code_prefix: str,
        max_length: int,
        min_length: int = 0,
        required_message: Optional[str] = None
    ) -> None:
        text = _text(value)
        if not text.strip():
            self.error(field, required_message or f"{label} is required", f"{code_prefix}_REQUIRED")
        elif min_length and len(text) < min_length:
            self.error(field, f"{label} must be at least {min_length} characters", f"{code_prefix}_TOO_SHORT")
        elif len(text) > max_length:
            self.error(field, f"{label} must not exceed {max_length} characters", f"{code_prefix}_TOO_LONG")


def _check_time_period(report: _Report, value: Any) -> None:
    field = "setting.time_period"
    if not value:
        report.error(field, "Time period is required", "TIME_PERIOD_REQUIRED")
        return

    if isinstance(value, str):
        if value not in PREDEFINED_TIME_PERIODS:
            report.error(field, "Invalid time period", "TIME_PERIOD_INVALID")
        return

    if not isinstance(value, dict):
        report.error(field, "Invalid time period", "TIME_PERIOD_INVALID")
        return

    period_type = value.get("type", "predefined")
    if period_type == "custom":
        if not _text(value.get("value")).strip() and not _text(value.get("custom_description")).strip():
            report.error(field, "Custom time period needs a description", "TIME_PERIOD_INVALID")
    elif period_type != "predefined" or value.get("value") not in PREDEFINED_TIME_PERIODS:
        report.error(field, "Invalid time period", "TIME_PERIOD_INVALID")


def validate_adventure_details(payload: Any) -> AdventureValidationResult:
    """Validate a submitted adventure definition.

    Args:
        payload: The raw adventure_details object from the request

    Returns:
        AdventureValidationResult with coded errors, warnings and suggestions
    """
    report = _Report()

    if not isinstance(payload, dict):
        report.error("adventure_details", "Adventure details are required", "ADVENTURE_DETAILS_REQUIRED")
        return AdventureValidationResult(is_valid=False, errors=report.errors)

    setting = _section(payload, "setting")
    characters = _section(payload, "characters")
    plot = _section(payload, "plot")
    style = _section(payload, "style_preferences")

    report.check_text(
        "title", payload.get("title"), "Title", "TITLE",
        MAX_TITLE_LENGTH, MIN_TITLE_LENGTH, "Adventure title is required"
    )
    report.check_text(
        "description", payload.get("description"), "Description", "DESCRIPTION",
        MAX_DESCRIPTION_LENGTH, MIN_DESCRIPTION_LENGTH, "Adventure description is required"
    )

    report.check_text(
        "setting.world_description", setting.get("world_description"), "World description",
        "WORLD_DESCRIPTION", MAX_WORLD_DESCRIPTION_LENGTH, MIN_WORLD_DESCRIPTION_LENGTH
    )
    _check_time_period(report, setting.get("time_period"))
    report.check_text(
        "setting.environment", setting.get("environment"), "Environment description",
        "ENVIRONMENT", MAX_ENVIRONMENT_LENGTH
    )

    report.check_text(
        "characters.player_role", characters.get("player_role"), "Player role description",
        "PLAYER_ROLE", MAX_PLAYER_ROLE_LENGTH
    )

    npcs = characters.get("key_npcs")
    npcs = npcs if isinstance(npcs, list) else []
    if len(npcs) > MAX_NPC_COUNT:
        report.error("characters.key_npcs", f"Maximum {MAX_NPC_COUNT} NPCs allowed", "TOO_MANY_NPCS")

    for index, npc in enumerate(npcs):
        npc = npc if isinstance(npc, dict) else {}
        prefix = f"characters.key_npcs[{index}]"
        if not _text(npc.get("name")).strip():
            report.error(f"{prefix}.name", "NPC name is required", "NPC_NAME_REQUIRED")
        if not _text(npc.get("description")).strip():
            report.error(f"{prefix}.description", "NPC description is required", "NPC_DESCRIPTION_REQUIRED")
        if not _text(npc.get("relationship")).strip():
            report.error(
                f"{prefix}.relationship", "NPC relationship to player is required", "NPC_RELATIONSHIP_REQUIRED"
            )

    report.check_text(
        "plot.main_objective", plot.get("main_objective"), "Main objective",
        "MAIN_OBJECTIVE", MAX_MAIN_OBJECTIVE_LENGTH
    )
    report.check_text(
        "plot.victory_conditions", plot.get("victory_conditions"), "Victory conditions",
        "VICTORY_CONDITIONS", MAX_VICTORY_CONDITIONS_LENGTH,
        required_message="Victory conditions are required"
    )
    if _count(plot.get("secondary_goals")) > MAX_SECONDARY_GOALS:
        report.error(
            "plot.secondary_goals", f"Maximum {MAX_SECONDARY_GOALS} secondary goals allowed",
            "TOO_MANY_SECONDARY_GOALS"
        )
    if _count(plot.get("plot_hooks")) > MAX_PLOT_HOOKS:
        report.error("plot.plot_hooks", f"Maximum {MAX_PLOT_HOOKS} plot hooks allowed", "TOO_MANY_PLOT_HOOKS")

    if style.get("tone") not in VALID_TONES:
        report.error("style_preferences.tone", "Valid tone selection is required", "TONE_INVALID")
    if style.get("complexity") not in VALID_COMPLEXITIES:
        report.error("style_preferences.complexity", "Valid complexity selection is required", "COMPLEXITY_INVALID")
    if style.get("pacing") not in VALID_PACINGS:
        report.error("style_preferences.pacing", "Valid pacing selection is required", "PACING_INVALID")

    _add_warnings_and_suggestions(report, setting, npcs, plot, style)

    if report.errors:
        logger.info(
            "Adventure failed validation",
            error_count=len(report.errors),
            codes=",".join(issue.code for issue in report.errors)
        )

    return AdventureValidationResult(
        is_valid=not report.errors,
        errors=report.errors,
        warnings=report.warnings,
        suggestions=report.suggestions,
    )


def _add_warnings_and_suggestions(
    report: _Report,
    setting: Dict[str, Any],
    npcs: List[Any],
    plot: Dict[str, Any],
    style: Dict[str, Any]
) -> None:
    if not npcs:
        report.warnings.append("No NPCs defined - consider adding some characters for richer storytelling")
        report.suggestions.append("Add at least 1-2 key NPCs to make the adventure more engaging")

    if _count(plot.get("secondary_goals")) == 0:
        report.warnings.append("No secondary goals defined - this may limit gameplay depth")
        report.suggestions.append("Consider adding 2-3 secondary objectives to provide multiple paths")

    if _count(plot.get("plot_hooks")) < 2:
        report.suggestions.append("Add more plot hooks to give the AI more creative directions")

    if len(_text(setting.get("world_description"))) < 100:
        report.suggestions.append("Consider expanding the world description for richer AI generation")

    if style.get("complexity") == "simple" and len(npcs) > 3:
        report.warnings.append("Many NPCs with simple complexity may create inconsistencies")

    estimated_turns = plot.get("estimated_turns")
    if (
        style.get("pacing") == "fast"
        and isinstance(estimated_turns, (int, float))
        and estimated_turns > 50
    ):
        report.warnings.append("Fast pacing with many turns may feel inconsistent")


def sanitize_text(text: Optional[str]) -> Optional[str]:
    """Strip markup, script schemes, control characters and extra whitespace."""
    if not text:
        return text
    cleaned = text.strip()
    cleaned = cleaned.replace("<", "").replace(">", "")
    cleaned = _JAVASCRIPT_SCHEME.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned)
    return _CONTROL_CHARS.sub("", cleaned)


def sanitize_adventure(details: AdventureDetails) -> AdventureDetails:
    """Return a sanitised deep copy of an adventure's free-text fields."""
    clean = details.model_copy(deep=True)

    clean.title = sanitize_text(clean.title)
    clean.description = sanitize_text(clean.description)
    clean.setting.world_description = sanitize_text(clean.setting.world_description)
    clean.setting.environment = sanitize_text(clean.setting.environment)
    clean.setting.special_rules = sanitize_text(clean.setting.special_rules)

    clean.characters.player_role = sanitize_text(clean.characters.player_role)
    for npc in clean.characters.key_npcs:
        npc.name = sanitize_text(npc.name)
        npc.description = sanitize_text(npc.description)
        npc.relationship = sanitize_text(npc.relationship)
        npc.personality = sanitize_text(npc.personality)
        npc.goals = sanitize_text(npc.goals)

    clean.plot.main_objective = sanitize_text(clean.plot.main_objective)
    clean.plot.victory_conditions = sanitize_text(clean.plot.victory_conditions)
    clean.plot.secondary_goals = [sanitize_text(goal) for goal in clean.plot.secondary_goals]
    clean.plot.plot_hooks = [sanitize_text(hook) for hook in clean.plot.plot_hooks]

    return clean


def clone_as_template(adventure: CustomAdventure) -> AdventureTemplate:
    """Build a read-only template view of a stored adventure."""
    return AdventureTemplate(
        template_id=adventure.adventure_id,
        title=adventure.details.title,
        description=adventure.details.description,
        details=adventure.details.model_copy(deep=True),
        is_public=adventure.is_public,
        tags=list(adventure.tags),
        usage_count=adventure.usage_count,
        created_at=adventure.created_at,
    )
