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
"""Prompt builder for constructing narration prompts from game context."""

import json
from typing import List, NamedTuple, Optional
from storyloom.models import AdaptiveElements, AdventureDetails, GameContext, Turn, WorldState


class PromptBlocks(NamedTuple):
    """The three message blocks sent to the provider.

    context may be empty, in which case it is not sent.
    """
    system: str
    context: str
    user: str


PACING_GUIDANCE = {
    "fast": "concise and action-packed",
    "slow": "detailed and atmospheric",
}
DEFAULT_PACING_GUIDANCE = "balanced between description and action"

LENGTH_GUIDANCE = {
    "detailed": "rich and descriptive, two or three paragraphs",
    "concise": "brief, no more than four sentences",
}

RATING_GUIDANCE = {
    "PG-13": "PG-13. Keep violence non-graphic and avoid explicit content",
    "R": "R. Mature themes, violence and complex moral situations are allowed",
}

RECENT_EVENTS_SHOWN = 3
RECENT_NARRATION_PREVIEW = 100


def pacing_guidance(pacing: str) -> str:
    """Describe how narration should read for a pacing preference."""
    return PACING_GUIDANCE.get(pacing, DEFAULT_PACING_GUIDANCE)


class PromptBuilder:
    """Builds structured prompts for narration, prologues and adventures.

    The builder is pure: the same context always yields the same blocks and
    no input is modified.
    """

    OUTPUT_SCHEMA = """CRITICAL: Always respond with valid JSON in this exact format:
{
  "narration": "Your rich, descriptive response in second person",
  "image_prompt": "Detailed scene description for image generation",
  "quick_actions": ["Action 1", "Action 2", "Action 3"],
  "state_changes": {
    "location": "new location name if changed",
    "inventory": ["items to add to inventory"],
    "flags": {"story_flag": "value"}
  }
}

Do not include any text outside the JSON structure."""

    PROLOGUE_OUTPUT_SCHEMA = """CRITICAL: Respond with valid JSON in this exact format:
{
  "narration": "Your engaging prologue in second person",
  "image_prompt": "Detailed opening scene description for image generation",
  "quick_actions": ["Starting Action 1", "Starting Action 2", "Starting Action 3"],
  "state_changes": {
    "location": "starting location name",
    "inventory": ["starting items if any"],
    "flags": {"prologue_complete": true}
  }
}

Do not include any text outside the JSON structure."""

    ADVENTURE_SYSTEM_INSTRUCTIONS = (
        "You are an AI that creates detailed JSON for text adventures. "
        "Return a JSON matching the AdventureDetails interface."
    )

    def build_turn_prompt(self, context: GameContext) -> PromptBlocks:
        """Build the prompt for one narration call.

        Args:
            context: Game context for the turn

        Returns:
            PromptBlocks with system, context and user blocks
        """
        if context.adventure_details is not None:
            system = self._custom_system_prompt(context.adventure_details, context.adaptive_elements)
        else:
            system = self._genre_system_prompt(context.genre, context.content_rating)

        closing = self._closing_lines(context)
        if closing:
            system = f"{system}\n\n{closing}"

        return PromptBlocks(
            system=system,
            context=self._context_prompt(context),
            user=self._player_action_prompt(context.player_input),
        )

    def build_prologue_prompt(self, details: AdventureDetails) -> PromptBlocks:
        """Build the prompt for a custom adventure's opening scene."""
        setting = details.setting
        style = details.style_preferences

        system = f"""You are an expert Dungeon Master creating the opening scene for "{details.title}", a custom interactive adventure.

ADVENTURE SETUP:
- World: {setting.world_description}
- Time Period: {setting.time_period.display}
- Environment: {setting.environment}
- Player Role: {details.characters.player_role}
- Main Objective: {details.plot.main_objective}
- Tone: {style.tone}
- Pacing: {style.pacing}

Create an engaging opening scene that:
- Establishes the world and atmosphere immediately
- Introduces the player character in their role
- Sets up the main adventure hook naturally
- Matches the specified tone and style
- Provides a vivid, immersive introduction
- Ends with clear options for the player to begin their journey

Your prologue should be {pacing_guidance(style.pacing)}.

{self.PROLOGUE_OUTPUT_SCHEMA}"""

        user = f"""Generate the opening scene for this custom adventure. The player should be introduced to their role and the world in an engaging way that naturally leads to the main quest.

Remember:
- Set the scene vividly in {setting.environment}
- Show, don't tell, the player's role as {details.characters.player_role}
- Create intrigue around the main objective without revealing everything
- Match the {style.tone} tone throughout
- Provide meaningful starting choices for the player"""

        return PromptBlocks(system=system, context="", user=user)

    def build_adventure_prompt(self, prompt: str) -> PromptBlocks:
        """Build the prompt that turns a free-text idea into an adventure."""
        return PromptBlocks(
            system=self.ADVENTURE_SYSTEM_INSTRUCTIONS,
            context="",
            user=f"Prompt: {prompt}\nReturn only valid JSON",
        )

    def _genre_system_prompt(self, genre: str, content_rating: Optional[str]) -> str:
        mature_line = (
            "\n- Allows mature themes and content (R-rated) including violence, "
            "adult themes, and complex moral situations"
            if content_rating != "PG-13" else ""
        )
        return f"""You are an expert Dungeon Master running an interactive {genre} adventure game.
Create immersive second-person narration that:
- Responds naturally to player actions with vivid detail
- Maintains world consistency and logical consequences
- Provides rich sensory descriptions (sight, sound, smell, touch){mature_line}
- Moves the story forward meaningfully
- Suggests 2-3 logical next actions for the player

{self.OUTPUT_SCHEMA}"""

    def _custom_system_prompt(
        self,
        details: AdventureDetails,
        adaptive: Optional[AdaptiveElements]
    ) -> str:
        setting = details.setting
        characters = details.characters
        plot = details.plot
        style = details.style_preferences

        sections = [
            f'You are an expert Dungeon Master running "{details.title}", a custom interactive adventure.',
            f"\n\nADVENTURE WORLD:\n{setting.world_description}",
            f"\n\nTIME PERIOD: {setting.time_period.display}",
            f"\nENVIRONMENT: {setting.environment}",
        ]
        if setting.special_rules:
            sections.append(f"\nSPECIAL RULES: {setting.special_rules}")

        sections.append(f"\n\nPLAYER ROLE: {characters.player_role}")

        if characters.key_npcs:
            sections.append("\n\nKEY NPCs:")
            for npc in characters.key_npcs:
                line = f"\n- {npc.name}: {npc.description} ({npc.relationship})"
                if npc.personality:
                    line += f" Personality: {npc.personality}"
                if npc.goals:
                    line += f" Goals: {npc.goals}"
                sections.append(line)

        sections.append(f"\n\nMAIN OBJECTIVE: {plot.main_objective}")
        sections.append(f"\nVICTORY CONDITIONS: {plot.victory_conditions}")
        if plot.secondary_goals:
            sections.append(f"\nSECONDARY GOALS: {', '.join(plot.secondary_goals)}")
        if plot.plot_hooks:
            sections.append(f"\nPOTENTIAL PLOT HOOKS: {', '.join(plot.plot_hooks)}")

        sections.append(
            "\n\nSTYLE PREFERENCES:"
            f"\n- Tone: {style.tone}"
            f"\n- Complexity: {style.complexity}"
            f"\n- Pacing: {style.pacing}"
        )

        if adaptive is not None:
            if adaptive.discovered_locations:
                sections.append(f"\n\nDISCOVERED LOCATIONS: {', '.join(adaptive.discovered_locations)}")
            if adaptive.met_npcs:
                sections.append(f"\nMET NPCs: {', '.join(adaptive.met_npcs)}")
            if adaptive.completed_objectives:
                sections.append(f"\nCOMPLETED OBJECTIVES: {', '.join(adaptive.completed_objectives)}")

        sections.append(f"""

Create immersive second-person narration that:
- Stays true to the adventure's world, characters, and objectives
- Responds naturally to player actions with vivid detail
- Maintains consistency with the established setting and NPCs
- Provides rich sensory descriptions appropriate to the tone
- Moves toward the main objective while allowing exploration
- Suggests 2-3 logical actions that fit the adventure's style
- Uses the specified tone ({style.tone}) and pacing ({style.pacing})

{self.OUTPUT_SCHEMA}""")

        return "".join(sections)

    def _closing_lines(self, context: GameContext) -> str:
        """Narration guidance appended after the output schema."""
        lines: List[str] = []
        if context.adventure_details is not None:
            style = context.adventure_details.style_preferences
            lines.append(f"- Tone: keep a {style.tone} tone")
            lines.append(f"- Pacing: narration should be {pacing_guidance(style.pacing)}")
            lines.append(f"- Complexity: {style.complexity} storytelling")

        lines.append(f"- Length: {LENGTH_GUIDANCE.get(context.style_preference, LENGTH_GUIDANCE['detailed'])}")

        if context.content_rating in RATING_GUIDANCE:
            lines.append(f"- Content rating: {RATING_GUIDANCE[context.content_rating]}")

        return "NARRATION GUIDANCE:\n" + "\n".join(lines)

    def _context_prompt(self, context: GameContext) -> str:
        parts = [self._format_world_state(context.world_state)]

        if context.adventure_details is not None:
            parts.append("\n\nADVENTURE PROGRESS:")
            adaptive = context.adaptive_elements
            if adaptive is not None:
                if adaptive.discovered_locations:
                    parts.append(f"\nLocations discovered: {', '.join(adaptive.discovered_locations)}")
                if adaptive.met_npcs:
                    parts.append(f"\nNPCs encountered: {', '.join(adaptive.met_npcs)}")
                if adaptive.completed_objectives:
                    parts.append(f"\nObjectives completed: {', '.join(adaptive.completed_objectives)}")

        parts.append(self._format_history(context.recent_history))
        return "".join(parts)

    def _format_world_state(self, world_state: WorldState) -> str:
        text = (
            "CURRENT WORLD STATE:"
            f"\nLocation: {world_state.location}"
            f"\nInventory: {', '.join(world_state.inventory) or 'empty'}"
            f"\nChapter: {world_state.current_chapter}"
        )

        present = [npc.name for npc in world_state.npcs.values() if npc.is_active]
        if present:
            text += f"\nNPCs present: {', '.join(present)}"

        if world_state.flags:
            text += f"\nStory flags: {json.dumps(world_state.flags, separators=(',', ':'), default=str)}"

        return text

    def _format_history(self, history: List[Turn]) -> str:
        if not history:
            return ""

        lines = ["\n\nRECENT EVENTS:"]
        for index, turn in enumerate(history[-RECENT_EVENTS_SHOWN:], start=1):
            preview = turn.narration[:RECENT_NARRATION_PREVIEW]
            lines.append(f'\n{index}. Player: "{turn.player_input}" → {preview}...')
        return "".join(lines)

    def _player_action_prompt(self, player_input: str) -> str:
        return (
            f'PLAYER ACTION: "{player_input}"\n\n'
            "Please respond with how the world reacts to this action. Be creative but logical."
        )
