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
"""Storage collaborator for sessions, saves and custom adventures.

The turn engine talks to storage only through the SessionStore protocol.
InMemorySessionStore is the bundled implementation:
- Thread-safe access under a single lock
- Records are deep-copied in and out so callers never share mutable state
- Save names are unique per user
"""

import threading
from typing import Dict, List, Optional, Protocol, Tuple

from storyloom.logging import StructuredLogger
from storyloom.models import CustomAdventure, GameSession, SavedGame, Turn

logger = StructuredLogger(__name__)


class SessionStoreError(Exception):
    """Raised when the storage collaborator cannot complete an operation."""
    pass


class DuplicateKeyError(SessionStoreError):
    """Raised when a record would violate a uniqueness constraint."""
    pass


class SessionStore(Protocol):
    """Persistence contract used by the turn engine."""

    async def create_session(self, session: GameSession) -> None:
        ...

    async def load_session(self, session_id: str, user_id: str) -> Optional[GameSession]:
        ...

    async def update_session(self, session: GameSession) -> None:
        ...

    async def save_turn(self, session: GameSession, turn: Turn) -> None:
        """Append turn to the stored history and persist session state."""
        ...

    async def save_game(self, saved: SavedGame) -> None:
        ...

    async def load_saved_games(self, user_id: str, limit: int = 50) -> List[SavedGame]:
        ...

    async def save_adventure(self, adventure: CustomAdventure) -> None:
        ...

    async def get_adventure(self, adventure_id: str) -> Optional[CustomAdventure]:
        ...

    async def list_public_templates(self, limit: int = 20) -> List[CustomAdventure]:
        ...


class InMemorySessionStore:
    """Process-local SessionStore implementation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, GameSession] = {}
        self._saves: Dict[str, SavedGame] = {}
        self._save_names: Dict[Tuple[str, str], str] = {}
        self._adventures: Dict[str, CustomAdventure] = {}

    async def create_session(self, session: GameSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise DuplicateKeyError(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = session.model_copy(deep=True)
        logger.debug("Session created", session_id=session.session_id)

    async def load_session(self, session_id: str, user_id: str) -> Optional[GameSession]:
        with self._lock:
            stored = self._sessions.get(session_id)
            if stored is None or stored.user_id != user_id:
                return None
            return stored.model_copy(deep=True)

    async def update_session(self, session: GameSession) -> None:
        with self._lock:
            if session.session_id not in self._sessions:
                raise SessionStoreError(f"Session {session.session_id} does not exist")
            self._sessions[session.session_id] = session.model_copy(deep=True)

    async def save_turn(self, session: GameSession, turn: Turn) -> None:
        with self._lock:
            stored = self._sessions.get(session.session_id)
            if stored is None:
                raise SessionStoreError(f"Session {session.session_id} does not exist")
            if any(existing.turn_id == turn.turn_id for existing in stored.turn_history):
                raise DuplicateKeyError(f"Turn {turn.turn_id} already saved")

            updated = session.model_copy(deep=True)
            updated.turn_history = [*stored.turn_history, turn]
            updated.metadata.total_turns = len(updated.turn_history)
            self._sessions[session.session_id] = updated

        logger.debug(
            "Turn saved",
            session_id=session.session_id,
            turn_number=turn.turn_number
        )

    async def save_game(self, saved: SavedGame) -> None:
        name_key = (saved.user_id, saved.save_name)
        with self._lock:
            if name_key in self._save_names:
                raise DuplicateKeyError(f"A save named {saved.save_name!r} already exists")
            self._save_names[name_key] = saved.save_id
            self._saves[saved.save_id] = saved.model_copy(deep=True)

    async def load_saved_games(self, user_id: str, limit: int = 50) -> List[SavedGame]:
        with self._lock:
            saves = [save for save in self._saves.values() if save.user_id == user_id]
        saves.sort(key=lambda save: save.created_at, reverse=True)
        return [save.model_copy(deep=True) for save in saves[:limit]]

    async def save_adventure(self, adventure: CustomAdventure) -> None:
        with self._lock:
            self._adventures[adventure.adventure_id] = adventure.model_copy(deep=True)

    async def get_adventure(self, adventure_id: str) -> Optional[CustomAdventure]:
        with self._lock:
            stored = self._adventures.get(adventure_id)
            return stored.model_copy(deep=True) if stored is not None else None

    async def list_public_templates(self, limit: int = 20) -> List[CustomAdventure]:
        with self._lock:
            templates = [
                adventure for adventure in self._adventures.values()
                if adventure.is_template and adventure.is_public
            ]
        templates.sort(key=lambda adventure: (adventure.usage_count, adventure.created_at), reverse=True)
        return [template.model_copy(deep=True) for template in templates[:limit]]
