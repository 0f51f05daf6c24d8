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
"""Content moderation through the OpenAI moderations endpoint."""

from typing import Optional
from openai import AsyncOpenAI

from storyloom.logging import StructuredLogger, redact_secrets, sanitize_for_log
from storyloom.metrics import get_metrics_collector
from storyloom.resilience import with_deadline

logger = StructuredLogger(__name__)


class ModerationClient:
    """Flags unsafe text. Fails open: any provider failure means not flagged."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        stub_mode: bool = False,
        client: Optional[AsyncOpenAI] = None
    ):
        self.timeout = timeout
        self.stub_mode = stub_mode
        self.client = None if stub_mode else (client or AsyncOpenAI(api_key=api_key))

    async def moderate(self, text: str) -> bool:
        """Return True when the provider flags the text.

        Args:
            text: Player input or image prompt to check

        Returns:
            True if flagged; False if safe or if moderation is unavailable
        """
        if self.stub_mode:
            return False

        try:
            response = await with_deadline(
                self.client.moderations.create(input=text),
                self.timeout,
                "moderation"
            )
        except Exception as e:
            logger.warning(
                "Content moderation failed, allowing content",
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )
            if (collector := get_metrics_collector()):
                collector.record_error("moderation_unavailable")
            return False

        flagged = bool(response.results and response.results[0].flagged)
        if flagged:
            logger.info("Content flagged by moderation", text_preview=sanitize_for_log(text, 80))
        return flagged
