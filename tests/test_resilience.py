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
"""Tests for resilience utilities (retry with backoff, deadlines)."""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch

from storyloom.resilience import RetryConfig, with_deadline, with_retry


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_calculate_delay_exponential_backoff(self):
        """Test that delay calculation follows exponential backoff."""
        config = RetryConfig(max_retries=3, base_delay=1.0, max_delay=30.0)

        assert config.calculate_delay(1) == 1.0
        assert config.calculate_delay(2) == 2.0
        assert config.calculate_delay(3) == 4.0

    def test_calculate_delay_capped_at_max(self):
        config = RetryConfig(max_retries=10, base_delay=1.0, max_delay=5.0)

        assert config.calculate_delay(10) == 5.0

    def test_is_retryable_default(self):
        """Test that all exceptions are retryable by default."""
        config = RetryConfig()

        assert config.is_retryable(ValueError("test"))
        assert config.is_retryable(RuntimeError("test"))

    def test_is_retryable_specific_exceptions(self):
        config = RetryConfig(retryable_exceptions=(ValueError,))

        assert config.is_retryable(ValueError("test"))
        assert not config.is_retryable(KeyError("test"))


class TestWithRetry:
    """Tests for the with_retry decorator."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        operation = AsyncMock(return_value="ok")
        wrapped = with_retry(RetryConfig(max_retries=3, base_delay=0), "op")(operation)

        assert await wrapped() == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        operation = AsyncMock(side_effect=[ValueError("a"), ValueError("b"), "ok"])
        wrapped = with_retry(RetryConfig(max_retries=3, base_delay=0), "op")(operation)

        assert await wrapped() == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_total_attempts_is_retries_plus_one(self):
        """Test that max_retries=3 means four attempts before giving up."""
        operation = AsyncMock(side_effect=ValueError("always"))
        wrapped = with_retry(RetryConfig(max_retries=3, base_delay=0), "op")(operation)

        with pytest.raises(ValueError, match="always"):
            await wrapped()

        assert operation.await_count == 4

    @pytest.mark.asyncio
    async def test_backoff_delays(self):
        """Test that the sleeps between attempts are 1s, 2s, 4s."""
        operation = AsyncMock(side_effect=ValueError("always"))
        wrapped = with_retry(RetryConfig(max_retries=3, base_delay=1.0), "op")(operation)

        with patch("storyloom.resilience.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(ValueError):
                await wrapped()

        assert [call.args[0] for call in mock_sleep.await_args_list] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_exception_raises_immediately(self):
        operation = AsyncMock(side_effect=KeyError("nope"))
        config = RetryConfig(max_retries=3, base_delay=0, retryable_exceptions=(ValueError,))
        wrapped = with_retry(config, "op")(operation)

        with pytest.raises(KeyError):
            await wrapped()

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        operation = AsyncMock(side_effect=ValueError("once"))
        wrapped = with_retry(RetryConfig(max_retries=0, base_delay=0), "op")(operation)

        with pytest.raises(ValueError):
            await wrapped()

        assert operation.await_count == 1


class TestWithDeadline:
    """Tests for with_deadline."""

    @pytest.mark.asyncio
    async def test_returns_result_within_deadline(self):
        async def quick():
            return 7

        assert await with_deadline(quick(), 1.0, "quick") == 7

    @pytest.mark.asyncio
    async def test_raises_timeout_when_deadline_expires(self):
        async def slow():
            await asyncio.sleep(1.0)

        with pytest.raises(asyncio.TimeoutError):
            await with_deadline(slow(), 0.01, "slow")
