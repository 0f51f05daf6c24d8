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
"""API dependencies for caller identity, services and error responses."""

from typing import Any, Dict, Optional
from fastapi import Header, HTTPException, status

from storyloom.logging import StructuredLogger, get_request_id

logger = StructuredLogger(__name__)


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    extra: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create a structured error response.

    Args:
        error_type: Machine-readable error type
        message: Human-readable error message
        status_code: HTTP status code
        extra: Additional fields merged into the error object

    Returns:
        HTTPException with detail {"error": {type, message, request_id, ...}}
    """
    request_id = get_request_id()

    error_detail = {
        "error": {
            "type": error_type,
            "message": message,
            "request_id": request_id if request_id else None,
            **(extra or {})
        }
    }

    return HTTPException(
        status_code=status_code,
        detail=error_detail
    )


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Dependency that returns the caller's user id.

    The X-User-Id header is trusted; an upstream gateway is expected to
    authenticate the caller before the request reaches this service.

    Raises:
        HTTPException(401): If the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        logger.warning("X-User-Id header missing")
        raise create_error_response(
            error_type="unauthorized",
            message="X-User-Id header is required",
            status_code=status.HTTP_401_UNAUTHORIZED
        )
    return x_user_id.strip()


def get_turn_engine():
    """Dependency that provides the TurnEngine.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_turn_engine dependency must be overridden. "
        "This should be configured in storyloom.main module."
    )


def get_image_cache():
    """Dependency that provides the shared ImageCache.

    This is a placeholder that must be overridden by the application.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_image_cache dependency must be overridden. "
        "This should be configured in storyloom.main module."
    )
