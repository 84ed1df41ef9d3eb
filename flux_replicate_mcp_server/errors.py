# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
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
"""Error taxonomy for the Flux Replicate MCP server.

Every failure raised inside the server is a ``FluxMcpError`` tagged with an
``ErrorCode``. The request orchestrator catches these once and turns them into
an error response; nothing else in the request path needs to know about the
individual categories beyond deciding whether an error may be retried.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Categories of server errors.

    Attributes:
        AUTH: Missing or rejected credential.
        API: Upstream provider failure or malformed upstream response.
        VALIDATION: Caller input failed a precondition.
        PROCESSING: Local decode, encode, resize or filesystem failure.
        TIMEOUT: Upstream call or download exceeded its time budget.
    """
    AUTH = 'AUTH'
    API = 'API'
    VALIDATION = 'VALIDATION'
    PROCESSING = 'PROCESSING'
    TIMEOUT = 'TIMEOUT'


class FluxMcpError(Exception):
    """Server error carrying a category tag.

    Attributes:
        code: The error category.
        message: Human-readable error message.
        context: Optional structured details for logging.
        retryable: Whether the generation retry loop may try again.
    """
    def __init__(
        self,
        message: str,
        code: ErrorCode,
        context: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        """Initialize FluxMcpError.

        Args:
            message: Human-readable error message.
            code: The error category.
            context: Optional structured details.
            retryable: Whether this error should be retried.
        """
        self.message = message
        self.code = code
        self.context = context or {}
        self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Return the error as a JSON-serializable dictionary."""
        result: Dict[str, Any] = {'code': self.code.value, 'message': self.message}
        if self.context:
            result['context'] = self.context
        return result


def auth_error(message: str, context: Optional[Dict[str, Any]] = None) -> FluxMcpError:
    """Create an authentication error."""
    return FluxMcpError(message, ErrorCode.AUTH, context)


def api_error(
    message: str, context: Optional[Dict[str, Any]] = None, retryable: bool = False
) -> FluxMcpError:
    """Create an upstream API error."""
    return FluxMcpError(message, ErrorCode.API, context, retryable=retryable)


def validation_error(message: str, context: Optional[Dict[str, Any]] = None) -> FluxMcpError:
    """Create a validation error."""
    return FluxMcpError(message, ErrorCode.VALIDATION, context)


def processing_error(message: str, context: Optional[Dict[str, Any]] = None) -> FluxMcpError:
    """Create a local processing error."""
    return FluxMcpError(message, ErrorCode.PROCESSING, context)


def timeout_error(message: str, context: Optional[Dict[str, Any]] = None) -> FluxMcpError:
    """Create a timeout error. Timeouts are retryable."""
    return FluxMcpError(message, ErrorCode.TIMEOUT, context, retryable=True)
