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
"""Server configuration.

Settings are merged from, in increasing order of precedence, built-in
defaults, an optional JSON file, environment variables and command line
arguments. The result is an immutable ``ServerConfig`` that is passed
explicitly to every component.
"""

import argparse
import json
import os
import sys
import tempfile
from flux_replicate_mcp_server.consts import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_GENERATION_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MODEL,
    DEFAULT_OUTPUT_FORMAT,
    DEFAULT_QUALITY,
    DEFAULT_RETRY_BASE_DELAY,
    FALLBACK_WORKING_DIRECTORY_NAME,
    TEMP_DIRECTORY_NAME,
    WORKING_DIRECTORY_NAME,
)
from flux_replicate_mcp_server.errors import auth_error, processing_error, validation_error
from flux_replicate_mcp_server.models.common import OutputFormat
from flux_replicate_mcp_server.models.flux_models import FluxModel
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing import Any, Dict, Mapping, Optional


LOG_LEVELS = ('TRACE', 'DEBUG', 'INFO', 'SUCCESS', 'WARNING', 'ERROR', 'CRITICAL')

TOKEN_REMEDIATION = (
    'Create a token at https://replicate.com/account/api-tokens and set the '
    'REPLICATE_API_TOKEN environment variable or pass --api-token.'
)

# Config field -> environment variable
ENV_VARS = {
    'api_token': 'REPLICATE_API_TOKEN',
    'default_model': 'FLUX_DEFAULT_MODEL',
    'default_output_format': 'FLUX_OUTPUT_FORMAT',
    'default_quality': 'FLUX_OUTPUT_QUALITY',
    'working_directory': 'FLUX_WORKING_DIRECTORY',
    'temp_directory': 'FLUX_TEMP_DIRECTORY',
    'max_attempts': 'FLUX_MAX_ATTEMPTS',
    'generation_timeout': 'FLUX_GENERATION_TIMEOUT',
    'download_timeout': 'FLUX_DOWNLOAD_TIMEOUT',
    'log_level': 'FASTMCP_LOG_LEVEL',
}

# Config field -> argparse destination
CLI_ARGS = {
    'api_token': 'api_token',
    'default_model': 'default_model',
    'default_output_format': 'output_format',
    'default_quality': 'quality',
    'working_directory': 'working_directory',
    'max_attempts': 'max_attempts',
    'generation_timeout': 'generation_timeout',
    'log_level': 'log_level',
    'log_json': 'log_json',
}


class ServerConfig(BaseModel):
    """Immutable server settings.

    Attributes:
        api_token: Replicate API token.
        default_model: Model used when a request does not name one.
        default_output_format: Format used when neither the request nor the path names one.
        default_quality: Output quality (1-100) used when a request does not set one.
        working_directory: Root directory for all generated images.
        temp_directory: Directory for temporary files.
        max_attempts: Total generation attempts per request; 1 disables retries.
        retry_base_delay: Initial retry delay in seconds, doubled per attempt.
        generation_timeout: Seconds to wait for a prediction.
        download_timeout: Seconds to wait for an image download.
        log_level: Loguru level of the stderr sink.
        log_json: Emit JSON log lines instead of text.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=True, validate_default=True)

    api_token: str = Field(..., repr=False)
    default_model: FluxModel = DEFAULT_MODEL
    default_output_format: OutputFormat = DEFAULT_OUTPUT_FORMAT
    default_quality: int = Field(default=DEFAULT_QUALITY, ge=1, le=100)
    working_directory: str
    temp_directory: str = os.path.join(tempfile.gettempdir(), TEMP_DIRECTORY_NAME)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=10)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)
    generation_timeout: float = Field(default=DEFAULT_GENERATION_TIMEOUT, gt=0)
    download_timeout: float = Field(default=DEFAULT_DOWNLOAD_TIMEOUT, gt=0)
    log_level: str = 'WARNING'
    log_json: bool = False

    @field_validator('api_token')
    @classmethod
    def validate_api_token(cls, v: str) -> str:
        """Reject empty tokens and tokens containing whitespace."""
        v = v.strip()
        if not v:
            raise ValueError('API token cannot be empty')
        if any(c.isspace() for c in v):
            raise ValueError('API token must not contain whitespace')
        return v

    @field_validator('default_output_format', mode='before')
    @classmethod
    def normalize_output_format(cls, v: Any) -> Any:
        """Accept 'jpeg', upper case and a leading dot."""
        if isinstance(v, str):
            try:
                return OutputFormat(v)
            except ValueError:
                return v
        return v

    @field_validator('working_directory', 'temp_directory')
    @classmethod
    def expand_directory(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Directory cannot be empty')
        return os.path.abspath(os.path.expanduser(v.strip()))

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f'Log level must be one of: {", ".join(LOG_LEVELS)}')
        return level


def get_platform_working_directory(
    platform: Optional[str] = None, home: Optional[str] = None
) -> str:
    """Return the default image directory for the platform.

    Windows uses ``~/Documents/FluxImages``, macOS and Linux
    ``~/Pictures/FluxImages`` and anything else ``~/flux-images``.
    """
    platform = platform or sys.platform
    home = home or os.path.expanduser('~')
    if platform == 'win32':
        return os.path.join(home, 'Documents', WORKING_DIRECTORY_NAME)
    if platform == 'darwin' or platform.startswith('linux'):
        return os.path.join(home, 'Pictures', WORKING_DIRECTORY_NAME)
    return os.path.join(home, FALLBACK_WORKING_DIRECTORY_NAME)


def ensure_working_directory(
    working_directory: str, platform: Optional[str] = None, home: Optional[str] = None
) -> str:
    """Create the working directory and return the directory actually used.

    On Linux a failure to create ``~/Pictures/FluxImages`` falls back to
    ``~/flux-images``.

    Raises:
        FluxMcpError: PROCESSING if no directory could be created.
    """
    platform = platform or sys.platform
    try:
        os.makedirs(working_directory, exist_ok=True)
        return working_directory
    except OSError as e:
        if platform.startswith('linux') and 'Pictures' in working_directory:
            fallback = os.path.join(home or os.path.expanduser('~'), FALLBACK_WORKING_DIRECTORY_NAME)
            logger.warning(f'Cannot create {working_directory} ({e}), using {fallback}')
            try:
                os.makedirs(fallback, exist_ok=True)
                return fallback
            except OSError:
                pass
        raise processing_error(
            f'Failed to create working directory: {str(e)}',
            {'working_directory': working_directory},
        )


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command line parser. Every option overrides its environment variable."""
    parser = argparse.ArgumentParser(
        prog='flux-replicate-mcp-server',
        description='MCP server generating images with Flux models on Replicate',
    )
    parser.add_argument('--config', help='JSON configuration file (env: FLUX_CONFIG_FILE)')
    parser.add_argument('--api-token', help='Replicate API token (env: REPLICATE_API_TOKEN)')
    parser.add_argument(
        '--default-model',
        choices=[model.value for model in FluxModel],
        help=f'Default Flux model (default: {DEFAULT_MODEL})',
    )
    parser.add_argument(
        '--output-format',
        choices=['jpg', 'jpeg', 'png', 'webp'],
        help=f'Default output format (default: {DEFAULT_OUTPUT_FORMAT})',
    )
    parser.add_argument('--quality', type=int, help=f'Default quality 1-100 (default: {DEFAULT_QUALITY})')
    parser.add_argument('--working-directory', help='Directory generated images are saved under')
    parser.add_argument(
        '--max-attempts',
        type=int,
        help=f'Generation attempts per request, 1 disables retries (default: {DEFAULT_MAX_ATTEMPTS})',
    )
    parser.add_argument(
        '--generation-timeout',
        type=float,
        help=f'Seconds to wait for a prediction (default: {DEFAULT_GENERATION_TIMEOUT:g})',
    )
    parser.add_argument('--log-level', help='Log level (default: WARNING)')
    parser.add_argument(
        '--log-json', action='store_true', default=None, help='Emit JSON log lines'
    )
    return parser


def _load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(os.path.expanduser(path), 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise validation_error(f'Failed to read config file {path}: {str(e)}', {'path': path})
    if not isinstance(data, dict):
        raise validation_error(f'Config file {path} must contain a JSON object', {'path': path})

    unknown = sorted(set(data) - set(ServerConfig.model_fields))
    if unknown:
        logger.warning(f'Ignoring unknown config file keys: {", ".join(unknown)}')
    return {key: value for key, value in data.items() if key in ServerConfig.model_fields}


def load_config(
    args: Optional[argparse.Namespace] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ServerConfig:
    """Merge defaults, config file, environment and CLI arguments.

    Args:
        args: Parsed command line arguments, if any.
        env: Environment mapping. Defaults to ``os.environ``.

    Returns:
        The validated configuration.

    Raises:
        FluxMcpError: AUTH if no API token is configured, VALIDATION for any
            other invalid setting.
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    config_file = getattr(args, 'config', None) or env.get('FLUX_CONFIG_FILE')
    if config_file:
        values.update(_load_config_file(config_file))

    for field, name in ENV_VARS.items():
        if env.get(name):
            values[field] = env[name]

    if args is not None:
        for field, dest in CLI_ARGS.items():
            value = getattr(args, dest, None)
            if value is not None:
                values[field] = value

    if not str(values.get('api_token') or '').strip():
        raise auth_error(f'REPLICATE_API_TOKEN is required. {TOKEN_REMEDIATION}')

    values.setdefault('working_directory', get_platform_working_directory())

    try:
        config = ServerConfig(**values)
    except ValidationError as e:
        errors = [
            f'{".".join(str(part) for part in detail["loc"])}: {detail["msg"]}'
            for detail in e.errors()
        ]
        raise validation_error(f'Invalid configuration: {"; ".join(errors)}', {'errors': errors})

    if not config.api_token.startswith('r8_'):
        logger.warning('Replicate API token does not start with "r8_", it may be invalid')

    return config
