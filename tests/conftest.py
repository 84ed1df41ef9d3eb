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
"""Shared fixtures for the flux-replicate-mcp-server tests."""

import pytest
from flux_replicate_mcp_server.config import ServerConfig
from io import BytesIO
from PIL import Image
from unittest.mock import AsyncMock, MagicMock


@pytest.fixture
def temp_workspace_dir(tmp_path):
    """Working directory images are saved under."""
    workspace = tmp_path / 'workspace'
    workspace.mkdir()
    return str(workspace)


@pytest.fixture
def temp_files_dir(tmp_path):
    return str(tmp_path / 'tmp')


@pytest.fixture
def server_config(temp_workspace_dir, temp_files_dir):
    """Configuration with fast retries and a throwaway working directory."""
    return ServerConfig(
        api_token='r8_test_token',
        working_directory=temp_workspace_dir,
        temp_directory=temp_files_dir,
        retry_base_delay=0,
    )


@pytest.fixture
def mock_context():
    """MCP context with awaitable logging methods."""
    context = MagicMock()
    context.error = AsyncMock()
    context.info = AsyncMock()
    return context


@pytest.fixture
def sample_text_prompt():
    return 'A red fox sitting in a snowy forest at sunrise'


@pytest.fixture
def make_image_bytes():
    """Factory for encoded test images."""

    def _make(width=100, height=100, format='PNG', mode='RGB', color='red'):
        image = Image.new(mode, (width, height), color=color)
        buffer = BytesIO()
        image.save(buffer, format=format)
        return buffer.getvalue()

    return _make
