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
"""Tests for the temporary file manager."""

import os
import pytest
import stat
from collections import namedtuple
from datetime import datetime, timedelta
from flux_replicate_mcp_server.services.temp_manager import TempManager
from unittest.mock import MagicMock, patch


@pytest.fixture
def temp_manager(temp_files_dir):
    return TempManager(temp_files_dir)


def _touch(path, content=b'data'):
    with open(path, 'wb') as f:
        f.write(content)


class TestCreateTempFile:
    """Tests for create_temp_file."""

    def test_creates_private_temp_directory(self, temp_manager, temp_files_dir):
        path = temp_manager.create_temp_file('download', '.png')

        assert os.path.dirname(path) == temp_files_dir
        assert stat.S_IMODE(os.stat(temp_files_dir).st_mode) == 0o700
        assert os.path.basename(path).startswith('flux-download-')
        assert path.endswith('.png')
        # The path is reserved, not created
        assert not os.path.exists(path)

    def test_paths_are_unique(self, temp_manager):
        paths = {temp_manager.create_temp_file('output') for _ in range(50)}
        assert len(paths) == 50

    def test_custom_directory(self, temp_manager, temp_workspace_dir):
        path = temp_manager.create_temp_file('output', '.jpg', directory=temp_workspace_dir)
        assert os.path.dirname(path) == temp_workspace_dir

    def test_tracking(self, temp_manager):
        path = temp_manager.create_temp_file('output', owner='req-1')
        _touch(path, b'12345')
        temp_manager.update_file_size(path)

        [info] = temp_manager.get_temp_file_info()
        assert info.path == path
        assert info.purpose == 'output'
        assert info.owner == 'req-1'
        assert info.size == 5
        assert temp_manager.get_total_temp_size() == 5


class TestCleanup:
    """Tests for the cleanup operations."""

    def test_cleanup_temp_file(self, temp_manager):
        path = temp_manager.create_temp_file('output')
        _touch(path)

        assert temp_manager.cleanup_temp_file(path) is True
        assert not os.path.exists(path)
        assert temp_manager.get_temp_file_info() == []
        assert temp_manager.cleanup_temp_file(path) is False

    def test_cleanup_directory(self, temp_manager, temp_files_dir):
        path = temp_manager.create_temp_file('batch')
        os.makedirs(os.path.join(path, 'inner'))
        assert temp_manager.cleanup_temp_file(path) is True
        assert not os.path.exists(path)

    def test_release_keeps_file(self, temp_manager):
        path = temp_manager.create_temp_file('output')
        _touch(path)
        temp_manager.release(path)

        assert temp_manager.get_temp_file_info() == []
        assert os.path.exists(path)

    def test_cleanup_owner_only_touches_own_files(self, temp_manager):
        """A failing request never removes another request's files."""
        mine = temp_manager.create_temp_file('output', owner='req-1')
        theirs = temp_manager.create_temp_file('output', owner='req-2')
        _touch(mine)
        _touch(theirs)

        assert temp_manager.cleanup_owner('req-1') == 1
        assert not os.path.exists(mine)
        assert os.path.exists(theirs)
        assert [info.path for info in temp_manager.get_temp_file_info()] == [theirs]

    def test_cleanup_old_files(self, temp_manager):
        old = temp_manager.create_temp_file('output')
        new = temp_manager.create_temp_file('output')
        _touch(old)
        _touch(new)
        temp_manager._temp_files[old].created_at = datetime.now() - timedelta(minutes=120)

        assert temp_manager.cleanup_old_files(max_age_minutes=60) == 1
        assert not os.path.exists(old)
        assert os.path.exists(new)

    def test_cleanup_all(self, temp_manager):
        paths = [temp_manager.create_temp_file('output') for _ in range(3)]
        for path in paths:
            _touch(path)

        assert temp_manager.cleanup_all() == 3
        assert not any(os.path.exists(path) for path in paths)
        assert temp_manager.get_temp_file_info() == []


DiskUsage = namedtuple('DiskUsage', ['total', 'used', 'free'])


class TestDiskSpace:
    """Tests for the disk space checks."""

    def test_disk_space_info(self, temp_manager):
        with patch(
            'flux_replicate_mcp_server.services.temp_manager.shutil.disk_usage',
            return_value=DiskUsage(total=1000, used=250, free=750),
        ):
            info = temp_manager.get_disk_space_info()

        assert (info.total, info.used, info.available) == (1000, 250, 750)
        assert info.percent_used == 25.0
        assert os.path.isdir(temp_manager.temp_directory)

    @pytest.mark.parametrize(
        'required, buffer_percentage, expected',
        [(600, 10, True), (700, 10, False), (700, 0, True), (751, 0, False)],
    )
    def test_has_enough_space(self, temp_manager, required, buffer_percentage, expected):
        with patch(
            'flux_replicate_mcp_server.services.temp_manager.shutil.disk_usage',
            return_value=DiskUsage(total=1000, used=250, free=750),
        ):
            assert temp_manager.has_enough_space(required, buffer_percentage) is expected

    def test_unreadable_usage_assumes_space(self, temp_manager):
        with patch(
            'flux_replicate_mcp_server.services.temp_manager.shutil.disk_usage',
            side_effect=OSError('not supported'),
        ):
            assert temp_manager.has_enough_space(10**12) is True


class TestUpdateFileSize:
    def test_holds_lock(self, temp_manager):
        path = temp_manager.create_temp_file('output', '.png')
        _touch(path, b'12345')
        temp_manager._lock = MagicMock()

        temp_manager.update_file_size(path)

        temp_manager._lock.__enter__.assert_called_once()
        assert temp_manager._temp_files[path].size == 5

    def test_untracked_file_ignored(self, temp_manager, tmp_path):
        path = str(tmp_path / 'untracked.png')
        _touch(path)

        temp_manager.update_file_size(path)

        assert temp_manager.get_temp_file_info() == []


class TestValidateFilePath:
    """Tests for validate_file_path."""

    def test_inside(self, temp_manager, temp_files_dir):
        assert temp_manager.validate_file_path('file.png') is True
        assert temp_manager.validate_file_path(os.path.join(temp_files_dir, 'a', 'b.png')) is True

    def test_traversal(self, temp_manager):
        assert temp_manager.validate_file_path('../outside.png') is False
        assert temp_manager.validate_file_path('/etc/passwd') is False
