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
"""Tracking and cleanup of temporary files.

Images are first written to a tracked staging file and then moved into place,
so a failed request never leaves a half written image behind. Every tracked
file may carry an owner (the request that created it) so that a failing
request only removes its own files while other requests keep running.
"""

import os
import shutil
import threading
import time
import uuid
from datetime import datetime, timedelta
from flux_replicate_mcp_server.consts import TEMP_FILE_MAX_AGE_MINUTES
from loguru import logger
from pydantic import BaseModel
from typing import Dict, List, Optional


class TempFileInfo(BaseModel):
    """A tracked temporary file or directory."""
    path: str
    created_at: datetime
    size: int = 0
    purpose: str
    owner: Optional[str] = None


class DiskSpaceInfo(BaseModel):
    """Disk usage of the temp directory's file system, in bytes."""
    total: int
    available: int
    used: int
    percent_used: float


class TempManager:
    """Creates, tracks and removes temporary files."""

    def __init__(self, temp_directory: str):
        """Initialize the manager.

        Args:
            temp_directory: Default directory for temporary files. Created on first use.
        """
        self.temp_directory = os.path.abspath(temp_directory)
        self._temp_files: Dict[str, TempFileInfo] = {}
        self._lock = threading.Lock()

    def ensure_temp_directory(self) -> None:
        """Create the temp directory with owner-only permissions if it is missing."""
        if not os.path.isdir(self.temp_directory):
            os.makedirs(self.temp_directory, exist_ok=True)
            os.chmod(self.temp_directory, 0o700)
            logger.debug(f'Created temp directory: {self.temp_directory}')

    def create_temp_file(
        self,
        purpose: str,
        extension: str = '',
        directory: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> str:
        """Reserve and track a unique temporary file path.

        The file itself is not created.

        Args:
            purpose: Short label used in the file name (e.g. 'output').
            extension: File extension including the dot.
            directory: Directory for the file. Defaults to the temp directory.
            owner: Identifier of the request that owns the file.

        Returns:
            Absolute path of the temporary file.
        """
        if directory is None:
            self.ensure_temp_directory()
            directory = self.temp_directory
        else:
            os.makedirs(directory, exist_ok=True)

        name = f'flux-{purpose}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}{extension}'
        path = os.path.abspath(os.path.join(directory, name))
        with self._lock:
            self._temp_files[path] = TempFileInfo(
                path=path, created_at=datetime.now(), purpose=purpose, owner=owner
            )
        return path

    def update_file_size(self, path: str) -> None:
        """Refresh the recorded size of a tracked file."""
        with self._lock:
            info = self._temp_files.get(path)
            if info is not None and os.path.isfile(path):
                info.size = os.path.getsize(path)

    def release(self, path: str) -> None:
        """Stop tracking a path without deleting it (e.g. after it was moved)."""
        with self._lock:
            self._temp_files.pop(path, None)

    def cleanup_temp_file(self, path: str) -> bool:
        """Delete a temporary file or directory and stop tracking it.

        Returns:
            True if something was removed, False otherwise.
        """
        with self._lock:
            self._temp_files.pop(path, None)
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            elif os.path.exists(path):
                os.remove(path)
            else:
                return False
            return True
        except OSError as e:
            logger.warning(f'Failed to cleanup temp file {path}: {str(e)}')
            return False

    def cleanup_owner(self, owner: str) -> int:
        """Delete every tracked file created for ``owner``."""
        paths = [info.path for info in self.get_temp_file_info() if info.owner == owner]
        return sum(1 for path in paths if self.cleanup_temp_file(path))

    def cleanup_old_files(self, max_age_minutes: int = TEMP_FILE_MAX_AGE_MINUTES) -> int:
        """Delete tracked files older than ``max_age_minutes``."""
        cutoff = datetime.now() - timedelta(minutes=max_age_minutes)
        paths = [info.path for info in self.get_temp_file_info() if info.created_at < cutoff]
        return sum(1 for path in paths if self.cleanup_temp_file(path))

    def cleanup_all(self) -> int:
        """Delete every tracked file."""
        paths = [info.path for info in self.get_temp_file_info()]
        cleaned = sum(1 for path in paths if self.cleanup_temp_file(path))
        if paths:
            logger.info(f'Cleaned up {cleaned} of {len(paths)} temporary file(s)')
        return cleaned

    def get_temp_file_info(self) -> List[TempFileInfo]:
        """Return a snapshot of the tracked files."""
        with self._lock:
            return list(self._temp_files.values())

    def get_total_temp_size(self) -> int:
        """Return the summed recorded size of the tracked files."""
        return sum(info.size for info in self.get_temp_file_info())

    def get_disk_space_info(self) -> DiskSpaceInfo:
        """Report disk usage of the file system holding the temp directory."""
        self.ensure_temp_directory()
        usage = shutil.disk_usage(self.temp_directory)
        return DiskSpaceInfo(
            total=usage.total,
            available=usage.free,
            used=usage.used,
            percent_used=(usage.used / usage.total * 100) if usage.total else 0.0,
        )

    def has_enough_space(self, required_bytes: int, buffer_percentage: float = 10) -> bool:
        """Check that ``required_bytes`` fit while keeping a share of the disk free.

        Args:
            required_bytes: Bytes about to be written.
            buffer_percentage: Percentage of the total disk size kept in reserve.

        Returns:
            False only when the disk is known to be too full. If usage cannot
            be read the check passes.
        """
        try:
            info = self.get_disk_space_info()
        except OSError as e:
            logger.warning(f'Could not check disk space, assuming sufficient space: {str(e)}')
            return True
        buffer_bytes = info.total * buffer_percentage / 100
        return info.available - buffer_bytes >= required_bytes

    def validate_file_path(self, file_path: str) -> bool:
        """Check that ``file_path`` stays inside the temp directory."""
        resolved = os.path.normpath(os.path.join(self.temp_directory, file_path))
        try:
            return os.path.commonpath([resolved, self.temp_directory]) == self.temp_directory
        except ValueError:
            return False
