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
"""Resolution of caller supplied output locations under the working directory.

All generated images live below the server working directory. Callers may pass
an explicit ``output_path``, an ``output_directory`` and/or ``filename``, or
nothing at all. Absolute locations are re-rooted: only their last path
component is kept and joined onto the working directory. Relative locations
are joined onto the working directory, and anything that would escape it via
``..`` is re-rooted the same way.

Resolution is pure string manipulation. Directories are created later, right
before the image is written.
"""

import os
import re
from datetime import datetime
from flux_replicate_mcp_server.consts import MAX_SLUG_LENGTH
from typing import Optional


_NON_ALPHANUMERIC = re.compile(r'[^a-z0-9\s]')
_WHITESPACE = re.compile(r'\s+')


def slugify_prompt(prompt: str) -> str:
    """Turn a prompt into a file name friendly slug.

    The prompt is lower-cased, stripped of anything but letters, digits and
    whitespace, whitespace runs become single underscores and the result is
    truncated to 50 characters.

    Example:
        >>> slugify_prompt('A Red Fox!! ')
        'a_red_fox'
    """
    slug = _NON_ALPHANUMERIC.sub('', prompt.lower()).strip()
    slug = _WHITESPACE.sub('_', slug)[:MAX_SLUG_LENGTH].strip('_')
    return slug or 'image'


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp with second precision and no ':' or '.' characters."""
    now = now or datetime.now()
    return now.isoformat().replace(':', '-').replace('.', '-')[:19]


def generate_filename(prompt: str, extension: str, now: Optional[datetime] = None) -> str:
    """Build ``<slug>_<timestamp>.<extension>`` for a prompt."""
    return f'{slugify_prompt(prompt)}_{generate_timestamp(now)}.{extension.lstrip(".")}'


def _is_within(path: str, root: str) -> bool:
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        # Different drives on Windows
        return False


def _reroot(working_directory: str, location: str) -> str:
    """Place ``location`` under ``working_directory``.

    Absolute locations keep only their last component. Relative ones are
    joined, unless the normalized result escapes the working directory.
    """
    location = location.strip()
    name = os.path.basename(os.path.normpath(location)) if location else ''
    if os.path.isabs(location):
        return os.path.join(working_directory, name) if name else working_directory

    candidate = os.path.normpath(os.path.join(working_directory, location))
    if _is_within(candidate, working_directory):
        return candidate
    if name in ('', '.', '..'):
        return working_directory
    return os.path.join(working_directory, name)


def _with_extension(path: str, extension: str) -> str:
    if os.path.splitext(path)[1]:
        return path
    return f'{path}.{extension.lstrip(".")}'


def resolve_output_path(
    working_directory: str,
    prompt: str,
    extension: str,
    output_path: Optional[str] = None,
    output_directory: Optional[str] = None,
    filename: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Resolve the absolute file path a generated image is written to.

    Priority:
    1. ``output_path``: re-rooted under the working directory. A trailing
       separator makes it a directory instead.
    2. ``output_directory`` and/or ``filename``: the directory is re-rooted,
       the filename reduced to its base name and defaulted from the prompt.
    3. Nothing: the working directory root with a generated filename.

    A path without extension gets ``.<extension>`` appended.

    Args:
        working_directory: Root directory for all output.
        prompt: Prompt used to derive a default filename.
        extension: Extension for generated or extension-less filenames.
        output_path: Explicit file path.
        output_directory: Directory for the file.
        filename: File name inside ``output_directory``.
        now: Clock override for the generated timestamp.

    Returns:
        Absolute path under ``working_directory``.
    """
    root = os.path.abspath(working_directory)

    if output_path and output_path.strip().endswith(('/', os.sep)):
        # A trailing separator names a directory
        output_directory, output_path = output_path, None

    if output_path and output_path.strip():
        resolved = _reroot(root, output_path)
        if resolved == root:
            resolved = os.path.join(root, generate_filename(prompt, extension, now))
        return _with_extension(resolved, extension)

    directory = root
    if output_directory and output_directory.strip():
        directory = _reroot(root, output_directory)

    name = os.path.basename(filename.strip()) if filename else ''
    if not name or name in ('.', '..'):
        name = generate_filename(prompt, extension, now)

    return _with_extension(os.path.join(directory, name), extension)
