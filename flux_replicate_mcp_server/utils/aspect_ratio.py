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
"""Mapping of arbitrary width/height pairs onto the supported Flux aspect ratios."""

from flux_replicate_mcp_server.consts import ASPECT_RATIO_TOLERANCE, ASPECT_RATIOS
from flux_replicate_mcp_server.errors import validation_error
from typing import Tuple


def _nominal_ratio(name: str) -> float:
    width, height = name.split(':')
    return int(width) / int(height)


def resolve_aspect_ratio(width: int, height: int) -> str:
    """Return the supported aspect ratio name closest to ``width / height``.

    An exact match within 0.01 wins. Otherwise the ratio is bucketed: landscape
    into 4:3, 3:2, 16:9 or 21:9, portrait into 3:4, 2:3, 9:16 or 9:21. Every
    pair of positive integers maps to exactly one supported ratio.

    Args:
        width: Requested width in pixels.
        height: Requested height in pixels.

    Returns:
        A key of ``ASPECT_RATIOS``.

    Raises:
        FluxMcpError: VALIDATION if either dimension is not a positive integer.
    """
    if (
        isinstance(width, bool)
        or isinstance(height, bool)
        or not isinstance(width, int)
        or not isinstance(height, int)
        or width <= 0
        or height <= 0
    ):
        raise validation_error(
            f'Width and height must be positive integers, got {width}x{height}',
            {'width': width, 'height': height},
        )

    ratio = width / height
    for name in ASPECT_RATIOS:
        if abs(ratio - _nominal_ratio(name)) < ASPECT_RATIO_TOLERANCE:
            return name

    if ratio > 1:
        if ratio < 1.4:
            return '4:3'
        if ratio < 1.6:
            return '3:2'
        if ratio < 2.1:
            return '16:9'
        return '21:9'

    if ratio > 0.8:
        return '3:4'
    if ratio > 0.65:
        return '2:3'
    if ratio > 0.5:
        return '9:16'
    return '9:21'


def get_aspect_ratio_dimensions(aspect_ratio: str) -> Tuple[int, int]:
    """Look up the pixel size for a named aspect ratio.

    Raises:
        FluxMcpError: VALIDATION if the name is not supported.
    """
    try:
        return ASPECT_RATIOS[aspect_ratio]
    except (KeyError, TypeError):
        raise validation_error(
            f'Unsupported aspect ratio: {aspect_ratio}. '
            f'Supported ratios: {", ".join(ASPECT_RATIOS)}',
            {'aspect_ratio': aspect_ratio},
        )


def dimensions_for(width: int, height: int) -> Tuple[str, Tuple[int, int]]:
    """Resolve ``width``/``height`` to a ratio name and its canonical pixel size."""
    name = resolve_aspect_ratio(width, height)
    return name, ASPECT_RATIOS[name]
