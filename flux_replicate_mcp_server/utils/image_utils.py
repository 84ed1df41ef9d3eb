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
"""Image inspection and dimension arithmetic helpers."""

from flux_replicate_mcp_server.models.common import FitMode
from io import BytesIO
from PIL import Image
from typing import Optional, Tuple


def get_image_dimensions(image_data: bytes) -> Tuple[int, int]:
    """Return the (width, height) of encoded image bytes.

    Args:
        image_data: Raw image bytes.

    Returns:
        Tuple of (width, height) in pixels.

    Raises:
        ValueError: If the bytes are not a decodable image.
    """
    try:
        with Image.open(BytesIO(image_data)) as image:
            return image.size
    except Exception as e:
        raise ValueError(f"Failed to read image dimensions: {str(e)}")


def calculate_optimal_dimensions(
    original_width: int,
    original_height: int,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    fit: FitMode = FitMode.CONTAIN,
) -> Tuple[int, int]:
    """Estimate the output size of a resize without touching pixels.

    With both target dimensions:
    - ``fill`` returns the target exactly.
    - ``contain`` and ``inside`` scale the image to fit inside the box.
    - ``outside`` scales the image to the smallest size covering the box.
    - ``cover`` keeps the original size when it already covers the box and
      otherwise scales up until it does.

    With one target dimension the other follows the original aspect ratio.
    Without targets the original size is returned.

    Args:
        original_width: Source width in pixels.
        original_height: Source height in pixels.
        target_width: Requested width, or None.
        target_height: Requested height, or None.
        fit: Fit mode used when both targets are given.

    Returns:
        Tuple of (width, height) in pixels.
    """
    if not target_width and not target_height:
        return original_width, original_height

    if target_width and target_height:
        fit = FitMode(fit)
        if fit == FitMode.FILL:
            return target_width, target_height

        original_ratio = original_width / original_height
        target_ratio = target_width / target_height

        if fit in (FitMode.CONTAIN, FitMode.INSIDE):
            if original_ratio > target_ratio:
                return target_width, round(target_width / original_ratio)
            return round(target_height * original_ratio), target_height

        if fit == FitMode.COVER and (
            original_width >= target_width and original_height >= target_height
        ):
            return original_width, original_height

        if original_ratio > target_ratio:
            return round(target_height * original_ratio), target_height
        return target_width, round(target_width / original_ratio)

    if target_width:
        return target_width, round(target_width * original_height / original_width)

    return round(target_height * original_width / original_height), target_height
