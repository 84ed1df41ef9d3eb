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
"""Common models and enums shared by the generation, processing and server layers."""

from enum import Enum
from flux_replicate_mcp_server.consts import DEFAULT_RESIZE_BACKGROUND
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Tuple


class OutputFormat(str, Enum):
    """Supported output formats.

    ``jpeg`` is accepted as an alias of ``jpg``.

    Attributes:
        JPG: JPEG image format.
        PNG: PNG image format.
        WEBP: WebP image format.
    """
    JPG = 'jpg'
    PNG = 'png'
    WEBP = 'webp'

    @classmethod
    def _missing_(cls, value: object) -> Optional['OutputFormat']:
        if isinstance(value, str):
            normalized = value.strip().lower().lstrip('.')
            if normalized == 'jpeg':
                return cls.JPG
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def pil_format(self) -> str:
        """Format name understood by Pillow."""
        return {'jpg': 'JPEG', 'png': 'PNG', 'webp': 'WEBP'}[self.value]


class FitMode(str, Enum):
    """How a source image is mapped into a target box during resize.

    Attributes:
        COVER: Fill the box and crop the overflow.
        CONTAIN: Fit the whole image inside the box and letterbox the rest.
        FILL: Stretch to the exact box, ignoring aspect ratio.
        INSIDE: Scale so both sides fit inside the box, no cropping or padding.
        OUTSIDE: Scale so both sides cover the box, no cropping.
    """
    COVER = 'cover'
    CONTAIN = 'contain'
    FILL = 'fill'
    INSIDE = 'inside'
    OUTSIDE = 'outside'


class ResizeOptions(BaseModel):
    """Resize request for the image processor.

    Values are not range checked here; ``ImageProcessor.validate_processing_options``
    reports out-of-range values with specific messages.
    """
    width: Optional[int] = None
    height: Optional[int] = None
    fit: FitMode = FitMode.COVER
    background: str = DEFAULT_RESIZE_BACKGROUND
    without_enlargement: bool = False


class ImageProcessingOptions(BaseModel):
    """Options for encoding and saving an image."""
    output_path: Optional[str] = None
    output_format: Optional[str] = None
    quality: Optional[int] = None
    resize: Optional[ResizeOptions] = None
    progressive: bool = True


class ProcessedImage(BaseModel):
    """Result of saving a processed image to disk.

    Attributes:
        output_path: Absolute path of the written file.
        original_width: Width of the decoded source image.
        original_height: Height of the decoded source image.
        width: Width read back from the encoded output.
        height: Height read back from the encoded output.
        output_format: Final format (jpg, png or webp).
        file_size: Size of the written file in bytes.
        processing_time_ms: Time spent decoding, transforming and writing.
    """
    output_path: str
    original_width: int
    original_height: int
    width: int
    height: int
    output_format: str
    file_size: int
    processing_time_ms: int


class GenerationResult(BaseModel):
    """Result of a successful upstream generation call."""
    image_urls: List[str] = Field(min_length=1)
    model: str
    model_id: str
    aspect_ratio: str
    dimensions: Tuple[int, int]
    processing_time_ms: int
    attempts: int = 1


class McpImageGenerationResponse(BaseModel):
    """Payload returned by the ``generate_image`` tool.

    Attributes:
        status: 'success' or 'error'.
        message: Human-readable summary or error message.
        paths: ``file://`` URIs of the saved images.
        output_path: Absolute path of the saved image.
        error_code: Error category when status is 'error'.
    """
    status: str
    message: str
    paths: List[str] = Field(default_factory=list)
    output_path: Optional[str] = None
    model: Optional[str] = None
    aspect_ratio: Optional[str] = None
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    output_format: Optional[str] = None
    file_size: Optional[int] = None
    generation_time_ms: Optional[int] = None
    processing_time_ms: Optional[int] = None
    total_time_ms: Optional[int] = None
    estimated_cost: Optional[float] = None
    attempts: Optional[int] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
