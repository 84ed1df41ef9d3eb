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
"""Pillow based post-processing of generated images.

This module decodes the downloaded image, applies optional resizing, encodes
it to the requested format and writes it to disk, reporting the final
metadata read back from the encoded output.
"""

import os
import time
from flux_replicate_mcp_server.consts import DEFAULT_OUTPUT_FORMAT, DEFAULT_QUALITY
from flux_replicate_mcp_server.errors import FluxMcpError, processing_error, validation_error
from flux_replicate_mcp_server.models.common import (
    FitMode,
    ImageProcessingOptions,
    OutputFormat,
    ProcessedImage,
    ResizeOptions,
)
from flux_replicate_mcp_server.services.temp_manager import TempManager
from flux_replicate_mcp_server.utils.image_utils import calculate_optimal_dimensions
from io import BytesIO
from loguru import logger
from PIL import Image, ImageOps
from typing import Any, Dict, List, Optional, Tuple


SUPPORTED_FORMATS = ['jpg', 'jpeg', 'png', 'webp']

EXTENSION_FORMATS = {
    '.jpg': OutputFormat.JPG,
    '.jpeg': OutputFormat.JPG,
    '.png': OutputFormat.PNG,
    '.webp': OutputFormat.WEBP,
}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ImageProcessor:
    """Decodes, transforms, encodes and saves images."""

    def __init__(
        self,
        default_format: str = DEFAULT_OUTPUT_FORMAT,
        default_quality: int = DEFAULT_QUALITY,
        temp_manager: Optional[TempManager] = None,
    ):
        """Initialize the processor.

        Args:
            default_format: Format used when neither the options nor the path name one.
            default_quality: Quality used when the options do not set one.
            temp_manager: When given, files are written to a tracked staging file
                first and moved into place once complete.
        """
        self.default_format = OutputFormat(default_format)
        self.default_quality = default_quality
        self.temp_manager = temp_manager

    def validate_processing_options(self, options: ImageProcessingOptions) -> List[str]:
        """Check processing options before any work is done.

        Args:
            options: The options to check.

        Returns:
            A list of human-readable problems, empty when the options are valid.
        """
        errors: List[str] = []

        if not options.output_path or not isinstance(options.output_path, str):
            errors.append('Output path is required and must be a string')

        if options.quality is not None and (
            not _is_int(options.quality) or not 1 <= options.quality <= 100
        ):
            errors.append('Quality must be between 1 and 100')

        if options.resize is not None:
            width, height = options.resize.width, options.resize.height
            if width is not None and width <= 0:
                errors.append('Resize width must be greater than 0')
            if height is not None and height <= 0:
                errors.append('Resize height must be greater than 0')
            if width is None and height is None:
                errors.append('At least one of width or height must be specified for resize')

        if options.output_format is not None and (
            str(options.output_format).lower() not in SUPPORTED_FORMATS
        ):
            errors.append('Output format must be one of: jpg, jpeg, png, webp')

        return errors

    def determine_output_format(
        self, output_path: str, explicit_format: Optional[str] = None
    ) -> OutputFormat:
        """Pick the output format.

        An explicit format wins, then the file extension, then the configured default.
        """
        if explicit_format:
            return OutputFormat(explicit_format)
        extension = os.path.splitext(output_path)[1].lower()
        return EXTENSION_FORMATS.get(extension, self.default_format)

    def get_image_metadata(self, image_data: bytes) -> Dict[str, Any]:
        """Return basic metadata of encoded image bytes without processing them."""
        with Image.open(BytesIO(image_data)) as image:
            return {
                'width': image.width,
                'height': image.height,
                'format': (image.format or '').lower(),
                'mode': image.mode,
            }

    def get_supported_formats(self) -> List[str]:
        """Return the accepted format names."""
        return list(SUPPORTED_FORMATS)

    def process_image(
        self,
        image_data: bytes,
        options: ImageProcessingOptions,
        owner: Optional[str] = None,
    ) -> ProcessedImage:
        """Decode, transform, encode and save an image.

        Workflow:
        1. Validate options (no work is done if they are invalid)
        2. Decode and record the original size
        3. Resize when requested
        4. Encode to the output format
        5. Create the output directory and write the file
        6. Read the final size back from the encoded bytes

        Args:
            image_data: Raw bytes of the source image.
            options: Output location, format, quality and resize options.
            owner: Request identifier recorded on staging files.

        Returns:
            ProcessedImage describing the written file.

        Raises:
            FluxMcpError: VALIDATION for invalid options, PROCESSING for any
                decode, resize, encode or filesystem failure.
        """
        errors = self.validate_processing_options(options)
        if errors:
            raise validation_error('; '.join(errors), {'errors': errors})

        start = time.perf_counter()
        output_path = os.path.abspath(options.output_path)
        quality = options.quality if options.quality is not None else self.default_quality

        try:
            output_format = self.determine_output_format(output_path, options.output_format)

            with Image.open(BytesIO(image_data)) as source:
                source.load()
                original_width, original_height = source.size
                image = self._normalize_mode(source)

            if options.resize is not None:
                image = self._apply_resize(image, options.resize)

            encoded = self._encode(image, output_format, quality, options.progressive)
            self._write(output_path, encoded, owner)

            with Image.open(BytesIO(encoded)) as result:
                width, height = result.size

        except FluxMcpError:
            raise
        except Exception as e:
            logger.error(f'Image processing failed for {output_path}: {type(e).__name__}: {str(e)}')
            raise processing_error(
                f'Image processing failed: {str(e)}', {'output_path': output_path}
            )

        processed = ProcessedImage(
            output_path=output_path,
            original_width=original_width,
            original_height=original_height,
            width=width,
            height=height,
            output_format=output_format.value,
            file_size=len(encoded),
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            f'Saved {processed.output_format} image {original_width}x{original_height}'
            f' -> {width}x{height} ({processed.file_size} bytes) to {output_path}'
        )
        return processed

    @staticmethod
    def _normalize_mode(image: Image.Image) -> Image.Image:
        if image.mode in ('RGB', 'RGBA'):
            return image.copy()
        has_alpha = image.mode in ('LA', 'PA') or 'transparency' in image.info
        return image.convert('RGBA' if has_alpha else 'RGB')

    @staticmethod
    def _would_enlarge(
        original: Tuple[int, int], resize: ResizeOptions
    ) -> bool:
        original_width, original_height = original
        width, height = resize.width, resize.height
        if not (width and height):
            return bool((width and width > original_width) or (height and height > original_height))

        scale_x, scale_y = width / original_width, height / original_height
        if resize.fit == FitMode.INSIDE:
            return min(scale_x, scale_y) >= 1
        if resize.fit == FitMode.CONTAIN:
            return min(scale_x, scale_y) > 1
        if resize.fit in (FitMode.COVER, FitMode.OUTSIDE):
            return max(scale_x, scale_y) > 1
        # fill scales each axis independently
        return scale_x > 1 or scale_y > 1

    def _apply_resize(self, image: Image.Image, resize: ResizeOptions) -> Image.Image:
        """Resize according to the fit mode."""
        if resize.without_enlargement and self._would_enlarge(image.size, resize):
            logger.debug(f'Skipping resize of {image.width}x{image.height}, would enlarge')
            return image

        width, height = resize.width, resize.height
        if not (width and height):
            size = calculate_optimal_dimensions(image.width, image.height, width, height)
            return image.resize(_at_least_one(size), Image.LANCZOS)

        if resize.fit == FitMode.FILL:
            return image.resize((width, height), Image.LANCZOS)
        if resize.fit == FitMode.COVER:
            return ImageOps.fit(image, (width, height), method=Image.LANCZOS)
        if resize.fit == FitMode.CONTAIN:
            return ImageOps.pad(
                image, (width, height), method=Image.LANCZOS, color=resize.background
            )

        size = calculate_optimal_dimensions(image.width, image.height, width, height, resize.fit)
        return image.resize(_at_least_one(size), Image.LANCZOS)

    def _encode(
        self, image: Image.Image, output_format: OutputFormat, quality: int, progressive: bool
    ) -> bytes:
        """Encode to the output format.

        Quality maps to the JPEG/WebP quality and to a 0-9 PNG compression level.
        """
        buffer = BytesIO()
        if output_format == OutputFormat.JPG:
            if image.mode == 'RGBA':
                # JPEG has no alpha channel
                background = Image.new('RGB', image.size, (255, 255, 255))
                background.paste(image, mask=image.getchannel('A'))
                image = background
            image.save(
                buffer,
                format=output_format.pil_format,
                quality=quality,
                optimize=True,
                progressive=progressive,
            )
        elif output_format == OutputFormat.PNG:
            compress_level = min(9, max(0, int((100 - quality) / 10 + 0.5)))
            image.save(buffer, format=output_format.pil_format, compress_level=compress_level)
        else:
            image.save(buffer, format=output_format.pil_format, quality=quality, method=6)
        return buffer.getvalue()

    def _write(self, output_path: str, data: bytes, owner: Optional[str]) -> None:
        """Write ``data`` to ``output_path``, creating the directory first."""
        directory = os.path.dirname(output_path)
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise processing_error(
                f'Failed to create directory: {str(e)}', {'directory': directory}
            )

        if self.temp_manager is None:
            with open(output_path, 'wb') as file:
                file.write(data)
            return

        if not self.temp_manager.has_enough_space(len(data)):
            logger.warning(f'Low disk space while writing {len(data)} bytes to {directory}')

        staging_path = self.temp_manager.create_temp_file(
            'output', os.path.splitext(output_path)[1], directory=directory, owner=owner
        )
        try:
            with open(staging_path, 'wb') as file:
                file.write(data)
            self.temp_manager.update_file_size(staging_path)
            os.replace(staging_path, output_path)
            self.temp_manager.release(staging_path)
        except OSError:
            self.temp_manager.cleanup_temp_file(staging_path)
            raise


def _at_least_one(size: Tuple[int, int]) -> Tuple[int, int]:
    return max(1, size[0]), max(1, size[1])
