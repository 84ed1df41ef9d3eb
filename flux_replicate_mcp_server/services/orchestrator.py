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
"""Request orchestration for the generate_image tool.

A request moves through: validate arguments -> resolve aspect ratio and output
path -> generate on Replicate -> download the first image -> post-process and
save -> respond. The first failure short-circuits the remaining steps and is
turned into an error response.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from flux_replicate_mcp_server.consts import DEFAULT_HEIGHT, DEFAULT_WIDTH
from flux_replicate_mcp_server.errors import ErrorCode, FluxMcpError, validation_error
from flux_replicate_mcp_server.models.common import (
    FitMode,
    ImageProcessingOptions,
    McpImageGenerationResponse,
    OutputFormat,
    ResizeOptions,
)
from flux_replicate_mcp_server.services.image_processor import ImageProcessor
from flux_replicate_mcp_server.services.replicate_client import ReplicateClient
from flux_replicate_mcp_server.services.temp_manager import TempManager
from flux_replicate_mcp_server.utils.aspect_ratio import (
    get_aspect_ratio_dimensions,
    resolve_aspect_ratio,
)
from flux_replicate_mcp_server.utils.output_path import resolve_output_path
from loguru import logger
from typing import TYPE_CHECKING, Any, Dict, Optional


if TYPE_CHECKING:
    from flux_replicate_mcp_server.config import ServerConfig


@dataclass
class GenerationRequest:
    """Validated tool arguments with defaults applied."""
    prompt: str
    model: str
    aspect_ratio: str
    output_path: str
    quality: int
    output_format: Optional[str]
    seed: Optional[int]
    resize: Optional[ResizeOptions]


def _optional_str(arguments: Dict[str, Any], key: str) -> Optional[str]:
    value = arguments.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise validation_error(f'{key} must be a string', {key: repr(value)})
    return value


def _optional_int(arguments: Dict[str, Any], key: str) -> Optional[int]:
    value = arguments.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise validation_error(f'{key} must be an integer', {key: repr(value)})
    return value


class ImageGenerationOrchestrator:
    """Runs a generate_image request end to end."""

    def __init__(
        self,
        config: 'ServerConfig',
        replicate_client: ReplicateClient,
        image_processor: ImageProcessor,
        temp_manager: TempManager,
    ):
        self.config = config
        self.replicate_client = replicate_client
        self.image_processor = image_processor
        self.temp_manager = temp_manager

    def validate_request(self, arguments: Dict[str, Any]) -> GenerationRequest:
        """Validate raw tool arguments and apply configured defaults.

        An explicit ``aspect_ratio`` wins over ``width``/``height``. Width and
        height default to 1024 and, when passed, also bound the saved image.
        Quality is clamped to 1-100.

        Raises:
            FluxMcpError: VALIDATION for any invalid argument.
        """
        prompt = arguments.get('prompt')
        if not isinstance(prompt, str) or not prompt.strip():
            raise validation_error('Prompt is required and must be a non-empty string')
        prompt = prompt.strip()

        model = _optional_str(arguments, 'model') or self.config.default_model
        if not self.replicate_client.is_model_supported(model):
            raise validation_error(
                f'Unsupported model: {model}. Supported models: '
                f'{", ".join(self.replicate_client.get_available_models())}',
                {'model': model},
            )

        width = _optional_int(arguments, 'width')
        height = _optional_int(arguments, 'height')
        for name, value in (('width', width), ('height', height)):
            if value is not None and value <= 0:
                raise validation_error(f'{name} must be a positive integer', {name: value})
        aspect_ratio = _optional_str(arguments, 'aspect_ratio')
        if aspect_ratio:
            get_aspect_ratio_dimensions(aspect_ratio)
        else:
            aspect_ratio = resolve_aspect_ratio(
                DEFAULT_WIDTH if width is None else width,
                DEFAULT_HEIGHT if height is None else height,
            )

        resize = None
        if width is not None or height is not None:
            resize = ResizeOptions(
                width=width, height=height, fit=FitMode.INSIDE, without_enlargement=True
            )

        quality = _optional_int(arguments, 'quality')
        quality = self.config.default_quality if quality is None else max(1, min(100, quality))

        output_format = _optional_str(arguments, 'output_format')
        if output_format:
            try:
                output_format = OutputFormat(output_format).value
            except ValueError:
                raise validation_error(
                    'Output format must be one of: jpg, jpeg, png, webp',
                    {'output_format': output_format},
                )
        else:
            output_format = None

        output_path = resolve_output_path(
            self.config.working_directory,
            prompt,
            output_format or self.config.default_output_format,
            output_path=_optional_str(arguments, 'output_path'),
            output_directory=_optional_str(arguments, 'output_directory'),
            filename=_optional_str(arguments, 'filename'),
        )

        return GenerationRequest(
            prompt=prompt,
            model=model,
            aspect_ratio=aspect_ratio,
            output_path=output_path,
            quality=quality,
            output_format=output_format,
            seed=_optional_int(arguments, 'seed'),
            resize=resize,
        )

    async def generate_image(self, arguments: Dict[str, Any]) -> McpImageGenerationResponse:
        """Generate, download, process and save one image.

        Never raises: every failure is logged, the temporary files created for
        this request are removed and an error response is returned.

        Args:
            arguments: Raw ``generate_image`` tool arguments.

        Returns:
            McpImageGenerationResponse with status 'success' or 'error'.
        """
        request_id = uuid.uuid4().hex[:12]
        start = time.perf_counter()
        self.temp_manager.cleanup_old_files()

        try:
            request = self.validate_request(arguments)
            params = self.replicate_client.create_params(
                prompt=request.prompt,
                model=request.model,
                aspect_ratio=request.aspect_ratio,
                seed=request.seed,
            )

            logger.info(
                'Generating image for request {request_id}',
                request_id=request_id,
                extra={'model': request.model, 'aspect_ratio': request.aspect_ratio},
            )
            generation = await self.replicate_client.generate_image_with_retry(params)
            image_data = await self.replicate_client.download_image(generation.image_urls[0])

            options = ImageProcessingOptions(
                output_path=request.output_path,
                output_format=request.output_format,
                quality=request.quality,
                resize=request.resize,
            )
            processed = await asyncio.to_thread(
                self.image_processor.process_image, image_data, options, request_id
            )

        except Exception as e:
            if isinstance(e, FluxMcpError):
                error = e
            else:
                error = FluxMcpError(f'Unexpected error: {str(e)}', ErrorCode.PROCESSING)
                logger.exception(f'Unexpected error in request {request_id}')
            self.temp_manager.cleanup_owner(request_id)
            logger.error(
                f'Image generation failed for request {request_id} '
                f'({error.code.value}): {error.message}'
            )
            return McpImageGenerationResponse(
                status='error',
                message=error.message,
                error_code=error.code.value,
                metadata={'request_id': request_id, **error.context},
            )

        total_ms = int((time.perf_counter() - start) * 1000)
        logger.info(f'Request {request_id} completed in {total_ms}ms: {processed.output_path}')

        return McpImageGenerationResponse(
            status='success',
            message=f'Image generated successfully and saved to {processed.output_path}',
            paths=[f'file://{processed.output_path}'],
            output_path=processed.output_path,
            model=generation.model,
            aspect_ratio=generation.aspect_ratio,
            original_width=processed.original_width,
            original_height=processed.original_height,
            width=processed.width,
            height=processed.height,
            output_format=processed.output_format,
            file_size=processed.file_size,
            generation_time_ms=generation.processing_time_ms,
            processing_time_ms=processed.processing_time_ms,
            total_time_ms=total_ms,
            estimated_cost=self.replicate_client.estimate_cost(generation.model),
            attempts=generation.attempts,
            metadata={'request_id': request_id, 'model_id': generation.model_id},
        )
