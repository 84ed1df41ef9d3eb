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
"""Replicate client for the Flux text-to-image models.

This module shapes Flux request parameters per model, runs predictions on
Replicate with a bounded timeout and optional retries, and downloads the
resulting images.
"""

import asyncio
import httpx
import replicate
import time
from flux_replicate_mcp_server.consts import (
    ASPECT_RATIOS,
    CLIENT_ERROR_MARKERS,
    DEFAULT_GUIDANCE_SCALE,
    DEFAULT_INFERENCE_STEPS,
    DOWNLOAD_CONNECT_TIMEOUT,
    FLUX_11_PRO_MODEL_ID,
    FLUX_PRO_MODEL_ID,
    FLUX_SCHNELL_MODEL_ID,
    FLUX_ULTRA_MODEL_ID,
    MODEL_COSTS,
    SCHNELL_MAX_INFERENCE_STEPS,
)
from flux_replicate_mcp_server.errors import (
    FluxMcpError,
    api_error,
    auth_error,
    timeout_error,
    validation_error,
)
from flux_replicate_mcp_server.models.common import GenerationResult
from flux_replicate_mcp_server.models.flux_models import FluxGenerationParams, FluxModel
from loguru import logger
from pydantic import ValidationError
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple


if TYPE_CHECKING:
    from flux_replicate_mcp_server.config import ServerConfig


def _shape_schnell(params: FluxGenerationParams) -> Dict[str, Any]:
    """flux-schnell runs at most 4 steps and takes no guidance scale."""
    steps = params.num_inference_steps or SCHNELL_MAX_INFERENCE_STEPS
    return {'num_inference_steps': min(steps, SCHNELL_MAX_INFERENCE_STEPS)}


def _shape_guided(params: FluxGenerationParams) -> Dict[str, Any]:
    return {
        'guidance_scale': (
            params.guidance_scale
            if params.guidance_scale is not None
            else DEFAULT_GUIDANCE_SCALE
        ),
        'num_inference_steps': params.num_inference_steps or DEFAULT_INFERENCE_STEPS,
    }


# Model name -> (Replicate model reference, parameter shaping)
FLUX_MODELS: Dict[str, Tuple[str, Callable[[FluxGenerationParams], Dict[str, Any]]]] = {
    FluxModel.FLUX_PRO.value: (FLUX_PRO_MODEL_ID, _shape_guided),
    FluxModel.FLUX_SCHNELL.value: (FLUX_SCHNELL_MODEL_ID, _shape_schnell),
    FluxModel.FLUX_11_PRO.value: (FLUX_11_PRO_MODEL_ID, _shape_guided),
    FluxModel.FLUX_ULTRA.value: (FLUX_ULTRA_MODEL_ID, _shape_guided),
}


def _format_validation_errors(error: ValidationError) -> List[str]:
    messages = []
    for detail in error.errors():
        field = '.'.join(str(part) for part in detail.get('loc', ()))
        message = detail.get('msg', 'Invalid value').removeprefix('Value error, ')
        messages.append(f'{field}: {message}' if field else message)
    return messages


def _is_client_error(status: Optional[int], message: str) -> bool:
    if status is not None:
        # Rate limiting and request timeouts are transient
        return 400 <= status < 500 and status not in (408, 429)
    return any(marker in message for marker in CLIENT_ERROR_MARKERS)


def classify_upstream_error(error: Exception, model_id: str) -> FluxMcpError:
    """Map an exception raised by the Replicate SDK to a ``FluxMcpError``.

    401/403 become AUTH errors. Other client errors (4xx except 408 and 429)
    become non-retryable API errors, everything else a retryable API error.
    """
    status = getattr(error, 'status', None)
    if not isinstance(status, int):
        status = None
    message = str(error) or type(error).__name__
    context = {'model_id': model_id, 'status': status, 'error_type': type(error).__name__}

    if status in (401, 403) or (
        status is None and ('401' in message or '403' in message)
    ):
        return auth_error(
            f'Replicate rejected the API token: {message}. '
            'Check REPLICATE_API_TOKEN and the account permissions.',
            context,
        )
    return api_error(
        f'Replicate API error: {message}',
        context,
        retryable=not _is_client_error(status, message),
    )


def normalize_output(output: Any) -> List[str]:
    """Normalize a prediction output to a non-empty list of URLs.

    Replicate returns a URL string, a list of URL strings, or file output
    objects exposing ``url``, depending on the model and SDK version.

    Raises:
        FluxMcpError: Retryable API error if the output has any other shape or is empty.
    """
    items = output if isinstance(output, (list, tuple)) else [output]
    urls = []
    for item in items:
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(getattr(item, 'url', None), str):
            urls.append(item.url)
        else:
            raise api_error(
                'Unexpected prediction result format',
                {'result_type': type(item).__name__},
                retryable=True,
            )
    if not urls:
        raise api_error(
            'Unexpected prediction result format', {'result_type': 'empty'}, retryable=True
        )
    return urls


class ReplicateClient:
    """Runs Flux predictions on Replicate and downloads their output."""

    def __init__(
        self,
        config: 'ServerConfig',
        client: Optional[replicate.Client] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            config: Server configuration providing the token, timeouts and retry policy.
            client: Replicate client to use. Created from ``config.api_token`` if omitted.
            http_client: HTTP client for downloads. Created (and owned) if omitted.
        """
        self.config = config
        self.client = client or replicate.Client(api_token=config.api_token)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.download_timeout, connect=DOWNLOAD_CONNECT_TIMEOUT),
            follow_redirects=True,
        )

    def validate_params(self, params: Dict[str, Any]) -> List[str]:
        """Return the problems with a raw parameter dictionary, empty if valid."""
        try:
            FluxGenerationParams(**params)
        except ValidationError as e:
            return _format_validation_errors(e)
        return []

    def create_params(self, **kwargs: Any) -> FluxGenerationParams:
        """Build validated generation parameters.

        Raises:
            FluxMcpError: VALIDATION listing every invalid field.
        """
        try:
            return FluxGenerationParams(**kwargs)
        except ValidationError as e:
            errors = _format_validation_errors(e)
            raise validation_error(
                f'Invalid generation parameters: {"; ".join(errors)}', {'errors': errors}
            )

    def build_input(self, params: FluxGenerationParams) -> Dict[str, Any]:
        """Build the Replicate input payload for ``params``."""
        _, shape = FLUX_MODELS[params.model.value]
        payload: Dict[str, Any] = {
            'prompt': params.prompt,
            'aspect_ratio': params.aspect_ratio.value,
            'num_outputs': params.num_outputs,
        }
        if params.seed is not None:
            payload['seed'] = params.seed
        payload.update(shape(params))
        return payload

    async def generate_image(self, params: FluxGenerationParams) -> GenerationResult:
        """Run a single prediction.

        Args:
            params: Validated generation parameters.

        Returns:
            GenerationResult with the image URLs returned by Replicate.

        Raises:
            FluxMcpError: AUTH/API for upstream failures, TIMEOUT when the
                prediction exceeds ``generation_timeout``.
        """
        model_id, _ = FLUX_MODELS[params.model.value]
        payload = self.build_input(params)
        start = time.perf_counter()

        logger.info(
            'Running Flux prediction on {model_id}',
            model_id=model_id,
            extra={'aspect_ratio': payload['aspect_ratio'], 'input_keys': sorted(payload)},
        )

        try:
            output = await asyncio.wait_for(
                self.client.async_run(model_id, input=payload),
                timeout=self.config.generation_timeout,
            )
        except asyncio.TimeoutError:
            raise timeout_error(
                f'Image generation timed out after {self.config.generation_timeout:g} seconds',
                {'model_id': model_id},
            )
        except FluxMcpError:
            raise
        except Exception as e:
            raise classify_upstream_error(e, model_id)

        urls = normalize_output(output)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.info(f'Prediction on {model_id} returned {len(urls)} image(s) in {elapsed_ms}ms')

        return GenerationResult(
            image_urls=urls,
            model=params.model.value,
            model_id=model_id,
            aspect_ratio=params.aspect_ratio.value,
            dimensions=ASPECT_RATIOS[params.aspect_ratio.value],
            processing_time_ms=elapsed_ms,
        )

    async def generate_image_with_retry(
        self,
        params: FluxGenerationParams,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ) -> GenerationResult:
        """Run a prediction, retrying transient failures with exponential backoff.

        The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``.
        Non-retryable errors (validation, auth, other client errors) are
        raised immediately. When every attempt fails the last error is raised.

        Args:
            params: Validated generation parameters.
            max_attempts: Total attempts. Defaults to ``config.max_attempts``; 1 disables retries.
            base_delay: Initial delay in seconds. Defaults to ``config.retry_base_delay``.
        """
        attempts = max(1, max_attempts if max_attempts is not None else self.config.max_attempts)
        delay = base_delay if base_delay is not None else self.config.retry_base_delay

        for attempt in range(1, attempts + 1):
            try:
                result = await self.generate_image(params)
                result.attempts = attempt
                return result
            except FluxMcpError as e:
                if not e.retryable or attempt == attempts:
                    raise
                wait = delay * 2 ** (attempt - 1)
                logger.warning(
                    f'Generation attempt {attempt}/{attempts} failed ({e.code.value}), '
                    f'retrying in {wait:g}s'
                )
                await asyncio.sleep(wait)

        # Unreachable, the loop either returns or raises
        raise api_error('All retry attempts failed')

    async def download_image(self, url: str) -> bytes:
        """Download image bytes from ``url``.

        Raises:
            FluxMcpError: API for non-2xx responses or transport errors,
                TIMEOUT when the download exceeds ``download_timeout``.
        """
        try:
            response = await self.http_client.get(url)
        except httpx.TimeoutException:
            raise timeout_error(
                f'Image download timed out after {self.config.download_timeout:g} seconds',
                {'url': url},
            )
        except httpx.RequestError as e:
            raise api_error(f'Failed to download image: {str(e)}', {'url': url}, retryable=True)

        if not response.is_success:
            raise api_error(
                f'Failed to download image: HTTP {response.status_code} {response.reason_phrase}',
                {'url': url, 'status': response.status_code},
            )

        logger.debug(f'Downloaded {len(response.content)} bytes')
        return response.content

    async def health_check(self) -> Dict[str, Any]:
        """Check that Replicate is reachable and accepts the API token.

        Returns:
            ``{'healthy': True}`` or ``{'healthy': False, 'error': <message>}``.
        """
        try:
            await self.client.models.async_list()
        except Exception as e:
            logger.warning(f'Replicate health check failed: {type(e).__name__}')
            return {'healthy': False, 'error': str(e) or type(e).__name__}
        return {'healthy': True}

    def estimate_cost(self, model: str, num_outputs: int = 1) -> float:
        """Advisory cost in USD; not fetched from Replicate."""
        return MODEL_COSTS.get(model, 0.0) * num_outputs

    def is_model_supported(self, model: str) -> bool:
        return model in FLUX_MODELS

    def get_available_models(self) -> List[str]:
        return list(FLUX_MODELS)

    def get_available_aspect_ratios(self) -> List[str]:
        return list(ASPECT_RATIOS)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http_client.aclose()
