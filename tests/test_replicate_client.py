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
"""Tests for the Replicate client."""

import asyncio
import httpx
import pytest
from flux_replicate_mcp_server.errors import ErrorCode, FluxMcpError, api_error, auth_error
from flux_replicate_mcp_server.models.common import GenerationResult
from flux_replicate_mcp_server.models.flux_models import AspectRatio, FluxModel
from flux_replicate_mcp_server.services.replicate_client import (
    FLUX_MODELS,
    ReplicateClient,
    classify_upstream_error,
    normalize_output,
)
from unittest.mock import AsyncMock, MagicMock, patch


class FakeReplicateError(Exception):
    """Upstream error carrying an HTTP status like the SDK's errors."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


@pytest.fixture
def upstream():
    client = MagicMock()
    client.async_run = AsyncMock(return_value=['https://replicate.delivery/image.png'])
    return client


@pytest.fixture
def client(server_config, upstream):
    return ReplicateClient(server_config, client=upstream)


def _result(attempts=1):
    return GenerationResult(
        image_urls=['https://replicate.delivery/image.png'],
        model='flux-pro',
        model_id='black-forest-labs/flux-pro',
        aspect_ratio='1:1',
        dimensions=(1024, 1024),
        processing_time_ms=10,
        attempts=attempts,
    )


class TestParameters:
    """Tests for parameter validation and request shaping."""

    def test_create_params_defaults(self, client):
        params = client.create_params(prompt='  a lighthouse  ')
        assert params.prompt == 'a lighthouse'
        assert params.model == FluxModel.FLUX_PRO
        assert params.aspect_ratio == AspectRatio.RATIO_1_1
        assert params.num_outputs == 1

    @pytest.mark.parametrize(
        'overrides',
        [
            {'prompt': ''},
            {'prompt': '   '},
            {'prompt': 'x' * 1001},
            {'model': 'flux-dev'},
            {'aspect_ratio': '5:4'},
            {'num_outputs': 0},
            {'num_outputs': 5},
            {'guidance_scale': 0.5},
            {'guidance_scale': 21},
            {'num_inference_steps': 0},
            {'num_inference_steps': 51},
            {'seed': -1},
            {'seed': 2147483648},
        ],
    )
    def test_invalid_params(self, client, overrides):
        kwargs = {'prompt': 'a lighthouse', **overrides}
        assert client.validate_params(kwargs)
        with pytest.raises(FluxMcpError) as exc_info:
            client.create_params(**kwargs)
        assert exc_info.value.code == ErrorCode.VALIDATION

    def test_validate_params_valid(self, client):
        assert client.validate_params({'prompt': 'ok', 'seed': 2147483647}) == []

    def test_empty_prompt_message(self, client):
        errors = client.validate_params({'prompt': '   '})
        assert errors == ['prompt: Prompt is required and cannot be empty']

    def test_schnell_shaping(self, client):
        params = client.create_params(
            prompt='fast', model='flux-schnell', guidance_scale=7.0, num_inference_steps=20
        )
        payload = client.build_input(params)
        assert payload['num_inference_steps'] == 4
        assert 'guidance_scale' not in payload

    def test_schnell_default_steps(self, client):
        payload = client.build_input(client.create_params(prompt='fast', model='flux-schnell'))
        assert payload['num_inference_steps'] == 4

    def test_pro_shaping_defaults(self, client):
        payload = client.build_input(client.create_params(prompt='slow', aspect_ratio='16:9'))
        assert payload == {
            'prompt': 'slow',
            'aspect_ratio': '16:9',
            'num_outputs': 1,
            'guidance_scale': 3.5,
            'num_inference_steps': 28,
        }

    def test_seed_zero_is_sent(self, client):
        payload = client.build_input(client.create_params(prompt='seeded', seed=0))
        assert payload['seed'] == 0

    def test_every_model_has_a_shape(self):
        assert set(FLUX_MODELS) == {model.value for model in FluxModel}


class TestGenerateImage:
    """Tests for a single prediction."""

    @pytest.mark.asyncio
    async def test_success(self, client, upstream):
        params = client.create_params(prompt='a lighthouse', aspect_ratio='3:2')
        result = await client.generate_image(params)

        assert result.image_urls == ['https://replicate.delivery/image.png']
        assert result.model == 'flux-pro'
        assert result.model_id == 'black-forest-labs/flux-pro'
        assert result.dimensions == (1216, 832)
        upstream.async_run.assert_awaited_once()
        args, kwargs = upstream.async_run.call_args
        assert args[0] == 'black-forest-labs/flux-pro'
        assert kwargs['input']['aspect_ratio'] == '3:2'

    @pytest.mark.asyncio
    async def test_string_result(self, client, upstream):
        upstream.async_run.return_value = 'https://replicate.delivery/one.webp'
        result = await client.generate_image(client.create_params(prompt='x'))
        assert result.image_urls == ['https://replicate.delivery/one.webp']

    @pytest.mark.asyncio
    async def test_file_output_result(self, client, upstream):
        upstream.async_run.return_value = [MagicMock(url='https://replicate.delivery/f.png')]
        result = await client.generate_image(client.create_params(prompt='x'))
        assert result.image_urls == ['https://replicate.delivery/f.png']

    @pytest.mark.asyncio
    @pytest.mark.parametrize('output', [[], {'url': 1}, 42, None])
    async def test_unexpected_result(self, client, upstream, output):
        upstream.async_run.return_value = output
        with pytest.raises(FluxMcpError) as exc_info:
            await client.generate_image(client.create_params(prompt='x'))
        assert exc_info.value.code == ErrorCode.API
        assert 'Unexpected prediction result format' in exc_info.value.message
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout(self, server_config, upstream):
        config = server_config.model_copy(update={'generation_timeout': 0.01})

        async def slow_run(*args, **kwargs):
            await asyncio.sleep(1)

        upstream.async_run = slow_run
        client = ReplicateClient(config, client=upstream)

        with pytest.raises(FluxMcpError) as exc_info:
            await client.generate_image(client.create_params(prompt='x'))
        assert exc_info.value.code == ErrorCode.TIMEOUT
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_upstream_auth_failure(self, client, upstream):
        upstream.async_run.side_effect = FakeReplicateError('Unauthenticated', status=401)
        with pytest.raises(FluxMcpError) as exc_info:
            await client.generate_image(client.create_params(prompt='x'))
        assert exc_info.value.code == ErrorCode.AUTH


class TestClassifyUpstreamError:
    """Tests for classify_upstream_error."""

    @pytest.mark.parametrize('status', [401, 403])
    def test_auth(self, status):
        error = classify_upstream_error(FakeReplicateError('denied', status), 'm')
        assert error.code == ErrorCode.AUTH
        assert error.retryable is False

    def test_client_error_not_retryable(self):
        error = classify_upstream_error(FakeReplicateError('bad input', 422), 'm')
        assert error.code == ErrorCode.API
        assert error.retryable is False

    @pytest.mark.parametrize('status', [429, 500, 503])
    def test_transient_errors_retryable(self, status):
        error = classify_upstream_error(FakeReplicateError('busy', status), 'm')
        assert error.code == ErrorCode.API
        assert error.retryable is True

    def test_message_markers(self):
        assert classify_upstream_error(Exception('HTTP 401 Unauthorized'), 'm').code == ErrorCode.AUTH
        assert classify_upstream_error(Exception('HTTP 400 Bad Request'), 'm').retryable is False
        assert classify_upstream_error(Exception('connection reset'), 'm').retryable is True


class TestNormalizeOutput:
    def test_list_of_strings(self):
        assert normalize_output(['a', 'b']) == ['a', 'b']

    def test_mixed_file_outputs(self):
        assert normalize_output(['a', MagicMock(url='b')]) == ['a', 'b']


class TestGenerateImageWithRetry:
    """Tests for the retry wrapper."""

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, client):
        """Two transient failures and a success take exactly three attempts."""
        params = client.create_params(prompt='x')
        failure = api_error('Replicate API error: 503', retryable=True)

        with patch.object(
            client, 'generate_image', AsyncMock(side_effect=[failure, failure, _result()])
        ) as mock_generate:
            with patch(
                'flux_replicate_mcp_server.services.replicate_client.asyncio.sleep',
                new_callable=AsyncMock,
            ) as mock_sleep:
                result = await client.generate_image_with_retry(
                    params, max_attempts=3, base_delay=1.0
                )

        assert mock_generate.await_count == 3
        assert result.attempts == 3
        assert [call.args[0] for call in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, client):
        """Three transient failures exhaust three attempts and raise the last error."""
        params = client.create_params(prompt='x')
        errors = [api_error(f'failure {i}', retryable=True) for i in range(1, 4)]

        with patch.object(client, 'generate_image', AsyncMock(side_effect=errors)) as mock_generate:
            with pytest.raises(FluxMcpError) as exc_info:
                await client.generate_image_with_retry(params, max_attempts=3, base_delay=0)

        assert mock_generate.await_count == 3
        assert exc_info.value is errors[-1]

    @pytest.mark.asyncio
    async def test_malformed_result_is_retried(self, client, upstream):
        """A malformed prediction result is retried like any transient failure."""
        upstream.async_run.side_effect = [{'weird': 1}, 'https://replicate.delivery/y.png']

        result = await client.generate_image_with_retry(
            client.create_params(prompt='x'), max_attempts=3, base_delay=0
        )

        assert upstream.async_run.await_count == 2
        assert result.attempts == 2
        assert result.image_urls == ['https://replicate.delivery/y.png']

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self, client):
        params = client.create_params(prompt='x')

        with patch.object(
            client, 'generate_image', AsyncMock(side_effect=auth_error('401 Unauthorized'))
        ) as mock_generate:
            with pytest.raises(FluxMcpError) as exc_info:
                await client.generate_image_with_retry(params, max_attempts=3, base_delay=0)

        assert mock_generate.await_count == 1
        assert exc_info.value.code == ErrorCode.AUTH

    @pytest.mark.asyncio
    async def test_single_attempt_disables_retry(self, client):
        params = client.create_params(prompt='x')
        failure = api_error('busy', retryable=True)

        with patch.object(client, 'generate_image', AsyncMock(side_effect=failure)) as mock_generate:
            with pytest.raises(FluxMcpError):
                await client.generate_image_with_retry(params, max_attempts=1)

        assert mock_generate.await_count == 1

    @pytest.mark.asyncio
    async def test_defaults_from_config(self, client, upstream):
        """Attempts default to the configured value (3)."""
        upstream.async_run.side_effect = [
            FakeReplicateError('busy', 503),
            ['https://replicate.delivery/image.png'],
        ]
        result = await client.generate_image_with_retry(client.create_params(prompt='x'))
        assert result.attempts == 2
        assert upstream.async_run.await_count == 2


class TestDownloadImage:
    """Tests for download_image."""

    @pytest.mark.asyncio
    async def test_success(self, server_config, upstream):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b'bytes'))
        client = ReplicateClient(
            server_config, client=upstream, http_client=httpx.AsyncClient(transport=transport)
        )
        assert await client.download_image('https://replicate.delivery/image.png') == b'bytes'

    @pytest.mark.asyncio
    async def test_http_error(self, server_config, upstream):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        client = ReplicateClient(
            server_config, client=upstream, http_client=httpx.AsyncClient(transport=transport)
        )
        with pytest.raises(FluxMcpError) as exc_info:
            await client.download_image('https://replicate.delivery/missing.png')
        assert exc_info.value.code == ErrorCode.API
        assert exc_info.value.message == 'Failed to download image: HTTP 404 Not Found'

    @pytest.mark.asyncio
    async def test_timeout(self, server_config, upstream):
        def handler(request):
            raise httpx.ReadTimeout('timed out', request=request)

        client = ReplicateClient(
            server_config,
            client=upstream,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(FluxMcpError) as exc_info:
            await client.download_image('https://replicate.delivery/slow.png')
        assert exc_info.value.code == ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_aclose_only_closes_owned_client(self, server_config, upstream):
        http_client = MagicMock()
        http_client.aclose = AsyncMock()
        client = ReplicateClient(server_config, client=upstream, http_client=http_client)
        await client.aclose()
        http_client.aclose.assert_not_awaited()


class TestCatalog:
    """Tests for the model catalog helpers."""

    def test_estimate_cost(self, client):
        assert client.estimate_cost('flux-pro') == pytest.approx(0.055)
        assert client.estimate_cost('flux-schnell', 4) == pytest.approx(0.012)

    def test_models_and_ratios(self, client):
        assert client.is_model_supported('flux-1.1-pro')
        assert not client.is_model_supported('flux-dev')
        assert client.get_available_models() == [
            'flux-pro', 'flux-schnell', 'flux-1.1-pro', 'flux-ultra'
        ]
        assert '21:9' in client.get_available_aspect_ratios()


class TestHealthCheck:
    """Tests for the Replicate reachability check."""

    @pytest.mark.asyncio
    async def test_healthy(self, client, upstream):
        upstream.models.async_list = AsyncMock(return_value=MagicMock())
        assert await client.health_check() == {'healthy': True}
        upstream.models.async_list.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unhealthy(self, client, upstream):
        upstream.models.async_list = AsyncMock(
            side_effect=FakeReplicateError('401 Unauthorized', status=401)
        )
        assert await client.health_check() == {'healthy': False, 'error': '401 Unauthorized'}
