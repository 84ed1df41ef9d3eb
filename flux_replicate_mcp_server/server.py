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
"""Flux Replicate MCP Server implementation."""

import os
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from flux_replicate_mcp_server.config import (
    ServerConfig,
    build_arg_parser,
    ensure_working_directory,
    load_config,
)
from flux_replicate_mcp_server.consts import PROMPT_INSTRUCTIONS
from flux_replicate_mcp_server.errors import FluxMcpError
from flux_replicate_mcp_server.models.common import McpImageGenerationResponse
from flux_replicate_mcp_server.services.image_processor import ImageProcessor
from flux_replicate_mcp_server.services.orchestrator import ImageGenerationOrchestrator
from flux_replicate_mcp_server.services.replicate_client import ReplicateClient
from flux_replicate_mcp_server.services.temp_manager import TempManager
from loguru import logger
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field
from typing import Annotated, AsyncIterator, List, Optional


def _resolve_log_level(level: Optional[str]) -> str:
    name = (level or os.getenv('FASTMCP_LOG_LEVEL') or 'WARNING').strip().upper()
    try:
        logger.level(name)
    except ValueError:
        return 'WARNING'
    return name


def configure_logging(level: Optional[str] = None, serialize: bool = False) -> None:
    """Send all logs to stderr; stdout carries the MCP protocol stream.

    Level names are case-insensitive. Unknown levels fall back to WARNING.
    """
    logger.remove()
    logger.add(sys.stderr, level=_resolve_log_level(level), serialize=serialize)


# Logging
configure_logging()


@dataclass
class AppContext:
    """Resources shared by every request for the lifetime of the server."""
    config: ServerConfig
    orchestrator: ImageGenerationOrchestrator
    replicate_client: ReplicateClient
    temp_manager: TempManager


def create_app_context(config: ServerConfig) -> AppContext:
    """Wire the services for ``config``."""
    temp_manager = TempManager(config.temp_directory)
    replicate_client = ReplicateClient(config)
    image_processor = ImageProcessor(
        default_format=config.default_output_format,
        default_quality=config.default_quality,
        temp_manager=temp_manager,
    )
    orchestrator = ImageGenerationOrchestrator(
        config, replicate_client, image_processor, temp_manager
    )
    return AppContext(
        config=config,
        orchestrator=orchestrator,
        replicate_client=replicate_client,
        temp_manager=temp_manager,
    )


async def mcp_generate_image(
    ctx: Context,
    prompt: Annotated[
        str,
        Field(description='The text description of the image to generate (1-1000 characters)'),
    ],
    model: Annotated[
        Optional[str],
        Field(description='Flux model: flux-pro, flux-schnell, flux-1.1-pro or flux-ultra'),
    ] = None,
    output_path: Annotated[
        Optional[str],
        Field(
            description='File path for the image, relative to the working directory. '
            'Absolute paths keep only their file name.'
        ),
    ] = None,
    output_directory: Annotated[
        Optional[str],
        Field(description='Directory for the image, relative to the working directory'),
    ] = None,
    filename: Annotated[
        Optional[str],
        Field(description='File name for the image. Generated from the prompt if omitted.'),
    ] = None,
    width: Annotated[
        Optional[int],
        Field(description='Target width in pixels, mapped to the closest aspect ratio'),
    ] = None,
    height: Annotated[
        Optional[int],
        Field(description='Target height in pixels, mapped to the closest aspect ratio'),
    ] = None,
    aspect_ratio: Annotated[
        Optional[str],
        Field(
            description='Aspect ratio, overrides width/height mapping '
            '(1:1, 16:9, 9:16, 4:3, 3:4, 21:9, 9:21, 3:2, 2:3)'
        ),
    ] = None,
    quality: Annotated[
        Optional[int],
        Field(description='Output quality (1-100)'),
    ] = None,
    output_format: Annotated[
        Optional[str],
        Field(description='Output format: jpg, png or webp. Defaults to the file extension.'),
    ] = None,
    seed: Annotated[
        Optional[int],
        Field(description='Seed for reproducible generation (0-2,147,483,647)'),
    ] = None,
) -> McpImageGenerationResponse:
    """Generate an image with a Flux model on Replicate and save it locally.

    The image is saved under the server working directory and its path is
    returned. Width and height are mapped to the closest supported aspect
    ratio; when given they also bound the size of the saved image.

    ## Prompt Best Practices

    Describe the subject, the environment, lighting, framing and style in
    natural sentences. Put the most important details first.

    Returns:
        McpImageGenerationResponse: The saved image path and its metadata.
    """
    arguments = {
        'prompt': prompt,
        'model': model,
        'output_path': output_path,
        'output_directory': output_directory,
        'filename': filename,
        'width': width,
        'height': height,
        'aspect_ratio': aspect_ratio,
        'quality': quality,
        'output_format': output_format,
        'seed': seed,
    }
    logger.debug(f'MCP tool generate_image called, dims: {width}x{height}, model: {model}')

    try:
        app: AppContext = ctx.request_context.lifespan_context
        response = await app.orchestrator.generate_image(
            {key: value for key, value in arguments.items() if value is not None}
        )

        if response.status == 'success':
            await ctx.info(f'Image saved to {response.output_path}')
            return response

        logger.error(f'Image generation returned error status: {response.message}')
        await ctx.error(f'Failed to generate image: {response.message}')
        raise ToolError(f'Failed to generate image: {response.message}')
    except ToolError:
        raise
    except Exception as e:
        logger.error(f'Error in mcp_generate_image: {str(e)}')
        await ctx.error(f'Error generating image: {str(e)}')
        raise


def create_server(config: ServerConfig) -> FastMCP:
    """Create the MCP server for ``config``.

    Services are created when the server starts and torn down when it stops;
    shutdown removes every tracked temporary file.
    """

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
        app = create_app_context(config)
        logger.info(f'Saving images under {config.working_directory}')
        try:
            yield app
        finally:
            app.temp_manager.cleanup_all()
            await app.replicate_client.aclose()
            logger.info('Flux Replicate MCP server stopped')

    server = FastMCP(
        'flux-replicate-mcp-server',
        instructions=f"""
# Flux Image Generation on Replicate

This MCP server generates images from text prompts with the Black Forest Labs
Flux models hosted on Replicate and saves them to the local disk.

## Available Tools

- **generate_image**: Generate an image from a text prompt and save it under the working directory.

{PROMPT_INSTRUCTIONS}
""",
        lifespan=lifespan,
        dependencies=[
            'pydantic',
            'replicate',
            'httpx',
            'Pillow',
        ],
    )
    server.add_tool(mcp_generate_image, name='generate_image')
    return server


def _handle_sigterm(signum: int, frame: object) -> None:
    # Shut down the same way as on Ctrl-C so the lifespan cleanup runs
    raise KeyboardInterrupt


def main(argv: Optional[List[str]] = None) -> None:
    """Run the MCP server with CLI argument support."""
    args = build_arg_parser().parse_args(argv)

    try:
        config = load_config(args)
        configure_logging(config.log_level, config.log_json)
        working_directory = ensure_working_directory(config.working_directory)
    except FluxMcpError as e:
        logger.critical(f'Failed to start flux-replicate-mcp-server: {e.message}')
        sys.exit(1)

    if working_directory != config.working_directory:
        config = config.model_copy(update={'working_directory': working_directory})

    signal.signal(signal.SIGTERM, _handle_sigterm)

    logger.info('Starting flux-replicate-mcp-server MCP server')
    try:
        create_server(config).run()
    except KeyboardInterrupt:
        logger.info('Shutting down flux-replicate-mcp-server')


if __name__ == '__main__':
    main()
