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
"""Pydantic models for Flux generation parameters.

This module defines the supported Flux models, the named aspect ratios and the
validated parameter set sent to Replicate.
"""

from enum import Enum
from flux_replicate_mcp_server.consts import (
    MAX_GUIDANCE_SCALE,
    MAX_INFERENCE_STEPS,
    MAX_NUMBER_OF_IMAGES,
    MAX_PROMPT_LENGTH,
    MAX_SEED,
    MIN_GUIDANCE_SCALE,
)
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class FluxModel(str, Enum):
    """Flux models available through Replicate.

    Attributes:
        FLUX_PRO: Highest quality, slower generation.
        FLUX_SCHNELL: Fast, low-cost generation with at most 4 steps.
        FLUX_11_PRO: Faster successor of Flux Pro.
        FLUX_ULTRA: High resolution Flux 1.1 Pro Ultra.
    """
    FLUX_PRO = 'flux-pro'
    FLUX_SCHNELL = 'flux-schnell'
    FLUX_11_PRO = 'flux-1.1-pro'
    FLUX_ULTRA = 'flux-ultra'


class AspectRatio(str, Enum):
    """Aspect ratios accepted by the Flux models.

    Attributes:
        RATIO_1_1: 1:1 square format.
        RATIO_16_9: 16:9 widescreen landscape format.
        RATIO_9_16: 9:16 vertical/mobile format.
        RATIO_4_3: 4:3 standard landscape format.
        RATIO_3_4: 3:4 standard portrait format.
        RATIO_21_9: 21:9 ultra-wide format.
        RATIO_9_21: 9:21 ultra-tall format.
        RATIO_3_2: 3:2 landscape format.
        RATIO_2_3: 2:3 portrait format.
    """
    RATIO_1_1 = '1:1'
    RATIO_16_9 = '16:9'
    RATIO_9_16 = '9:16'
    RATIO_4_3 = '4:3'
    RATIO_3_4 = '3:4'
    RATIO_21_9 = '21:9'
    RATIO_9_21 = '9:21'
    RATIO_3_2 = '3:2'
    RATIO_2_3 = '2:3'


class FluxGenerationParams(BaseModel):
    """Parameters for a Flux text-to-image prediction.

    Attributes:
        prompt: Text description of the image (1-1000 characters, trimmed).
        model: Flux model to run.
        aspect_ratio: Named aspect ratio of the output.
        num_outputs: Number of images to generate (1-4).
        guidance_scale: Prompt adherence (1-20). Ignored by flux-schnell.
        num_inference_steps: Denoising steps (1-50). Capped at 4 for flux-schnell.
        seed: Seed for reproducible generation (0-2,147,483,647).
    """
    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_LENGTH)
    model: FluxModel = FluxModel.FLUX_PRO
    aspect_ratio: AspectRatio = AspectRatio.RATIO_1_1
    num_outputs: int = Field(default=1, ge=1, le=MAX_NUMBER_OF_IMAGES)
    guidance_scale: Optional[float] = Field(
        default=None, ge=MIN_GUIDANCE_SCALE, le=MAX_GUIDANCE_SCALE
    )
    num_inference_steps: Optional[int] = Field(default=None, ge=1, le=MAX_INFERENCE_STEPS)
    seed: Optional[int] = Field(default=None, ge=0, le=MAX_SEED)

    @field_validator('prompt')
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Trim the prompt and reject whitespace-only prompts.

        Args:
            v: The raw prompt.

        Returns:
            The trimmed prompt.

        Raises:
            ValueError: If the prompt is empty after trimming.
        """
        v = v.strip()
        if not v:
            raise ValueError('Prompt is required and cannot be empty')
        return v
