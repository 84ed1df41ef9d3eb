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
# Replicate model references
FLUX_PRO_MODEL_ID = 'black-forest-labs/flux-pro'
FLUX_SCHNELL_MODEL_ID = 'black-forest-labs/flux-schnell'
FLUX_11_PRO_MODEL_ID = 'black-forest-labs/flux-1.1-pro'
FLUX_ULTRA_MODEL_ID = 'black-forest-labs/flux-1.1-pro-ultra'

# Generation defaults
DEFAULT_MODEL = 'flux-pro'
DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 1024
DEFAULT_ASPECT_RATIO = '1:1'
DEFAULT_NUMBER_OF_IMAGES = 1
DEFAULT_GUIDANCE_SCALE = 3.5
DEFAULT_INFERENCE_STEPS = 28
SCHNELL_MAX_INFERENCE_STEPS = 4

# Output defaults
DEFAULT_OUTPUT_FORMAT = 'jpg'
DEFAULT_QUALITY = 80
DEFAULT_RESIZE_BACKGROUND = '#ffffff'
WORKING_DIRECTORY_NAME = 'FluxImages'
FALLBACK_WORKING_DIRECTORY_NAME = 'flux-images'
TEMP_DIRECTORY_NAME = 'flux-replicate-mcp'

# Parameter limits
MAX_PROMPT_LENGTH = 1000
MAX_NUMBER_OF_IMAGES = 4
MIN_GUIDANCE_SCALE = 1.0
MAX_GUIDANCE_SCALE = 20.0
MAX_INFERENCE_STEPS = 50
MAX_SEED = 2147483647
MAX_SLUG_LENGTH = 50
ASPECT_RATIO_TOLERANCE = 0.01

# Named aspect ratios and the pixel sizes sent for them
ASPECT_RATIOS = {
    '1:1': (1024, 1024),
    '16:9': (1344, 768),
    '9:16': (768, 1344),
    '4:3': (1152, 896),
    '3:4': (896, 1152),
    '21:9': (1536, 640),
    '9:21': (640, 1536),
    '3:2': (1216, 832),
    '2:3': (832, 1216),
}

# Advisory per-image cost in USD, not fetched from Replicate
MODEL_COSTS = {
    'flux-pro': 0.055,
    'flux-schnell': 0.003,
    'flux-1.1-pro': 0.04,
    'flux-ultra': 0.06,
}

# Retry and timeout configuration
DEFAULT_MAX_ATTEMPTS = 3  # 1 disables retries
DEFAULT_RETRY_BASE_DELAY = 1.0  # Seconds, doubled after every failed attempt
DEFAULT_GENERATION_TIMEOUT = 300.0  # Seconds to wait for a prediction
DEFAULT_DOWNLOAD_TIMEOUT = 60.0  # Seconds to wait for the image download
DOWNLOAD_CONNECT_TIMEOUT = 10.0
CLIENT_ERROR_MARKERS = ('400', '401', '403')

# Temp file housekeeping
TEMP_FILE_MAX_AGE_MINUTES = 60


# Flux Prompt Best Practices
PROMPT_INSTRUCTIONS = """
# Flux Prompting Best Practices

## General Guidelines

- Prompts must be no longer than 1000 characters. Put the most important details first.
- Describe what should be in the image; Flux has no negative prompt.
- Natural sentences work better than comma separated keyword lists.

## Effective Prompt Structure

An effective prompt often includes short descriptions of:

1. The subject
2. The environment
3. (optional) Lighting and time of day
4. (optional) Camera position/framing or lens
5. (optional) The visual style or medium ("photo", "oil painting", "3d render", etc.)

## Choosing a Model

- flux-pro: highest quality, slower, supports guidance_scale (default 3.5) and 28 steps
- flux-1.1-pro: faster successor of flux-pro with comparable quality
- flux-ultra: high resolution output
- flux-schnell: fastest and cheapest, at most 4 inference steps, no guidance scale

## Aspect Ratios

Width and height are mapped to the closest supported ratio:
1:1, 16:9, 9:16, 4:3, 3:4, 21:9, 9:21, 3:2, 2:3.
Pass aspect_ratio directly to skip the mapping.

## Output Files

- Images are saved under the server working directory.
- Absolute paths are re-rooted: only the file name is kept.
- The file extension (jpg, png, webp) selects the output format unless output_format is given.
"""
