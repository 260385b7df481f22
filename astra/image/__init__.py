"""Image package.

Architectural role:
    Transport and service helpers for image generation and image editing.

Module split:
    - `client`: OpenAI-style images endpoints over `requests`.
    - `service`: source-image normalization and `ImageResult`.
"""
