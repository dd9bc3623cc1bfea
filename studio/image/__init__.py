"""Image generation package.

Scope:
    Provides the Replicate transport client, the generation session controller
    and a small dispatch service used by the CLI and HTTP adapters.

Non-goals:
    - No local inference.
    - No caching of generated results.
    - No image decoding or post-processing.
"""
