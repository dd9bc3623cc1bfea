"""Replicate image studio.

Architectural role:
    Terminal and HTTP front-ends over a single generation session controller that
    submits text-to-image predictions to the Replicate API and polls them to a
    terminal status.

Package split:
    - `image`: configuration, data contracts, transport and the session controller.
    - `storage`: local credential persistence.
    - `api`: CLI and HTTP adapters.
"""
