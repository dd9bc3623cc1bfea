"""Studio adapter package.

Architectural role:
- Defines the external interaction boundary for CLI and HTTP interfaces.
- Performs input collection and response shaping.
- Delegates validation, submission and polling to `studio.image.session`.
"""
