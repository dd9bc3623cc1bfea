"""Provider/runtime configuration for the image layer.

Architectural role:
    Centralizes the Replicate endpoint, the fixed model version and the polling
    policy consumed by `studio.image.client` and `studio.image.session`.

Determinism:
    Values are resolved at import time from the process environment (after
    `load_dotenv()`), so they are fixed for the lifetime of the process.

Failure behavior:
    Malformed numeric environment values raise `ValueError` at import time.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# Remote prediction service.
REPLICATE_API_BASE = os.getenv("REPLICATE_API_BASE", "https://api.replicate.com/v1").rstrip("/")

# stability-ai/stable-diffusion
REPLICATE_MODEL_VERSION = os.getenv(
    "REPLICATE_MODEL_VERSION",
    "ac732df83cea7fff18b8472768c88ad041fa750ff7682a21affe81863cbe77e4",
)

REQUEST_TIMEOUT_SECONDS = float(os.getenv("REPLICATE_TIMEOUT_SECONDS", "30"))

# Where the local credential store lives.
CONFIG_DIR = os.getenv(
    "STUDIO_CONFIG_DIR",
    os.path.join(os.path.expanduser("~"), ".config", "replicate-studio"),
)
CREDENTIAL_KEY = "replicate_api_key"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = os.getenv("DEBUG") == "true"


@dataclass(frozen=True)
class PollingConfig:
    """Polling policy for prediction status checks.

    Relevant environment variables:
        - `POLL_INTERVAL_SECONDS`
        - `POLL_BACKOFF_FACTOR`
        - `POLL_MAX_INTERVAL_SECONDS`
        - `POLL_MAX_ATTEMPTS`
        - `POLL_TIMEOUT_SECONDS`

    A backoff factor of 1.0 gives a fixed interval.
    """

    interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))
    backoff_factor: float = float(os.getenv("POLL_BACKOFF_FACTOR", "1.5"))
    max_interval_seconds: float = float(os.getenv("POLL_MAX_INTERVAL_SECONDS", "10"))
    max_attempts: int = int(os.getenv("POLL_MAX_ATTEMPTS", "150"))
    timeout_seconds: float = float(os.getenv("POLL_TIMEOUT_SECONDS", "600"))

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before poll number `attempt + 1` (0-based attempt)."""
        delay = self.interval_seconds * (self.backoff_factor ** attempt)
        return min(delay, self.max_interval_seconds)
