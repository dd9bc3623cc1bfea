"""Data contracts for one text-to-image generation attempt.

Architectural role:
    Defines the request collected by the adapters, the handle and status values
    returned by the remote service, and the terminal result surfaced back to the
    adapters.

Validation:
    `GenerationRequest.validate()` enforces the enumerated sizes/options and the
    numeric bounds. It never touches the network.

Determinism:
    Everything here is pure except `random_seed()`.
"""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from studio.image.errors import ValidationError

# Option sets offered by the form.
IMAGE_SIZES = (512, 768, 1024)
OUTPUT_COUNTS = (1, 2, 4)
SCHEDULERS = ("K_EULER", "K_EULER_ANCESTRAL", "DPM_SOLVER", "DDIM")

MIN_INFERENCE_STEPS = 10
MAX_INFERENCE_STEPS = 150
MIN_GUIDANCE_SCALE = 1.0
MAX_GUIDANCE_SCALE = 20.0

SEED_UPPER_BOUND = 1_000_000_000


def random_seed() -> int:
    """Return a random seed in `[0, 1_000_000_000)`."""
    return random.randrange(SEED_UPPER_BOUND)


class PredictionStatus(str, Enum):
    """Lifecycle states reported by the prediction service."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (PredictionStatus.SUCCEEDED, PredictionStatus.FAILED, PredictionStatus.CANCELED)

    @classmethod
    def parse(cls, value) -> "PredictionStatus":
        """Map a raw status string to a member; unknown values count as processing."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.PROCESSING


@dataclass
class GenerationRequest:
    """Parameters for one generation attempt.

    Attributes:
        prompt: Text describing the desired image. Required.
        negative_prompt: Text describing what to avoid. Empty means none.
        width: Output width, one of `IMAGE_SIZES`.
        height: Output height, one of `IMAGE_SIZES`.
        num_outputs: Number of images, one of `OUTPUT_COUNTS`.
        scheduler: Sampling algorithm, one of `SCHEDULERS`.
        num_inference_steps: Denoising steps in `[10, 150]`.
        guidance_scale: Prompt adherence in `[1.0, 20.0]`.
        seed: Optional non-negative seed; omitted from the request when `None`.
    """

    prompt: str
    negative_prompt: str = ""
    width: int = 768
    height: int = 768
    num_outputs: int = 1
    scheduler: str = "K_EULER"
    num_inference_steps: int = 50
    guidance_scale: float = 7.5
    seed: Optional[int] = None

    def validate(self) -> None:
        """Raise `ValidationError` for the first invalid field."""
        if not self.prompt or not self.prompt.strip():
            raise ValidationError("Please enter a prompt to generate an image.")
        if self.width not in IMAGE_SIZES:
            raise ValidationError(f"Width must be one of {IMAGE_SIZES}, got {self.width}.")
        if self.height not in IMAGE_SIZES:
            raise ValidationError(f"Height must be one of {IMAGE_SIZES}, got {self.height}.")
        if self.num_outputs not in OUTPUT_COUNTS:
            raise ValidationError(
                f"Number of images must be one of {OUTPUT_COUNTS}, got {self.num_outputs}."
            )
        if self.scheduler not in SCHEDULERS:
            raise ValidationError(f"Unknown scheduler: {self.scheduler}")
        if not MIN_INFERENCE_STEPS <= self.num_inference_steps <= MAX_INFERENCE_STEPS:
            raise ValidationError(
                f"Inference steps must be between {MIN_INFERENCE_STEPS} and "
                f"{MAX_INFERENCE_STEPS}, got {self.num_inference_steps}."
            )
        if not MIN_GUIDANCE_SCALE <= self.guidance_scale <= MAX_GUIDANCE_SCALE:
            raise ValidationError(
                f"Guidance scale must be between {MIN_GUIDANCE_SCALE} and "
                f"{MAX_GUIDANCE_SCALE}, got {self.guidance_scale}."
            )
        if self.seed is not None and self.seed < 0:
            raise ValidationError(f"Seed must be non-negative, got {self.seed}.")

    def to_input(self) -> dict:
        """Build the model `input` object using the remote field names."""
        payload = {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "width": self.width,
            "height": self.height,
            "num_outputs": self.num_outputs,
            "scheduler": self.scheduler,
            "num_inference_steps": self.num_inference_steps,
            "guidance_scale": self.guidance_scale,
        }
        if self.seed is not None:
            payload["seed"] = self.seed
        return payload


@dataclass(frozen=True)
class PredictionHandle:
    """Identifier of one remote prediction plus the status seen at creation."""

    id: str
    status: PredictionStatus = PredictionStatus.STARTING


@dataclass
class GenerationResult:
    """Terminal outcome of one prediction.

    `images` is populated on success, `error` otherwise. Entries keep the
    service order; an output slot the service left empty is `None`.
    """

    handle: PredictionHandle
    status: PredictionStatus
    images: List[Optional[str]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is PredictionStatus.SUCCEEDED
