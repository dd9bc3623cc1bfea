"""
HTTP API adapter for the Replicate image studio.

Architectural role:
- Expose the generation lifecycle and credential management as JSON endpoints.
- Translate `GenerationError` subclasses into HTTP status codes.
- Delegate every rule to `studio.image.session.GenerationSession`.

Endpoint responsibilities:
- `GET /v1/options`: sizes, schedulers, bounds and defaults for form rendering.
- `GET /v1/seed`: random seed.
- `GET|PUT|DELETE /v1/credential`: configured flag, save, clear.
- `POST /v1/generations`: run one generation to a terminal status.
- `DELETE /v1/generations/current`: cancel the active generation.

Error mapping (`POST /v1/generations`):
- `ValidationError` -> 400
- `RemoteSubmissionError` / `RemoteQueryError` -> 502
- `RemoteFailureStatus` -> 200 with `status: "failed"` and the service reason
- `GenerationCancelled` -> 409 (cancelled or superseded by a newer request)
- `PollingTimeoutError` -> 504

Concurrency:
- One process-wide session; a newer `POST /v1/generations` supersedes the
  request still polling, which then answers 409.

Side effects:
- Reads/writes the local credential store.
- Loads environment variables at import time via `load_dotenv()`.
"""

from dotenv import load_dotenv

load_dotenv()

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from studio.image.errors import (
    GenerationCancelled,
    GenerationError,
    PollingTimeoutError,
    RemoteFailureStatus,
    RemoteQueryError,
    RemoteSubmissionError,
    ValidationError,
)
from studio.image.models import (
    IMAGE_SIZES,
    MAX_GUIDANCE_SCALE,
    MAX_INFERENCE_STEPS,
    MIN_GUIDANCE_SCALE,
    MIN_INFERENCE_STEPS,
    OUTPUT_COUNTS,
    SCHEDULERS,
    GenerationRequest,
    random_seed,
)
from studio.image.provider_config import DEBUG
from studio.image.service import resolve_credential
from studio.image.session import GenerationSession
from studio.storage.credential_store import CredentialStore


logger = logging.getLogger(__name__)

# uvicorn studio.api.http_api:app --port 8000
app = FastAPI(title="Replicate image studio")

_session = GenerationSession()
_store = CredentialStore()


def get_session() -> GenerationSession:
    return _session


def get_store() -> CredentialStore:
    return _store


# ============================================================
# Request Schemas
# ============================================================

class GenerateBody(BaseModel):
    """
    Generation parameters. Range checks happen in `GenerationRequest.validate`
    so that errors carry the same messages as the CLI.
    """
    prompt: str = ""
    negative_prompt: str = ""
    width: int = 768
    height: int = 768
    num_outputs: int = 1
    scheduler: str = "K_EULER"
    num_inference_steps: int = 50
    guidance_scale: float = 7.5
    seed: Optional[int] = None
    api_key: Optional[str] = None

    def to_request(self) -> GenerationRequest:
        data = self.model_dump(exclude={"api_key"})
        return GenerationRequest(**data)


class CredentialBody(BaseModel):
    api_key: str


def _error(status_code: int, exc: GenerationError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "type": type(exc).__name__},
    )


# ============================================================
# Form Options
# ============================================================

@app.get("/v1/options")
def get_options():
    """Return option sets, numeric bounds and defaults."""
    return {
        "sizes": list(IMAGE_SIZES),
        "num_outputs": list(OUTPUT_COUNTS),
        "schedulers": list(SCHEDULERS),
        "num_inference_steps": {"min": MIN_INFERENCE_STEPS, "max": MAX_INFERENCE_STEPS},
        "guidance_scale": {"min": MIN_GUIDANCE_SCALE, "max": MAX_GUIDANCE_SCALE},
        "defaults": asdict(GenerationRequest(prompt="")),
    }


@app.get("/v1/seed")
def get_seed():
    return {"seed": random_seed()}


# ============================================================
# Credential
# ============================================================

@app.get("/v1/credential")
def credential_status(store: CredentialStore = Depends(get_store)):
    return {"configured": store.load() is not None}


@app.put("/v1/credential")
def save_credential(body: CredentialBody, store: CredentialStore = Depends(get_store)):
    if not store.save(body.api_key):
        return JSONResponse(status_code=400, content={"error": "API key must not be empty."})
    return {"configured": True}


@app.delete("/v1/credential")
def clear_credential(store: CredentialStore = Depends(get_store)):
    store.clear()
    return {"configured": False}


# ============================================================
# Generations
# ============================================================

@app.post("/v1/generations")
async def create_generation(
    body: GenerateBody,
    session: GenerationSession = Depends(get_session),
    store: CredentialStore = Depends(get_store),
):
    """
    Run one generation to a terminal status and return the image URLs.

    The request body credential wins over the stored one.
    """
    credential = resolve_credential(body.api_key, store)
    request = body.to_request()

    if DEBUG:
        logger.debug("Generation request: %s", request)

    try:
        result = await session.generate(request, credential)
    except ValidationError as e:
        return _error(400, e)
    except (RemoteSubmissionError, RemoteQueryError) as e:
        logger.warning("Remote call failed: %s", e.message)
        return _error(502, e)
    except RemoteFailureStatus as e:
        return {
            "id": e.handle.id if e.handle else None,
            "status": "failed",
            "images": [],
            "error": e.message,
        }
    except GenerationCancelled as e:
        return _error(409, e)
    except PollingTimeoutError as e:
        return _error(504, e)

    return {
        "id": result.handle.id,
        "status": result.status.value,
        "images": result.images,
        "error": None,
    }


@app.delete("/v1/generations/current")
async def cancel_generation(remote: bool = False, session: GenerationSession = Depends(get_session)):
    """Stop polling the active generation; `remote=true` also cancels it upstream."""
    handle = session.active_handle
    try:
        stopped = await session.cancel(remote=remote)
    except RemoteQueryError as e:
        return _error(502, e)
    return {"cancelled": stopped, "id": handle.id if handle else None}
