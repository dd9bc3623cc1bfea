"""Replicate predictions transport client.

Processing flow:
    1. Build bearer-token headers from the caller-supplied credential.
    2. Issue one HTTP request against the predictions API.
    3. Return parsed JSON or raise a typed error on non-2xx/transport failure.

Retry behavior:
    None. Each call is attempted once with `REQUEST_TIMEOUT_SECONDS`. Repetition
    of status checks is owned by `studio.image.session`.

Error handling strategy:
    - Creation failures -> `RemoteSubmissionError` carrying the service `detail`.
    - Status/cancel failures -> `RemoteQueryError` with a generic message.

Security considerations:
    - The credential is only placed in the `Authorization` header and is never
      logged or included in exception messages.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from studio.image.errors import RemoteQueryError, RemoteSubmissionError
from studio.image.provider_config import (
    REPLICATE_API_BASE,
    REPLICATE_MODEL_VERSION,
    REQUEST_TIMEOUT_SECONDS,
)


logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    """Extract the service-provided error detail from a failed response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("detail", "error", "title"):
            value = body.get(key)
            if value:
                return str(value)

    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


def _json_object(response: httpx.Response, error_cls, message: str) -> dict:
    """Parse a 2xx body as a JSON object or raise `error_cls`."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        logger.warning("Unexpected non-object body with status %s", response.status_code)
        raise error_cls(message, status_code=response.status_code)
    return data


class ReplicateClient:
    """Async client for the three predictions endpoints used by the session.

    Args:
        api_base: Predictions API root, without trailing slash.
        model_version: Model version identifier sent with every creation.
        timeout_seconds: Per-request timeout.
        transport: Optional `httpx` transport (tests inject `httpx.MockTransport`).
    """

    def __init__(
        self,
        api_base: str = REPLICATE_API_BASE,
        model_version: str = REPLICATE_MODEL_VERSION,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.model_version = model_version
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        credential: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout_seconds,
            headers=self._headers(credential),
            transport=self._transport,
        ) as client:
            return await client.request(method, path, json=json_body)

    async def create_prediction(self, model_input: dict[str, Any], credential: str) -> dict:
        """Create a prediction for `model_input`.

        Returns:
            Parsed prediction JSON (contains at least `id` and `status`).

        Raises:
            RemoteSubmissionError: On transport failure, non-2xx status, a body
                that is not a JSON object or a response without an `id`.
        """
        payload = {"version": self.model_version, "input": model_input}
        try:
            response = await self._request("POST", "/predictions", credential, payload)
        except httpx.RequestError as exc:
            raise RemoteSubmissionError(f"Could not reach the prediction service: {exc}") from exc

        if not response.is_success:
            detail = _error_detail(response)
            logger.warning("Prediction creation rejected with status %s", response.status_code)
            raise RemoteSubmissionError(detail, status_code=response.status_code)

        data = _json_object(
            response, RemoteSubmissionError, "Prediction service returned an unreadable response."
        )
        if not data.get("id"):
            raise RemoteSubmissionError(
                "Prediction service did not return a prediction id.",
                status_code=response.status_code,
            )
        return data

    async def get_prediction(self, prediction_id: str, credential: str) -> dict:
        """Fetch the current state of one prediction.

        Raises:
            RemoteQueryError: On transport failure, non-2xx status or a body
                that is not a JSON object. The status code is kept on the
                exception for 429 handling upstream.
        """
        try:
            response = await self._request("GET", f"/predictions/{prediction_id}", credential)
        except httpx.RequestError as exc:
            raise RemoteQueryError("Failed to check prediction status.") from exc

        if not response.is_success:
            raise RemoteQueryError(
                "Failed to check prediction status.", status_code=response.status_code
            )
        return _json_object(response, RemoteQueryError, "Failed to check prediction status.")

    async def cancel_prediction(self, prediction_id: str, credential: str) -> dict:
        """Ask the service to stop a running prediction."""
        try:
            response = await self._request("POST", f"/predictions/{prediction_id}/cancel", credential)
        except httpx.RequestError as exc:
            raise RemoteQueryError("Failed to cancel prediction.") from exc

        if not response.is_success:
            raise RemoteQueryError("Failed to cancel prediction.", status_code=response.status_code)
        return _json_object(response, RemoteQueryError, "Failed to cancel prediction.")
