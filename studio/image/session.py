"""Generation session controller.

Processing flow:
    1. Validate credential and request (no network on failure).
    2. Stop any polling of a previous prediction and submit the new one.
    3. Poll the status endpoint from a cancellable task until a terminal status.
    4. Record the result for the presentation layer, unless it is stale.

Concurrency model:
    Single-threaded asyncio. At most one prediction is active per session; a new
    submission supersedes the previous one and cancels its polling task. A
    submission counter guards the window in which two creations are in flight,
    so the later call always wins.

Polling policy:
    Governed by `PollingConfig`: initial interval, multiplicative backoff capped
    at a maximum interval, a maximum number of status checks and an overall
    wall-clock timeout. HTTP 429 on a status check counts as "still pending".

Error handling strategy:
    Every error is terminal for the current attempt and raised as a
    `GenerationError` subclass; nothing is retried except pending polls.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import List, Optional, Tuple, Union

from studio.image.client import ReplicateClient
from studio.image.errors import (
    GenerationCancelled,
    PollingTimeoutError,
    RemoteFailureStatus,
    RemoteQueryError,
    ValidationError,
)
from studio.image.models import (
    GenerationRequest,
    GenerationResult,
    PredictionHandle,
    PredictionStatus,
)
from studio.image.provider_config import PollingConfig


logger = logging.getLogger(__name__)

PollPayload = Union[List[Optional[str]], str, None]


def _normalize_output(output) -> List[Optional[str]]:
    """Return output URLs as a list in service order; single-string outputs become one element.

    `null` entries are kept as `None` so positions match the service response.
    """
    if output is None:
        return []
    if isinstance(output, str):
        return [output]
    return [None if item is None else str(item) for item in output]


class GenerationSession:
    """Owns the single active prediction of one user session.

    Args:
        client: Transport used for the remote calls.
        polling: Polling policy; defaults to environment configuration.
    """

    def __init__(
        self,
        client: Optional[ReplicateClient] = None,
        polling: Optional[PollingConfig] = None,
    ) -> None:
        self.client = client or ReplicateClient()
        self.polling = polling or PollingConfig()
        self.last_result: Optional[GenerationResult] = None

        self._active_handle: Optional[PredictionHandle] = None
        self._active_credential: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._submission_id = 0
        self._submitting = False
        # Tasks this session cancelled itself (explicit cancel or supersession).
        self._released: "weakref.WeakSet[asyncio.Task]" = weakref.WeakSet()

    @property
    def active_handle(self) -> Optional[PredictionHandle]:
        return self._active_handle

    @property
    def is_generating(self) -> bool:
        if self._submitting:
            return True
        return self._poll_task is not None and not self._poll_task.done()

    # ---------------------------------------------------------
    # Submission
    # ---------------------------------------------------------

    async def submit(self, request: GenerationRequest, credential: Optional[str]) -> PredictionHandle:
        """Validate `request` and create a remote prediction.

        Raises:
            ValidationError: Missing credential or invalid request.
            RemoteSubmissionError: Creation rejected by the service.
            GenerationCancelled: A newer submission or `cancel()` happened while
                this one was waiting for the service; the created prediction is
                cancelled remotely.
        """
        if not credential or not credential.strip():
            raise ValidationError("Please enter your Replicate API key to generate images.")
        request.validate()

        self.stop_polling()
        self._submission_id += 1
        submission_id = self._submission_id
        self._active_handle = None
        self._active_credential = None
        self.last_result = None
        self._submitting = True

        try:
            data = await self.client.create_prediction(request.to_input(), credential.strip())
        finally:
            if submission_id == self._submission_id:
                self._submitting = False

        handle = PredictionHandle(
            id=str(data["id"]),
            status=PredictionStatus.parse(data.get("status", PredictionStatus.STARTING.value)),
        )

        if submission_id != self._submission_id:
            logger.warning("Prediction %s superseded before polling started", handle.id)
            await self._cancel_remote(handle, credential.strip())
            raise GenerationCancelled(f"Prediction {handle.id} was cancelled before polling started.")

        self._active_handle = handle
        self._active_credential = credential.strip()
        logger.info("Submitted prediction %s (status=%s)", handle.id, handle.status.value)
        return handle

    # ---------------------------------------------------------
    # Polling
    # ---------------------------------------------------------

    async def poll(self, handle: PredictionHandle, credential: str) -> Tuple[PredictionStatus, PollPayload]:
        """Run one status check for `handle`.

        Returns:
            `(status, payload)` where payload is the URL list on success, the
            service error text on failure/cancel and `None` while pending.

        Raises:
            RemoteQueryError: Transport failure or non-2xx status.
        """
        data = await self.client.get_prediction(handle.id, credential)
        status = PredictionStatus.parse(data.get("status"))

        if status is PredictionStatus.SUCCEEDED:
            return status, _normalize_output(data.get("output"))
        if status is PredictionStatus.FAILED:
            return status, str(data.get("error") or "Image generation failed.")
        if status is PredictionStatus.CANCELED:
            return status, str(data.get("error") or "Prediction was canceled.")
        return status, None

    async def wait(self, handle: PredictionHandle, credential: str) -> GenerationResult:
        """Poll `handle` until it reaches a terminal status.

        Raises:
            PollingTimeoutError: Attempt or wall-clock budget exhausted.
            RemoteQueryError: A status check failed with anything but 429.
        """
        try:
            return await asyncio.wait_for(
                self._poll_until_terminal(handle, credential),
                timeout=self.polling.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise PollingTimeoutError(
                f"Prediction {handle.id} did not finish within "
                f"{self.polling.timeout_seconds:g} seconds."
            ) from None

    async def _poll_until_terminal(self, handle: PredictionHandle, credential: str) -> GenerationResult:
        attempts = max(1, self.polling.max_attempts)

        for attempt in range(attempts):
            await asyncio.sleep(self.polling.delay_for(attempt))

            try:
                status, payload = await self.poll(handle, credential)
            except RemoteQueryError as exc:
                if exc.status_code == 429:
                    logger.warning("Rate limited while polling %s; retrying", handle.id)
                    continue
                raise

            if not status.is_terminal:
                logger.debug("Prediction %s still %s (check %d)", handle.id, status.value, attempt + 1)
                continue

            if status is PredictionStatus.SUCCEEDED:
                result = GenerationResult(handle=handle, status=status, images=payload)
            else:
                result = GenerationResult(handle=handle, status=status, error=payload)

            logger.info("Prediction %s finished with status %s", handle.id, status.value)
            self._record(result)
            return result

        raise PollingTimeoutError(
            f"Prediction {handle.id} did not finish after {attempts} status checks."
        )

    def _record(self, result: GenerationResult) -> None:
        """Keep `result` only if it belongs to the active prediction."""
        if self._active_handle is not None and self._active_handle.id == result.handle.id:
            self.last_result = result
        else:
            logger.debug("Discarding stale result for prediction %s", result.handle.id)

    def start_polling(self, handle: PredictionHandle, credential: str) -> asyncio.Task:
        """Start the polling task for `handle`, replacing any previous one."""
        self.stop_polling()
        task = asyncio.create_task(self.wait(handle, credential), name=f"poll-{handle.id}")
        self._poll_task = task
        return task

    def stop_polling(self) -> bool:
        """Cancel the in-flight polling task, if any. Returns True if one was stopped."""
        task = self._poll_task
        self._poll_task = None
        if task is None or task.done():
            return False
        self._released.add(task)
        task.cancel()
        logger.info("Stopped polling task %s", task.get_name())
        return True

    async def cancel(self, remote: bool = False) -> bool:
        """Cancel the active generation.

        A creation still in flight is abandoned: `submit` raises
        `GenerationCancelled` when it returns and cancels that prediction
        remotely.

        Args:
            remote: Also ask the service to cancel the prediction.

        Returns:
            True if a submission or local polling was running.
        """
        handle = self._active_handle
        credential = self._active_credential
        stopped = self.stop_polling()

        if self._submitting:
            self._submission_id += 1
            self._submitting = False
            stopped = True
            logger.info("Abandoned in-flight submission")

        if remote and handle is not None and credential:
            await self.client.cancel_prediction(handle.id, credential)
            logger.info("Requested remote cancel for prediction %s", handle.id)

        self._active_handle = None
        self._active_credential = None
        return stopped

    async def _cancel_remote(self, handle: PredictionHandle, credential: str) -> None:
        """Best-effort remote cancel for a prediction nobody will poll."""
        try:
            await self.client.cancel_prediction(handle.id, credential)
        except RemoteQueryError as exc:
            logger.warning("Remote cancel of prediction %s failed: %s", handle.id, exc.message)
        else:
            logger.info("Requested remote cancel for prediction %s", handle.id)

    # ---------------------------------------------------------
    # Full lifecycle
    # ---------------------------------------------------------

    async def generate(self, request: GenerationRequest, credential: Optional[str]) -> GenerationResult:
        """Submit `request` and wait for its terminal result.

        Raises:
            ValidationError, RemoteSubmissionError, RemoteQueryError,
            PollingTimeoutError: See `submit` and `wait`.
            RemoteFailureStatus: The service reported failure; message is the
                service-provided reason.
            GenerationCancelled: Cancelled or superseded before completion.
        """
        handle = await self.submit(request, credential)
        task = self.start_polling(handle, credential.strip())

        try:
            result = await task
        except asyncio.CancelledError:
            if task in self._released:
                self._released.discard(task)
                raise GenerationCancelled(f"Generation {handle.id} was cancelled.") from None
            raise
        finally:
            if self._poll_task is task:
                self._poll_task = None

        if not result.succeeded:
            raise RemoteFailureStatus(result.error or "Image generation failed.", handle=result.handle)
        return result
