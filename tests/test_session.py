"""Tests for the generation session controller"""
import asyncio
import json
import unittest
from unittest.mock import AsyncMock, Mock

import httpx

from studio.image.client import ReplicateClient
from studio.image.errors import (
    GenerationCancelled,
    PollingTimeoutError,
    RemoteFailureStatus,
    RemoteQueryError,
    RemoteSubmissionError,
    ValidationError,
)
from studio.image.models import GenerationRequest, PredictionHandle, PredictionStatus
from studio.image.provider_config import PollingConfig
from studio.image.session import GenerationSession

FAST = PollingConfig(
    interval_seconds=0.0,
    backoff_factor=1.0,
    max_interval_seconds=0.0,
    max_attempts=5,
    timeout_seconds=5.0,
)


def mock_client():
    client = Mock()
    client.create_prediction = AsyncMock(return_value={"id": "p1", "status": "starting"})
    client.get_prediction = AsyncMock(return_value={"status": "succeeded", "output": ["u1"]})
    client.cancel_prediction = AsyncMock(return_value={"id": "p1", "status": "canceled"})
    return client


class FakeReplicate:
    """Scripted predictions API served through httpx.MockTransport"""

    def __init__(self, statuses, create_status=201, create_body=None):
        self.statuses = list(statuses)
        self.create_status = create_status
        self.create_body = create_body or {"id": "p1", "status": "starting"}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/v1/predictions":
            return httpx.Response(self.create_status, json=self.create_body)
        if request.method == "GET" and request.url.path == "/v1/predictions/p1":
            code, body = self.statuses.pop(0)
            return httpx.Response(code, json=body)
        return httpx.Response(404, json={"detail": "Not found."})

    @property
    def polls(self):
        return [r for r in self.requests if r.method == "GET"]

    def session(self, polling=FAST):
        client = ReplicateClient(
            api_base="https://api.replicate.com/v1",
            model_version="v-test",
            transport=httpx.MockTransport(self),
        )
        return GenerationSession(client=client, polling=polling)


class TestValidation(unittest.TestCase):
    """Invalid input never reaches the network"""

    def test_empty_prompt_makes_no_call(self):
        client = mock_client()
        session = GenerationSession(client=client, polling=FAST)

        with self.assertRaises(ValidationError):
            asyncio.run(session.generate(GenerationRequest(prompt=""), "key"))
        with self.assertRaises(ValidationError):
            asyncio.run(session.submit(GenerationRequest(prompt="   "), "key"))

        client.create_prediction.assert_not_called()
        client.get_prediction.assert_not_called()

    def test_empty_credential_makes_no_call(self):
        client = mock_client()
        session = GenerationSession(client=client, polling=FAST)

        for credential in (None, "", "  "):
            with self.assertRaises(ValidationError):
                asyncio.run(session.generate(GenerationRequest(prompt="a cat"), credential))

        client.create_prediction.assert_not_called()

    def test_credential_checked_before_prompt(self):
        session = GenerationSession(client=mock_client(), polling=FAST)
        with self.assertRaises(ValidationError) as ctx:
            asyncio.run(session.submit(GenerationRequest(prompt=""), ""))
        self.assertIn("API key", ctx.exception.message)

    def test_out_of_range_parameter_makes_no_call(self):
        client = mock_client()
        session = GenerationSession(client=client, polling=FAST)
        with self.assertRaises(ValidationError):
            asyncio.run(session.submit(GenerationRequest(prompt="a", num_inference_steps=500), "key"))
        client.create_prediction.assert_not_called()


class TestLifecycle(unittest.TestCase):
    """Submit and poll against a scripted service"""

    def test_success_returns_terminal_urls(self):
        fake = FakeReplicate([
            (200, {"id": "p1", "status": "starting"}),
            (200, {"id": "p1", "status": "processing"}),
            (200, {"id": "p1", "status": "succeeded", "output": ["https://x/0.png", "https://x/1.png"]}),
        ])
        session = fake.session()

        result = asyncio.run(session.generate(GenerationRequest(prompt="a cat", num_outputs=2), "tok"))

        self.assertTrue(result.succeeded)
        self.assertEqual(result.images, ["https://x/0.png", "https://x/1.png"])
        self.assertEqual(result.handle.id, "p1")
        self.assertEqual(len(fake.polls), 3)
        self.assertIs(session.last_result, result)
        self.assertFalse(session.is_generating)

    def test_submission_body_and_auth(self):
        fake = FakeReplicate([(200, {"status": "succeeded", "output": ["u"]})])
        session = fake.session()

        asyncio.run(session.generate(GenerationRequest(prompt="a cat", negative_prompt="blurry"), "tok"))

        create = fake.requests[0]
        self.assertEqual(create.headers["Authorization"], "Bearer tok")
        body = json.loads(create.content)
        self.assertEqual(body["version"], "v-test")
        self.assertEqual(body["input"], {
            "prompt": "a cat",
            "negative_prompt": "blurry",
            "width": 768,
            "height": 768,
            "num_outputs": 1,
            "scheduler": "K_EULER",
            "num_inference_steps": 50,
            "guidance_scale": 7.5,
        })
        self.assertEqual(fake.polls[0].headers["Authorization"], "Bearer tok")

    def test_failed_status_stops_polling_with_service_reason(self):
        fake = FakeReplicate([
            (200, {"status": "processing"}),
            (200, {"status": "failed", "error": "NSFW content detected"}),
            (200, {"status": "succeeded", "output": ["never"]}),
        ])
        session = fake.session()

        with self.assertRaises(RemoteFailureStatus) as ctx:
            asyncio.run(session.generate(GenerationRequest(prompt="a cat"), "tok"))

        self.assertEqual(ctx.exception.message, "NSFW content detected")
        self.assertEqual(ctx.exception.handle.id, "p1")
        self.assertEqual(len(fake.polls), 2)
        self.assertEqual(session.last_result.error, "NSFW content detected")

    def test_submission_rejected_carries_detail(self):
        fake = FakeReplicate([], create_status=401, create_body={"detail": "Invalid token."})
        session = fake.session()

        with self.assertRaises(RemoteSubmissionError) as ctx:
            asyncio.run(session.generate(GenerationRequest(prompt="a cat"), "bad"))

        self.assertEqual(ctx.exception.message, "Invalid token.")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(fake.polls, [])
        self.assertIsNone(session.active_handle)

    def test_status_check_failure_is_terminal(self):
        fake = FakeReplicate([(500, {"detail": "boom"}), (200, {"status": "succeeded", "output": ["u"]})])
        session = fake.session()

        with self.assertRaises(RemoteQueryError) as ctx:
            asyncio.run(session.generate(GenerationRequest(prompt="a cat"), "tok"))

        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(len(fake.polls), 1)

    def test_rate_limited_poll_keeps_polling(self):
        fake = FakeReplicate([
            (429, {"detail": "slow down"}),
            (200, {"status": "succeeded", "output": ["u"]}),
        ])
        session = fake.session()

        result = asyncio.run(session.generate(GenerationRequest(prompt="a cat"), "tok"))
        self.assertEqual(result.images, ["u"])

    def test_attempt_budget_raises_timeout(self):
        fake = FakeReplicate([(200, {"status": "processing"})] * 3)
        polling = PollingConfig(
            interval_seconds=0.0, backoff_factor=1.0, max_interval_seconds=0.0,
            max_attempts=3, timeout_seconds=5.0,
        )
        session = fake.session(polling)

        with self.assertRaises(PollingTimeoutError):
            asyncio.run(session.generate(GenerationRequest(prompt="a cat"), "tok"))
        self.assertEqual(len(fake.polls), 3)

    def test_wall_clock_budget_raises_timeout(self):
        fake = FakeReplicate([(200, {"status": "processing"})] * 10)
        polling = PollingConfig(
            interval_seconds=0.5, backoff_factor=1.0, max_interval_seconds=0.5,
            max_attempts=10, timeout_seconds=0.05,
        )
        session = fake.session(polling)

        with self.assertRaises(PollingTimeoutError):
            asyncio.run(session.generate(GenerationRequest(prompt="a cat"), "tok"))
        self.assertEqual(fake.polls, [])


class TestPoll(unittest.TestCase):
    """Single status checks"""

    def setUp(self):
        self.client = mock_client()
        self.session = GenerationSession(client=self.client, polling=FAST)
        self.handle = PredictionHandle(id="p1")

    def poll(self, body):
        self.client.get_prediction.return_value = body
        return asyncio.run(self.session.poll(self.handle, "tok"))

    def test_pending(self):
        self.assertEqual(self.poll({"status": "starting"}), (PredictionStatus.STARTING, None))
        self.assertEqual(self.poll({"status": "processing"}), (PredictionStatus.PROCESSING, None))

    def test_single_string_output(self):
        self.assertEqual(
            self.poll({"status": "succeeded", "output": "https://x/0.png"}),
            (PredictionStatus.SUCCEEDED, ["https://x/0.png"]),
        )

    def test_canceled_has_reason(self):
        status, payload = self.poll({"status": "canceled"})
        self.assertIs(status, PredictionStatus.CANCELED)
        self.assertEqual(payload, "Prediction was canceled.")

    def test_failed_without_error_text(self):
        self.assertEqual(self.poll({"status": "failed"}), (PredictionStatus.FAILED, "Image generation failed."))

    def test_empty_output_slots_keep_position(self):
        self.assertEqual(
            self.poll({"status": "succeeded", "output": ["https://x/0.png", None, "https://x/2.png"]}),
            (PredictionStatus.SUCCEEDED, ["https://x/0.png", None, "https://x/2.png"]),
        )


class TestSupersession(unittest.TestCase):
    """A new submission cancels the previous polling loop"""

    def test_second_submission_cancels_first_loop(self):
        async def scenario():
            client = mock_client()
            ids = iter(["p1", "p2"])
            client.create_prediction = AsyncMock(
                side_effect=lambda model_input, credential: {"id": next(ids), "status": "starting"}
            )
            blocker = asyncio.Event()

            async def get_prediction(prediction_id, credential):
                if prediction_id == "p1":
                    await blocker.wait()
                    return {"status": "succeeded", "output": ["stale"]}
                return {"status": "succeeded", "output": ["fresh"]}

            client.get_prediction = AsyncMock(side_effect=get_prediction)
            session = GenerationSession(client=client, polling=FAST)

            first = asyncio.create_task(session.generate(GenerationRequest(prompt="one"), "tok"))
            await asyncio.sleep(0.01)
            self.assertTrue(session.is_generating)
            self.assertEqual(session.active_handle.id, "p1")

            second = await session.generate(GenerationRequest(prompt="two"), "tok")
            blocker.set()

            with self.assertRaises(GenerationCancelled):
                await first

            self.assertEqual(second.images, ["fresh"])
            self.assertEqual(session.last_result.images, ["fresh"])
            self.assertEqual(session.active_handle.id, "p2")

        asyncio.run(scenario())

    def test_late_creation_of_older_submission_loses(self):
        async def scenario():
            client = mock_client()
            release_first = asyncio.Event()

            async def create_prediction(model_input, credential):
                if model_input["prompt"] == "one":
                    await release_first.wait()
                    return {"id": "p1", "status": "starting"}
                return {"id": "p2", "status": "starting"}

            client.create_prediction = AsyncMock(side_effect=create_prediction)
            client.get_prediction = AsyncMock(return_value={"status": "succeeded", "output": ["fresh"]})
            session = GenerationSession(client=client, polling=FAST)

            first = asyncio.create_task(session.generate(GenerationRequest(prompt="one"), "tok"))
            await asyncio.sleep(0)
            second = await session.generate(GenerationRequest(prompt="two"), "tok")
            release_first.set()

            with self.assertRaises(GenerationCancelled):
                await first

            self.assertEqual(second.handle.id, "p2")
            self.assertEqual(session.last_result.handle.id, "p2")
            self.assertEqual(session.active_handle.id, "p2")
            client.get_prediction.assert_awaited_once_with("p2", "tok")
            client.cancel_prediction.assert_awaited_once_with("p1", "tok")

        asyncio.run(scenario())


class TestCancel(unittest.TestCase):
    """Explicit cancellation"""

    def _blocking_client(self):
        client = mock_client()

        async def get_prediction(prediction_id, credential):
            await asyncio.Event().wait()

        client.get_prediction = AsyncMock(side_effect=get_prediction)
        return client

    def _slow_creation_client(self, release):
        client = mock_client()

        async def create_prediction(model_input, credential):
            await release.wait()
            return {"id": "p1", "status": "starting"}

        client.create_prediction = AsyncMock(side_effect=create_prediction)
        return client

    def test_cancel_during_submission(self):
        async def scenario():
            release = asyncio.Event()
            client = self._slow_creation_client(release)
            session = GenerationSession(client=client, polling=FAST)

            task = asyncio.create_task(session.generate(GenerationRequest(prompt="a"), "tok"))
            await asyncio.sleep(0)
            self.assertTrue(session.is_generating)
            self.assertTrue(await session.cancel(remote=True))
            self.assertFalse(session.is_generating)
            release.set()

            with self.assertRaises(GenerationCancelled):
                await task
            client.cancel_prediction.assert_awaited_once_with("p1", "tok")
            client.get_prediction.assert_not_called()
            self.assertIsNone(session.active_handle)
            self.assertIsNone(session.last_result)

        asyncio.run(scenario())

    def test_failed_remote_cancel_of_abandoned_prediction_is_logged(self):
        async def scenario():
            release = asyncio.Event()
            client = self._slow_creation_client(release)
            client.cancel_prediction.side_effect = RemoteQueryError("Failed to cancel prediction.")
            session = GenerationSession(client=client, polling=FAST)

            task = asyncio.create_task(session.generate(GenerationRequest(prompt="a"), "tok"))
            await asyncio.sleep(0)
            await session.cancel()
            release.set()

            with self.assertLogs("studio.image.session", level="WARNING") as logs:
                with self.assertRaises(GenerationCancelled):
                    await task
            self.assertTrue(any("Remote cancel of prediction p1 failed" in line for line in logs.output))
            client.get_prediction.assert_not_called()

        asyncio.run(scenario())

    def test_cancel_stops_local_polling(self):
        async def scenario():
            client = self._blocking_client()
            session = GenerationSession(client=client, polling=FAST)

            task = asyncio.create_task(session.generate(GenerationRequest(prompt="a"), "tok"))
            await asyncio.sleep(0.01)
            self.assertTrue(await session.cancel())

            with self.assertRaises(GenerationCancelled):
                await task
            self.assertIsNone(session.active_handle)
            self.assertIsNone(session.last_result)
            self.assertFalse(session.is_generating)
            client.cancel_prediction.assert_not_called()

        asyncio.run(scenario())

    def test_cancel_remote(self):
        async def scenario():
            client = self._blocking_client()
            session = GenerationSession(client=client, polling=FAST)

            task = asyncio.create_task(session.generate(GenerationRequest(prompt="a"), "tok"))
            await asyncio.sleep(0.01)
            await session.cancel(remote=True)

            with self.assertRaises(GenerationCancelled):
                await task
            client.cancel_prediction.assert_awaited_once_with("p1", "tok")

        asyncio.run(scenario())

    def test_cancel_when_idle(self):
        session = GenerationSession(client=mock_client(), polling=FAST)
        self.assertFalse(asyncio.run(session.cancel(remote=True)))


if __name__ == '__main__':
    unittest.main()
