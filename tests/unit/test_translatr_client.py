import json

import httpx
import pytest

from src.change_detector import SubmissionEntry
from src.translatr_client import ProgressUpdate, TranslationMeta
from src.translatr_errors import (
    ActivityTimeout,
    InsufficientCredits,
    InvalidCredential,
    MalformedResponse,
    ResourceNotFound,
    ServerError,
    TransientNetworkFailure,
)
from tests.fake_translatr import cached, error, job_created, job_status

TRANSLATIONS = {"hello": {"es": "Hola", "fr": "Bonjour"}}


class FakeTime:
    """A clock that only moves when the client sleeps."""

    def __init__(self, step_per_sleep=None):
        self.now = 0.0
        self.sleeps = []
        self.step_per_sleep = step_per_sleep

    def clock(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += self.step_per_sleep if self.step_per_sleep is not None else delay


@pytest.mark.asyncio
async def test_submit_sends_strings_with_api_key(service):
    service.create_job = [job_created("job-42")]
    submission = {
        "hello": SubmissionEntry.hashed("Hello", "h1"),
        "world": SubmissionEntry.plain("World"),
    }

    async with service.client() as client:
        job_id = await client.submit(submission)

    assert job_id == "job-42"
    request = service.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/api/translate"
    assert request.headers["X-API-Key"] == "test-api-key"
    assert json.loads(request.content) == {
        "strings": {"hello": {"value": "Hello", "hash": "h1"}, "world": "World"}
    }


@pytest.mark.asyncio
async def test_submit_retries_connection_failures_with_linear_backoff(service):
    fake_time = FakeTime()
    service.create_job = [httpx.ConnectError("refused"), httpx.ConnectError("refused"), job_created()]

    async with service.client(sleep=fake_time.sleep, clock=fake_time.clock) as client:
        job_id = await client.submit({"a": SubmissionEntry.plain("A")})

    assert job_id == "job-1"
    assert len(service.requests_to("POST", "/translate")) == 3
    assert fake_time.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_submit_gives_up_after_max_retries(service):
    service.create_job = [httpx.ConnectError("refused")]

    async with service.client(max_retries=3) as client:
        with pytest.raises(ServerError) as exc_info:
            await client.submit({"a": SubmissionEntry.plain("A")})

    assert len(service.requests_to("POST", "/translate")) == 3
    assert isinstance(exc_info.value.__cause__, TransientNetworkFailure)


@pytest.mark.asyncio
async def test_submit_does_not_retry_error_responses(service):
    service.create_job = [error(401, {"error": "Unauthorized"})]

    async with service.client() as client:
        with pytest.raises(InvalidCredential):
            await client.submit({"a": SubmissionEntry.plain("A")})

    assert len(service.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>gateway</html>"),
    httpx.Response(200, json={"status": "pending"}),
])
async def test_submit_rejects_malformed_job_creation(service, response):
    service.create_job = [response]

    async with service.client() as client:
        with pytest.raises(MalformedResponse):
            await client.submit({"a": SubmissionEntry.plain("A")})


@pytest.mark.asyncio
async def test_poll_returns_completed_job(service):
    service.job_status = [
        job_status("pending"),
        job_status("completed", progress=100, strings_count=1, translations=TRANSLATIONS,
                   meta={"cached": 0, "translated": 1, "total": 1}),
    ]

    async with service.client() as client:
        status = await client.poll("job-1")

    assert status.translations == TRANSLATIONS
    assert status.meta == TranslationMeta(cached=0, translated=1, total=1)
    assert service.requests[0].url.path == "/api/translate/jobs/job-1"


@pytest.mark.asyncio
async def test_poll_backs_off_up_to_the_maximum_delay(service):
    fake_time = FakeTime()
    service.job_status = [job_status("processing") for _ in range(8)] + [job_status("completed", translations={})]

    async with service.client(sleep=fake_time.sleep, clock=fake_time.clock,
                              poll_max_wait_seconds=1000) as client:
        await client.poll("job-1")

    assert fake_time.sleeps == [1.0, 1.5, 2.25, 3.375, 5.0625, 7.59375, 10.0, 10.0]


@pytest.mark.asyncio
async def test_poll_times_out_without_server_activity(service):
    fake_time = FakeTime(step_per_sleep=100)
    service.job_status = [job_status("processing", updated_at="2024-01-01T00:00:01Z")]

    async with service.client(sleep=fake_time.sleep, clock=fake_time.clock) as client:
        with pytest.raises(ActivityTimeout) as exc_info:
            await client.poll("job-1")

    assert "no progress for 180s" in str(exc_info.value)
    assert len(service.requests) == 2


@pytest.mark.asyncio
async def test_poll_activity_resets_the_timeout(service):
    fake_time = FakeTime(step_per_sleep=100)
    service.job_status = [
        job_status("processing", updated_at=f"2024-01-01T00:00:0{i}Z") for i in range(5)
    ] + [job_status("completed", updated_at="2024-01-01T00:00:09Z", translations=TRANSLATIONS)]

    async with service.client(sleep=fake_time.sleep, clock=fake_time.clock) as client:
        status = await client.poll("job-1")

    assert status.status == "completed"
    assert fake_time.now == 500


@pytest.mark.asyncio
async def test_poll_reports_progress_only_when_counts_change(service):
    service.job_status = [
        job_status("processing", progress=0, strings_count=4),
        job_status("processing", progress=0, strings_count=4),
        job_status("processing", progress=50, strings_count=4, meta={"cached": 1, "translated": 1}),
        job_status("completed", progress=100, strings_count=4, translations=TRANSLATIONS),
    ]
    updates = []

    async with service.client() as client:
        await client.poll("job-1", on_progress=updates.append)

    assert updates == [
        ProgressUpdate(0, 4),
        ProgressUpdate(2, 4, cached=1, translated=1),
        ProgressUpdate(4, 4),
    ]


@pytest.mark.asyncio
async def test_poll_failed_job_is_classified_by_message(service):
    service.job_status = [job_status("failed", error_message="Insufficient credits for project")]

    async with service.client() as client:
        with pytest.raises(InsufficientCredits) as exc_info:
            await client.poll("job-1")

    assert "Insufficient credits for project" in exc_info.value.debug_message


@pytest.mark.asyncio
async def test_poll_failed_job_without_message_is_server_error(service):
    service.job_status = [job_status("failed")]

    async with service.client() as client:
        with pytest.raises(ServerError):
            await client.poll("job-1")


@pytest.mark.asyncio
async def test_poll_completed_without_translations_is_malformed(service):
    service.job_status = [job_status("completed", progress=100)]

    async with service.client() as client:
        with pytest.raises(MalformedResponse):
            await client.poll("job-1")


@pytest.mark.asyncio
async def test_poll_unknown_status_is_malformed(service):
    service.job_status = [job_status("archived")]

    async with service.client() as client:
        with pytest.raises(MalformedResponse):
            await client.poll("job-1")


@pytest.mark.asyncio
async def test_poll_transport_failure_is_server_error(service):
    service.job_status = [httpx.ReadTimeout("timed out")]

    async with service.client() as client:
        with pytest.raises(ServerError):
            await client.poll("job-1")

    assert len(service.requests) == 1


@pytest.mark.asyncio
async def test_translate_returns_warning_and_token_usage(service):
    service.create_job = [job_created()]
    service.job_status = [
        job_status("completed", progress=100, translations=TRANSLATIONS,
                   warning="Partial: credits ran out", tokens_used=120, tokens_remaining=0),
    ]

    async with service.client() as client:
        response = await client.translate({"hello": SubmissionEntry.plain("Hello")})

    assert response.translations == TRANSLATIONS
    assert response.warning == "Partial: credits ran out"
    assert response.tokens_used == 120
    assert response.tokens_remaining == 0


@pytest.mark.asyncio
async def test_fetch_cached_gets_project_translations(service):
    service.cached = [cached(TRANSLATIONS)]

    async with service.client() as client:
        response = await client.fetch_cached()

    assert response.translations == TRANSLATIONS
    request = service.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/api/translate"


@pytest.mark.asyncio
async def test_fetch_cached_classifies_error_responses(service):
    service.cached = [error(404, {"error": "Not Found"})]

    async with service.client() as client:
        with pytest.raises(ResourceNotFound) as exc_info:
            await client.fetch_cached()

    assert "project not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_submit_rejects_body_that_is_not_utf8(service):
    service.create_job = [httpx.Response(200, content=b'{"job_id": "\xff\xfe"}')]

    async with service.client() as client:
        with pytest.raises(MalformedResponse):
            await client.submit({"a": SubmissionEntry.plain("A")})


@pytest.mark.asyncio
async def test_poll_missing_job_is_reported_as_job_not_found(service):
    service.job_status = [error(404, {"error": "Not Found"})]

    async with service.client() as client:
        with pytest.raises(ResourceNotFound) as exc_info:
            await client.poll("job-9")

    assert "job not found" in str(exc_info.value)
    assert "project" not in str(exc_info.value)
    assert exc_info.value.debug_message.startswith("Job ID: job-9 | HTTP 404")
