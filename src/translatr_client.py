"""Async client for the Translatr job API: submit, poll and cached fetch."""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import jsonschema
from aiolimiter import AsyncLimiter

from src.change_detector import SubmissionEntry
from src.logging_config import LOGGER_NAME
from src.translatr_errors import (
    ActivityTimeout,
    MalformedResponse,
    ResourceNotFound,
    ServerError,
    TranslatrApiError,
    TransientNetworkFailure,
    build_debug_message,
    classify_error_response,
    classify_message,
)

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_SERVER_URL = "https://translatr.app/api"

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

TRANSLATIONS_SCHEMA = {
    "type": "object",
    "additionalProperties": {
        "type": "object",
        "additionalProperties": {"type": "string"}
    }
}

META_SCHEMA = {
    "type": ["object", "null"],
    "properties": {
        "cached": {"type": ["integer", "null"]},
        "translated": {"type": ["integer", "null"]},
        "total": {"type": ["integer", "null"]}
    }
}

CREATE_JOB_SCHEMA = {
    "type": "object",
    "properties": {
        "job_id": {"type": "string", "minLength": 1},
        "status": {"type": "string"},
        "created_at": {"type": "string"}
    },
    "required": ["job_id"]
}

JOB_STATUS_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "status": {"type": "string"},
        "progress": {"type": "integer"},
        "strings_count": {"type": ["integer", "null"]},
        "created_at": {"type": "string"},
        "updated_at": {"type": "string"},
        "completed_at": {"type": ["string", "null"]},
        "translations": {"anyOf": [TRANSLATIONS_SCHEMA, {"type": "null"}]},
        "error_message": {"type": ["string", "null"]},
        "meta": META_SCHEMA,
        "warning": {"type": ["string", "null"]},
        "tokens_used": {"type": ["integer", "null"]},
        "tokens_remaining": {"type": ["integer", "null"]}
    },
    "required": ["id", "status", "progress", "updated_at"]
}

CACHED_TRANSLATIONS_SCHEMA = {
    "type": "object",
    "properties": {
        "translations": TRANSLATIONS_SCHEMA,
        "meta": META_SCHEMA
    },
    "required": ["translations"]
}

Translations = Dict[str, Dict[str, str]]


@dataclass(frozen=True)
class TranslationMeta:
    cached: int = 0
    translated: int = 0
    total: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TranslationMeta"]:
        if data is None:
            return None
        return cls(
            cached=data.get("cached") or 0,
            translated=data.get("translated") or 0,
            total=data.get("total"),
        )


@dataclass(frozen=True)
class JobStatus:
    id: str
    status: str
    progress: int
    updated_at: str
    strings_count: Optional[int] = None
    translations: Optional[Translations] = None
    error_message: Optional[str] = None
    meta: Optional[TranslationMeta] = None
    warning: Optional[str] = None
    tokens_used: Optional[int] = None
    tokens_remaining: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStatus":
        return cls(
            id=data["id"],
            status=data["status"],
            progress=data["progress"],
            updated_at=data["updated_at"],
            strings_count=data.get("strings_count"),
            translations=data.get("translations"),
            error_message=data.get("error_message"),
            meta=TranslationMeta.from_dict(data.get("meta")),
            warning=data.get("warning"),
            tokens_used=data.get("tokens_used"),
            tokens_remaining=data.get("tokens_remaining"),
        )


@dataclass(frozen=True)
class TranslationResponse:
    translations: Translations
    meta: Optional[TranslationMeta] = None
    warning: Optional[str] = None
    tokens_used: Optional[int] = None
    tokens_remaining: Optional[int] = None

    @classmethod
    def from_job(cls, status: JobStatus) -> "TranslationResponse":
        return cls(
            translations=status.translations or {},
            meta=status.meta,
            warning=status.warning,
            tokens_used=status.tokens_used,
            tokens_remaining=status.tokens_remaining,
        )


@dataclass(frozen=True)
class ProgressUpdate:
    processed: int
    total: int
    cached: int = 0
    translated: int = 0


ProgressCallback = Callable[[ProgressUpdate], None]


# --- Poll loop state machine ---
# All mutable polling state lives in a PollState value owned by one poll() call.

@dataclass(frozen=True)
class PollState:
    delay: float
    last_activity: float
    last_updated_at: Optional[str] = None
    last_reported: Optional[Tuple[int, int]] = None


def has_timed_out(state: PollState, now: float, max_wait_seconds: float) -> bool:
    """True once the server has shown no activity for longer than ``max_wait_seconds``."""
    return now - state.last_activity > max_wait_seconds


def observe_status(state: PollState, status: JobStatus, now: float) -> Tuple[PollState, Optional[ProgressUpdate]]:
    """
    Fold one polled status into the state.

    A changed ``updated_at`` counts as activity and resets the timeout. A
    progress update is produced only when the processed/total counts differ
    from the last reported ones.
    """
    if status.updated_at != state.last_updated_at:
        state = replace(state, last_updated_at=status.updated_at, last_activity=now)

    update = None
    if status.strings_count is not None:
        total = status.strings_count
        processed = (total * status.progress) // 100
        if (processed, total) != state.last_reported:
            meta = status.meta or TranslationMeta()
            update = ProgressUpdate(processed, total, meta.cached, meta.translated)
            state = replace(state, last_reported=(processed, total))
    return state, update


def back_off(state: PollState, multiplier: float, max_delay: float) -> PollState:
    return replace(state, delay=min(state.delay * multiplier, max_delay))


def job_failure_error(job_id: str, error_message: Optional[str]) -> TranslatrApiError:
    """Classify a job the server reported as failed, by its error message."""
    message = error_message or "Translation job failed"
    error_class = classify_message(message.lower()) or ServerError
    return error_class(debug_message=f"Job ID: {job_id} | {message}")


class TranslatrClient:
    """
    Client for one synchronization run.

    Owns a single ``httpx.AsyncClient``; use it as an async context manager so
    the connection pool is closed when the run ends.
    """

    def __init__(
            self,
            server_url: str,
            api_key: str,
            timeout_seconds: float = 60,
            max_retries: int = 3,
            poll_max_wait_seconds: float = 180,
            max_requests_per_minute: int = 60,
            retry_base_delay: float = 1.0,
            initial_poll_delay: float = 1.0,
            max_poll_delay: float = 10.0,
            poll_backoff_multiplier: float = 1.5,
            transport: Optional[httpx.AsyncBaseTransport] = None,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
            clock: Callable[[], float] = time.monotonic
    ):
        self.server_url = server_url.rstrip('/')
        self.max_retries = max(1, max_retries)
        self.poll_max_wait_seconds = poll_max_wait_seconds
        self.retry_base_delay = retry_base_delay
        self.initial_poll_delay = initial_poll_delay
        self.max_poll_delay = max_poll_delay
        self.poll_backoff_multiplier = poll_backoff_multiplier
        self._sleep = sleep
        self._clock = clock
        self._rate_limiter = AsyncLimiter(max_rate=max_requests_per_minute, time_period=60)
        self._http = httpx.AsyncClient(
            base_url=self.server_url,
            headers={"X-API-Key": api_key},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self) -> "TranslatrClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- HTTP plumbing ---

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with self._rate_limiter:
            logger.debug("%s %s%s", method, self.server_url, path)
            return await self._http.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request that is not retried; transport failures surface as ServerError."""
        try:
            return await self._send(method, path, **kwargs)
        except httpx.TransportError as transport_exc:
            raise ServerError(debug_message=f"{method} {path} failed: {transport_exc!r}") from transport_exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if not response.is_success:
            raise classify_error_response(response.status_code, response.reason_phrase, response.text)

    @staticmethod
    def _parse_json(response: httpx.Response, schema: Dict[str, Any], what: str) -> Dict[str, Any]:
        try:
            data = response.json()
            jsonschema.validate(instance=data, schema=schema)
        except (json.JSONDecodeError, UnicodeDecodeError) as json_exc:
            raise MalformedResponse(
                debug_message=f"Unparseable {what} response: {json_exc} | "
                              f"{build_debug_message(response.status_code, response.reason_phrase, response.text)}"
            ) from json_exc
        except jsonschema.ValidationError as schema_exc:
            raise MalformedResponse(
                debug_message=f"Invalid {what} response: {schema_exc.message} | "
                              f"{build_debug_message(response.status_code, response.reason_phrase, response.text)}"
            ) from schema_exc
        return data

    # --- Operations ---

    async def submit(self, submission: Dict[str, SubmissionEntry]) -> str:
        """
        Create a translation job for the submission set.

        Connection-level failures are retried with linear backoff; any
        non-2xx response is classified and raised straight away.

        Args:
            submission (Dict[str, SubmissionEntry]): Entries to translate, by key.

        Returns:
            str: The job id.
        """
        payload = {"strings": {key: entry.to_wire() for key, entry in submission.items()}}

        last_failure: Optional[TransientNetworkFailure] = None
        for attempt in range(self.max_retries):
            try:
                response = await self._send("POST", "/translate", json=payload)
            except httpx.TransportError as transport_exc:
                last_failure = TransientNetworkFailure(
                    debug_message=f"POST /translate attempt {attempt + 1}/{self.max_retries}: {transport_exc!r}"
                )
                logger.debug(last_failure.debug_message)
                if attempt < self.max_retries - 1:
                    await self._sleep(self.retry_base_delay * (attempt + 1))
                continue

            self._raise_for_status(response)
            data = self._parse_json(response, CREATE_JOB_SCHEMA, "job creation")
            logger.debug("Created translation job %s for %d string(s).", data["job_id"], len(submission))
            return data["job_id"]

        raise ServerError(
            debug_message=f"Giving up after {self.max_retries} attempt(s): "
                          f"{last_failure.debug_message if last_failure else 'no response'}"
        ) from last_failure

    async def get_job_status(self, job_id: str) -> JobStatus:
        response = await self._request("GET", f"/translate/jobs/{job_id}")
        if response.status_code == 404:
            raise ResourceNotFound(
                user_message="Translation failed: job not found. Please retry.",
                debug_message=f"Job ID: {job_id} | "
                              f"{build_debug_message(response.status_code, response.reason_phrase, response.text)}"
            )
        self._raise_for_status(response)
        return JobStatus.from_dict(self._parse_json(response, JOB_STATUS_SCHEMA, "job status"))

    async def poll(self, job_id: str, on_progress: Optional[ProgressCallback] = None) -> JobStatus:
        """
        Poll a job until it completes or fails.

        The delay between polls starts at ``initial_poll_delay`` and grows by
        ``poll_backoff_multiplier`` up to ``max_poll_delay``. The timeout is
        based on activity: it only fires when the server's ``updated_at`` has
        not changed for ``poll_max_wait_seconds``.

        Args:
            job_id (str): The job to poll.
            on_progress (Optional[ProgressCallback]): Called when the
                processed/total counts change.

        Returns:
            JobStatus: The completed job status, translations included.
        """
        state = PollState(delay=self.initial_poll_delay, last_activity=self._clock())

        while True:
            if has_timed_out(state, self._clock(), self.poll_max_wait_seconds):
                raise ActivityTimeout(
                    user_message=f"Translation job timed out (no progress for {self.poll_max_wait_seconds:g}s)",
                    debug_message=f"Job ID: {job_id}"
                )

            status = await self.get_job_status(job_id)
            state, update = observe_status(state, status, self._clock())
            if update is not None and on_progress is not None:
                on_progress(update)

            if status.status == JOB_COMPLETED:
                if status.translations is None:
                    raise MalformedResponse(debug_message=f"Job ID: {job_id} | completed but translations are missing")
                return status
            if status.status == JOB_FAILED:
                raise job_failure_error(job_id, status.error_message)
            if status.status in (JOB_PENDING, JOB_PROCESSING):
                await self._sleep(state.delay)
                state = back_off(state, self.poll_backoff_multiplier, self.max_poll_delay)
                continue

            raise MalformedResponse(debug_message=f"Job ID: {job_id} | unknown job status '{status.status}'")

    async def translate(
            self,
            submission: Dict[str, SubmissionEntry],
            on_progress: Optional[ProgressCallback] = None
    ) -> TranslationResponse:
        """Submit the strings and wait for the job to finish."""
        job_id = await self.submit(submission)
        status = await self.poll(job_id, on_progress=on_progress)
        return TranslationResponse.from_job(status)

    async def fetch_cached(self) -> TranslationResponse:
        """Fetch every translation the service still holds for this project."""
        response = await self._request("GET", "/translate")
        self._raise_for_status(response)
        data = self._parse_json(response, CACHED_TRANSLATIONS_SCHEMA, "cached translations")
        return TranslationResponse(
            translations=data["translations"],
            meta=TranslationMeta.from_dict(data.get("meta")),
        )
