"""
Generation invoker and the Replicate backend client.

`GenerationInvoker.invoke` is called once per job and always returns a
`JobOutcome`; transport errors never escape it. The backend itself is
anything implementing `GenerationBackend`, which keeps the orchestrator
testable without network access.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx

from . import config
from .jobs import Job

logger = logging.getLogger(__name__)

PROMPT_REQUIRED_MESSAGE = "Prompt is required."
UNKNOWN_ERROR_MESSAGE = "Unknown error"

TERMINAL_PREDICTION_STATES = {"succeeded", "failed", "canceled"}
PREDICTION_TIMEOUT_MESSAGE = "Replicate prediction timed out."


# ------------------------------------------------------------------------------
# Outcomes
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok:
    output_url: str
    persisted: bool = False
    record_id: Optional[str] = None

    def saved(self, record_id: str, output_url: Optional[str] = None) -> "Ok":
        return replace(self, persisted=True, record_id=record_id, output_url=output_url or self.output_url)


@dataclass(frozen=True)
class EmptyInput:
    reason: str = PROMPT_REQUIRED_MESSAGE


@dataclass(frozen=True)
class Failed:
    message: str = UNKNOWN_ERROR_MESSAGE
    http_status: Optional[int] = None


JobOutcome = Union[Ok, EmptyInput, Failed]


def outcome_error_message(outcome: JobOutcome) -> Optional[str]:
    if isinstance(outcome, EmptyInput):
        return outcome.reason
    if isinstance(outcome, Failed):
        return outcome.message
    return None


# ------------------------------------------------------------------------------
# Backend
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class BackendResult:
    status: str  # "ok" | "error"
    url: Optional[str] = None
    message: Optional[str] = None


class GenerationBackend(Protocol):
    async def generate(self, prompt: str, image_url: Optional[str], model: str) -> BackendResult:
        ...


def _json(response: httpx.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_detail(payload: Dict[str, Any]) -> Optional[str]:
    error = payload.get("error")
    if isinstance(error, dict) and error.get("detail"):
        return str(error["detail"])
    if isinstance(error, str) and error.strip():
        return error
    return None


def _extract_output_url(output: Any) -> Optional[str]:
    if isinstance(output, list):
        first = output[0] if output else None
        return first if isinstance(first, str) and first else None
    if isinstance(output, str):
        return output or None
    if isinstance(output, dict):
        if isinstance(output.get("image"), str):
            return output["image"]
        images = output.get("images")
        if isinstance(images, list) and images and isinstance(images[0], str):
            return images[0]
    return None


class ReplicateBackend:
    """
    Minimal async client for the Replicate predictions API.

    Creates a prediction, then polls its `urls.get` endpoint until it
    reaches a terminal state or `max_attempts` polls have been made.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        max_attempts: int = 60,
        poll_interval_seconds: float = 2.0,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "ReplicateBackend":
        settings = settings or config.get_settings()
        return cls(
            api_token=settings.replicate_api_token or "",
            base_url=settings.replicate_api_base_url,
            max_attempts=settings.replicate_max_attempts,
            poll_interval_seconds=settings.replicate_poll_interval_seconds,
            timeout_seconds=settings.request_timeout_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.api_token}", "Content-Type": "application/json"}

    @staticmethod
    def build_request_body(prompt: str, image_url: Optional[str], model: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"version": model, "input": {"prompt": prompt}}
        if image_url:
            # Different models read the reference image from different keys.
            body["input"]["image"] = image_url
            body["input"]["image_input"] = [image_url]
            body["input"]["input_image"] = [image_url]
            body["input"]["init_image"] = image_url
        return body

    async def generate(self, prompt: str, image_url: Optional[str], model: str) -> BackendResult:
        if self._client is not None:
            return await self._generate(self._client, prompt, image_url, model)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._generate(client, prompt, image_url, model)

    async def _generate(
        self, client: httpx.AsyncClient, prompt: str, image_url: Optional[str], model: str
    ) -> BackendResult:
        body = self.build_request_body(prompt, image_url, model)
        logger.debug("Creating prediction model=%s has_image=%s", model, bool(image_url))
        response = await client.post(f"{self.base_url}/predictions", json=body, headers=self._headers())
        prediction = _json(response)

        if not response.is_success:
            message = (
                _error_detail(prediction)
                or prediction.get("detail")
                or prediction.get("message")
                or "Failed to create Replicate prediction."
            )
            return BackendResult(status="error", message=str(message))

        poll_url = (prediction.get("urls") or {}).get("get")
        if not poll_url:
            return BackendResult(status="error", message="Replicate did not return a polling URL.")

        attempt = 0
        while prediction.get("status") not in TERMINAL_PREDICTION_STATES and attempt < self.max_attempts:
            await self._sleep(self.poll_interval_seconds)
            poll = await client.get(poll_url, headers=self._headers())
            poll.raise_for_status()
            prediction = _json(poll)
            attempt += 1

        status = prediction.get("status")
        if status not in TERMINAL_PREDICTION_STATES:
            logger.warning("Prediction still %s after %d polls", status, attempt)
            return BackendResult(status="error", message=PREDICTION_TIMEOUT_MESSAGE)
        if status != "succeeded":
            message = _error_detail(prediction) or status or "Replicate prediction failed."
            return BackendResult(status="error", message=str(message))

        url = _extract_output_url(prediction.get("output"))
        if not url:
            return BackendResult(status="error", message="Replicate succeeded but no image URL was returned.")
        return BackendResult(status="ok", url=url)


# ------------------------------------------------------------------------------
# Invoker
# ------------------------------------------------------------------------------


class GenerationInvoker:
    """Turns one job into exactly one outcome via the backend."""

    def __init__(self, backend: GenerationBackend, base_image_url: Optional[str] = None) -> None:
        self.backend = backend
        self.base_image_url = base_image_url

    async def invoke(self, job: Job) -> JobOutcome:
        if not job.has_prompt:
            return EmptyInput()

        try:
            result = await self.backend.generate(
                prompt=job.prompt,
                image_url=job.reference_image_url or self.base_image_url,
                model=job.model,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Generation raised for job=%s: %s", job.id, exc)
            return Failed(message=str(exc) or UNKNOWN_ERROR_MESSAGE)

        if result.status == "ok" and result.url:
            return Ok(output_url=result.url)
        return Failed(message=result.message or UNKNOWN_ERROR_MESSAGE)
