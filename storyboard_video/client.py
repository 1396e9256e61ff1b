"""Async HTTP client for the Veo long-running video generation API.

Three stateless calls: create an operation, read its state once, and fetch
the finished binary. Looping and retrying are left to the orchestrator.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from storyboard_video.errors import DownloadError, ProtocolError, SubmissionError
from storyboard_video.models import GenerationRequest, Operation

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
_API_VERSION = "v1beta"
_DEFAULT_TIMEOUT = 60.0
_DOWNLOAD_TIMEOUT = 300.0


def _provider_message(response: httpx.Response) -> str | None:
    """Pull ``error.message`` out of an error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return None


def build_request_body(request: GenerationRequest) -> dict[str, Any]:
    """Build the ``predictLongRunning`` body for a request."""
    instance: dict[str, Any] = {"prompt": request.prompt or ""}
    if request.start_frame is not None:
        instance["image"] = {
            "bytesBase64Encoded": request.start_frame.to_base64(),
            "mimeType": request.start_frame.mime_type,
        }

    parameters: dict[str, Any] = {"aspectRatio": request.aspect_ratio}
    if request.negative_prompt:
        parameters["negativePrompt"] = request.negative_prompt

    return {"instances": [instance], "parameters": parameters}


class VeoClient:
    """Async client for the Veo LRO API.

    Usage::

        async with VeoClient(api_key="...") as client:
            name = await client.submit(GenerationRequest(prompt="A cat on Mars"))
            op = await client.poll(name)
            if op.done:
                data = await client.fetch_binary(locator)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = _DEFAULT_BASE_URL,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            params={"key": api_key},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> VeoClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, what: str, **kwargs: Any) -> dict:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            provider_message = _provider_message(exc.response)
            raise SubmissionError(
                provider_message or f"{what} failed: HTTP {status}",
                http_status=status,
                provider_message=provider_message,
            ) from exc
        except httpx.HTTPError as exc:
            raise SubmissionError(f"{what} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ProtocolError(f"{what} returned a non-JSON body", body=response.text) from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"{what} returned an unexpected body", body=data)
        return data

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, request: GenerationRequest) -> str:
        """Create a video generation operation.

        Returns:
            The operation name to poll.

        Raises:
            SubmissionError: If the API rejects the request.
            ProtocolError: If the response carries no operation name.
        """
        body = build_request_body(request)
        url = f"/{_API_VERSION}/models/{request.model}:predictLongRunning"

        logger.info(
            "Submitting video request: model=%s, prompt=%r, start_frame=%s",
            request.model,
            (request.prompt or "")[:80],
            request.start_frame is not None,
        )
        data = await self._request("POST", url, "Video generation request", json=body)

        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError(f"No operation name in response: {str(data)[:300]}", body=data)
        logger.info("Operation created: %s", name)
        return name

    async def poll(self, operation_name: str) -> Operation:
        """Read the current state of an operation once.

        Raises:
            SubmissionError: If the status call fails.
            ProtocolError: If the body is not a JSON object.
        """
        data = await self._request("GET", f"/{_API_VERSION}/{operation_name}", "Status check")
        operation = Operation.from_payload(data, fallback_name=operation_name)
        logger.debug("Operation %s: done=%s", operation.name, operation.done)
        return operation

    async def fetch_binary(self, locator: str) -> bytes:
        """Download the finished asset behind a result locator.

        Raises:
            DownloadError: If the download fails.
        """
        logger.info("Downloading %s", locator)
        try:
            response = await self._client.get(
                locator,
                follow_redirects=True,
                timeout=_DOWNLOAD_TIMEOUT,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DownloadError(
                f"Video download failed: HTTP {exc.response.status_code}",
                http_status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"Video download failed: {exc}") from exc

        data = response.content
        logger.info("Downloaded %.1f KB", len(data) / 1024)
        return data
