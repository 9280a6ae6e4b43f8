# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP client for the WhatsApp gateway send endpoints.

Each call performs exactly one send attempt and normalises the result into a
:class:`DeliveryOutcome`. Gateway and network failures never raise: they are
reported as unsuccessful outcomes carrying the response body or exception
message as detail.

Endpoints:
    - ``POST /send/text`` with ``{"number", "text"}``
    - ``POST /send/{image,video,audio,ptt,document}`` with
      ``{"number", "url", "caption"?, "filename"?}``
    - ``POST /send/media`` for any other media kind

The channel credential travels in the ``token`` header.

Example:
    Sending the payload of a job to one destination::

        gateway = GatewayClient("https://wsmart.uazapi.com")
        outcome = await gateway.send(token, "1203630@g.us", job)
        if not outcome.success:
            logger.warning("send failed: %s", outcome.error)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import aiohttp

from .logger import get_logger
from .models import MessageType, ScheduledJob

DEFAULT_GATEWAY_URL = "https://wsmart.uazapi.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_ERROR_LENGTH = 500

MEDIA_ENDPOINTS = {
    MessageType.IMAGE.value: "/send/image",
    MessageType.VIDEO.value: "/send/video",
    MessageType.AUDIO.value: "/send/audio",
    MessageType.PTT.value: "/send/ptt",
    MessageType.DOCUMENT.value: "/send/document",
}
FALLBACK_MEDIA_ENDPOINT = "/send/media"
TEXT_ENDPOINT = "/send/text"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one send attempt to one destination."""

    destination: str
    success: bool
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"destination": self.destination, "success": self.success}
        if self.error is not None:
            data["error"] = self.error
        return data


def _truncate(detail: str, limit: int = MAX_ERROR_LENGTH) -> str:
    if len(detail) <= limit:
        return detail
    return detail[:limit] + "..."


def build_request(destination: str, job: ScheduledJob) -> tuple[str, dict[str, Any]]:
    """Return the endpoint path and JSON body for a job's payload.

    Args:
        destination: Recipient address.
        job: Job providing kind, body, media reference and filename.

    Returns:
        Tuple of (endpoint path, request body).
    """
    if job.message_type == MessageType.TEXT.value:
        return TEXT_ENDPOINT, {"number": destination, "text": job.content or ""}

    body: dict[str, Any] = {"number": destination, "url": job.media_url or ""}
    if job.content:
        body["caption"] = job.content
    if job.filename:
        body["filename"] = job.filename
    return MEDIA_ENDPOINTS.get(job.message_type, FALLBACK_MEDIA_ENDPOINT), body


class GatewayClient:
    """Sends text and media payloads through the gateway HTTP API.

    Attributes:
        base_url: Gateway server URL without trailing slash.
        timeout: Total timeout in seconds for one request.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GATEWAY_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        logger=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.logger = logger or get_logger("Gateway")

    async def send(self, token: str, destination: str, job: ScheduledJob) -> DeliveryOutcome:
        """Perform exactly one send attempt.

        Args:
            token: Channel credential of the job's instance.
            destination: Recipient address.
            job: Job whose payload is sent.

        Returns:
            A successful outcome on a 2xx response, otherwise a failed one
            with the response body (or exception message) as error detail.
        """
        endpoint, body = build_request(destination, job)
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json", "token": token}
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(url, json=body, headers=headers) as resp:
                    if resp.status >= 300:
                        detail = await resp.text()
                        self.logger.debug(
                            "Gateway returned %s for %s (%s)", resp.status, destination, endpoint
                        )
                        return DeliveryOutcome(
                            destination=destination,
                            success=False,
                            error=_truncate(detail or f"HTTP {resp.status}"),
                        )
                    try:
                        await resp.json(content_type=None)
                    except ValueError:
                        self.logger.debug("Gateway returned a non-JSON success body for %s", destination)
        except asyncio.TimeoutError:
            return DeliveryOutcome(
                destination=destination,
                success=False,
                error=f"Gateway request timed out after {self.timeout:g}s",
            )
        except Exception as exc:
            return DeliveryOutcome(
                destination=destination,
                success=False,
                error=_truncate(str(exc) or exc.__class__.__name__),
            )
        return DeliveryOutcome(destination=destination, success=True)


__all__ = [
    "DEFAULT_GATEWAY_URL",
    "DeliveryOutcome",
    "GatewayClient",
    "MAX_ERROR_LENGTH",
    "build_request",
]
