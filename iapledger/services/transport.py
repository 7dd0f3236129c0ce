"""
Validator targets and the HTTP transport used to reach them.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from structlog import get_logger

from iapledger.exceptions import ValidatorTransportError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ValidatorTarget:
    """Remote validator reached with an HTTP POST."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate target URL."""
        if not self.url.startswith(("http://", "https://")):
            raise ValueError(f"Validator URL must be http(s): {self.url}")


# Called with the JSON request body; returns the response payload, or an
# awaitable of it.
ValidatorFunction = Callable[[dict[str, Any]], Any]

ValidatorConfig = str | ValidatorTarget | ValidatorFunction | None


def as_target(config: str | ValidatorTarget) -> ValidatorTarget:
    return ValidatorTarget(url=config) if isinstance(config, str) else config


class ValidationTransport(Protocol):
    """Sends a request body to a validator target and returns the decoded response."""

    async def post(self, target: ValidatorTarget, body: dict[str, Any]) -> object:
        """
        POST ``body`` as JSON.

        Returns:
            The decoded JSON response, or the raw text if it is not JSON

        Raises:
            ValidatorTransportError: If the validator cannot be reached or
                answers with an HTTP error status
        """
        ...


class HttpxTransport:
    """ValidationTransport backed by httpx."""

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def post(self, target: ValidatorTarget, body: dict[str, Any]) -> object:
        headers = {
            "Content-Type": "application/json",
            **target.headers,
        }

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    target.url,
                    json=body,
                    headers=headers,
                    timeout=self.timeout,
                )
        except httpx.HTTPError as exc:
            logger.warning("validator_unreachable", url=target.url, error=str(exc))
            raise ValidatorTransportError(0, str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            logger.error(
                "validator_http_error",
                url=target.url,
                status=response.status_code,
                error=response.text[:500],
            )
            raise ValidatorTransportError(
                response.status_code, response.reason_phrase or response.text
            )

        try:
            return response.json()
        except ValueError:
            return response.text
