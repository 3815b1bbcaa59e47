"""
Async HTTP client for provider token and identity endpoints.
"""
import asyncio
import json
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..config.settings import settings
from ..utils.logger import logger
from .errors import ProviderHTTPError


def _parse_error(payload: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Pull an error code and description out of a provider error body.

    Handles both the RFC 6749 shape (``{"error": "invalid_grant",
    "error_description": "..."}``) and the Graph API shape
    (``{"error": {"message": "...", "type": "OAuthException", "code": 190}}``).
    """
    if not isinstance(payload, dict):
        return None, None
    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        return (str(code) if code is not None else error.get("type")), error.get("message")
    if error is not None:
        return str(error), payload.get("error_description")
    return None, payload.get("message")


class ProviderHTTPClient:
    """
    Thin wrapper over one shared aiohttp session.

    Every request is bounded by ``timeout`` seconds; timeouts and transport
    errors surface as ``ProviderHTTPError`` rather than hanging or leaking
    aiohttp exceptions.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.oauth_http_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    @staticmethod
    def interpret_response(status: int, text: str) -> Dict[str, Any]:
        """
        Turn a raw provider response into a payload or a ``ProviderHTTPError``.

        Some providers report OAuth errors with HTTP 200, so an ``error`` field
        in a successful body is treated as a failure too.

        Args:
            status: HTTP status code
            text: Response body

        Returns:
            Parsed JSON object

        Raises:
            ProviderHTTPError: Non-2xx status, error body, or non-JSON body
        """
        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = None

        if not 200 <= status < 300:
            code, description = _parse_error(payload)
            raise ProviderHTTPError(
                f"HTTP {status}: {description or code or text[:200]}",
                status=status,
                error_code=code,
                description=description,
                body=text,
            )

        if not isinstance(payload, dict):
            raise ProviderHTTPError(
                f"Invalid JSON response (HTTP {status})", status=status, body=text
            )

        if "error" in payload:
            code, description = _parse_error(payload)
            raise ProviderHTTPError(
                f"OAuth error: {description or code}",
                status=status,
                error_code=code,
                description=description,
                body=text,
            )

        return payload

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        await self._ensure_session()
        try:
            async with self._session.request(method, url, **kwargs) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            logger.warning(f"{method} {url} timed out after {self.timeout}s")
            raise ProviderHTTPError(
                f"Request timed out after {self.timeout}s", timed_out=True
            ) from e
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise ProviderHTTPError(f"Request failed: {e}") from e

        return self.interpret_response(status, text)

    async def post_form(self, url: str, data: Dict[str, str]) -> Dict[str, Any]:
        """POST an ``application/x-www-form-urlencoded`` body and return the JSON reply."""
        return await self._request(
            "POST",
            url,
            data=data,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """GET a JSON resource."""
        return await self._request("GET", url, params=params, headers=headers)
