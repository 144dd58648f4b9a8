"""Thin async wrapper around the Gemini REST endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type

import httpx

from .errors import AssistError, UpstreamError

logger = logging.getLogger(__name__)

API_ROOT = "https://generativelanguage.googleapis.com/"
BASE_URL = API_ROOT + "v1beta/"
UPLOAD_URL = API_ROOT + "upload/v1beta/"
DEFAULT_ERROR = "Gemini API error"


def extract_error(response: httpx.Response) -> str:
    """Pull ``error.message`` out of a failed response body."""

    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    text = response.text.strip()
    return text or DEFAULT_ERROR


class GeminiRestClient:
    """Shared HTTP plumbing for the LLM client and the Gemini retrieval providers.

    Every transport or HTTP failure is translated into ``error_cls`` so callers
    only ever see the assist error taxonomy.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return self.api_key is not None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"x-goog-api-key": self.api_key} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=BASE_URL,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        *,
        error_cls: Type[AssistError] = UpstreamError,
        **kwargs: Any,
    ) -> httpx.Response:
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise error_cls(f"Gemini request failed: {exc}") from exc
        if response.is_error:
            message = extract_error(response)
            logger.debug("Gemini %s %s -> %s: %s", method, url, response.status_code, message)
            raise error_cls(message)
        return response

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        error_cls: Type[AssistError] = UpstreamError,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        response = await self.request(method, url, error_cls=error_cls, **kwargs)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise error_cls(f"Gemini returned invalid JSON for {url}") from exc
        return data if isinstance(data, dict) else {}

    async def post_json(self, url: str, payload: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        return await self.request_json("POST", url, json=payload, **kwargs)

    async def get_json(self, url: str, **kwargs: Any) -> Dict[str, Any]:
        return await self.request_json("GET", url, **kwargs)

    async def resumable_upload(
        self,
        url: str,
        data: bytes,
        mime_type: str,
        metadata: Dict[str, Any],
        *,
        error_cls: Type[AssistError] = UpstreamError,
    ) -> Dict[str, Any]:
        """Run the two-step resumable upload protocol and return the final JSON body."""

        start = await self.request(
            "POST",
            url,
            error_cls=error_cls,
            json=metadata,
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(data)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
        )
        upload_url = start.headers.get("X-Goog-Upload-URL")
        if not upload_url:
            raise error_cls("Upload URL not returned by Gemini API.")
        return await self.request_json(
            "POST",
            upload_url,
            error_cls=error_cls,
            content=data,
            headers={
                "X-Goog-Upload-Command": "upload, finalize",
                "X-Goog-Upload-Offset": "0",
                "Content-Type": mime_type,
            },
        )

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
