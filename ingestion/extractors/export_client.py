"""
Client for the export API: bundle listing and bundle download.

Retries are not done here; every non-200 response is turned into a
status-coded error carrying the server's Retry-After hint and left to
ingestion.retry.RetryPolicy to judge.
"""

import gzip
import json
import logging
import zlib
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    BundleDecodeError,
    RateLimitError,
    ResourceNotFoundError,
    SourceServerError,
    SourceStatusError,
)
from schemas.export import BundleMeta

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


def get_retry_after(response: httpx.Response) -> float:
    """
    Seconds from the Retry-After header; 0 when absent or not an integer.
    """
    header = response.headers.get("Retry-After")
    if header:
        try:
            return float(int(header))
        except ValueError:
            pass
    return 0.0


def status_error(response: httpx.Response, url: str) -> SourceStatusError:
    """Build the status-coded error matching a failed response"""
    code = response.status_code
    context = {"api_url": url, "response_body": response.text[:500]}
    retry_after = get_retry_after(response)
    message = f"Export API response error: {code} {response.reason_phrase}"

    if code == 429:
        cls = RateLimitError
    elif code >= 500:
        cls = SourceServerError
    elif code in (401, 403):
        cls = AuthenticationError
    elif code == 404:
        cls = ResourceNotFoundError
    else:
        cls = SourceStatusError
    return cls(message, status_code=code, retry_after=retry_after, context=context)


def decode_records(body: bytes, bundle_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Decode a bundle body (optionally gzipped) into its list of records.

    Raises:
        BundleDecodeError: body is not a JSON array of objects
    """
    try:
        if body[:2] == GZIP_MAGIC:
            body = gzip.decompress(body)
        data = json.loads(body)
    except (OSError, EOFError, ValueError, zlib.error) as e:
        raise BundleDecodeError(
            "Failed to decode bundle body",
            context={"bundle_id": bundle_id},
            original_exception=e
        )

    if not isinstance(data, list):
        raise BundleDecodeError(
            "Bundle body is not a JSON array",
            context={"bundle_id": bundle_id, "type": type(data).__name__}
        )
    return data


class ExportClient:
    """
    Thin async wrapper around the export endpoints.

    Features:
    - Bearer token authentication
    - Transparent gzip handling for bundle bodies
    - Status-coded errors with Retry-After hints
    """

    def __init__(
        self,
        base_url: str = None,
        api_token: Optional[str] = None,
        timeout: float = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.EXPORT_API_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.EXPORT_API_TOKEN
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self._client = http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept-Encoding": "gzip"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _get(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            response = await self._client.get(url, params=params, headers=self._headers(), timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params, headers=self._headers())

        if response.status_code != 200:
            raise status_error(response, url)
        return response

    async def list_bundles(self, since: datetime) -> List[BundleMeta]:
        """
        List bundles available after `since`, ordered by start time.

        Raises:
            SourceStatusError: non-200 response
            APIExtractionError: malformed listing
        """
        response = await self._get("/export/list", {"start": int(since.timestamp())})
        try:
            payload = response.json()
            exports = payload.get("exports") or []
            bundles = [BundleMeta.model_validate(e) for e in exports]
        except Exception as e:
            raise APIExtractionError(
                "Failed to parse export list",
                context={"api_url": f"{self.base_url}/export/list", "since": since.isoformat()},
                original_exception=e
            )

        bundles.sort(key=lambda b: (b.start, b.id))
        logger.info(f"Export list since {since.isoformat()} returned {len(bundles)} bundles")
        return bundles

    async def download_bundle(self, bundle_id: int) -> bytes:
        """
        Fetch the raw body of one bundle.

        Raises:
            SourceStatusError: non-200 response
            httpx.HTTPError: transport failure
        """
        logger.info(f"Getting export data for bundle {bundle_id}")
        response = await self._get("/export/get", {"id": bundle_id})
        return response.content
