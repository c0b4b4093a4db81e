"""
Request Gateway: the single choke point for backend calls.

Normalizes headers, serializes bodies and turns transport outcomes into
typed errors. It never caches, retries or logs failures itself; those
belong to the query coordinator and the mutation executor.
"""
import json
import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests
from requests.structures import CaseInsensitiveDict

from dashboard.errors import DecodeError, HttpError, NetworkError, RequestError

logger = logging.getLogger("gateway")

JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
TEXT_CONTENT_TYPE = "text/plain"


class RequestGateway:
    """
    Sends requests relative to a configured base URL.

    Usage:
        gateway = RequestGateway("http://mes.local/api/v1", transport=router)
        labor = gateway.send("/operations/42/labor")
        gateway.send("/materials/consume", "POST", body={...})
    """

    def __init__(
        self,
        base_url: str,
        transport: Any,
        default_headers: Optional[Mapping[str, str]] = None,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        """
        Args:
            base_url: Absolute URL every endpoint is appended to
            transport: Object with send(prepared_request, timeout=...) -> Response;
                a requests.Session or the transport CacheRouter
            default_headers: Headers sent with every request
            auth_token: Optional bearer token
            timeout: Socket timeout handed to the transport
        """
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._default_headers = CaseInsensitiveDict({
            "Accept": JSON_CONTENT_TYPE,
            "Content-Type": JSON_CONTENT_TYPE,
        })
        if default_headers:
            self._default_headers.update(default_headers)
        if auth_token:
            self._default_headers["Authorization"] = f"Bearer {auth_token}"

    def build_url(self, endpoint: str) -> str:
        """Append a relative endpoint to the base URL."""
        if endpoint.startswith(("http://", "https://")):
            raise ValueError(f"Endpoint must be relative: {endpoint}")
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _build_headers(self, headers: Optional[Mapping[str, str]]) -> CaseInsensitiveDict:
        merged = CaseInsensitiveDict(self._default_headers)
        if headers:
            merged.update(headers)
        return merged

    @staticmethod
    def _serialize_body(body: Any, content_type: str) -> Any:
        """Serialize a body to the declared content type."""
        if body is None or isinstance(body, (bytes, bytearray)):
            return body

        media_type = content_type.split(";")[0].strip().lower()
        if media_type == JSON_CONTENT_TYPE or media_type.endswith("+json"):
            return json.dumps(body).encode("utf-8")
        if media_type == FORM_CONTENT_TYPE:
            return urlencode(body, doseq=True)
        if media_type.startswith("text/"):
            return str(body).encode("utf-8")
        raise ValueError(f"Cannot serialize body for content type {content_type!r}")

    def prepare(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.PreparedRequest:
        """Build the prepared request send() would issue."""
        merged = self._build_headers(headers)
        if body is None:
            merged.pop("Content-Type", None)
        data = self._serialize_body(body, merged.get("Content-Type", JSON_CONTENT_TYPE))

        clean_params = None
        if params:
            clean_params = sorted((k, v) for k, v in params.items() if v is not None)

        return requests.Request(
            method=method.upper(),
            url=self.build_url(endpoint),
            headers=dict(merged),
            data=data,
            params=clean_params,
        ).prepare()

    def send(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        bypass_cache: bool = False,
    ) -> Any:
        """
        Send a request and return the parsed JSON body.

        Raises:
            HttpError: A response arrived with a non-2xx status
            NetworkError: No response was received
            DecodeError: The response body could not be parsed
            RequestTimeoutError: The network-first cache timed out with no entry
        """
        prepared = self.prepare(endpoint, method, body, headers, params)

        send_kwargs: Dict[str, Any] = {"timeout": self._timeout}
        if bypass_cache:
            # Only the CacheRouter understands this flag
            send_kwargs["bypass_cache"] = True

        try:
            response = self._transport.send(prepared, **send_kwargs)
        except RequestError:
            raise
        except requests.RequestException as e:
            raise NetworkError(f"{prepared.method} {prepared.url} failed: {e}", url=prepared.url) from e

        if not 200 <= response.status_code < 300:
            raise HttpError(response.status_code, response.reason or "", url=prepared.url)

        return self._decode(response, prepared.url)

    @staticmethod
    def _decode(response: requests.Response, url: str) -> Any:
        content = response.content
        if response.status_code == 204 or not content or not content.strip():
            return None
        try:
            return json.loads(content)
        except (ValueError, UnicodeDecodeError) as e:
            raise DecodeError(f"Malformed response body from {url}: {e}", url=url) from e
