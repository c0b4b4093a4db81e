"""
Typed request errors shared by the gateway, the caches and the retry layer.

Every failure that crosses the Request Gateway is one of four kinds:
- NETWORK: no response was received
- HTTP: a response was received with a non-2xx status
- DECODE: the response body could not be parsed
- TIMEOUT: the network-first fallback path ran out of options
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Failure taxonomy for backend calls."""
    NETWORK = "network"
    HTTP = "http"
    DECODE = "decode"
    TIMEOUT = "timeout"


class RequestError(Exception):
    """Base class for all failures surfaced by the data-access layer."""

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str, url: Optional[str] = None):
        self.message = message
        self.url = url
        super().__init__(message)

    @property
    def status(self) -> Optional[int]:
        """HTTP status if a response was received."""
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON responses and log records."""
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.url:
            result["url"] = self.url
        return result


class NetworkError(RequestError):
    """No response was received from the backend."""

    kind = ErrorKind.NETWORK


class HttpError(RequestError):
    """The backend answered with a non-2xx status."""

    kind = ErrorKind.HTTP

    def __init__(self, status: int, status_text: str = "", url: Optional[str] = None):
        self._status = status
        self.status_text = status_text
        super().__init__(f"API Error: {status} {status_text}".rstrip(), url=url)

    @property
    def status(self) -> int:
        return self._status

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["status"] = self._status
        result["statusText"] = self.status_text
        return result


class DecodeError(RequestError):
    """The response body was not valid for its declared content."""

    kind = ErrorKind.DECODE


class RequestTimeoutError(RequestError):
    """Network-first timed out and no usable cached entry existed."""

    kind = ErrorKind.TIMEOUT
