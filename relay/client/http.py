"""
Relay HTTP Transport

Shared httpx plumbing for the owner and signer clients.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_PREFIX = "/api/signatures"


class SignatureClientError(Exception):
    """Raised when the relay rejects a request or cannot be reached."""
    def __init__(self, message: str, status_code: int = None, details: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class SignatureSessionExpiredError(SignatureClientError):
    """The session expired before a signature arrived."""


class SignatureTimeoutError(SignatureClientError):
    """The owner gave up polling before the signer submitted."""


class RelayHTTPClient:
    """
    Thin synchronous wrapper around the relay's session endpoints.

    An existing httpx.Client (for example FastAPI's TestClient) can be passed
    in; it is then not closed by this wrapper.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_prefix: str = DEFAULT_API_PREFIX,
        http_client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_prefix = "/" + api_prefix.strip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] = None,
        json_data: Dict[str, Any] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Make a request to the relay and decode the JSON body.

        The timeout applies only to the wrapper's own client; an injected
        http_client keeps the timeout it was configured with.

        Raises:
            SignatureSessionExpiredError: On 410 Gone
            SignatureClientError: On any other HTTP error or transport failure
        """
        kwargs: Dict[str, Any] = {"params": params, "json": json_data}
        if self._owns_client:
            kwargs["timeout"] = timeout if timeout is not None else self.timeout
        try:
            response = self._client.request(method, self._url(path), **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            detail = _error_detail(e.response)
            logger.error(f"Relay error {status_code} on {method} {path}: {detail}")
            if status_code == 410:
                raise SignatureSessionExpiredError(
                    "Signature session expired", status_code=status_code, details=detail
                ) from e
            raise SignatureClientError(
                f"Relay returned {status_code}", status_code=status_code, details=detail
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Request error: {e}")
            raise SignatureClientError(f"Request failed: {e}") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text
