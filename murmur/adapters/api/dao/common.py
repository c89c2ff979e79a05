import httpx
import asyncio
from typing import Any
import logging

from murmur.exceptions import (
    APIError,
    NetworkError,
    InfrastructureError,
    RetryableError,
)

class CommonHTTPClient:
    def __init__(
            self,
            base_url: str,
            timeout: float = 60.0,
            max_retries: int = 3,
            retry_delay: float = 1.0,
            verify: bool = True,
            transport: httpx.AsyncBaseTransport | None = None,
            logger: logging.Logger | None = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.verify = verify

        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._logger = logger or logging.getLogger(__name__)
        self._request_count = 0
        self._error_count = 0

    async def __aenter__(self):
        await self._initialize_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._close_client()

    async def _initialize_client(self):
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            verify=self.verify,
            headers={"Content-Type": "application/json"},
            transport=self._transport
        )
        self._logger.debug(f"HTTP client initialized for {self.base_url}")

    async def _close_client(self):
        if self._client:
            await self._client.aclose()
            self._client = None
            self._logger.debug("HTTP client closed")

    async def get(self, endpoint: str, params: dict | None = None, **kwargs) -> dict[str, Any]:
        return await self._request_with_retry("GET", endpoint, params=params, **kwargs)

    async def _request_with_retry(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        request_id = f"{method}_{endpoint}_{self._request_count}"

        for attempt in range(self.max_retries):
            try:
                self._request_count += 1
                self._logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} [{request_id}]")
                return await self._request(method, endpoint, **kwargs)

            except (APIError, RetryableError) as e:
                self._error_count += 1

                if isinstance(e, APIError) and not e.is_server_error:
                    self._logger.warning(f"Client error, no retry [{request_id}]: {e}")
                    raise

                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    self._logger.warning(f"Request failed, retrying in {delay}s [{request_id}]: {e}")
                    await asyncio.sleep(delay)
                else:
                    self._logger.error(f"All retry attempts failed [{request_id}]: {e}")
                    raise

        raise InfrastructureError("No request attempts were made", context={"max_retries": self.max_retries})

    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        if not self._client:
            raise InfrastructureError(
                "HTTP client not initialized. Use async context manager.",
                context={"method": method, "endpoint": endpoint}
            )

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        self._logger.info(f"Making {method} request to {url}")

        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}

        except httpx.HTTPStatusError as e:
            raise self._map_http_error(e, method, url) from e

        except httpx.RequestError as e:
            self._logger.error(f"Network error for {method} {url}: {e}")
            raise NetworkError(
                f"Network request failed: {str(e)}",
                original_error=e,
                context={"method": method, "url": url, "error_type": type(e).__name__}
            ) from e

        except ValueError as e:
            raise InfrastructureError(
                "Response is not valid JSON",
                original_error=e,
                context={"method": method, "url": url}
            ) from e

    def _map_http_error(self, error: httpx.HTTPStatusError, method: str, url: str) -> APIError:
        status_code = error.response.status_code
        response_text = error.response.text[:1000]

        try:
            response_data = error.response.json() if error.response.content else None
        except ValueError:
            response_data = {"raw_response": response_text}

        kind = "Server" if status_code >= 500 else "Client"
        self._logger.warning(f"{kind} error {status_code} for {method} {url}: {response_text}")
        return APIError(
            message=f"{kind} error: {status_code}",
            status_code=status_code,
            response_data=response_data,
            context={"method": method, "url": url}
        )
