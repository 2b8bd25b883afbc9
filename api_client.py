import httpx
import structlog
from typing import Optional, Dict, Any

from config import ClientConfig, settings

logger = structlog.get_logger()

class ApiClient:
    """
    Thin async HTTP client for the CodeCheckout API.

    Every request raises httpx.HTTPError on transport failure or a non-2xx
    status, after the failure has been logged.
    """

    def __init__(
        self,
        config: ClientConfig,
        timeout: float = settings.API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.baseUrl,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(path, params=params, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            self._log_error(path, e)
            raise

    async def post(
        self,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(path, json=json, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            self._log_error(path, e)
            raise

    def _log_error(self, path: str, error: httpx.HTTPError):
        if isinstance(error, httpx.HTTPStatusError):
            logger.error(
                "codecheckout_api_error",
                path=path,
                status=error.response.status_code,
                body=error.response.text,
            )
        else:
            logger.error("codecheckout_api_error", path=path, error=str(error))
