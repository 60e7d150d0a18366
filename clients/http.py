import logging
from typing import Any, Dict, Optional

import httpx

from errors import ExternalServiceError

log = logging.getLogger("quizfunnel")


class ApiClient:
    """Bearer-authenticated JSON client for one upstream service.

    Every call carries an explicit timeout. GET requests are retried on
    transport errors and 5xx up to ``max_retries`` extra attempts; other
    methods are sent once.
    """

    service = "upstream"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        max_retries: int = 1,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = httpx.Timeout(
            connect=connect_timeout, read=read_timeout, write=read_timeout, pool=connect_timeout
        )
        self.max_retries = max(0, int(max_retries))

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if not self.configured:
            raise ExternalServiceError(self.service, "API key not configured")

        url = f"{self.base_url}/{path.lstrip('/')}"
        hdrs = {**self._headers(), **(headers or {})}
        attempts = 1 + self.max_retries if method.upper() == "GET" else 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    r = await client.request(method, url, json=json, params=params, headers=hdrs)
            except httpx.HTTPError as e:
                last_error = e
                log.warning("%s %s %s attempt %d failed: %s", self.service, method, path, attempt + 1, e)
                continue

            if r.status_code >= 500 and attempt < attempts - 1:
                log.warning("%s %s %s -> %s, retrying", self.service, method, path, r.status_code)
                continue
            return r

        raise ExternalServiceError(self.service, f"{method} {path} failed: {last_error}")

    def raise_for_status(self, r: httpx.Response, action: str) -> None:
        if 200 <= r.status_code < 300:
            return
        log.warning("%s %s failed: %s %s", self.service, action, r.status_code, r.text[:500])
        raise ExternalServiceError(self.service, f"{action} failed", upstream_status=r.status_code)


def response_body(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return r.text
