"""Shared HTTP plumbing for the platform clients."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

import requests

from . import IntegrationAPIError
from .utils import get_timeout

logger = logging.getLogger(__name__)


class BaseAPIClient:
    """Thin wrapper over a ``requests.Session`` bound to one platform.

    Subclasses set ``platform`` and the session's auth; every call goes
    through :meth:`_request`, which raises :class:`IntegrationAPIError` for
    transport failures and non-2xx responses.
    """

    platform = "Integration"

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_timeout()
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        expected_status: Iterable[int] = (200, 201, 204),
    ) -> requests.Response:
        url = self._url(path)
        try:
            response = self.session.request(
                method.upper(),
                url,
                params=params,
                json=json_body,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise IntegrationAPIError(
                self.platform, f"{method.upper()} {path} failed: {exc}"
            ) from exc

        if response.status_code not in set(expected_status):
            raise IntegrationAPIError(
                self.platform,
                self._extract_error_message(response),
                status_code=response.status_code,
            )
        return response

    def _decode(self, response: requests.Response, method: str, path: str) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise IntegrationAPIError(
                self.platform,
                f"{method.upper()} {path} returned invalid JSON.",
                status_code=response.status_code,
            ) from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        expected_status: Iterable[int] = (200, 201, 204),
    ) -> Any:
        response = self._send(
            method,
            path,
            params=params,
            json_body=json_body,
            expected_status=expected_status,
        )
        return self._decode(response, method, path)

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return self._request("GET", path, params=params)

    def _extract_error_message(self, response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in ("message", "error", "detail"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
        text = (response.text or "").strip()
        return text[:500] or (response.reason or "No additional error detail provided.")

    def _probe(self) -> None:
        raise NotImplementedError

    def test_connection(self) -> bool:
        """Issue a cheap authenticated call; never raises."""
        try:
            self._probe()
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s connection test failed: %s", self.platform, exc)
            return False
        return True
