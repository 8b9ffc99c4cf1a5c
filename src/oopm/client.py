from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .config import DEFAULT_REGISTRY, DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)


class OopmError(RuntimeError):
    pass


@dataclass(frozen=True)
class OopmHTTPError(OopmError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


def package_path(name: str) -> str:
    # Scoped names keep their "@" and encode the slash: @scope/name -> @scope%2fname
    return "/" + quote(name, safe="@")


class RegistryClient:
    """
    Thin async client for the package registry metadata endpoints.

    Only the document lookup (`GET {registry}/{name}`) is used by the installer; version
    resolution and downloads are delegated to the external resolver.
    """

    def __init__(
        self,
        *,
        registry: str = DEFAULT_REGISTRY,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._http = httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(self, *, method: str, path: str, auth: bool = True) -> httpx.Response:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            if not path.startswith("/"):
                path = "/" + path
            url = f"{self.registry}{path}"

        headers: dict[str, str] = {"Accept": "application/json"}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = await self._http.request(method.upper(), url, headers=headers)
        except httpx.HTTPError as e:
            raise OopmError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise OopmHTTPError(resp.status_code, resp.text)
        return resp

    async def get_package_document(self, name: str) -> dict[str, Any]:
        try:
            resp = await self.request(method="GET", path=package_path(name))
        except OopmHTTPError as e:
            if e.status_code == 404:
                raise OopmError(f"Package not found in registry: {name}") from e
            raise
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise OopmError(f"Registry returned a non-JSON document for {name}") from e
        if not isinstance(data, dict):
            raise OopmError(f"Registry returned an unexpected document for {name}")
        return data

    async def latest_version(self, name: str) -> str:
        data = await self.get_package_document(name)
        tags = data.get("dist-tags")
        latest = tags.get("latest") if isinstance(tags, dict) else None
        if not isinstance(latest, str) or not latest.strip():
            raise OopmError(f"Registry document for {name} has no dist-tags.latest")
        logger.debug("latest version of %s is %s", name, latest)
        return latest.strip()
