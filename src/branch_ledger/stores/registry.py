"""Branch registry clients: a static one and an HTTP one for the branch service."""

import asyncio
from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from branch_ledger.config import get_settings
from branch_ledger.errors import TransientStoreError

logger = structlog.get_logger(__name__)


class StaticBranchRegistry:
    """Registry backed by a fixed set of branches."""

    def __init__(self, active: Iterable[str] = (), inactive: Iterable[str] = ()):
        self._active = set(active)
        self._inactive = set(inactive)

    def activate(self, branch_id: str) -> None:
        self._inactive.discard(branch_id)
        self._active.add(branch_id)

    def deactivate(self, branch_id: str) -> None:
        self._active.discard(branch_id)
        self._inactive.add(branch_id)

    async def is_active(self, branch_id: str) -> bool:
        return branch_id in self._active

    async def list_active(self) -> list[str]:
        return sorted(self._active)


class RegistryError(TransientStoreError):
    """Branch registry returned an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class HTTPBranchRegistry:
    """Async client for the branch registry service.

    Branches are addressed by id; a branch counts as known only while its
    ``status`` is ``active``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.registry_url).rstrip("/")
        if token is None and settings.registry_token is not None:
            token = settings.registry_token.get_secret_value()
        self._token = token
        self._timeout = timeout if timeout is not None else settings.registry_timeout
        self._max_retries = (
            max_retries if max_retries is not None else settings.registry_max_retries
        )
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HTTPBranchRegistry":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> httpx.Response:
        """GET with exponential backoff on transport errors and 5xx."""
        client = await self._get_client()
        try:
            response = await client.request(
                method="GET",
                url=path,
                params=params,
                headers=self._get_headers(),
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self._request(path, params, retry_count + 1)
            raise RegistryError(f"Branch registry unreachable: {e}") from e

        if response.status_code >= 500:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self._request(path, params, retry_count + 1)
            raise RegistryError(
                f"Branch registry error: {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _extract_items(result: Any) -> list[dict[str, Any]]:
        """Return list of items from a list or wrapped response."""
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            for key in ("branches", "items"):
                items = result.get(key)
                if isinstance(items, list):
                    return items
        return []

    @staticmethod
    def _branch_id(branch: dict[str, Any]) -> str:
        return str(branch.get("id") or branch.get("_id") or "")

    async def is_active(self, branch_id: str) -> bool:
        response = await self._request(f"/api/v1/branches/{branch_id}")
        if response.status_code in (400, 404):
            logger.debug("branch_not_found", branch_id=branch_id)
            return False
        if response.status_code >= 400:
            raise RegistryError(
                f"Branch lookup failed: {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        if not isinstance(data, dict):
            raise RegistryError("Invalid branch response format")
        return data.get("status", "active") == "active"

    async def list_active(self) -> list[str]:
        response = await self._request("/api/v1/branches", params={"status": "active"})
        if response.status_code >= 400:
            raise RegistryError(
                f"Branch listing failed: {response.status_code}",
                status_code=response.status_code,
            )
        branches = self._extract_items(response.json())
        branch_ids = [
            self._branch_id(b)
            for b in branches
            if b.get("status", "active") == "active" and self._branch_id(b)
        ]
        logger.debug("active_branches_listed", count=len(branch_ids))
        return sorted(branch_ids)
