"""
Order Service — 連携サービスのクライアント

注文作成時に User / Product Service へ同期で問い合わせる。
イベントバスが落ちているときの在庫直接呼び出しもここから行う。
"""

import logging

import httpx

from services.shared.events import InventoryChange

from .errors import CatalogUnavailable

logger = logging.getLogger(__name__)


class CatalogClient:
    def __init__(
        self,
        user_service_url: str,
        product_service_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.user_url = user_service_url.rstrip("/")
        self.product_url = product_service_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _get(self, url: str) -> dict | None:
        async with self._client() as client:
            try:
                resp = await client.get(url)
                if resp.status_code == 404:
                    return None
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise CatalogUnavailable(f"lookup {url} failed: {e}") from e
            return resp.json()

    async def get_user(self, user_id: str) -> dict | None:
        return await self._get(f"{self.user_url}/queries/users/{user_id}")

    async def get_product(self, product_id: str) -> dict | None:
        return await self._get(f"{self.product_url}/queries/products/{product_id}")

    async def apply_inventory(self, change: InventoryChange) -> None:
        """Product Service に引き当ての変更を直接適用する。"""
        async with self._client() as client:
            try:
                resp = await client.post(
                    f"{self.product_url}/commands/inventory/apply",
                    json={"kind": change.kind, **change.to_payload()},
                )
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise CatalogUnavailable(
                    f"direct inventory {change.kind} for product {change.product_id} failed: {e}"
                ) from e
