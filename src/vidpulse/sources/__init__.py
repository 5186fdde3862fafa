from __future__ import annotations

from typing import Any, Protocol


class ItemSource(Protocol):
    async def list_items(self, channel_id: str) -> list[dict[str, Any]]: ...

    async def fetch_detail(self, item: dict[str, Any]) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...
