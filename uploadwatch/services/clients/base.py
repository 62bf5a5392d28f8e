"""Interfaces of the external collaborators the core talks to."""

from typing import Protocol

from uploadwatch.common.schemas import ItemExtras, ItemsPage


class DataSource(Protocol):
    """Reverse-chronological item feed with a per-call quota cost."""

    page_cost: int
    resolve_cost: int
    extras_cost: int
    extras_batch_size: int

    async def list_items_page(self, source_id: str, cursor: str | None) -> ItemsPage: ...

    async def get_item_extras(self, item_ids: list[str]) -> dict[str, ItemExtras]: ...

    async def resolve_source(self, url: str) -> str: ...


class ChatGateway(Protocol):
    """Outbound message sink; raises `PermanentDispatchFailure` or `TransientError`."""

    async def send_message(self, destination: str, text: str) -> None: ...
