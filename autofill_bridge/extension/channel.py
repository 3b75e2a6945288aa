"""Transports that carry one extension item to the credential manager and back.

The orchestrator only depends on :class:`OpaqueChannel`. The HTTP channel talks
to a local credential-manager bridge; the in-memory channel scripts responses
for tests and embedding hosts.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..config import settings
from ..models import PROPERTY_LIST_TYPE, ExtensionItem, ItemProvider

logger = logging.getLogger(__name__)

EXTENSION_ACTIVITY_TYPES = frozenset(
    {
        "com.agilebits.onepassword-ios.extension",
        "com.agilebits.beta.onepassword-ios.extension",
    }
)


@dataclass
class ChannelResponse:
    returned_items: Optional[list[ExtensionItem]] = None
    activity_error: Optional[BaseException] = None
    activity_type: Optional[str] = None
    completed: bool = False

    @property
    def first_item(self) -> Optional[ExtensionItem]:
        return self.returned_items[0] if self.returned_items else None


class OpaqueChannel(abc.ABC):
    scheme: str = settings.extension_scheme

    @abc.abstractmethod
    async def can_open_scheme(self, scheme: str) -> bool:
        """Whether a handler for the manager's well-known URL scheme can be resolved."""

    async def is_available(self) -> bool:
        return await self.can_open_scheme(self.scheme)

    @abc.abstractmethod
    async def exchange(self, item: ExtensionItem, sender: Any = None) -> ChannelResponse:
        """Hand the item to the manager and wait for the user to finish there."""


ExchangeHandler = Callable[[ExtensionItem], Awaitable[ChannelResponse]]


@dataclass
class InMemoryChannel(OpaqueChannel):
    handler: Optional[ExchangeHandler] = None
    available: bool = True
    sent_items: list[ExtensionItem] = field(default_factory=list)

    async def can_open_scheme(self, scheme: str) -> bool:
        return self.available

    async def exchange(self, item: ExtensionItem, sender: Any = None) -> ChannelResponse:
        self.sent_items.append(item)
        if self.handler is None:
            return ChannelResponse()
        return await self.handler(item)


def _provider_from_wire(entry: dict[str, Any]) -> ItemProvider:
    return ItemProvider(
        type_identifier=str(entry.get("typeIdentifier") or ""),
        item=entry.get("item"),
    )


def _items_from_wire(body: Any) -> list[ExtensionItem]:
    items: list[ExtensionItem] = []
    if not isinstance(body, dict):
        return items
    for raw_item in body.get("returnedItems") or []:
        if not isinstance(raw_item, dict):
            logger.warning("returned_item_skipped kind=%s", type(raw_item).__name__)
            continue
        attachments = [_provider_from_wire(a) for a in raw_item.get("attachments") or [] if isinstance(a, dict)]
        items.append(ExtensionItem(attachments=attachments))
    return items


class HttpExtensionChannel(OpaqueChannel):
    """Channel backed by a credential-manager bridge listening on HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or settings.extension_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.extension_timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HttpExtensionChannel":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _ensure_started(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HttpExtensionChannel not started. Call await channel.start() first.")
        return self._client

    async def can_open_scheme(self, scheme: str) -> bool:
        client = self._ensure_started()
        try:
            resp = await client.get(f"{self._base_url}/handlers", timeout=5.0)
        except httpx.HTTPError as exc:
            logger.info("extension_probe_failed base_url=%s reason=%s", self._base_url, exc)
            return False
        if resp.status_code != 200:
            return False
        try:
            schemes = resp.json().get("schemes") or []
        except ValueError:
            return False
        return scheme in schemes

    async def exchange(self, item: ExtensionItem, sender: Any = None) -> ChannelResponse:
        client = self._ensure_started()
        attachment = item.attachments[0] if item.attachments else None
        payload = {
            "typeIdentifier": attachment.type_identifier if attachment else None,
            "item": attachment.item if attachment else None,
        }
        try:
            resp = await client.post(f"{self._base_url}/exchange", json=payload)
            if resp.status_code == 204:
                return ChannelResponse(completed=False)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("extension_exchange_failed type=%s reason=%s", payload["typeIdentifier"], exc)
            return ChannelResponse(activity_error=exc)

        returned = _items_from_wire(body)
        return ChannelResponse(
            returned_items=returned,
            activity_type=body.get("activityType") if isinstance(body, dict) else None,
            completed=bool(returned),
        )


def property_list_item(result: dict[str, Any]) -> ExtensionItem:
    """Wrap a result mapping the way the manager returns it."""
    return ExtensionItem(attachments=[ItemProvider(type_identifier=PROPERTY_LIST_TYPE, item=result)])


def is_extension_activity_type(activity_type: Optional[str]) -> bool:
    return activity_type in EXTENSION_ACTIVITY_TYPES
