from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Tuple

from ..errors import (
    AppExtensionError,
    cancelled_by_user_error,
    failed_to_contact_extension_error,
    failed_to_load_item_provider_data_error,
    unexpected_data_error,
)
from ..models import PROPERTY_LIST_TYPE, ExtensionItem
from .channel import ChannelResponse

logger = logging.getLogger(__name__)

ProcessResult = Tuple[Optional[dict[str, Any]], Optional[AppExtensionError]]


async def process_extension_item(item: Optional[ExtensionItem]) -> ProcessResult:
    """Unwrap the first attachment of ``item`` into a result mapping.

    Returns only after the attachment payload has been fully loaded. The
    mapping is passed through unchanged.
    """

    if item is None or not item.attachments:
        return None, unexpected_data_error(
            "Unexpected data returned by the extension: extension item had no attachments."
        )

    provider = item.attachments[0]
    if not provider.has_item_conforming_to(PROPERTY_LIST_TYPE):
        return None, unexpected_data_error(
            "Unexpected data returned by the extension: extension item attachment does not "
            f"conform to the {PROPERTY_LIST_TYPE} type identifier."
        )

    provider_error: Optional[BaseException] = None
    payload: Any = None
    try:
        payload = await provider.load_item(PROPERTY_LIST_TYPE)
    except Exception as exc:  # noqa: BLE001 - any provider failure is wrapped
        provider_error = exc

    if not isinstance(payload, Mapping) or not payload:
        logger.warning("load_item_failed reason=%s", provider_error)
        return None, failed_to_load_item_provider_data_error(provider_error)

    return dict(payload), None


async def process_channel_response(response: ChannelResponse) -> ProcessResult:
    if not response.returned_items:
        # A transport error wins over a plain cancellation.
        if response.activity_error is not None:
            logger.error("extension_contact_failed reason=%s", response.activity_error)
            return None, failed_to_contact_extension_error(response.activity_error)
        return None, cancelled_by_user_error()

    return await process_extension_item(response.first_item)
