from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Optional, Union

from ..errors import AppExtensionError, unexpected_data_error
from ..models import (
    PROTOCOL_VERSION,
    Action,
    ExtensionItem,
    ItemProvider,
    LoginDetails,
    PageDetails,
    PasswordGeneratorOptions,
    RequestEnvelope,
)
from .codec import RawPayload, decode_page_details

logger = logging.getLogger(__name__)

DetailsInput = Union[LoginDetails, Mapping[str, Any], None]
OptionsInput = Union[PasswordGeneratorOptions, Mapping[str, Any], None]


class Layout(str, Enum):
    COMPACT = "compact"
    WIDE = "wide"


def _details_payload(details: DetailsInput) -> dict[str, Any]:
    if details is None:
        return {}
    if isinstance(details, LoginDetails):
        return details.to_payload()
    # Unknown keys are opaque to us and pass through untouched.
    return dict(details)


def _options_payload(options: OptionsInput) -> dict[str, Any]:
    if options is None:
        return {}
    if isinstance(options, PasswordGeneratorOptions):
        return options.to_payload()
    return dict(options)


def require_sender(sender: Any, layout: Layout | str) -> None:
    """Wide layouts anchor the picker to its sender, so it must be given."""
    if Layout(layout) is Layout.WIDE and sender is None:
        raise ValueError("sender must not be None on wide layouts")


def build_envelope(
    action: Action,
    url_string: str,
    payload: DetailsInput = None,
    page_details: Optional[PageDetails] = None,
    password_generator_options: OptionsInput = None,
    *,
    sender: Any = None,
    layout: Layout | str = Layout.COMPACT,
) -> RequestEnvelope:
    require_sender(sender, layout)

    if not url_string:
        raise unexpected_data_error(f"A URL string is required for {action.name.lower()}.")
    if action.is_fill and page_details is None:
        raise unexpected_data_error("Page details are required to fill a page.")
    if not action.is_fill and page_details is not None:
        raise unexpected_data_error(f"Page details are not accepted for {action.name.lower()}.")

    options = _options_payload(password_generator_options)
    envelope = RequestEnvelope(
        action=action,
        protocol_version=PROTOCOL_VERSION,
        url_string=url_string,
        payload=_details_payload(payload),
        page_details=page_details,
        password_generator_options=options or None,
    )
    logger.debug(
        "envelope_built action=%s version=%d payload_keys=%s",
        action.name,
        envelope.protocol_version,
        sorted(envelope.payload),
    )
    return envelope


def create_extension_item(envelope: RequestEnvelope) -> ExtensionItem:
    provider = ItemProvider(type_identifier=envelope.action.type_identifier, item=envelope.to_item())
    return ExtensionItem(attachments=[provider])


def envelope_from_page_details_json(
    url_string: str,
    raw_page_details: RawPayload,
    action: Action = Action.FILL_BROWSER,
) -> RequestEnvelope:
    """Build a fill envelope straight from the collector's JSON output."""
    try:
        details = decode_page_details(raw_page_details)
    except AppExtensionError:
        logger.warning("envelope_page_details_invalid url=%s", url_string)
        raise
    return build_envelope(action, url_string, page_details=details)
