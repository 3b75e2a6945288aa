"""JSON codec for the payloads exchanged with page scripts and the credential manager."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Union

from pydantic import ValidationError

from ..errors import unexpected_data_error
from ..models import FillScript, PageDetails

logger = logging.getLogger(__name__)

RawPayload = Union[str, bytes, Mapping[str, Any]]


def _load_object(raw: RawPayload, what: str) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("decode_failed kind=%s reason=%s", what, exc)
        raise unexpected_data_error(f"Failed to parse JSON {what}.", exc) from exc
    if not isinstance(data, dict):
        raise unexpected_data_error(f"Failed to parse JSON {what}: expected an object.")
    return data


def encode_page_details(details: PageDetails) -> str:
    return details.model_dump_json(by_alias=True, exclude_none=True)


def decode_page_details(raw: RawPayload) -> PageDetails:
    data = _load_object(raw, "collected page details")
    try:
        return PageDetails.model_validate(data)
    except ValidationError as exc:
        logger.warning("page_details_invalid errors=%d", exc.error_count())
        raise unexpected_data_error("Collected page details have an unexpected shape.", exc) from exc


def page_details_to_dict(details: PageDetails) -> dict[str, Any]:
    return details.model_dump(by_alias=True, exclude_none=True)


def decode_fill_script(raw: RawPayload) -> FillScript:
    data = _load_object(raw, "fill script")
    try:
        return FillScript.model_validate(data)
    except ValidationError as exc:
        logger.warning("fill_script_invalid errors=%d", exc.error_count())
        raise unexpected_data_error("Fill script has an unexpected shape.", exc) from exc
