"""Collects a page's forms and fields into a :class:`PageDetails` inventory."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Page

from ..errors import failed_to_collect_fields_error
from ..models import MAX_FIELD_LENGTH, FieldInfo, PageDetails
from .classification import DEFAULT_RULES, ClassificationRules
from .codec import decode_page_details
from .page_scripts import COLLECT_FIELDS_SCRIPT, FAKE_TEST_SCRIPT

logger = logging.getLogger(__name__)

DomContext = Union[Page, Frame]

HIDDEN_VALUE_LIMIT = 254


@dataclass
class CollectionSession:
    """Handle for one collection pass.

    The page keeps the ``opid -> element`` map under ``session_id``; the fill
    executor passes the same handle to resolve opids. Collecting again with a
    new session discards the previous map.
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    page_details: Optional[PageDetails] = None

    @property
    def opids(self) -> List[str]:
        if self.page_details is None:
            return []
        return [f.opid for f in self.page_details.fields]


def likely_password_opids(details: PageDetails, rules: ClassificationRules = DEFAULT_RULES) -> List[str]:
    return [f.opid for f in details.fields if rules.is_likely_password_field(f)]


def _apply_fake_test_results(details: PageDetails, results: dict[str, Any]) -> PageDetails:
    if not results:
        return details

    fields: List[FieldInfo] = []
    for info in details.fields:
        outcome = results.get(info.opid)
        if not isinstance(outcome, dict):
            fields.append(info)
            continue
        fields.append(
            info.model_copy(
                update={
                    "fake_tested": bool(outcome.get("fakeTested")),
                    "post_fake_test_visible": outcome.get("postFakeTestVisible"),
                    "post_fake_test_viewable": outcome.get("postFakeTestViewable"),
                    "post_fake_test_type": outcome.get("postFakeTestType"),
                }
            )
        )
    return details.model_copy(update={"fields": fields})


async def _evaluate(page: DomContext, script: str, arg: Any, step: str) -> Any:
    try:
        return await page.evaluate(script, arg)
    except PlaywrightError as exc:
        logger.warning("collect_fields_failed step=%s reason=%s", step, exc)
        raise failed_to_collect_fields_error(exc) from exc


async def collect_page_details(
    page: DomContext,
    session: CollectionSession | None = None,
    rules: ClassificationRules = DEFAULT_RULES,
) -> PageDetails:
    """Run the collector in ``page`` and return the field inventory.

    Fields that look like passwords but are not rendered as such get the
    unmask probe, so pages that only switch an input's type after real user
    interaction are still classified correctly. The probe results are
    recorded on each field as ``postFakeTest*``.
    """

    session = session or CollectionSession()
    raw = await _evaluate(
        page,
        COLLECT_FIELDS_SCRIPT,
        {
            "sessionId": session.session_id,
            "maxLength": MAX_FIELD_LENGTH,
            "hiddenValueLimit": HIDDEN_VALUE_LIMIT,
        },
        "collect",
    )
    if not isinstance(raw, str):
        logger.warning("collect_fields_failed step=collect reason=non_string_result type=%s", type(raw).__name__)
        raise failed_to_collect_fields_error(None)

    details = decode_page_details(raw)

    candidates = likely_password_opids(details, rules)
    if candidates:
        results = await _evaluate(
            page,
            FAKE_TEST_SCRIPT,
            {"sessionId": session.session_id, "opids": candidates},
            "fake_test",
        )
        details = _apply_fake_test_results(details, results or {})
        logger.debug(
            "fake_test_done candidates=%d tested=%d",
            len(candidates),
            sum(1 for f in details.fields if f.fake_tested),
        )

    session.page_details = details
    logger.info(
        "fields_collected session=%s forms=%d fields=%d rules_version=%d",
        session.session_id,
        len(details.forms),
        len(details.fields),
        rules.version,
    )
    return details
