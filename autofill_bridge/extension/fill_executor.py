from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from playwright.async_api import Error as PlaywrightError

from ..config import settings
from ..errors import failed_to_fill_fields_error
from ..models import (
    CLICK_ON_OPID,
    CLICK_ON_QUERY,
    DELAY,
    FILL_BY_OPID,
    FILL_BY_QUERY,
    FOCUS_BY_OPID,
    SIMPLE_SET_VALUE_BY_QUERY,
    TOUCH_ALL_FIELDS,
    FillOperation,
    FillScript,
)
from .classification import DEFAULT_RULES, ClassificationRules
from .field_collector import CollectionSession, DomContext
from .page_scripts import AUTOSUBMIT_SCRIPT, DOWNGRADE_CHECK_SCRIPT, FILL_OPERATION_SCRIPT

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], Awaitable[bool]]
SleepFunc = Callable[[float], Awaitable[Any]]

PAGE_OPERATIONS = frozenset(
    {
        FILL_BY_OPID,
        FILL_BY_QUERY,
        CLICK_ON_OPID,
        CLICK_ON_QUERY,
        SIMPLE_SET_VALUE_BY_QUERY,
        FOCUS_BY_OPID,
        TOUCH_ALL_FIELDS,
    }
)

INSECURE_PAGE_WARNING = (
    "Warning: This is an unsecured HTTP page, and any information you submit can potentially be "
    "seen and changed by others. This Login was originally saved on a secure (HTTPS) page.\n\n"
    "Do you still wish to fill this login?"
)

INSECURE_PAGE_DECLINED = "insecure_page_declined"

SCRIPT_NOT_EVALUATED_MESSAGE = "Failed to fill web page because script could not be evaluated"


class FillState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class FillResult:
    success: bool
    state: FillState
    used_opids: List[str] = field(default_factory=list)
    touched_count: int = 0
    autosubmitted: bool = False
    document_uuid: Optional[str] = None
    fill_context_identifier: Optional[str] = None
    abort_reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.state is FillState.ABORTED

    def fill_item_results(self) -> dict[str, Any]:
        return {
            "documentUUID": self.document_uuid,
            "fillContextIdentifier": self.fill_context_identifier,
            "usedOpids": list(self.used_opids),
        }

    def to_script_result(self) -> dict[str, Any]:
        return {"success": self.success}


def _flags_for(script: FillScript) -> dict[str, bool]:
    action = script.metadata_action
    return {
        "animate": script.options.animate,
        "markFilling": script.options.mark_filling and action != "fillPassword",
        "unmaskProbe": action != "fillLogin",
    }


def answer_with(answer: bool) -> ConfirmCallback:
    """Confirmation callback that always gives ``answer``."""

    async def confirm(message: str) -> bool:
        logger.info("insecure_fill_answered answer=%s", answer)
        return answer

    return confirm


async def _decline_without_handler(message: str) -> bool:
    # Playwright auto-dismisses unhandled page dialogs.
    logger.warning("insecure_fill_unconfirmed reason=no_confirm_handler")
    return False


def _delay_from(operation: FillOperation, current_ms: int) -> int:
    if not operation.parameters:
        return current_ms
    try:
        return max(0, int(operation.parameters[0]))
    except (TypeError, ValueError):
        logger.warning("fill_delay_invalid value=%r", operation.parameters[0])
        return current_ms


class FillExecutor:
    """Replays one fill script against a page.

    Idle -> Running(i) -> Completed | Aborted. Each executor consumes exactly
    one script. ``delay`` operations change the pause applied after every
    operation; the pause yields to the event loop.
    """

    def __init__(
        self,
        page: DomContext,
        session: CollectionSession | None = None,
        confirm: ConfirmCallback | None = None,
        rules: ClassificationRules = DEFAULT_RULES,
        autosubmit_delay_ms: int | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.page = page
        self.session = session
        self.rules = rules
        self.state = FillState.IDLE
        self.operation_index: Optional[int] = None
        self._confirm = confirm or _decline_without_handler
        self._autosubmit_delay_ms = (
            autosubmit_delay_ms if autosubmit_delay_ms is not None else settings.autosubmit_delay_ms
        )
        self._sleep = sleep

    @property
    def session_id(self) -> str:
        return self.session.session_id if self.session else ""

    async def _requires_insecure_confirmation(self, saved_url: Optional[str]) -> bool:
        if not saved_url or not saved_url.lower().startswith("https://"):
            return False
        state = await self.page.evaluate(DOWNGRADE_CHECK_SCRIPT) or {}
        return state.get("protocol") == "http:" and int(state.get("passwordFields") or 0) > 0

    async def _apply(self, operation: FillOperation, flags: dict[str, bool]) -> List[Optional[str]]:
        if operation.operation not in PAGE_OPERATIONS:
            logger.warning("fill_operation_unknown name=%s", operation.operation)
            return []
        touched = await self.page.evaluate(
            FILL_OPERATION_SCRIPT,
            {
                "sessionId": self.session_id,
                "operation": operation.operation,
                "parameters": list(operation.parameters),
                "flags": flags,
                "passwordPattern": self.rules.password_pattern,
            },
        )
        return list(touched or [])

    async def _autosubmit(self, script: FillScript, used_opids: List[str]) -> bool:
        await self._sleep(self._autosubmit_delay_ms / 1000)
        try:
            outcome = await self.page.evaluate(
                AUTOSUBMIT_SCRIPT,
                {
                    "sessionId": self.session_id,
                    "usedOpids": used_opids,
                    "focusOpid": script.autosubmit.focus_opid if script.autosubmit else None,
                    "allowClicky": script.properties.allow_clicky_autosubmit,
                    "rules": self.rules.to_script_payload(),
                },
            )
        except PlaywrightError as exc:
            # Navigation triggered by the submit itself tears down the context.
            logger.warning("autosubmit_failed reason=%s", exc)
            return False
        outcome = outcome or {}
        logger.info(
            "autosubmit_done submitted=%s method=%s reason=%s",
            outcome.get("submitted"),
            outcome.get("method"),
            outcome.get("reason"),
        )
        return bool(outcome.get("submitted"))

    async def execute(self, script: FillScript) -> FillResult:
        if self.state is not FillState.IDLE:
            raise RuntimeError("FillExecutor already consumed a fill script")

        result = FillResult(
            success=True,
            state=FillState.RUNNING,
            document_uuid=script.document_uuid or self.session_id or None,
            fill_context_identifier=script.fill_context_identifier,
        )

        try:
            if await self._requires_insecure_confirmation(script.saved_url):
                if not await self._confirm(INSECURE_PAGE_WARNING):
                    logger.info("fill_aborted reason=%s", INSECURE_PAGE_DECLINED)
                    self.state = result.state = FillState.ABORTED
                    result.abort_reason = INSECURE_PAGE_DECLINED
                    return result

            self.state = FillState.RUNNING
            flags = _flags_for(script)
            delay_ms = script.properties.delay_between_operations
            if delay_ms is None:
                delay_ms = settings.default_operation_delay_ms

            for index, operation in enumerate(script.script):
                self.operation_index = index
                if operation.operation == DELAY:
                    delay_ms = _delay_from(operation, delay_ms)
                else:
                    touched = await self._apply(operation, flags)
                    result.touched_count += len(touched)
                    for opid in touched:
                        if opid and opid not in result.used_opids:
                            result.used_opids.append(opid)
                    logger.debug(
                        "fill_operation_done index=%d name=%s touched=%d",
                        index,
                        operation.operation,
                        len(touched),
                    )
                await self._sleep(delay_ms / 1000)
        except PlaywrightError as exc:
            self.state = FillState.ABORTED
            logger.warning("fill_script_failed index=%s reason=%s", self.operation_index, exc)
            raise failed_to_fill_fields_error(SCRIPT_NOT_EVALUATED_MESSAGE, exc) from exc

        self.state = result.state = FillState.COMPLETED

        if script.autosubmit is not None:
            if script.item_type and script.item_type != "fillLogin":
                logger.debug("autosubmit_skipped reason=item_type item_type=%s", script.item_type)
            elif result.touched_count > 0:
                result.autosubmitted = await self._autosubmit(script, result.used_opids)
            else:
                logger.info("autosubmit_skipped reason=no_fields_filled")

        logger.info(
            "fill_script_done operations=%d touched=%d used=%d",
            len(script.script),
            result.touched_count,
            len(result.used_opids),
        )
        return result


async def execute_fill_script(
    page: DomContext,
    fill_script: FillScript,
    session: CollectionSession | None = None,
    confirm: ConfirmCallback | None = None,
    rules: ClassificationRules = DEFAULT_RULES,
) -> FillResult:
    return await FillExecutor(page, session=session, confirm=confirm, rules=rules).execute(fill_script)
