"""Sequences the autofill handshake for each action.

Login actions go straight to the channel. Fill actions collect the page first,
then fill it with the script the credential manager sends back. Every public
coroutine returns a result object; typed errors are never raised past this
module.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, TypeVar

from ..config import settings
from ..errors import (
    AppExtensionError,
    ErrorCode,
    api_not_available_error,
    cancelled_by_user_error,
    failed_to_fill_fields_error,
    failed_to_obtain_url_string_error,
)
from ..models import FILL_SCRIPT_KEY, Action, ExtensionItem, RequestEnvelope
from .browser import BrowserSession
from .channel import ChannelResponse, HttpExtensionChannel, OpaqueChannel, is_extension_activity_type
from .classification import DEFAULT_RULES, ClassificationRules
from .codec import decode_fill_script
from .coordination import Coordinator
from .envelope import (
    DetailsInput,
    Layout,
    OptionsInput,
    build_envelope,
    create_extension_item,
    require_sender,
)
from .field_collector import CollectionSession, DomContext, collect_page_details
from .fill_executor import SCRIPT_NOT_EVALUATED_MESSAGE, ConfirmCallback, FillExecutor, FillResult
from .response import process_channel_response, process_extension_item

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCRIPT_MISSING_MESSAGE = "Failed to fill web page because script is missing"


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_COLLECTION = "awaiting_collection"
    AWAITING_CHANNEL_RESPONSE = "awaiting_channel_response"
    AWAITING_FILL_EXECUTION = "awaiting_fill_execution"
    DONE = "done"


@dataclass
class FlowRecord:
    action: Action
    states: List[FlowState] = field(default_factory=lambda: [FlowState.IDLE])
    error: Optional[AppExtensionError] = None
    round_trips: int = 0

    @property
    def state(self) -> FlowState:
        return self.states[-1]

    def advance(self, state: FlowState) -> None:
        self.states.append(state)
        logger.debug("flow_state action=%s state=%s", self.action.name, state.value)


@dataclass
class LoginResult:
    login: Optional[dict[str, Any]]
    error: Optional[AppExtensionError]

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FillOutcome:
    success: bool
    error: Optional[AppExtensionError]
    fill_result: Optional[FillResult] = None


@dataclass
class ExtensionItemResult:
    item: Optional[ExtensionItem]
    error: Optional[AppExtensionError]
    envelope: Optional[RequestEnvelope] = None


def _page_url(page: DomContext) -> str:
    return getattr(page, "url", "") or ""


def _coordinator_for_running_loop() -> Optional[Coordinator]:
    try:
        return Coordinator(asyncio.get_running_loop())
    except RuntimeError:
        return None


class AutofillBridge:
    def __init__(
        self,
        channel: OpaqueChannel,
        coordinator: Coordinator | None = None,
        layout: Layout | str | None = None,
        rules: ClassificationRules = DEFAULT_RULES,
        confirm: ConfirmCallback | None = None,
    ) -> None:
        self.channel = channel
        self.layout = Layout(layout or settings.layout)
        self.rules = rules
        self.confirm = confirm
        self.last_flow: Optional[FlowRecord] = None
        if coordinator is None:
            coordinator = _coordinator_for_running_loop()
        self._coordinator = coordinator
        self._page_locks: "weakref.WeakKeyDictionary[Any, asyncio.Lock]" = weakref.WeakKeyDictionary()
        self._sessions: "weakref.WeakKeyDictionary[Any, CollectionSession]" = weakref.WeakKeyDictionary()

    @property
    def coordinator(self) -> Coordinator:
        if self._coordinator is None:
            self._coordinator = _coordinator_for_running_loop()
        if self._coordinator is None:
            raise RuntimeError(
                "AutofillBridge has no coordination loop. Construct it inside a running event loop "
                "or pass coordinator=Coordinator(loop)."
            )
        return self._coordinator

    def submit(self, coro: Awaitable[T], completion: Callable[[T], Any]) -> concurrent.futures.Future:
        """Callback-style entry point, safe from any thread.

        ``completion`` runs on the coordination loop bound when the bridge was
        built, not on the calling thread.
        """
        try:
            coordinator = self.coordinator
        except RuntimeError:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise
        return coordinator.submit(coro, completion)

    def is_extension_activity_type(self, activity_type: Optional[str]) -> bool:
        return is_extension_activity_type(activity_type)

    async def is_app_extension_available(self) -> bool:
        try:
            return await self.channel.is_available()
        except Exception as exc:  # noqa: BLE001 - a failing probe means unavailable
            logger.warning("extension_probe_failed reason=%s", exc)
            return False

    @asynccontextmanager
    async def _page_lock(self, page: DomContext) -> AsyncIterator[None]:
        # Collection and fill mutate live DOM state and must not interleave.
        lock = self._page_locks.get(page)
        if lock is None:
            lock = asyncio.Lock()
            self._page_locks[page] = lock
        async with lock:
            yield

    def _start_flow(self, action: Action) -> FlowRecord:
        flow = FlowRecord(action=action)
        self.last_flow = flow
        logger.info("flow_started action=%s", action.name)
        return flow

    def _finish(self, flow: FlowRecord, error: Optional[AppExtensionError]) -> None:
        flow.error = error
        flow.advance(FlowState.DONE)
        if error is None:
            logger.info("flow_done action=%s", flow.action.name)
        elif error.is_cancellation:
            logger.info("flow_cancelled action=%s", flow.action.name)
        else:
            logger.warning(
                "flow_failed action=%s code=%s reason=%s",
                flow.action.name,
                error.code.name,
                error.message,
            )

    async def _round_trip(self, flow: FlowRecord, envelope: RequestEnvelope, sender: Any) -> ChannelResponse:
        flow.advance(FlowState.AWAITING_CHANNEL_RESPONSE)
        flow.round_trips += 1
        item = create_extension_item(envelope)
        try:
            return await self.channel.exchange(item, sender)
        except Exception as exc:  # noqa: BLE001 - transport failures become typed errors
            logger.error("extension_exchange_raised action=%s reason=%r", flow.action.name, exc)
            return ChannelResponse(activity_error=exc)

    # -- Login actions -----------------------------------------------------------

    async def _login_flow(
        self,
        action: Action,
        url_string: str,
        details: DetailsInput,
        options: OptionsInput,
        sender: Any,
    ) -> LoginResult:
        flow = self._start_flow(action)
        if not await self.is_app_extension_available():
            error = api_not_available_error()
            self._finish(flow, error)
            return LoginResult(None, error)

        try:
            envelope = build_envelope(
                action,
                url_string,
                details,
                password_generator_options=options,
                sender=sender,
                layout=self.layout,
            )
        except AppExtensionError as error:
            self._finish(flow, error)
            return LoginResult(None, error)

        response = await self._round_trip(flow, envelope, sender)
        login, error = await process_channel_response(response)
        self._finish(flow, error)
        return LoginResult(login, error)

    async def find_login(self, url_string: str, sender: Any = None) -> LoginResult:
        """Let the user pick a login matching ``url_string`` in the credential manager."""
        if not url_string:
            raise ValueError("url_string must not be empty")
        return await self._login_flow(Action.FIND_LOGIN, url_string, None, None, sender)

    async def store_login(
        self,
        url_string: str,
        login_details: DetailsInput = None,
        password_generation_options: OptionsInput = None,
        sender: Any = None,
    ) -> LoginResult:
        """Create a new login, optionally letting the manager generate its password."""
        return await self._login_flow(
            Action.SAVE_LOGIN, url_string, login_details, password_generation_options, sender
        )

    async def change_password_for_login(
        self,
        url_string: str,
        login_details: DetailsInput = None,
        password_generation_options: OptionsInput = None,
        sender: Any = None,
    ) -> LoginResult:
        return await self._login_flow(
            Action.CHANGE_PASSWORD, url_string, login_details, password_generation_options, sender
        )

    # -- Page filling ------------------------------------------------------------

    async def _collect(self, flow: FlowRecord, page: DomContext) -> CollectionSession:
        flow.advance(FlowState.AWAITING_COLLECTION)
        session = CollectionSession()
        await collect_page_details(page, session, self.rules)
        self._sessions[page] = session
        return session

    async def _fill_from_result(
        self,
        flow: FlowRecord,
        page: DomContext,
        session: Optional[CollectionSession],
        result: dict[str, Any],
        confirm: ConfirmCallback | None = None,
    ) -> FillOutcome:
        flow.advance(FlowState.AWAITING_FILL_EXECUTION)
        raw_script = result.get(FILL_SCRIPT_KEY)
        if raw_script is None:
            logger.warning("fill_script_missing keys=%s", sorted(result))
            error = failed_to_fill_fields_error(SCRIPT_MISSING_MESSAGE)
            self._finish(flow, error)
            return FillOutcome(False, error)

        try:
            script = decode_fill_script(raw_script)
            fill_result = await FillExecutor(
                page, session=session, confirm=confirm or self.confirm, rules=self.rules
            ).execute(script)
        except AppExtensionError as exc:
            error = exc if exc.code is ErrorCode.FILL_FIELDS_SCRIPT_FAILED else failed_to_fill_fields_error(
                SCRIPT_NOT_EVALUATED_MESSAGE, exc
            )
            self._finish(flow, error)
            return FillOutcome(False, error)

        self._finish(flow, None)
        return FillOutcome(fill_result.success, None, fill_result)

    async def fill_item(
        self,
        page: DomContext,
        show_only_logins: bool = True,
        sender: Any = None,
        confirm: ConfirmCallback | None = None,
    ) -> FillOutcome:
        """Collect the page, let the user pick an item, and fill the page with it.

        ``confirm`` answers the insecure-page warning for this fill only and
        takes precedence over the bridge-wide callback.
        """
        action = Action.FILL_WEBVIEW if show_only_logins else Action.FILL_BROWSER
        flow = self._start_flow(action)
        if not await self.is_app_extension_available():
            error = api_not_available_error()
            self._finish(flow, error)
            return FillOutcome(False, error)

        require_sender(sender, self.layout)

        async with self._page_lock(page):
            try:
                session = await self._collect(flow, page)
            except AppExtensionError as error:
                self._finish(flow, error)
                return FillOutcome(False, error)

            url_string = _page_url(page)
            if not url_string:
                error = failed_to_obtain_url_string_error()
                self._finish(flow, error)
                return FillOutcome(False, error)

            envelope = build_envelope(
                action,
                url_string,
                page_details=session.page_details,
                sender=sender,
                layout=self.layout,
            )
            response = await self._round_trip(flow, envelope, sender)
            result, error = await process_channel_response(response)
            if error is not None or not result:
                self._finish(flow, error)
                return FillOutcome(False, error)

            return await self._fill_from_result(flow, page, session, result, confirm)

    # -- Custom channel UI support -------------------------------------------------

    async def create_extension_item_for_page(self, page: DomContext) -> ExtensionItemResult:
        """Collect ``page`` and wrap it in a fill-browser item for a caller-owned channel UI."""
        flow = self._start_flow(Action.FILL_BROWSER)
        async with self._page_lock(page):
            try:
                session = await self._collect(flow, page)
            except AppExtensionError as error:
                self._finish(flow, error)
                return ExtensionItemResult(None, error)

        url_string = _page_url(page)
        if not url_string:
            error = failed_to_obtain_url_string_error()
            self._finish(flow, error)
            return ExtensionItemResult(None, error)

        envelope = build_envelope(Action.FILL_BROWSER, url_string, page_details=session.page_details)
        self._finish(flow, None)
        return ExtensionItemResult(create_extension_item(envelope), None, envelope)

    async def fill_returned_items(
        self,
        returned_items: Optional[Sequence[ExtensionItem]],
        page: DomContext,
        confirm: ConfirmCallback | None = None,
    ) -> FillOutcome:
        """Fill ``page`` from items a caller-owned channel UI received."""
        flow = self._start_flow(Action.FILL_BROWSER)
        if not returned_items:
            error = cancelled_by_user_error()
            self._finish(flow, error)
            return FillOutcome(False, error)

        result, error = await process_extension_item(returned_items[0])
        if error is not None or not result:
            self._finish(flow, error)
            return FillOutcome(False, error)

        async with self._page_lock(page):
            return await self._fill_from_result(flow, page, self._sessions.get(page), result, confirm)


async def fill_url_async(
    url: str,
    show_only_logins: bool = True,
    confirm: ConfirmCallback | None = None,
) -> FillOutcome:
    """Open ``url`` in a browser session and run one fill flow against it."""

    async with HttpExtensionChannel() as channel, BrowserSession() as browser:
        page = await browser.goto(url)
        return await AutofillBridge(channel, confirm=confirm).fill_item(page, show_only_logins=show_only_logins)


async def find_login_async(url_string: str) -> LoginResult:
    async with HttpExtensionChannel() as channel:
        return await AutofillBridge(channel).find_login(url_string)


def fill_url_blocking(
    url: str,
    show_only_logins: bool = True,
    confirm: ConfirmCallback | None = None,
) -> FillOutcome:
    """Synchronous wrapper for CLI usage."""

    return asyncio.run(fill_url_async(url, show_only_logins, confirm))


def find_login_blocking(url_string: str) -> LoginResult:
    return asyncio.run(find_login_async(url_string))
