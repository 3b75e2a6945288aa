from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import settings
from ..errors import AppExtensionError, ErrorCode
from ..models import PROTOCOL_VERSION
from ..extension.browser import BrowserSession
from ..extension.channel import HttpExtensionChannel
from ..extension.fill_executor import answer_with
from ..extension.orchestrator import AutofillBridge, FillOutcome, LoginResult

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.CANCELLED_BY_USER: 409,
    ErrorCode.API_NOT_AVAILABLE: 503,
    ErrorCode.FAILED_TO_CONTACT_EXTENSION: 502,
    ErrorCode.FAILED_TO_LOAD_ITEM_PROVIDER_DATA: 422,
    ErrorCode.UNEXPECTED_DATA: 422,
    ErrorCode.COLLECT_FIELDS_SCRIPT_FAILED: 500,
    ErrorCode.FILL_FIELDS_SCRIPT_FAILED: 500,
    ErrorCode.FAILED_TO_OBTAIN_URL_STRING_FROM_WEB_VIEW: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    channel = HttpExtensionChannel()
    await channel.start()
    app.state.bridge = AutofillBridge(channel)
    try:
        yield
    finally:
        await channel.close()


app = FastAPI(lifespan=lifespan)


def get_bridge(request: Request) -> AutofillBridge:
    return request.app.state.bridge


def get_browser_factory() -> Callable[[], BrowserSession]:
    return BrowserSession


class FindLoginRequest(BaseModel):
    url_string: str


class SaveLoginRequest(BaseModel):
    url_string: str
    login_details: dict[str, Any] = Field(default_factory=dict)
    password_generator_options: dict[str, Any] | None = None


class PageRequest(BaseModel):
    url: str
    show_only_logins: bool = True
    # Answer to the warning shown before an HTTPS login is filled into an HTTP page.
    allow_insecure_fill: bool = False


class LoginResponse(BaseModel):
    login: dict[str, Any]


class FillResponse(BaseModel):
    success: bool
    aborted: bool
    autosubmitted: bool
    used_opids: list[str]
    document_uuid: str | None = None
    abort_reason: str | None = None


class ExtensionItemResponse(BaseModel):
    type_identifier: str
    item: dict[str, Any]


class StatusResponse(BaseModel):
    available: bool
    scheme: str
    protocol_version: int
    layout: str


def error_response(error: AppExtensionError) -> JSONResponse:
    return JSONResponse(status_code=STATUS_BY_CODE.get(error.code, 500), content={"error": error.to_dict()})


def _login_response(result: LoginResult) -> Any:
    if result.error is not None:
        return error_response(result.error)
    return LoginResponse(login=result.login or {})


def _fill_response(outcome: FillOutcome) -> Any:
    if outcome.error is not None:
        return error_response(outcome.error)
    fill = outcome.fill_result
    return FillResponse(
        success=outcome.success,
        aborted=bool(fill and fill.aborted),
        autosubmitted=bool(fill and fill.autosubmitted),
        used_opids=list(fill.used_opids) if fill else [],
        document_uuid=fill.document_uuid if fill else None,
        abort_reason=fill.abort_reason if fill else None,
    )


@app.get("/api/status", response_model=StatusResponse)
async def extension_status(bridge: AutofillBridge = Depends(get_bridge)):
    return StatusResponse(
        available=await bridge.is_app_extension_available(),
        scheme=bridge.channel.scheme,
        protocol_version=PROTOCOL_VERSION,
        layout=bridge.layout.value,
    )


@app.post("/api/logins/find", response_model=LoginResponse)
async def find_login(payload: FindLoginRequest, bridge: AutofillBridge = Depends(get_bridge)):
    try:
        result = await bridge.find_login(payload.url_string)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _login_response(result)


@app.post("/api/logins/save", response_model=LoginResponse)
async def save_login(payload: SaveLoginRequest, bridge: AutofillBridge = Depends(get_bridge)):
    result = await bridge.store_login(
        payload.url_string,
        payload.login_details,
        payload.password_generator_options,
    )
    return _login_response(result)


@app.post("/api/logins/change-password", response_model=LoginResponse)
async def change_password(payload: SaveLoginRequest, bridge: AutofillBridge = Depends(get_bridge)):
    result = await bridge.change_password_for_login(
        payload.url_string,
        payload.login_details,
        payload.password_generator_options,
    )
    return _login_response(result)


@app.post("/api/fill", response_model=FillResponse)
async def fill_page(
    payload: PageRequest,
    bridge: AutofillBridge = Depends(get_bridge),
    browser_factory: Callable[[], BrowserSession] = Depends(get_browser_factory),
):
    """
    Open the page in a browser, let the user pick an item in the manager,
    and fill the page with it.
    """

    async with browser_factory() as browser:
        page = await browser.goto(payload.url)
        outcome = await bridge.fill_item(
            page,
            show_only_logins=payload.show_only_logins,
            confirm=answer_with(payload.allow_insecure_fill),
        )
    return _fill_response(outcome)


@app.post("/api/extension-items", response_model=ExtensionItemResponse)
async def create_extension_item(
    payload: PageRequest,
    bridge: AutofillBridge = Depends(get_bridge),
    browser_factory: Callable[[], BrowserSession] = Depends(get_browser_factory),
):
    async with browser_factory() as browser:
        page = await browser.goto(payload.url)
        result = await bridge.create_extension_item_for_page(page)
    if result.error is not None:
        return error_response(result.error)

    attachment = result.item.attachments[0]
    return ExtensionItemResponse(type_identifier=attachment.type_identifier, item=attachment.item)
