from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PROTOCOL_VERSION = 185
MAX_FIELD_LENGTH = 999

# Login dictionary keys shared with the credential manager.
URL_STRING_KEY = "url_string"
USERNAME_KEY = "username"
PASSWORD_KEY = "password"
TOTP_KEY = "totp"
TITLE_KEY = "login_title"
NOTES_KEY = "notes"
SECTION_TITLE_KEY = "section_title"
FIELDS_KEY = "fields"
OLD_PASSWORD_KEY = "old_password"
PASSWORD_GENERATOR_OPTIONS_KEY = "password_generator_options"

VERSION_NUMBER_KEY = "version_number"
PAGE_DETAILS_KEY = "pageDetails"
FILL_SCRIPT_KEY = "fillScript"

PROPERTY_LIST_TYPE = "com.apple.property-list"

FILL_BY_OPID = "fill_by_opid"
FILL_BY_QUERY = "fill_by_query"
CLICK_ON_OPID = "click_on_opid"
CLICK_ON_QUERY = "click_on_query"
SIMPLE_SET_VALUE_BY_QUERY = "simple_set_value_by_query"
FOCUS_BY_OPID = "focus_by_opid"
TOUCH_ALL_FIELDS = "touch_all_fields"
DELAY = "delay"


class Action(str, Enum):
    FIND_LOGIN = "org.appextension.find-login-action"
    SAVE_LOGIN = "org.appextension.save-login-action"
    CHANGE_PASSWORD = "org.appextension.change-password-action"
    FILL_BROWSER = "org.appextension.fill-browser-action"
    FILL_WEBVIEW = "org.appextension.fill-webview-action"

    @property
    def type_identifier(self) -> str:
        return self.value

    @property
    def is_fill(self) -> bool:
        return self in (Action.FILL_BROWSER, Action.FILL_WEBVIEW)


class LoginDetails(BaseModel):
    """Free-form login bag: well-known keys plus pass-through extras."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    url_string: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    totp: Optional[str] = None
    title: Optional[str] = Field(default=None, alias=TITLE_KEY)
    notes: Optional[str] = None
    section_title: Optional[str] = None
    fields: Optional[Any] = None
    returned_fields: Optional[Any] = None
    old_password: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PasswordGeneratorOptions(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    min_length: Optional[int] = Field(default=None, alias="password_min_length")
    max_length: Optional[int] = Field(default=None, alias="password_max_length")
    require_digits: Optional[bool] = Field(default=None, alias="password_require_digits")
    require_symbols: Optional[bool] = Field(default=None, alias="password_require_symbols")
    forbidden_characters: Optional[str] = Field(default=None, alias="password_forbidden_characters")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)


class FormInfo(_WireModel):
    opid: str
    html_name: Optional[str] = Field(default=None, alias="htmlName")
    html_id: Optional[str] = Field(default=None, alias="htmlID")
    html_action: Optional[str] = Field(default=None, alias="htmlAction")
    html_method: Optional[str] = Field(default=None, alias="htmlMethod")


class FieldInfo(_WireModel):
    opid: str
    element_number: int = Field(alias="elementNumber")
    max_length: int = Field(default=MAX_FIELD_LENGTH, alias="maxLength")
    visible: bool = False
    viewable: bool = False
    type: Optional[str] = None
    html_id: Optional[str] = Field(default=None, alias="htmlID")
    html_name: Optional[str] = Field(default=None, alias="htmlName")
    html_class: Optional[str] = Field(default=None, alias="htmlClass")
    tabindex: Optional[str] = None
    title: Optional[str] = None
    user_edited: Optional[bool] = Field(default=None, alias="userEdited")
    label_tag: Optional[str] = Field(default=None, alias="label-tag")
    label_data: Optional[str] = Field(default=None, alias="label-data")
    label_aria: Optional[str] = Field(default=None, alias="label-aria")
    label_top: Optional[str] = Field(default=None, alias="label-top")
    label_right: Optional[str] = Field(default=None, alias="label-right")
    label_left: Optional[str] = Field(default=None, alias="label-left")
    placeholder: Optional[str] = None
    rel: Optional[str] = None
    value: Optional[str] = None
    checked: Optional[bool] = None
    auto_complete_type: Optional[str] = Field(default=None, alias="autoCompleteType")
    disabled: Optional[bool] = None
    readonly: Optional[bool] = None
    select_info: Optional[dict[str, Any]] = Field(default=None, alias="selectInfo")
    onepassword_field_type: Optional[str] = Field(default=None, alias="onepasswordFieldType")
    form: Optional[str] = None
    fake_tested: Optional[bool] = Field(default=None, alias="fakeTested")
    post_fake_test_visible: Optional[bool] = Field(default=None, alias="postFakeTestVisible")
    post_fake_test_viewable: Optional[bool] = Field(default=None, alias="postFakeTestViewable")
    post_fake_test_type: Optional[str] = Field(default=None, alias="postFakeTestType")

    @field_validator("max_length", mode="before")
    @classmethod
    def _clamp_max_length(cls, value: Any) -> int:
        try:
            limit = int(value)
        except (TypeError, ValueError):
            return MAX_FIELD_LENGTH
        if limit <= 0:
            return MAX_FIELD_LENGTH
        return min(limit, MAX_FIELD_LENGTH)


class PageDetails(_WireModel):
    document_uuid: str = Field(alias="documentUUID")
    title: str = ""
    url: str = ""
    document_url: str = Field(default="", alias="documentURL")
    forms: dict[str, FormInfo] = Field(default_factory=dict)
    fields: list[FieldInfo] = Field(default_factory=list)
    collected_timestamp: int = Field(default=0, alias="collectedTimestamp")
    display_title: Optional[str] = Field(default=None, alias="displayTitle")

    def field_by_opid(self, opid: str) -> Optional[FieldInfo]:
        for item in self.fields:
            if item.opid == opid:
                return item
        return None


class FillOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: str
    parameters: tuple[Any, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _accept_array_form(cls, data: Any) -> Any:
        # Managers send either {"operation": ..., "parameters": [...]} or [op, *params].
        if isinstance(data, (list, tuple)):
            if not data:
                raise ValueError("fill operation must not be empty")
            return {"operation": data[0], "parameters": tuple(data[1:])}
        return data


class FillOptions(_WireModel):
    animate: bool = True
    mark_filling: bool = Field(default=True, alias="markFilling")


class FillMetadata(_WireModel):
    action: Optional[str] = None


class FillProperties(_WireModel):
    delay_between_operations: Optional[int] = None
    allow_clicky_autosubmit: bool = False


class AutosubmitSpec(_WireModel):
    focus_opid: Optional[str] = Field(default=None, alias="focusOpid")


class FillScript(_WireModel):
    script: list[FillOperation] = Field(default_factory=list)
    options: FillOptions = Field(default_factory=FillOptions)
    metadata: Optional[FillMetadata] = None
    autosubmit: Optional[AutosubmitSpec] = None
    fill_context_identifier: Optional[str] = Field(default=None, alias="fillContextIdentifier")
    item_type: Optional[str] = Field(default=None, alias="itemType")
    saved_url: Optional[str] = Field(default=None, alias="savedURL")
    properties: FillProperties = Field(default_factory=FillProperties)
    document_uuid: Optional[str] = Field(default=None, alias="documentUUID")

    @field_validator("options", "properties", mode="before")
    @classmethod
    def _null_section_uses_defaults(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def metadata_action(self) -> Optional[str]:
        return self.metadata.action if self.metadata else None


class RequestEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    action: Action
    protocol_version: int = Field(default=PROTOCOL_VERSION, alias=VERSION_NUMBER_KEY)
    url_string: str
    payload: dict[str, Any] = Field(default_factory=dict)
    page_details: Optional[PageDetails] = None
    password_generator_options: Optional[dict[str, Any]] = None

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {URL_STRING_KEY: self.url_string}
        item.update(self.payload)
        item[VERSION_NUMBER_KEY] = self.protocol_version
        if self.page_details is not None:
            item[PAGE_DETAILS_KEY] = self.page_details.model_dump(by_alias=True, exclude_none=True)
        if self.password_generator_options:
            item[PASSWORD_GENERATOR_OPTIONS_KEY] = dict(self.password_generator_options)
        return item


@dataclass
class ItemProvider:
    """One attachment of an extension item, loaded lazily like a platform item provider."""

    type_identifier: str
    item: Any = None
    loader: Optional[Callable[[], Awaitable[Any]]] = None

    def has_item_conforming_to(self, type_identifier: str) -> bool:
        return self.type_identifier == type_identifier

    async def load_item(self, type_identifier: str) -> Any:
        if not self.has_item_conforming_to(type_identifier):
            raise LookupError(f"attachment does not conform to {type_identifier}")
        if self.loader is not None:
            return await self.loader()
        return self.item


@dataclass
class ExtensionItem:
    attachments: list[ItemProvider] = field(default_factory=list)
