"""Error taxonomy shared by every autofill flow.

All failures reach callers as :class:`AppExtensionError` instances carrying a
stable numeric code from :class:`ErrorCode`. Factories below produce the
canonical message for each code.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional

ERROR_DOMAIN = "AutofillBridge"


class ErrorCode(IntEnum):
    CANCELLED_BY_USER = 0
    API_NOT_AVAILABLE = 1
    FAILED_TO_CONTACT_EXTENSION = 2
    FAILED_TO_LOAD_ITEM_PROVIDER_DATA = 3
    COLLECT_FIELDS_SCRIPT_FAILED = 4
    FILL_FIELDS_SCRIPT_FAILED = 5
    UNEXPECTED_DATA = 6
    FAILED_TO_OBTAIN_URL_STRING_FROM_WEB_VIEW = 7


class AppExtensionError(Exception):
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        underlying_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.domain = ERROR_DOMAIN
        self.code = ErrorCode(code)
        self.message = message
        self.underlying_error = underlying_error

    @property
    def is_cancellation(self) -> bool:
        return self.code is ErrorCode.CANCELLED_BY_USER

    def to_dict(self) -> dict:
        payload = {"domain": self.domain, "code": int(self.code), "message": self.message}
        if self.underlying_error is not None:
            payload["underlying_error"] = str(self.underlying_error)
        return payload

    def __repr__(self) -> str:
        return f"AppExtensionError(code={self.code.name}, message={self.message!r})"


def api_not_available_error() -> AppExtensionError:
    return AppExtensionError(
        ErrorCode.API_NOT_AVAILABLE,
        "Credential manager extension API is not available on this system",
    )


def cancelled_by_user_error() -> AppExtensionError:
    return AppExtensionError(ErrorCode.CANCELLED_BY_USER, "Credential manager extension was cancelled by the user")


def failed_to_contact_extension_error(activity_error: BaseException) -> AppExtensionError:
    return AppExtensionError(
        ErrorCode.FAILED_TO_CONTACT_EXTENSION,
        "Failed to contact the credential manager extension",
        activity_error,
    )


def failed_to_collect_fields_error(underlying_error: Optional[BaseException]) -> AppExtensionError:
    return AppExtensionError(
        ErrorCode.COLLECT_FIELDS_SCRIPT_FAILED,
        "Failed to execute script that collects web page information",
        underlying_error,
    )


def failed_to_fill_fields_error(message: str, underlying_error: Optional[BaseException] = None) -> AppExtensionError:
    return AppExtensionError(ErrorCode.FILL_FIELDS_SCRIPT_FAILED, message, underlying_error)


def failed_to_load_item_provider_data_error(underlying_error: Optional[BaseException]) -> AppExtensionError:
    return AppExtensionError(
        ErrorCode.FAILED_TO_LOAD_ITEM_PROVIDER_DATA,
        "Failed to parse information returned by the credential manager extension",
        underlying_error,
    )


def unexpected_data_error(message: str, underlying_error: Optional[BaseException] = None) -> AppExtensionError:
    return AppExtensionError(ErrorCode.UNEXPECTED_DATA, message, underlying_error)


def failed_to_obtain_url_string_error() -> AppExtensionError:
    return AppExtensionError(
        ErrorCode.FAILED_TO_OBTAIN_URL_STRING_FROM_WEB_VIEW,
        "Failed to obtain URL string from the page. The page must be loaded completely "
        "when calling the credential manager extension",
    )
