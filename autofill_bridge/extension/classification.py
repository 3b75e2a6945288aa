"""Data-driven heuristics for classifying form fields and buttons.

The tables here are consumed twice: directly in Python (to decide which fields
need the unmask probe) and serialised into the page scripts (to drive the
submit heuristic). Bump ``RULES_VERSION`` whenever a table changes so both
sides can be correlated in logs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ..models import FieldInfo

RULES_VERSION = 3

# Password-related terms per locale. Terms marked as bounded must appear as a
# separate token ("pin", "passe") to avoid matching e.g. "spinner".
PASSWORD_TERMS: Mapping[str, Sequence[str]] = {
    "en": ("password",),
    "de": ("passwort", "kennwort"),
    "fr": ("passe",),
    "es": ("contraseña",),
    "pt": ("senha",),
    "zh": ("密码",),
    "da": ("adgangskode",),
    "pl": ("hasło",),
    "nl": ("wachtwoord",),
}
BOUNDED_PASSWORD_TERMS: frozenset[str] = frozenset({"pin", "passe"})

# Button titles per purpose. Entries starting with "re:" are regular
# expressions, everything else is a case-insensitive substring.
LOGIN_TITLES: Sequence[str] = (
    r"re:^\W*log\W*[oi]n\W*$",
    r"re:log\W*[oi]n (?:securely|now)",
    r"re:^\W*sign\W*[oi]n\W*$",
    "continue",
    "submit",
    "weiter",
    "accès",
    "вход",
    "connexion",
    "entrar",
    "anmelden",
    "accedi",
    "valider",
    "登录",
    "लॉग इन करें",
)
CHANGE_PASSWORD_TITLES: Sequence[str] = (r"re:^(change|update) password$", "save changes", "update")
LOGIN_RED_HERRING_TITLES: Sequence[str] = ("already have an account", "sign in with")
REGISTER_TITLES: Sequence[str] = (
    "register",
    "sign up",
    "signup",
    "join",
    r"re:^create (my )?(account|profile)$",
    "регистрация",
    "inscription",
    "regístrate",
    "cadastre-se",
    "registrieren",
    "registrazione",
    "注册",
    "साइन अप करें",
)
SEARCH_TITLES: Sequence[str] = tuple(
    "search find поиск найти искать recherche suchen buscar suche ricerca procurar 検索".split()
)
FORGOT_PASSWORD_TITLES: Sequence[str] = tuple("forgot geändert vergessen hilfe changeemail español".split())
REMEMBER_ME_TITLES: Sequence[str] = ("remember me", "rememberme", "keep me signed in")
BACK_TITLES: Sequence[str] = ("back", "назад")
DIVITIS_BUTTON_CLASSES: Sequence[str] = ("button", "btn-primary")

CANDIDATE_FIELD_TYPES: frozenset[str] = frozenset({"text", "password"})


def build_password_pattern(
    terms: Mapping[str, Sequence[str]] = PASSWORD_TERMS,
    bounded: Iterable[str] = BOUNDED_PASSWORD_TERMS,
) -> str:
    bounded_set = set(bounded)
    parts: list[str] = []
    seen: set[str] = set()
    for term in ["pin", *[t for locale_terms in terms.values() for t in locale_terms]]:
        if term in seen:
            continue
        seen.add(term)
        escaped = re.escape(term)
        if term in bounded_set:
            parts.append(rf"(?:\b|_|-){escaped}(?:\b|_|-)")
        else:
            parts.append(escaped)
    return "(" + "|".join(parts) + ")"


@dataclass(frozen=True)
class ClassificationRules:
    version: int = RULES_VERSION
    password_pattern: str = field(default_factory=build_password_pattern)
    login_titles: Sequence[str] = LOGIN_TITLES
    change_password_titles: Sequence[str] = CHANGE_PASSWORD_TITLES
    login_red_herring_titles: Sequence[str] = LOGIN_RED_HERRING_TITLES
    register_titles: Sequence[str] = REGISTER_TITLES
    search_titles: Sequence[str] = SEARCH_TITLES
    forgot_password_titles: Sequence[str] = FORGOT_PASSWORD_TITLES
    remember_me_titles: Sequence[str] = REMEMBER_ME_TITLES
    back_titles: Sequence[str] = BACK_TITLES
    divitis_button_classes: Sequence[str] = DIVITIS_BUTTON_CLASSES

    @property
    def password_regex(self) -> re.Pattern[str]:
        return re.compile(self.password_pattern, re.IGNORECASE)

    def matches_password_terms(self, text: str | None) -> bool:
        if not text:
            return False
        return bool(self.password_regex.search(text))

    def is_likely_password_field(self, field_info: FieldInfo) -> bool:
        """True for text/password inputs whose value, ids or labels mention a password."""
        if (field_info.type or "").lower() not in CANDIDATE_FIELD_TYPES:
            return False
        probes = [
            field_info.value,
            field_info.html_id,
            field_info.html_name,
            field_info.placeholder,
            field_info.label_tag,
            field_info.label_data,
            field_info.label_aria,
            field_info.label_top,
            field_info.label_left,
            field_info.label_right,
        ]
        return any(self.matches_password_terms(probe) for probe in probes)

    def to_script_payload(self) -> dict[str, Any]:
        """Serialise the tables for the page scripts (plain JSON, no compiled patterns)."""
        return {
            "version": self.version,
            "passwordPattern": self.password_pattern,
            "loginTitles": list(self.login_titles),
            "changePasswordTitles": list(self.change_password_titles),
            "loginRedHerringTitles": list(self.login_red_herring_titles),
            "registerTitles": list(self.register_titles),
            "searchTitles": list(self.search_titles),
            "forgotPasswordTitles": list(self.forgot_password_titles),
            "rememberMeTitles": list(self.remember_me_titles),
            "backTitles": list(self.back_titles),
            "divitisButtonClasses": list(self.divitis_button_classes),
        }


DEFAULT_RULES = ClassificationRules()
