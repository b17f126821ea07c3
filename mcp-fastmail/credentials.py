"""Credential lookup across the several environment keys each setting may live under."""

import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from errors import ConfigurationError

PLACEHOLDER_RE = re.compile(r"\$\{[^}]+\}")

API_TOKEN_KEYS = (
    "FASTMAIL_API_TOKEN",
    "USER_CONFIG_FASTMAIL_API_TOKEN",
    "USER_CONFIG_fastmail_api_token",
    "fastmail_api_token",
)
BASE_URL_KEYS = (
    "FASTMAIL_BASE_URL",
    "USER_CONFIG_FASTMAIL_BASE_URL",
    "USER_CONFIG_fastmail_base_url",
    "fastmail_base_url",
)
USERNAME_KEYS = ("FASTMAIL_USERNAME", "USER_CONFIG_FASTMAIL_USERNAME")
CALDAV_PASSWORD_KEYS = ("FASTMAIL_CALDAV_PASSWORD", "USER_CONFIG_FASTMAIL_CALDAV_PASSWORD")


class CredentialStatus(str, Enum):
    resolved = "resolved"
    missing = "missing"
    placeholder = "placeholder"


@dataclass(frozen=True)
class Credential:
    status: CredentialStatus
    value: str | None = None
    key: str | None = None  # the env key that decided the outcome

    @property
    def present(self) -> bool:
        return self.status is CredentialStatus.resolved


class CredentialResolver:
    def __init__(self, env: Mapping[str, str] | None = None):
        self.env = os.environ if env is None else env

    def resolve(self, keys: Sequence[str]) -> Credential:
        """Return the first non-empty value among ``keys``.

        A placeholder such as ``${FASTMAIL_API_TOKEN}`` in the first non-empty
        key ends the search: later keys are not consulted.
        """
        for key in keys:
            raw = self.env.get(key)
            if not isinstance(raw, str) or not raw.strip():
                continue
            value = raw.strip()
            if PLACEHOLDER_RE.search(value):
                return Credential(CredentialStatus.placeholder, key=key)
            return Credential(CredentialStatus.resolved, value=value, key=key)
        return Credential(CredentialStatus.missing)

    def require(self, keys: Sequence[str], hint: str = "") -> str:
        """Resolve ``keys`` or raise ConfigurationError naming the primary key."""
        name = keys[0]
        cred = self.resolve(keys)
        if cred.status is CredentialStatus.placeholder:
            raise ConfigurationError(
                f"{name} is set to an unexpanded placeholder in {cred.key}. "
                f"Replace it with the real value.{(' ' + hint) if hint else ''}"
            )
        if cred.status is CredentialStatus.missing:
            raise ConfigurationError(
                f"{name} environment variable is required.{(' ' + hint) if hint else ''}"
            )
        return cred.value
