"""
Sunvoy settings tokens

Pulls the hidden per-user token inputs out of the /settings/tokens page and
signs them the way the settings API expects: the fields plus a timestamp are
sorted, URL-encoded into a canonical query string, and an HMAC-SHA1 checkcode is
computed over it.
"""

import hashlib
import hmac
import re
import time
from dataclasses import dataclass
from urllib.parse import quote

from sunvoy_auth import SunvoyError


# Hidden inputs on the tokens page, in the order the settings API lists them
TOKEN_FIELDS = (
    'access_token',
    'apiuser',
    'language',
    'openId',
    'operateId',
    'userId',
)

# Characters JavaScript's encodeURIComponent leaves alone, beyond quote()'s own
URI_COMPONENT_SAFE = "!~*'()"


class IncompleteTokensError(SunvoyError):
    """The tokens page did not yield every required field."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f'Missing token fields on settings page: {", ".join(missing)}')


class TokenScraper:
    """Extracts the TOKEN_FIELDS values from a tokens page."""

    fields = TOKEN_FIELDS

    def extract(self, html: str) -> dict[str, str | None]:
        raise NotImplementedError


class RegexTokenScraper(TokenScraper):
    """
    Matches each field with id="<name>" value="<value>".

    The page template always renders id before value with double quotes, so
    this is a fixed pattern rather than an HTML parser.
    """

    def __init__(self):
        self._patterns = {
            name: re.compile(rf'id="{re.escape(name)}"\s+value="([^"]+)"')
            for name in self.fields
        }

    def extract(self, html: str) -> dict[str, str | None]:
        values = {}
        for name, pattern in self._patterns.items():
            match = pattern.search(html)
            values[name] = match.group(1) if match else None
        return values


def require_complete_tokens(fields: dict[str, str | None]) -> dict[str, str]:
    """Return the fields unchanged if all TOKEN_FIELDS are present, else raise."""
    missing = [name for name in TOKEN_FIELDS if fields.get(name) is None]
    if missing:
        raise IncompleteTokensError(missing)
    return dict(fields)


@dataclass(frozen=True)
class SignedPayload:
    payload: str
    checkcode: str
    timestamp: int
    full_payload: str


def canonicalize(values: dict[str, str]) -> str:
    """Sorted key=value pairs joined by &, values encoded like encodeURIComponent."""
    return '&'.join(
        f'{key}={quote(str(values[key]), safe=URI_COMPONENT_SAFE)}'
        for key in sorted(values)
    )


def compute_checkcode(payload: str, secret: str) -> str:
    digest = hmac.new(secret.encode('utf-8'), payload.encode('utf-8'), hashlib.sha1)
    return digest.hexdigest().upper()


def create_signed_request(
    fields: dict[str, str],
    secret: str,
    timestamp: int | None = None,
) -> SignedPayload:
    """
    Sign a token field set for the settings API.

    Args:
        fields: Token values keyed by field name
        secret: Shared HMAC key
        timestamp: Unix seconds; sampled from the clock when omitted. The API
            rejects stale timestamps, so only tests should pass one.

    Returns:
        SignedPayload with the canonical string, its checkcode, the timestamp
        used, and the canonical string with the checkcode appended.
    """
    if timestamp is None:
        timestamp = int(time.time())

    values = {**fields, 'timestamp': str(timestamp)}
    payload = canonicalize(values)
    checkcode = compute_checkcode(payload, secret)

    return SignedPayload(
        payload=payload,
        checkcode=checkcode,
        timestamp=timestamp,
        full_payload=f'{payload}&checkcode={checkcode}',
    )
