#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "python-dotenv",
# ]
# ///
"""
Sunvoy Authentication Module

Handles cookie-session authentication to the Sunvoy challenge app. A session
cookie saved by a previous run is reused when the server still accepts it;
otherwise the nonce login form is replayed with requests to obtain a new one.

Usage:
    from sunvoy_auth import SunvoyConfig, CredentialStore, create_session, login

    config = SunvoyConfig.from_env()
    session = create_session(config)
    token = login(session, config, config.username, config.password)
"""

import getpass
import json
import os
import re
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter


# Debug log file - captures full request/response details
DEBUG_LOG_FILE = Path('sunvoy_debug.log')

# Form fields whose values never reach the debug log
MASKED_FIELDS = ('password',)


class DebugLogger:
    """Logs all HTTP request/response details to a file for debugging."""

    def __init__(self, filepath: Path = DEBUG_LOG_FILE):
        self.filepath = filepath
        self.enabled = False
        self._file = None

    def enable(self):
        self.enabled = True
        self._file = open(self.filepath, 'w', encoding='utf-8')
        self._write('=== Sunvoy Debug Log ===')
        self._write(f'Started: {datetime.now().isoformat()}')
        self._write('')

    def disable(self):
        if self._file:
            self._file.close()
            self._file = None
        self.enabled = False

    def _write(self, text: str):
        if self._file:
            self._file.write(text + '\n')
            self._file.flush()

    def log_section(self, title: str):
        if not self.enabled:
            return
        self._write('')
        self._write('=' * 80)
        self._write(f'  {title}')
        self._write('=' * 80)

    def log_request(self, method: str, url: str, headers: dict, body=None):
        if not self.enabled:
            return
        self._write(f'\n>>> REQUEST: {method} {url}')
        self._write('--- Request Headers ---')
        for k, v in headers.items():
            v_str = str(v)
            if len(v_str) > 200:
                v_str = v_str[:200] + '...'
            self._write(f'  {k}: {v_str}')
        if body:
            self._write('--- Request Body ---')
            if isinstance(body, dict):
                safe_body = {
                    k: '***MASKED***' if k in MASKED_FIELDS else v
                    for k, v in body.items()
                }
                self._write(json.dumps(safe_body, indent=2))
            else:
                self._write(str(body)[:500])

    def log_response(self, response: requests.Response):
        if not self.enabled:
            return
        self._write(f'\n<<< RESPONSE: {response.status_code} {response.reason}')
        self._write(f'    Final URL: {response.url}')
        self._write('--- Response Headers ---')
        for k, v in response.headers.items():
            self._write(f'  {k}: {v}')
        self._write('--- Response Body ---')
        content_type = response.headers.get('Content-Type', '')
        if 'json' in content_type:
            try:
                self._write(json.dumps(response.json(), indent=2))
            except ValueError:
                self._write(response.text[:2000])
        elif 'html' in content_type:
            self._write(f'[HTML Response - {len(response.text)} chars]')
            self._write(response.text[:1000])
            if len(response.text) > 1000:
                self._write('... [truncated]')
        else:
            self._write(response.text[:2000] if response.text else '[empty]')


# Global debug logger instance
debug_log = DebugLogger()


class SunvoyError(RuntimeError):
    """Base class for fatal errors in the Sunvoy flow."""


class ChallengeError(SunvoyError):
    """The login page could not be fetched."""


class NonceNotFoundError(SunvoyError):
    """The login page did not contain a nonce input."""


class SessionRejectedError(SunvoyError):
    """The server refused the session cookie on a protected request."""


@dataclass
class SunvoyConfig:
    """
    Endpoints, credentials and file locations for one run.

    Defaults target the public challenge app with its demo account. Every field
    can be overridden from the environment (or a .env file) via from_env().
    """

    base_url: str = 'https://challenge.sunvoy.com'
    api_base_url: str = 'https://api.challenge.sunvoy.com'
    username: str = 'demo@example.org'
    password: str = 'test'
    secret: str = 'mys3cr3t'
    auth_file: Path = Path('authentication.json')
    output_file: Path = Path('users.json')
    timeout: float = 10.0

    def __post_init__(self):
        self.base_url = self.base_url.rstrip('/')
        self.api_base_url = self.api_base_url.rstrip('/')
        self.auth_file = Path(self.auth_file)
        self.output_file = Path(self.output_file)

    @classmethod
    def from_env(cls) -> 'SunvoyConfig':
        """Build a config from SUNVOY_* environment variables, loading .env first."""
        load_dotenv()
        defaults = cls()
        return cls(
            base_url=os.environ.get('SUNVOY_BASE_URL', defaults.base_url),
            api_base_url=os.environ.get('SUNVOY_API_BASE_URL', defaults.api_base_url),
            username=os.environ.get('SUNVOY_USERNAME', defaults.username),
            password=os.environ.get('SUNVOY_PASSWORD', defaults.password),
            secret=os.environ.get('SUNVOY_SECRET', defaults.secret),
            auth_file=os.environ.get('SUNVOY_AUTH_FILE', defaults.auth_file),
            output_file=os.environ.get('SUNVOY_OUTPUT_FILE', defaults.output_file),
            timeout=float(os.environ.get('SUNVOY_TIMEOUT', defaults.timeout)),
        )

    @property
    def users_url(self) -> str:
        return f'{self.base_url}/api/users'

    @property
    def login_url(self) -> str:
        return f'{self.base_url}/login'

    @property
    def tokens_url(self) -> str:
        return f'{self.base_url}/settings/tokens'

    @property
    def settings_url(self) -> str:
        return f'{self.api_base_url}/api/settings'


@dataclass(frozen=True)
class StoredCredential:
    """A session cookie together with the epoch milliseconds it was saved at."""

    token: str
    saved_at: int


class CredentialStore:
    """
    Persists the session cookie to disk for reuse across script invocations.

    The file is a small JSON object {"cookie": ..., "savedAt": ...}. A missing or
    damaged file is reported as "no credential" so the caller logs in again.
    """

    def __init__(self, path: Path, verbose: bool = True):
        self.path = Path(path)
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def save(self, token: str) -> None:
        """Save the session cookie, replacing whatever was stored before."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'cookie': token,
            'savedAt': int(time.time() * 1000),
        }

        self.path.write_text(json.dumps(data, indent=2))
        self.path.chmod(0o600)  # Restrict permissions since it contains a session cookie
        self._log(f'  Session cookie saved to {self.path}')

    def load(self) -> StoredCredential | None:
        """Load the stored credential, or None if there is nothing usable on disk."""
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError, OSError):
            self._log('  Credential file unreadable, will log in again')
            return None

        if not isinstance(data, dict) or not isinstance(data.get('cookie'), str):
            self._log('  Credential file missing cookie, will log in again')
            return None

        saved_at = data.get('savedAt')
        if not isinstance(saved_at, (int, float)):
            saved_at = 0

        return StoredCredential(token=data['cookie'], saved_at=int(saved_at))

    def clear(self) -> None:
        """Delete the credential file."""
        if self.path.exists():
            self.path.unlink()
            self._log('  Stored session cleared')


def get_credentials_from_prompt() -> tuple[str, str]:
    """
    Prompt the user to enter their credentials manually.

    Returns (username, password) tuple.
    """
    print()
    print('Please enter your Sunvoy credentials:')
    username = input('  Username (email): ').strip()
    password = getpass.getpass('  Password: ')

    if not username or not password:
        raise ValueError('Username and password are required')

    return username, password


def create_session() -> requests.Session:
    """Create a requests session with connection pooling and no automatic retries."""
    session = requests.Session()

    # No retries anywhere in the flow
    adapter = HTTPAdapter(
        max_retries=0,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount('https://', adapter)
    session.mount('http://', adapter)

    session.headers.update({
        'Accept': 'application/json, text/html;q=0.9, */*;q=0.8',
        'Accept-Language': 'en-GB,en;q=0.9',
        'User-Agent': 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36',
    })

    return session


def validate_session(
    session: requests.Session,
    config: SunvoyConfig,
    token: str,
    verbose: bool = True,
) -> bool:
    """
    Validate a session cookie by making the users API call with it.

    Returns True only for a 2xx answer. Redirects are not followed, so a bounce
    to the login page counts as invalid. Never raises.
    """
    if not token:
        return False

    debug_log.log_section('VALIDATE SESSION')
    headers = {'Cookie': token}
    debug_log.log_request('POST', config.users_url, headers)

    try:
        response = session.post(
            config.users_url,
            headers=headers,
            allow_redirects=False,
            timeout=config.timeout,
        )
    except requests.RequestException as e:
        if verbose:
            print(f'  Session validation failed: {e}')
        return False

    debug_log.log_response(response)

    if 200 <= response.status_code < 300:
        return True
    if verbose:
        print(f'  Session validation failed: HTTP {response.status_code}')
    return False


_INPUT_TAG_RE = re.compile(r'<input\b[^>]*>', re.IGNORECASE)
_ATTRIBUTE_RE = re.compile(
    r'''([^\s"'<>/=]+)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'=<>`]+))''',
)


def _input_attributes(tag: str) -> dict[str, str]:
    attributes = {}
    for match in _ATTRIBUTE_RE.finditer(tag):
        name = match.group(1).lower()
        value = next((g for g in match.group(2, 3, 4) if g is not None), '')
        attributes.setdefault(name, value)
    return attributes


def extract_nonce(html: str) -> str:
    """
    Find the value of the <input name="nonce"> element on the login page.

    Attribute order and quoting style (double, single or none) do not matter.
    Raises NonceNotFoundError when there is no such input or its value is empty.
    """
    for tag in _INPUT_TAG_RE.findall(html):
        attributes = _input_attributes(tag)
        if attributes.get('name') == 'nonce' and attributes.get('value'):
            return attributes['value']

    raise NonceNotFoundError('Nonce not found on login page')


def fetch_challenge(session: requests.Session, config: SunvoyConfig) -> str:
    """Fetch the login page HTML that carries the nonce."""
    debug_log.log_section('FETCH LOGIN PAGE')
    url = f'{config.base_url}/'
    debug_log.log_request('GET', url, dict(session.headers))

    try:
        response = session.get(url, timeout=config.timeout)
    except requests.RequestException as e:
        raise ChallengeError(f'Could not fetch login page: {e}') from e

    debug_log.log_response(response)

    if not 200 <= response.status_code < 300:
        raise ChallengeError(f'Login page returned HTTP {response.status_code}')

    return response.text


def submit_credentials(
    session: requests.Session,
    config: SunvoyConfig,
    username: str,
    password: str,
    nonce: str,
) -> requests.Response:
    """
    Post the login form.

    Redirects are not followed: the session cookie is set on the redirect
    response itself.
    """
    debug_log.log_section('SUBMIT CREDENTIALS')
    form = {
        'username': username,
        'password': password,
        'nonce': nonce,
    }
    debug_log.log_request('POST', config.login_url, dict(session.headers), form)

    response = session.post(
        config.login_url,
        data=form,
        allow_redirects=False,
        timeout=config.timeout,
    )

    debug_log.log_response(response)
    return response


def capture_session_token(response: requests.Response) -> str:
    """Turn the cookies set by the login response into a Cookie header value."""
    return '; '.join(f'{cookie.name}={cookie.value}' for cookie in response.cookies)


def login(
    session: requests.Session,
    config: SunvoyConfig,
    username: str,
    password: str,
    verbose: bool = True,
) -> str:
    """
    Perform the nonce login flow.

    Returns the captured session cookie. The value is empty when the server set
    no cookie; whether it works is found out by the first protected request.
    """
    if verbose:
        print('Logging in to Sunvoy...')
        print('  Fetching login page...')
    html = fetch_challenge(session, config)

    nonce = extract_nonce(html)

    if verbose:
        print('  Submitting credentials...')
    response = submit_credentials(session, config, username, password, nonce)

    token = capture_session_token(response)

    # The captured token is sent explicitly from here on
    session.cookies.clear()

    if verbose:
        if token:
            print('  Session cookie acquired!')
        else:
            print(f'  Warning: login response (HTTP {response.status_code}) set no cookie')

    return token


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Sunvoy Authentication Module')
    parser.add_argument('--debug', action='store_true', help='Write request/response details to sunvoy_debug.log')
    parser.add_argument('--clear-cache', action='store_true', help='Clear stored session and force fresh login')
    parser.add_argument('--prompt', action='store_true', help='Ask for credentials instead of using configured ones')
    args = parser.parse_args()

    print('Sunvoy Authentication Module')
    print('=' * 50)
    print()

    config = SunvoyConfig.from_env()
    store = CredentialStore(config.auth_file)

    if args.clear_cache:
        store.clear()
        print()

    if args.debug:
        debug_log.enable()
        print(f'  Debug logging enabled: {DEBUG_LOG_FILE}')

    session = create_session()
    success = False
    try:
        stored = store.load()
        if stored and validate_session(session, config, stored.token):
            print('Stored session is valid!')
            success = True
        else:
            if args.prompt:
                username, password = get_credentials_from_prompt()
            else:
                username, password = config.username, config.password
            token = login(session, config, username, password)
            if validate_session(session, config, token):
                store.save(token)
                print()
                print('Authentication test PASSED!')
                success = True
            else:
                print('Authentication test FAILED: server rejected the new session cookie')
    except (SunvoyError, requests.RequestException, OSError, ValueError) as e:
        print(f'Authentication test FAILED: {e}')
    finally:
        if args.debug:
            debug_log.disable()
            print(f'  Debug log written to: {DEBUG_LOG_FILE}')

    sys.exit(0 if success else 1)
