#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "python-dotenv",
# ]
# ///
"""
Sunvoy Users Sync

Logs in to the Sunvoy challenge app (reusing the stored session cookie when it
is still accepted), downloads the user list, signs the hidden settings tokens
and fetches the logged-in user's profile. Both results are written to one JSON
file.

Usage:
    uv run sunvoy_sync.py

Options:
    --output PATH   Where to write the combined JSON (default: users.json)
    --clear-cache   Clear stored session cookie and force fresh login
    --no-cache      Skip the stored session entirely (don't read or write)
    --prompt        Ask for credentials instead of using configured ones
    --debug         Write request/response details to sunvoy_debug.log
    --quiet         Only print errors
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import requests

from sunvoy_auth import (
    DEBUG_LOG_FILE,
    CredentialStore,
    SessionRejectedError,
    SunvoyConfig,
    create_session,
    debug_log,
    get_credentials_from_prompt,
    login,
    validate_session,
)
from sunvoy_tokens import (
    RegexTokenScraper,
    TokenScraper,
    create_signed_request,
    require_complete_tokens,
)


class SunvoySync:
    """Runs the reuse-or-login, scrape, sign and fetch sequence for one account."""

    def __init__(
        self,
        config: SunvoyConfig,
        session: requests.Session | None = None,
        store: CredentialStore | None = None,
        scraper: TokenScraper | None = None,
        credentials: tuple[str, str] | None = None,
        verbose: bool = True,
    ):
        self.config = config
        self.session = session or create_session()
        self.store = store
        self.scraper = scraper or RegexTokenScraper()
        self.credentials = credentials or (config.username, config.password)
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    def ensure_session(self) -> str:
        """Return a session cookie, reusing the stored one if the server still accepts it."""
        if self.store is not None:
            self._log('Checking for stored session...')
            stored = self.store.load()
            if stored and stored.token:
                self._log('  Validating stored session...')
                if validate_session(self.session, self.config, stored.token, self.verbose):
                    self._log('  Reusing stored session cookie')
                    return stored.token
                self._log('  Stored session invalid, will log in again')
            else:
                self._log('  No stored session found')

        username, password = self.credentials
        token = login(self.session, self.config, username, password, verbose=self.verbose)

        if self.store is not None:
            self.store.save(token)

        return token

    def _authed_request(self, method: str, url: str, token: str, **kwargs) -> requests.Response:
        headers = {'Cookie': token}
        debug_log.log_section(f'{method} {url}')
        debug_log.log_request(method, url, headers, kwargs.get('json'))

        response = self.session.request(
            method,
            url,
            headers=headers,
            allow_redirects=False,
            timeout=self.config.timeout,
            **kwargs,
        )

        debug_log.log_response(response)

        if response.status_code in (401, 403):
            raise SessionRejectedError(
                f'{url} returned HTTP {response.status_code}. Session cookie was not accepted.\n'
                'Try running with --clear-cache to force a fresh login.'
            )
        if not 200 <= response.status_code < 300:
            # 3xx included: an unfollowed redirect means the request did not land
            raise requests.HTTPError(
                f'{url} returned HTTP {response.status_code}: {response.text[:200]}',
                response=response,
            )

        return response

    def fetch_users(self, token: str) -> Any:
        response = self._authed_request('POST', self.config.users_url, token)
        return response.json()

    def fetch_tokens_page(self, token: str) -> str:
        response = self._authed_request('GET', self.config.tokens_url, token)
        return response.text

    def fetch_authenticated_user(self, token: str, fields: dict[str, str]) -> Any:
        """Post the signed token fields to the settings API and return its JSON."""
        signed = create_signed_request(fields, self.config.secret)
        body = {
            **fields,
            'timestamp': signed.timestamp,
            'checkcode': signed.checkcode,
        }
        response = self._authed_request('POST', self.config.settings_url, token, json=body)
        return response.json()

    def run(self) -> dict:
        """Execute the whole flow and return {"users": ..., "authenticatedUser": ...}."""
        token = self.ensure_session()

        self._log('Fetching users...')
        users = self.fetch_users(token)
        if isinstance(users, list):
            self._log(f'  Retrieved {len(users)} users')

        self._log('Fetching settings tokens...')
        html = self.fetch_tokens_page(token)
        fields = require_complete_tokens(self.scraper.extract(html))

        self._log('Fetching authenticated user...')
        authenticated_user = self.fetch_authenticated_user(token, fields)

        return {
            'users': users,
            'authenticatedUser': authenticated_user,
        }


def export_to_json(data: dict, filepath: Path, verbose: bool = True) -> None:
    """Export the combined result to a pretty-printed JSON file."""
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    if verbose:
        print(f'All data saved to {filepath}')


def main():
    parser = argparse.ArgumentParser(
        description='Sunvoy Users Sync',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--output', type=Path, help='Output JSON file (default: users.json)')
    parser.add_argument('--clear-cache', action='store_true', help='Clear stored session before login')
    parser.add_argument('--no-cache', action='store_true', help='Skip stored session entirely')
    parser.add_argument('--prompt', action='store_true', help='Ask for credentials interactively')
    parser.add_argument('--debug', action='store_true', help='Write request/response details to sunvoy_debug.log')
    parser.add_argument('--quiet', action='store_true', help='Only print errors')
    args = parser.parse_args()

    verbose = not args.quiet
    config = SunvoyConfig.from_env()
    output_path = args.output or config.output_file

    if verbose:
        print('Sunvoy Users Sync')
        print('=' * 50)
        print()

    store = None
    if not args.no_cache:
        store = CredentialStore(config.auth_file, verbose=verbose)
        if args.clear_cache:
            store.clear()

    credentials = None
    if args.prompt:
        credentials = get_credentials_from_prompt()

    if args.debug:
        debug_log.enable()
        if verbose:
            print(f'  Debug logging enabled: {DEBUG_LOG_FILE}')

    sync = SunvoySync(config, store=store, credentials=credentials, verbose=verbose)

    try:
        result = sync.run()
        export_to_json(result, output_path, verbose=verbose)
    except Exception as e:
        print(f'\nSync failed: {e}', file=sys.stderr)
        sys.exit(1)
    finally:
        if args.debug:
            debug_log.disable()
            if verbose:
                print(f'  Debug log written to: {DEBUG_LOG_FILE}')

    if verbose:
        print()
        print('Done!')


if __name__ == '__main__':
    main()
