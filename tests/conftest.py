"""Pytest fixtures: a local stand-in for the Sunvoy app and API hosts."""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Generator
from urllib.parse import parse_qs, quote

import pytest

from sunvoy_auth import SunvoyConfig, create_session

NONCE = 'f3a9c1e07b'
SESSION_COOKIE = 'SID=abc123'
SECRET = 'mys3cr3t'
URI_SAFE = "!~*'()"

USERS = [
    {'id': 'u-1', 'firstName': 'Ada', 'lastName': 'Lovelace', 'email': 'ada@example.org'},
    {'id': 'u-2', 'firstName': 'Alan', 'lastName': 'Turing', 'email': 'alan@example.org'},
]

TOKENS = {
    'access_token': 'at 9f8e7d',
    'apiuser': 'demo@example.org',
    'language': 'en_US',
    'openId': 'openid-42',
    'operateId': 'op-7',
    'userId': 'd5ab6f91',
}


def render_login_page(nonce: str | None = NONCE) -> str:
    nonce_input = f'<input type="hidden" name="nonce" value="{nonce}" />' if nonce else ''
    return (
        '<html><body><form method="post" action="/login">'
        f'{nonce_input}'
        '<input type="email" name="username" />'
        '<input type="password" name="password" />'
        '</form></body></html>'
    )


def render_tokens_page(tokens: dict[str, str]) -> str:
    inputs = ''.join(
        f'<input type="hidden" id="{name}" value="{value}">\n'
        for name, value in tokens.items()
    )
    return f'<html><body><div class="tokens">\n{inputs}</div></body></html>'


def expected_checkcode(body: dict) -> str:
    values = {k: str(v) for k, v in body.items() if k != 'checkcode'}
    payload = '&'.join(f'{k}={quote(values[k], safe=URI_SAFE)}' for k in sorted(values))
    return hmac.new(SECRET.encode(), payload.encode(), hashlib.sha1).hexdigest().upper()


class FakeSunvoyServer(ThreadingHTTPServer):
    """Serves the login page, login form, users API, tokens page and settings API."""

    daemon_threads = True

    def __init__(self):
        super().__init__(('127.0.0.1', 0), FakeSunvoyHandler)
        self.challenge_status = 200
        self.nonce: str | None = NONCE
        self.login_cookie: str | None = SESSION_COOKIE
        self.accepted_cookie = SESSION_COOKIE
        self.tokens = dict(TOKENS)
        self.requests: list[tuple[str, str, dict, bytes]] = []

    @property
    def base_url(self) -> str:
        host, port = self.server_address[:2]
        return f'http://{host}:{port}'

    def paths(self, method: str | None = None) -> list[str]:
        return [path for m, path, _, _ in self.requests if method is None or m == method]


class FakeSunvoyHandler(BaseHTTPRequestHandler):
    server: FakeSunvoyServer

    def log_message(self, format, *args):
        pass

    def _record(self) -> bytes:
        length = int(self.headers.get('Content-Length') or 0)
        body = self.rfile.read(length) if length else b''
        self.server.requests.append((self.command, self.path, dict(self.headers), body))
        return body

    def _send(self, status: int, body: str = '', content_type: str = 'text/html', headers: dict | None = None):
        data = body.encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(data)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(data)

    def _send_json(self, status: int, payload):
        self._send(status, json.dumps(payload), content_type='application/json')

    def _authorized(self) -> bool:
        return self.headers.get('Cookie') == self.server.accepted_cookie

    def do_GET(self):
        self._record()
        if self.path == '/':
            if self.server.challenge_status != 200:
                self._send(self.server.challenge_status, 'maintenance')
            else:
                self._send(200, render_login_page(self.server.nonce))
        elif self.path == '/settings/tokens':
            if self._authorized():
                self._send(200, render_tokens_page(self.server.tokens))
            else:
                self._send(302, headers={'Location': '/login'})
        else:
            self._send(404, 'not found')

    def do_POST(self):
        body = self._record()
        if self.path == '/login':
            form = parse_qs(body.decode('utf-8'))
            if form.get('nonce') != [self.server.nonce]:
                self._send(400, 'bad nonce')
                return
            headers = {'Location': '/list'}
            if self.server.login_cookie:
                headers['Set-Cookie'] = f'{self.server.login_cookie}; Path=/; HttpOnly'
            self._send(302, headers=headers)
        elif self.path == '/api/users':
            if self._authorized():
                self._send_json(200, USERS)
            else:
                self._send_json(401, {'error': 'Unauthorized'})
        elif self.path == '/api/settings':
            if not self._authorized():
                self._send_json(401, {'error': 'Unauthorized'})
                return
            data = json.loads(body)
            if data.get('checkcode') != expected_checkcode(data):
                self._send_json(400, {'error': 'Invalid checkcode'})
                return
            self._send_json(200, {
                'id': data['userId'],
                'firstName': 'Demo',
                'lastName': 'User',
                'email': data['apiuser'],
            })
        else:
            self._send(404, 'not found')


@pytest.fixture
def fake_server() -> Generator[FakeSunvoyServer, None, None]:
    """Run the fake Sunvoy server on a free local port."""
    server = FakeSunvoyServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def config(fake_server: FakeSunvoyServer, tmp_path: Path) -> SunvoyConfig:
    """Config pointing both hosts at the fake server and files at tmp_path."""
    return SunvoyConfig(
        base_url=fake_server.base_url,
        api_base_url=fake_server.base_url,
        secret=SECRET,
        auth_file=tmp_path / 'authentication.json',
        output_file=tmp_path / 'users.json',
        timeout=5,
    )


@pytest.fixture
def session():
    session = create_session()
    yield session
    session.close()
