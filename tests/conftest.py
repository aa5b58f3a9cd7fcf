import asyncio
import inspect
import os
from types import SimpleNamespace
from urllib.parse import parse_qsl

os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

from tokengate.config import OAuth2ProviderConfig  # noqa: E402
from tokengate.service.oauth2_client import OAuth2Client  # noqa: E402
from tokengate.service.provider import OAuth2Provider  # noqa: E402

IDP = "https://idp.test"


class FakeIdentityProvider:
    """httpx.MockTransport handler standing in for the identity provider."""

    def __init__(self):
        self.calls = []
        self.token_status = 200
        self.token_response = {"access_token": "A2"}
        self.introspect_status = 200
        self.introspect_response = {"active": True, "username": "alice"}
        self.fail_paths = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        path = request.url.path
        self.calls.append((path, form))
        if path in self.fail_paths:
            raise httpx.ConnectError("connection refused", request=request)
        if path == "/token":
            return httpx.Response(self.token_status, json=self.token_response)
        if path == "/introspect":
            return httpx.Response(self.introspect_status, json=self.introspect_response)
        if path == "/revoke":
            return httpx.Response(200)
        return httpx.Response(404, json={"error": "not_found"})

    def count(self, path: str) -> int:
        return sum(1 for called, _ in self.calls if called == path)

    def forms(self, path: str) -> list:
        return [form for called, form in self.calls if called == path]


def make_config(**overrides) -> OAuth2ProviderConfig:
    values = {
        "client_id": "client-1",
        "client_secret": "s3cret",
        "token_url": f"{IDP}/token",
        "authorize_url": f"{IDP}/authorize",
        "introspect_url": f"{IDP}/introspect",
        "scope": ["openid", "profile"],
        "recheck_interval_ms": 60000,
        "refresh_interval_ms": 20000,
    }
    values.update(overrides)
    return OAuth2ProviderConfig(**values)


def make_provider(idp: FakeIdentityProvider, **overrides) -> OAuth2Provider:
    config = make_config(**overrides)
    client = OAuth2Client(config, transport=httpx.MockTransport(idp))
    return OAuth2Provider(config, client=client)


def make_request(session=None, bearer=None):
    headers = {}
    if bearer is not None:
        headers["Authorization"] = f"Bearer {bearer}"
    return SimpleNamespace(headers=headers, session=session)


@pytest.fixture
def idp():
    return FakeIdentityProvider()


@pytest.fixture
def provider(idp):
    return make_provider(idp)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
