import asyncio
import json

import httpx
import pytest

from zabbix_gateway import Connection, ZabbixGateway

BASE_URL = "https://zbx.example.com"


class FakeZabbix:
    """In-memory Zabbix JSON-RPC endpoint served through httpx.MockTransport.

    Replies are registered per method with :meth:`on`. A reply can be a
    fixed result, a JSON-RPC error, an HTTP status or a callable taking the
    request params and returning the result.
    """

    def __init__(self, token="tok123", version="7.0.0", login_delay=0.0):
        self.token = token
        self.version = version
        self.login_delay = login_delay
        self.requests = []
        self.replies = {}

    @property
    def logins(self):
        return [body for body, _ in self.requests if body["method"] == "user.login"]

    def calls(self, method):
        return [body for body, _ in self.requests if body["method"] == method]

    def on(self, method, result=None, error=None, status=200, respond=None, exc=None):
        self.replies[method] = {
            "result": result,
            "error": error,
            "status": status,
            "respond": respond,
            "exc": exc,
        }

    def transport(self):
        return httpx.MockTransport(self.handler)

    async def handler(self, request):
        body = json.loads(request.content)
        self.requests.append((body, request))
        method = body["method"]

        if method == "user.login" and "user.login" not in self.replies:
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            return self._reply(body, {"result": self.token})
        if method == "apiinfo.version" and "apiinfo.version" not in self.replies:
            return self._reply(body, {"result": self.version})

        reply = self.replies.get(method)
        if reply is None:
            return self._reply(body, {"result": []})
        if reply["exc"] is not None:
            raise reply["exc"]("simulated failure", request=request)
        if reply["status"] != 200:
            return httpx.Response(reply["status"], json={"jsonrpc": "2.0", "result": "ignored"})
        if reply["respond"] is not None:
            outcome = reply["respond"](body["params"])
            if isinstance(outcome, dict) and "error" in outcome:
                return self._reply(body, outcome)
            return self._reply(body, {"result": outcome})
        if reply["error"] is not None:
            return self._reply(body, {"error": reply["error"]})
        return self._reply(body, {"result": reply["result"]})

    @staticmethod
    def _reply(body, payload):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body.get("id"), **payload})


@pytest.fixture
def fake_zabbix():
    return FakeZabbix()


@pytest.fixture
def connection():
    return Connection(base_url=BASE_URL, user="api", password="secret")


@pytest.fixture
def gateway(fake_zabbix, connection):
    return ZabbixGateway(connection, transport=fake_zabbix.transport())
