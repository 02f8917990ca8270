import json
from typing import Any

import pytest
import requests
from langchain_core.messages import AIMessage

from gated_agent.errors import MissingCredential
from gated_agent.types import Credential


class ScriptedChatModel:
    """Chat model stand-in that replays prepared messages in order.

    An exception in the script is raised instead of returned.
    """

    def __init__(self, responses: list[AIMessage | Exception]) -> None:
        self.responses = list(responses)
        self.calls: list[list[Any]] = []
        self.bound_tools: list[Any] = []

    def bind_tools(self, tools: list[Any]) -> "ScriptedChatModel":
        self.bound_tools = list(tools)
        return self

    def invoke(self, messages: Any) -> AIMessage:
        self.calls.append(list(messages))
        if not self.responses:
            raise AssertionError("model invoked more times than scripted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    """Manually advanced clock for TTL checks."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeExchanger:
    """Token exchanger that mints a new token per call for known refresh secrets."""

    def __init__(self, linked: set[str] | None = None) -> None:
        self.linked = set(linked or ())
        self.calls: list[tuple[str, str, tuple[str, ...]]] = []

    def exchange(self, refresh_token: str, connection: str, scopes: tuple[str, ...]) -> Credential:
        self.calls.append((refresh_token, connection, scopes))
        if refresh_token not in self.linked:
            raise MissingCredential(f"no {connection} credential on file")
        return Credential(
            access_token=f"token-{len(self.calls)}",
            connection=connection,
            scopes=scopes,
        )


def tool_call(name: str, args: dict[str, Any], call_id: str) -> dict[str, Any]:
    return {"name": name, "args": args, "id": call_id, "type": "tool_call"}


def make_response(status_code: int, payload: Any = None, *, text: str | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.reason = "OK" if status_code < 400 else "Error"
    if payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = (text or "").encode("utf-8")
    return response


class RecordingHttpSession:
    """`requests.Session` stand-in returning queued responses and recording calls."""

    def __init__(self, responses: list[requests.Response]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.responses.pop(0)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)


@pytest.fixture
def fake_exchanger() -> FakeExchanger:
    return FakeExchanger(linked={"refresh-alice"})
