"""Pytest configuration and shared fixtures."""

import asyncio
import json
import re
from collections.abc import Callable
from typing import Any

import pytest

SAMPLE_SOURCE = """\
import os


def load(path):
    handle = open(path)
    data = handle.read()
    return eval(data)


def cleanup(items):
    for i in range(len(items)):
        if items[i] is None:
            del items[i]
"""


def make_openai_payload(
    content: str,
    prompt_tokens: int = 10,
    completion_tokens: int = 20,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    """Build a chat completion payload around `content`."""
    return {
        "choices": [
            {
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def issues_json(*issues: dict[str, Any]) -> str:
    """Serialize issue dicts as a response body."""
    return json.dumps({"issues": list(issues)})


class FakeService:
    """Scripted review service.

    `handler` receives each request body and returns a payload or raises.
    Calls are recorded in order and the peak number of concurrent sends is
    tracked.
    """

    def __init__(self, handler: Callable[[dict[str, Any]], Any], delay: float = 0.0) -> None:
        self.handler = handler
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, body: dict[str, Any]) -> Any:
        self.calls.append(body)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.handler(body)
        finally:
            self.in_flight -= 1


def request_paths(body: dict[str, Any]) -> list[str]:
    """File paths mentioned in an OpenAI request body's user prompt."""
    user = next(m["content"] for m in body["messages"] if m["role"] == "user")
    return re.findall(r"^### (.+)$", user, flags=re.MULTILINE)


@pytest.fixture
def sample_source() -> str:
    """A small Python file with a few obvious problems."""
    return SAMPLE_SOURCE


@pytest.fixture
def openai_payload() -> Callable[..., dict[str, Any]]:
    """Factory for chat completion payloads."""
    return make_openai_payload


@pytest.fixture
def fake_service() -> type[FakeService]:
    """The scripted service class."""
    return FakeService


@pytest.fixture
def repo_root(tmp_path):
    """A temporary repository root containing one source file."""
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    (root / "app.py").write_text(SAMPLE_SOURCE)
    return root


@pytest.fixture
def issues_body() -> Callable[..., str]:
    """Factory for `{"issues": [...]}` response text."""
    return issues_json


@pytest.fixture
def paths_in_request() -> Callable[[dict[str, Any]], list[str]]:
    """Extract the file paths from an OpenAI request body."""
    return request_paths
