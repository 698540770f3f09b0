"""Shared pytest configuration and fixtures."""

import json
from typing import Any, Optional
from unittest.mock import Mock

import pytest
import requests

from padm_exporter.variables import VariableDefinition

BASE_URL = "https://padm.test"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(status: int = 200, body: Any = None, text: Optional[str] = None) -> requests.Response:
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.url = BASE_URL
    if body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = (text or "").encode("utf-8")
    return response


def token_response(access_token: str = "token-1", **extra) -> requests.Response:
    return make_response(200, {"access_token": access_token, "refresh_token": "r", "msg": "ok", **extra})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    """Mock HTTP session; tests set .post / .get behaviour."""
    return Mock(spec=requests.Session)


@pytest.fixture
def definitions():
    return [
        VariableDefinition(name="temp1"),
        VariableDefinition(name="temp2"),
    ]
