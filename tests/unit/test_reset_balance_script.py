"""Tests for scripts/reset_balance.py (HTTP mocked)."""

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "reset_balance.py"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("reset_balance", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def response(status_code, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.json.return_value = body or {}
    resp.text = str(body)
    return resp


class TestResetBalance:

    def test_success(self, script, mocker):
        post = mocker.patch("requests.post", return_value=response(200, {"status": "ok", "balance": 10.0}))
        assert script.reset_balance("http://api.local/", force=True) == 0
        post.assert_called_once_with("http://api.local/api/reset-balance", timeout=10)

    def test_client_mode_server(self, script, mocker):
        mocker.patch("requests.post", return_value=response(404, {"error": "client-managed"}))
        assert script.reset_balance("http://api.local", force=True) == 1

    def test_unreachable(self, script, mocker):
        mocker.patch("requests.post", side_effect=requests.ConnectionError("refused"))
        assert script.reset_balance("http://api.local", force=True) == 1

    def test_declined_confirmation(self, script, mocker):
        mocker.patch("builtins.input", return_value="n")
        post = mocker.patch("requests.post")
        assert script.reset_balance("http://api.local", force=False) == 0
        post.assert_not_called()
