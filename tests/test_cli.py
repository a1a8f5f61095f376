"""Merchant console against a stubbed HTTP layer."""
import pytest

from clients.cli import oracle_cli


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


@pytest.fixture
def calls(monkeypatch):
    seen = []
    replies = {}

    def fake_request(method, url, timeout=None, **kw):
        seen.append((method, url, kw))
        return replies.get((method, url.split("://", 1)[1].split("/", 1)[1]), FakeResponse(404, {"detail": "nope"}))

    monkeypatch.setattr(oracle_cli.requests, "request", fake_request)
    monkeypatch.setattr(oracle_cli, "API_URL", "http://oracle.test")
    return seen, replies


class TestOracleCli:
    def test_verify_subcommand(self, calls, capsys):
        seen, replies = calls
        replies[("POST", "payments/pay_1/verify")] = FakeResponse(200, {
            "status": "ok",
            "verified": True,
            "payment": {"id": "pay_1", "status": "verified", "amount": 10, "currency": "USD",
                        "solAmount": 0.1, "token": "SOL", "transactionSignature": "abcdefghijklmnop"},
        })
        assert oracle_cli.main(["--api", "http://oracle.test", "verify", "pay_1", "sig"]) == 0
        assert seen[0][2]["json"] == {"signature": "sig"}
        assert "Payment verified" in capsys.readouterr().out

    def test_api_error_exit_code(self, calls, capsys):
        assert oracle_cli.main(["--api", "http://oracle.test", "reconcile"]) == 1
        assert "HTTP 404: nope" in capsys.readouterr().out

    def test_short(self):
        assert oracle_cli._short("abcdefghijklmnop") == "abcd…lmnop"
        assert oracle_cli._short(None) == "-"
