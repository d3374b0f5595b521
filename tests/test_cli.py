import httpx
import pytest

from chat_overlay import cli


def parse(*argv: str):
    return cli._build_parser().parse_args(list(argv))


def test_notify_payload_collects_message_and_amount() -> None:
    args = parse("notify", "--platform", "youtube", "--amount", "5", "--currency", "USD", "gift", "Eve", "great", "stream")
    assert cli._build_notify_payload(args) == {
        "platform": "youtube",
        "type": "gift",
        "username": "Eve",
        "message": "great stream",
        "amount": 5.0,
        "currency": "USD",
    }


def test_notify_payload_validation() -> None:
    with pytest.raises(ValueError):
        cli._build_notify_payload(parse("notify", "gift", "Eve"))
    with pytest.raises(ValueError):
        cli._build_notify_payload(parse("notify", "--amount", "5", "gift", "Eve"))
    with pytest.raises(ValueError):
        cli._build_notify_payload(parse("notify", "chat", "Eve"))
    with pytest.raises(ValueError):
        cli._build_notify_payload(parse("notify", "--count", "0", "follow", "Eve"))

    assert cli._build_notify_payload(parse("notify", "follow", "Eve")) == {
        "platform": "twitch",
        "type": "follow",
        "username": "Eve",
    }


def test_base_url_resolution() -> None:
    assert cli._resolve_base_url("localhost", 9000) == "http://localhost:9000"
    assert cli._resolve_base_url("https://overlay.example/", 9000) == "https://overlay.example"


def test_skip_posts_to_the_queue(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    posted: list[str] = []

    def fake_post(url: str, json, timeout: float) -> httpx.Response:
        posted.append(url)
        return httpx.Response(202, json={"status": "skip_requested"}, request=httpx.Request("POST", url))

    monkeypatch.setattr(cli.httpx, "post", fake_post)
    assert cli.main(["--host", "127.0.0.1", "--port", "9000", "skip"]) == 0
    assert posted == ["http://127.0.0.1:9000/queue/skip"]
    assert "Skip requested." in capsys.readouterr().out


def test_request_errors_return_nonzero(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def refuse(url: str, timeout: float, **kwargs) -> httpx.Response:
        raise httpx.ConnectError("refused", request=httpx.Request("GET", url))

    monkeypatch.setattr(cli.httpx, "get", refuse)
    assert cli.main(["queue"]) == 1
    assert "Request failed" in capsys.readouterr().err


def test_queue_is_printed(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    body = {
        "current": {"platform": "tiktok", "type": "gift", "text": "Bob sent 7 Rose"},
        "queue_size": 1,
        "shown": 3,
        "dropped": 0,
        "preview": [{"platform": "twitch", "type": "follow", "priority": 2, "text": "Ann followed"}],
    }

    def fake_get(url: str, timeout: float) -> httpx.Response:
        return httpx.Response(200, json=body, request=httpx.Request("GET", url))

    monkeypatch.setattr(cli.httpx, "get", fake_get)
    assert cli.main(["queue"]) == 0
    out = capsys.readouterr().out
    assert "[tiktok] gift: Bob sent 7 Rose" in out
    assert "1. [twitch] follow (p2): Ann followed" in out
