"""Entry point tests: command-line overrides are applied to config before the server starts."""

from unittest.mock import MagicMock

import pytest

from pairline import config, main


@pytest.fixture(autouse=True)
def restore_config(monkeypatch):
    for name in ("HOST", "PORT", "DEBUG", "ENABLE_SSL", "ENABLE_MODERATION"):
        monkeypatch.setattr(config, name, getattr(config, name))


def test_defaults_come_from_config():
    args = main.parse_args([])
    assert args.host == config.HOST
    assert args.port == config.PORT
    assert args.ssl == config.ENABLE_SSL


def test_overrides_applied(monkeypatch):
    run = MagicMock()
    monkeypatch.setattr(main.asyncio, "run", run)
    monkeypatch.setattr(main.server, "start_server", MagicMock(return_value="coro"))

    main.main(["--host", "127.0.0.1", "--port", "9000", "--debug", "--no-ssl", "--moderation"])

    assert config.HOST == "127.0.0.1"
    assert config.PORT == 9000
    assert config.DEBUG is True
    assert config.ENABLE_SSL is False
    assert config.ENABLE_MODERATION is True
    main.server.start_server.assert_called_once_with("127.0.0.1", 9000)
    run.assert_called_once_with("coro")


def test_keyboard_interrupt_is_handled(monkeypatch):
    monkeypatch.setattr(main.asyncio, "run", MagicMock(side_effect=KeyboardInterrupt))
    monkeypatch.setattr(main.server, "start_server", MagicMock())
    main.main(["--no-ssl"])
