import logging

from hbavs.logging import LoggingOptions, configure_logging, load_logging_options_from_env


def test_logging_redacts_secrets_in_message(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", redact=True))
    logger = logging.getLogger("hbavs.test")
    logger.info("api_key=SUPERSECRET")

    captured = capfd.readouterr()
    assert "SUPERSECRET" not in captured.err
    assert "[REDACTED]" in captured.err


def test_logging_redacts_telegram_bot_url(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", redact=True))
    logger = logging.getLogger("hbavs.liveness.alerts")
    logger.error("POST https://api.telegram.org/bot123456:ABC-def_ghi/sendMessage failed")

    captured = capfd.readouterr()
    assert "ABC-def_ghi" not in captured.err
    assert "/bot[REDACTED]/sendMessage" in captured.err


def test_logging_redacts_secrets_in_context(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    logger = logging.getLogger("hbavs.test")
    logger.info("hello", extra={"context": {"bot_token": "SUPERSECRET"}})

    captured = capfd.readouterr()
    assert "SUPERSECRET" not in captured.err
    assert "[REDACTED]" in captured.err


def test_redaction_can_be_disabled(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", redact=False))
    logging.getLogger("hbavs.test").info("token=visible")

    assert "token=visible" in capfd.readouterr().err


def test_level_filters_messages(capfd) -> None:
    configure_logging(LoggingOptions(level="WARNING", format="text"))
    logger = logging.getLogger("hbavs.test")
    logger.info("quiet")
    logger.warning("loud")

    err = capfd.readouterr().err
    assert "quiet" not in err
    assert "loud" in err


def test_options_from_env(monkeypatch) -> None:
    monkeypatch.setenv("HBAVS_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("HBAVS_LOG_FORMAT", "json")
    monkeypatch.setenv("HBAVS_LOG_REDACT", "0")
    options = load_logging_options_from_env()
    assert options.level == "DEBUG"
    assert options.format == "json"
    assert options.redact is False
