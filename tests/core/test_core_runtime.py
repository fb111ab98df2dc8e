from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from relaycord.core.config import ConfigError, find_config_path, load_config_data
from relaycord.core.exceptions import PermanentError, TransientError
from relaycord.core.logging_utils import log_event, setup_logger
from relaycord.core.retry import transient_retrying


def test_load_config_data_reads_mapping(tmp_path: Path) -> None:
    path = tmp_path / "relaycord.yml"
    path.write_text("branch: ptb\nhttp:\n  max_retries: 1\n", encoding="utf-8")

    assert load_config_data(path) == {"branch": "ptb", "http": {"max_retries": 1}}


def test_load_config_data_empty_file_is_empty_mapping(tmp_path: Path) -> None:
    path = tmp_path / "relaycord.yml"
    path.write_text("", encoding="utf-8")

    assert load_config_data(path) == {}


@pytest.mark.parametrize(
    ("content", "message"),
    [("branch: [unclosed", "Invalid YAML"), ("- a\n- b\n", "must be a mapping")],
)
def test_load_config_data_rejects_bad_files(
    tmp_path: Path, content: str, message: str
) -> None:
    path = tmp_path / "relaycord.yml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config_data(path)


def test_load_config_data_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config_data(tmp_path / "missing.yml")


def test_find_config_path_walks_up(tmp_path: Path) -> None:
    config = tmp_path / "relaycord.yaml"
    config.write_text("{}", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_config_path(nested) == config.resolve()


def test_log_event_emits_json_and_redacts(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.core.log_event")

    with caplog.at_level(logging.INFO, logger=logger.name):
        log_event(
            logger,
            logging.INFO,
            "gateway.connected",
            token="secret",
            attempt=2,
            codes={4004},
            exc=ValueError("bad frame"),
        )
        log_event(logger, logging.DEBUG, "gateway.hidden")

    assert len(caplog.records) == 1
    payload = json.loads(caplog.records[0].getMessage())
    assert payload == {
        "event": "gateway.connected",
        "token": "<redacted>",
        "attempt": 2,
        "codes": [4004],
        "exc": "ValueError: bad frame",
    }


def test_setup_logger_writes_to_file(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "relaycord.log"
    logger = setup_logger("test.core.file_logger", logging.DEBUG, path)
    try:
        log_event(logger, logging.DEBUG, "probe", value=1)
        for handler in logger.handlers:
            handler.flush()
        assert '"event": "probe"' in path.read_text(encoding="utf-8")
        assert not logger.propagate
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


@pytest.mark.anyio
async def test_transient_retrying_backs_off_exponentially() -> None:
    sleeps: list[float] = []
    attempts = 0

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise TransientError("blip")
        return "ok"

    result = None
    async for attempt in transient_retrying(
        max_retries=3, base_wait=1.0, jitter=0.0, sleep=fake_sleep
    ):
        with attempt:
            result = await flaky()

    assert result == "ok"
    assert sleeps == [1.0, 2.0]


@pytest.mark.anyio
async def test_transient_retrying_reraises_last_error() -> None:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    with pytest.raises(TransientError, match="still down"):
        async for attempt in transient_retrying(
            max_retries=1, jitter=0.0, sleep=fake_sleep
        ):
            with attempt:
                raise TransientError("still down")

    assert len(sleeps) == 1


@pytest.mark.anyio
async def test_transient_retrying_does_not_retry_permanent_errors() -> None:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    with pytest.raises(PermanentError):
        async for attempt in transient_retrying(sleep=fake_sleep):
            with attempt:
                raise PermanentError("bad request")

    assert sleeps == []
