import json
import logging

import pytest

from boostrelay.logsetup import JSONFormatter, log_setup


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger = logging.getLogger("boostrelay")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def _lines(capsys):
    return [line for line in capsys.readouterr().out.splitlines() if line]


def test_json_output_has_fields(capsys):
    logger = log_setup(True, "info")
    logger.info("hello", extra={"slot": 7})
    entry = json.loads(_lines(capsys)[-1])
    assert entry["msg"] == "hello"
    assert entry["level"] == "info"
    assert entry["slot"] == 7
    assert "time" in entry


def test_level_filters_messages(capsys):
    logger = log_setup(True, "warn")
    logger.info("hidden")
    logger.warning("shown")
    lines = _lines(capsys)
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["msg"] == "shown"
    assert entry["level"] == "warning"


def test_level_is_case_insensitive():
    assert log_setup(False, "DEBUG").level == logging.DEBUG


def test_invalid_level_raises():
    with pytest.raises(ValueError, match="Invalid loglevel"):
        log_setup(False, "loud")


def test_text_output(capsys):
    logger = log_setup(False, "info")
    logger.info("two words", extra={"slot": 3})
    line = _lines(capsys)[-1]
    assert 'msg="two words"' in line
    assert "level=info" in line
    assert "slot=3" in line


def test_repeated_setup_keeps_one_handler():
    log_setup(False, "info")
    logger = log_setup(True, "info")
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, JSONFormatter)


def test_json_formatter_direct():
    record = logging.LogRecord("x", logging.ERROR, __file__, 1, "bad %s", ("thing",), None)
    entry = json.loads(JSONFormatter().format(record))
    assert entry["msg"] == "bad thing"
    assert entry["level"] == "error"