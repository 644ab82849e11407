import json
import logging

from asyncinfer.logsetup import (
    DEBUG,
    DEFAULT,
    TRACE,
    VERBOSE,
    init_logging,
    level_for_verbosity,
)


def test_verbosity_zero_is_info():
    assert level_for_verbosity(0) == logging.INFO


def test_higher_verbosity_lowers_level():
    levels = [level_for_verbosity(v) for v in (DEFAULT, VERBOSE, DEBUG, TRACE)]
    assert levels == sorted(levels, reverse=True)
    assert len(set(levels)) == len(levels)


def test_level_never_reaches_notset():
    assert level_for_verbosity(1000) >= 1


def test_default_verbosity_filters_debug():
    logger = init_logging(DEFAULT, development=True)
    assert logger.isEnabledFor(level_for_verbosity(DEFAULT))
    assert not logger.isEnabledFor(level_for_verbosity(DEBUG))
    assert logger.isEnabledFor(logging.ERROR)


def test_reinit_replaces_handler():
    init_logging(DEFAULT)
    logger = init_logging(TRACE)
    assert len(logger.handlers) == 1
    assert logger.isEnabledFor(level_for_verbosity(TRACE))


def test_production_writes_json(capsys):
    logger = init_logging(DEFAULT, development=False)
    logger.getChild("worker").info("hello")
    line = capsys.readouterr().err.strip().splitlines()[-1]
    entry = json.loads(line)
    assert entry["msg"] == "hello"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "asyncinfer.worker"


def test_development_writes_text(capsys):
    logger = init_logging(DEFAULT, development=True)
    logger.warning("readable")
    err = capsys.readouterr().err
    assert "readable" in err
    assert "WARNING" in err