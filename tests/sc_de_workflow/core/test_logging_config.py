import json
import logging

from sc_de_workflow.logging_config import configure_logging


def _restore(handlers, level):
    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_logging_includes_extra_fields(capsys, monkeypatch):
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    monkeypatch.delenv("SC_DE_LOG_FORMAT", raising=False)
    try:
        configure_logging()
        logging.getLogger("sc_de_workflow.test").info("hello", extra={"dataset": "416B"})

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["message"] == "hello"
        assert record["dataset"] == "416B"
    finally:
        _restore(*saved)


def test_plain_logging_from_env(capsys, monkeypatch):
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    monkeypatch.setenv("SC_DE_LOG_FORMAT", "plain")
    try:
        configure_logging(level=logging.WARNING)
        logging.getLogger("sc_de_workflow.test").warning("careful")

        err = capsys.readouterr().err
        assert "[WARNING] sc_de_workflow.test: careful" in err
        assert len(logging.getLogger().handlers) == 1
    finally:
        _restore(*saved)
