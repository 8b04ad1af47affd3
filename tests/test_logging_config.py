# tests/test_logging_config.py
import logging

import pytest

from lpa_engine._logging_config import setup_logging


def test_setup_logging_writes_package_records_to_file(tmp_path):
    log_file = tmp_path / "lpa.log"
    logger = setup_logging(level=logging.DEBUG, log_file=str(log_file))
    try:
        # repeated calls replace the handlers instead of stacking them
        logger = setup_logging(level=logging.DEBUG, log_file=str(log_file))
        assert logger.name == "lpa_engine"
        assert len(logger.handlers) == 2

        logging.getLogger("lpa_engine._comparison").info("cell finished")
        for handler in logger.handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "INFO    [lpa_engine._comparison] cell finished" in text
    finally:
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)


def test_comparison_logs_advisory_choice(pisa_like, caplog):
    from lpa_engine.api import EstimationOptions, compare

    with caplog.at_level(logging.INFO, logger="lpa_engine"):
        compare(pisa_like, [1], [1, 2], options=EstimationOptions(n_starts=2))
    assert any("advisory" in record.getMessage() for record in caplog.records)


def test_setup_logging_accepts_level_names():
    logger = setup_logging(level="debug")
    try:
        assert logger.level == logging.DEBUG
        assert all(handler.level == logging.DEBUG for handler in logger.handlers)
    finally:
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)

    with pytest.raises(ValueError, match="verbose"):
        setup_logging(level="verbose")
