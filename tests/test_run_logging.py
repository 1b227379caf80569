import logging
import time

import pytest

from run_logging import LOGGER_NAME, log_memory_usage, log_section, script_start_time, setup_logging


@pytest.mark.unit
def test_script_start_time_is_in_the_past():
    assert 0 < script_start_time() <= time.time()


@pytest.mark.unit
def test_setup_logging_writes_debug_file_without_duplicate_handlers(tmp_path):
    setup_logging(out_dir=tmp_path, run_label="first")
    logger = setup_logging(out_dir=tmp_path, run_label="second")

    assert logger.name == LOGGER_NAME
    assert len(logger.handlers) == 2
    assert not logger.propagate

    logger.debug("debug detail")
    log_section(logger=logger, title="Preflight")
    log_memory_usage(logger, prefix="START")
    for handler in logger.handlers:
        handler.flush()

    text = (tmp_path / "logs" / "run_debug.log").read_text(encoding="utf-8")
    assert "Run label: second" in text
    assert "debug detail" in text
    assert "== Preflight ==" in text
    assert "START | RAM:" in text

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    assert logging.getLogger(LOGGER_NAME).handlers == []
