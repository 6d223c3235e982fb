# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
import json
import logging
from collections.abc import Generator

import pytest
import structlog

from kop.harness.logging_config import (
    LOG_LEVEL_ENV_VAR,
    configure_logging,
    level_from_env,
)


@pytest.fixture
def restore_logging() -> Generator[None, None, None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestLevelFromEnv:
    def test_default_when_unset(self, monkeypatch) -> None:
        monkeypatch.delenv(LOG_LEVEL_ENV_VAR, raising=False)
        assert level_from_env(logging.WARNING) == logging.WARNING

    def test_name_is_case_insensitive(self, monkeypatch) -> None:
        monkeypatch.setenv(LOG_LEVEL_ENV_VAR, 'debug')
        assert level_from_env() == logging.DEBUG

    def test_unknown_name_raises(self, monkeypatch) -> None:
        monkeypatch.setenv(LOG_LEVEL_ENV_VAR, 'chatty')
        with pytest.raises(ValueError, match='chatty'):
            level_from_env()


@pytest.mark.usefixtures('restore_logging')
class TestConfigureLogging:
    def test_json_file_receives_structlog_and_stdlib_records(self, tmp_path) -> None:
        path = tmp_path / 'harness.jsonl'
        configure_logging(level=logging.DEBUG, json_file=str(path), disable_stdout=True)
        structlog.get_logger('kop.test').info('broker_started', port=9092)
        logging.getLogger('kop.test.store').warning('Ledger %d deleted', 3)
        for handler in logging.getLogger().handlers:
            handler.flush()

        first, second = (json.loads(line) for line in path.read_text().splitlines())
        assert first['event'] == 'broker_started'
        assert first['port'] == 9092
        assert first['level'] == 'info'
        assert second['event'] == 'Ledger 3 deleted'
        assert second['level'] == 'warning'

    def test_level_filters_records(self, tmp_path) -> None:
        path = tmp_path / 'harness.jsonl'
        configure_logging(
            level=logging.WARNING, json_file=str(path), disable_stdout=True
        )
        logging.getLogger('kop.test').info('dropped')
        logging.getLogger('kop.test').error('kept')
        for handler in logging.getLogger().handlers:
            handler.flush()
        [record] = [json.loads(line) for line in path.read_text().splitlines()]
        assert record['event'] == 'kept'

    def test_stdout_handler_by_default(self) -> None:
        configure_logging()
        [handler] = logging.getLogger().handlers
        assert isinstance(handler, logging.StreamHandler)
        assert logging.getLogger().level == logging.INFO
