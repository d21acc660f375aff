"""
coder-openapi :: Test CLI and Logging
"""

import json
import logging
import os
import sys

import pytest
import yaml

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coder_openapi import cli
from coder_openapi.core.logging import ROOT_LOGGER, HumanFormatter, JSONFormatter, RequestLogger

from conftest import WEIGHT_FILES, app_config_dict, install_local


@pytest.fixture(autouse=True)
def restore_logging():
    logger = logging.getLogger(ROOT_LOGGER)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def config_file(tmp_path, cache_dir):
    path = tmp_path / "app.yml"
    path.write_text(yaml.safe_dump(app_config_dict(cache_dir)))
    return path


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["coder-openapi", *argv])
    cli.main()


class TestParser:

    def test_serve_options(self):
        args = cli.build_parser().parse_args(
            ["--log-level", "DEBUG", "serve", "--port", "9000", "--api-key", "k", "--no-warm-start"])
        assert args.command == "serve"
        assert args.port == 9000
        assert args.api_key == "k"
        assert args.no_warm_start
        assert args.log_level == "DEBUG"
        assert args.func is cli.cmd_serve

    def test_download_needs_model(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["download"])

    def test_no_command(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch)
        assert exc.value.code == 1


class TestCommands:

    def test_check_missing(self, monkeypatch, capsys, config_file):
        run_cli(monkeypatch, "--config", str(config_file), "check", "deepseek-coder")
        out = capsys.readouterr().out
        assert "test-org/deepseek-coder-tiny" in out
        for name in WEIGHT_FILES["deepseek-coder"]:
            assert name in out
        assert "OK (" not in out
        assert out.count("MISSING") >= len(WEIGHT_FILES["deepseek-coder"])

    def test_check_present(self, monkeypatch, capsys, config_file, cache_dir):
        install_local(cache_dir, "yi-coder")
        run_cli(monkeypatch, "--config", str(config_file), "check", "yi-coder")
        out = capsys.readouterr().out
        assert "MISSING" not in out
        assert "OK (" in out

    def test_check_unknown_model(self, monkeypatch, capsys, config_file):
        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch, "--config", str(config_file), "check", "llama-coder")
        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith("error:")

    def test_list(self, monkeypatch, capsys, config_file, cache_dir):
        install_local(cache_dir, "yi-coder")
        run_cli(monkeypatch, "--config", str(config_file), "list")
        lines = capsys.readouterr().out.splitlines()
        yi = next(line for line in lines if line.startswith("yi-coder"))
        deepseek = next(line for line in lines if line.startswith("deepseek-coder"))
        assert yi.split()[2:4] == ["True", "True"]
        assert deepseek.split()[2:4] == ["False", "False"]

    def test_missing_config_file(self, monkeypatch, capsys, tmp_path):
        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch, "--config", str(tmp_path / "absent.yml"), "list")
        assert exc.value.code == 1


class TestLogging:

    def _record(self, **extra):
        record = logging.LogRecord(ROOT_LOGGER, logging.INFO, __file__, 1, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        line = JSONFormatter().format(self._record(request_id="chatcmpl-1", model="yi-coder",
                                                   extra_data={"completion_tokens": 4}))
        entry = json.loads(line)
        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["request_id"] == "chatcmpl-1"
        assert entry["model"] == "yi-coder"
        assert entry["completion_tokens"] == 4

    def test_human_formatter_tags(self):
        line = HumanFormatter().format(self._record(request_id="r1", model="deepseek-coder"))
        assert "hello world" in line
        assert "model=deepseek-coder" in line
        assert "req=r1" in line

    def test_request_logger(self):
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = logging.getLogger(f"{ROOT_LOGGER}.test_request")
        logger.setLevel(logging.DEBUG)
        logger.addHandler(Capture())
        log = RequestLogger("chatcmpl-x", "yi-coder", logger=logger)
        log.info("done", completion_tokens=4)

        assert records[0].request_id == "chatcmpl-x"
        assert records[0].model == "yi-coder"
        assert records[0].extra_data == {"completion_tokens": 4}
        assert log.elapsed_ms() >= 0

        try:
            raise ValueError("bad shard")
        except ValueError:
            log.error("load failed", exc_info=True, shard=2)
        assert records[1].exc_info[0] is ValueError
        assert records[1].extra_data == {"shard": 2}
        assert records[1].request_id == "chatcmpl-x"
