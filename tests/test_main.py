"""
Test the command-line surface and foreground runner setup
"""
import logging

import pytest

from conftest import FakeStore
from s3_mirror import __main__ as cli
from s3_mirror import service
from s3_mirror.config import Config


@pytest.fixture
def isolated_service(tmp_path, monkeypatch):
    """Keep config and log files inside tmp_path and undo logging setup."""
    monkeypatch.setattr(service, "Config", lambda: Config(tmp_path / "config.json"))
    monkeypatch.setattr(service, "get_log_path", lambda: tmp_path / "s3_mirror.log")
    monkeypatch.setattr(service, "build_s3_client", lambda **kwargs: object())
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield tmp_path
    for h in list(root.handlers):
        if h not in before:
            root.removeHandler(h)
            h.close()
    root.setLevel(level)


@pytest.mark.parametrize("argv", [[], ["bucket"], ["bucket", "/data"], ["a", "b", "c", "d"]])
def test_wrong_argument_count_exits_1(argv, capsys):
    with pytest.raises(SystemExit) as info:
        cli.main(argv)
    assert info.value.code == 1
    assert "Usage:" in capsys.readouterr().err


def test_missing_directory_exits_1(isolated_service):
    with pytest.raises(SystemExit) as info:
        cli.main(["bucket", str(isolated_service / "nope"), "prefix"])
    assert info.value.code == 1


def test_run_foreground_reports_setup_failure(isolated_service):
    cfg = Config(isolated_service / "other.json")
    code = service.run_foreground(
        "bucket", str(isolated_service / "nope"), "prefix", cfg=cfg, store=FakeStore()
    )
    assert code == 1
    assert "Cannot start" in (isolated_service / "s3_mirror.log").read_text()


def test_build_pipeline_uses_config(tmp_path):
    cfg = Config(tmp_path / "config.json")
    cfg.quiescence_seconds = 3
    cfg.max_concurrent_uploads = 7
    cfg.retry_count = 2
    pipeline = service.build_pipeline("bucket", str(tmp_path), "pre/", cfg, store=FakeStore())
    assert pipeline.aggregator.window == 3.0
    assert pipeline.identity_cache.grace == 3.0
    assert pipeline.dispatcher.max_concurrent == 7
    assert pipeline.dispatcher.retry_count == 2
    assert pipeline.dispatcher.bucket == "bucket"
    assert pipeline.dispatcher.prefix == "pre/"
