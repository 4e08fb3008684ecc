"""
End-to-end mirror scenarios against a real watched directory
"""
import os
import time

import pytest

from conftest import FakeStore
from s3_mirror.dispatcher import STATUS_DONE, STATUS_RETRY
from s3_mirror.errors import SetupError, TransientStoreError
from s3_mirror.events import ChangeKind
from s3_mirror.pipeline import MirrorPipeline

WINDOW = 0.4


@pytest.fixture
def changes():
    return []


@pytest.fixture
def outcomes():
    return []


def _pipeline(root, store, changes, outcomes, **kwargs):
    kwargs.setdefault("retry_delay", 0.01)
    kwargs.setdefault("quiescence", WINDOW)
    return MirrorPipeline(
        root=str(root),
        store=store,
        bucket="bucket",
        prefix="prefix",
        on_change=changes.append,
        on_outcome=outcomes.append,
        **kwargs,
    )


def test_burst_of_writes_uploads_final_content_once(tmp_path, fake_store, changes, outcomes, wait_for):
    pipeline = _pipeline(tmp_path, fake_store, changes, outcomes)
    pipeline.start()
    try:
        target = tmp_path / "a.txt"
        target.write_bytes(b"first")
        target.write_bytes(b"second")
        target.write_bytes(b"final")
        assert wait_for(lambda: len(fake_store.calls) >= 1)
        time.sleep(WINDOW * 2)
    finally:
        pipeline.stop(timeout=10)

    assert len(fake_store.calls) == 1
    call = fake_store.calls[0]
    assert call.bucket == "bucket"
    assert call.key == "prefix" + os.path.join(str(tmp_path), "a.txt")
    assert call.data == b"final"
    assert [r.status for r in outcomes] == [STATUS_DONE]


def test_rename_of_unchanged_file_is_not_uploaded(tmp_path, fake_store, changes, outcomes, wait_for):
    pipeline = _pipeline(tmp_path, fake_store, changes, outcomes)
    pipeline.start()
    try:
        src = tmp_path / "a.txt"
        src.write_bytes(b"content")
        assert wait_for(lambda: len(outcomes) == 1)
        changes.clear()

        os.rename(src, tmp_path / "b.txt")
        assert wait_for(lambda: len(changes) >= 1)
        time.sleep(WINDOW * 2)
    finally:
        pipeline.stop(timeout=10)

    assert len(fake_store.calls) == 1
    assert [(e.kind, e.src_path, e.path) for e in changes] == [
        (ChangeKind.MOVED, str(src), os.path.join(str(tmp_path), "b.txt"))
    ]


def test_transient_failures_are_retried_until_success(tmp_path, changes, outcomes, wait_for):
    store = FakeStore(failures=[
        TransientStoreError("throttled", code="SlowDown"),
        TransientStoreError("throttled", code="SlowDown"),
    ])
    pipeline = _pipeline(tmp_path, store, changes, outcomes, retry_count=5)
    pipeline.start()
    try:
        (tmp_path / "a.txt").write_bytes(b"data")
        assert wait_for(lambda: any(r.status == STATUS_DONE for r in outcomes))
    finally:
        pipeline.stop(timeout=10)

    assert len(store.calls) == 3
    assert [r.status for r in outcomes] == [STATUS_RETRY, STATUS_RETRY, STATUS_DONE]


def test_stop_drains_pending_changes(tmp_path, fake_store, changes, outcomes, wait_for):
    pipeline = _pipeline(tmp_path, fake_store, changes, outcomes, quiescence=1.0)
    pipeline.start()
    (tmp_path / "late.txt").write_bytes(b"late")
    assert wait_for(lambda: pipeline.aggregator.pending_count >= 1)
    # Quiescence has not elapsed yet; stop must still deliver it
    pipeline.stop(timeout=10)
    assert [c.data for c in fake_store.calls] == [b"late"]


def test_missing_root_fails_setup(tmp_path, fake_store, changes, outcomes):
    pipeline = _pipeline(tmp_path / "missing", fake_store, changes, outcomes)
    with pytest.raises(SetupError):
        pipeline.start()
    pipeline.aggregator.join(5)
    pipeline.dispatcher.join(5)
    assert not pipeline.aggregator.is_running
    assert not pipeline.dispatcher.is_running


def test_status_summary(tmp_path, fake_store, changes, outcomes):
    pipeline = _pipeline(tmp_path, fake_store, changes, outcomes)
    assert pipeline.get_status_summary() == "0 settling, 0 queued, 0 uploading, 0 uploaded, 0 failed"
