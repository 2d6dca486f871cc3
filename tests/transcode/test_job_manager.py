"""Tests for the bounded transcode job manager."""

import os
import threading

import pytest

from ad_db import AdDatabase
from modules.errors import EncodeFailure, EncoderUnavailable
from modules.transcode.config import LadderRung, TranscodeConfig
from modules.transcode.manager import TranscodeManager
from modules.transcode.orchestrator import TranscodeOrchestrator
from modules.transcode.task import JobStatus


LADDER = (
    LadderRung("426x240", "400k", 240),
    LadderRung("854x480", "800k", 480),
    LadderRung("1280x720", "1500k", 720),
)


class FakeEncoder:
    """Writes placeholder bytes; can fail chosen tiers or block until released."""

    def __init__(self, fail_qualities=None, error=None, gate=None):
        self.fail_qualities = fail_qualities or set()
        self.error = error
        self.gate = gate
        self.started = threading.Event()

    def run(self, input_path, options):
        self.started.set()
        if self.error is not None:
            raise self.error
        if self.gate is not None:
            while not self.gate.wait(0.05):
                if options.cancel_event is not None and options.cancel_event.is_set():
                    raise EncodeFailure(options.quality, "cancelled")
        if options.quality in self.fail_qualities:
            raise EncodeFailure(options.quality, "FFmpeg exited with code 1")
        with open(options.output_path, "wb") as f:
            f.write(b"\x47" * 188)
        return options.output_path


class FakeProbe:

    def __init__(self, duration=0.0):
        self.duration = duration

    def get_duration(self, source_path, timeout=30):
        if self.duration > 0:
            return True, self.duration, None
        return False, 0.0, "ffprobe not found"


@pytest.fixture
def config(tmp_path):
    return TranscodeConfig(
        static_root=str(tmp_path / "public"),
        upload_dir=str(tmp_path / "private"),
        ladder=LADDER,
        max_concurrent_jobs=1,
    )


@pytest.fixture
def db(tmp_path):
    database = AdDatabase(db_file=str(tmp_path / "ads.db"))
    yield database
    database.close()


def make_manager(config, db, encoder, probe=None):
    orchestrator = TranscodeOrchestrator(encoder, config)
    return TranscodeManager(config, db, orchestrator, ffprobe_runner=probe or FakeProbe(30.0))


def make_source(config, ad_id):
    source_dir = config.get_source_dir(ad_id)
    os.makedirs(source_dir, exist_ok=True)
    path = os.path.join(source_dir, "source.mp4")
    with open(path, "wb") as f:
        f.write(b"\x00\x00\x00\x18ftypmp42")
    return path


def submit_ad(manager, config, ad_id):
    source = make_source(config, ad_id)
    manager.register_ad("promo", source, ad_id=ad_id)
    return manager.submit(ad_id, source)


class TestRegisterAd:

    def test_probed_duration_is_used(self, config, db) -> None:
        manager = make_manager(config, db, FakeEncoder(), FakeProbe(42.5))
        try:
            ad = manager.register_ad("promo", make_source(config, "ad1"), known_duration=10, ad_id="ad1")
            assert ad["duration"] == 42.5
        finally:
            manager.stop()

    def test_known_duration_is_fallback(self, config, db) -> None:
        manager = make_manager(config, db, FakeEncoder(), FakeProbe(0))
        try:
            ad = manager.register_ad("promo", make_source(config, "ad1"), known_duration=12, ad_id="ad1")
            assert ad["duration"] == 12.0
        finally:
            manager.stop()

    def test_unknown_duration_is_rejected(self, config, db) -> None:
        manager = make_manager(config, db, FakeEncoder(), FakeProbe(0))
        try:
            with pytest.raises(ValueError):
                manager.register_ad("promo", make_source(config, "ad1"), ad_id="ad1")
            assert db.get_ad("ad1") is None
        finally:
            manager.stop()


class TestJobLifecycle:

    def run_job(self, config, db, encoder):
        manager = make_manager(config, db, encoder)
        source = make_source(config, "ad1")
        manager.register_ad("promo", source, ad_id="ad1")
        job = manager.submit("ad1", source)
        assert job.status in (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETED,
                              JobStatus.PARTIAL, JobStatus.FAILED)
        manager.wait(job.job_id, timeout=10)
        manager.stop()
        return manager, job, source

    def test_all_tiers_succeed(self, config, db) -> None:
        manager, job, source = self.run_job(config, db, FakeEncoder())
        assert job.status == JobStatus.COMPLETED
        assert [r.quality for r in job.renditions] == [240, 480, 720]
        assert [r.quality for r in manager.store.find_many("ad1")] == [240, 480, 720]
        assert not os.path.exists(source)

    def test_some_tiers_fail(self, config, db) -> None:
        manager, job, _ = self.run_job(config, db, FakeEncoder(fail_qualities={480}))
        assert job.status == JobStatus.PARTIAL
        assert [r.quality for r in manager.store.find_many("ad1")] == [240, 720]
        tiers = job.to_dict()["tiers"]
        assert tiers[1] == {"quality": 480, "ok": False, "error": "FFmpeg exited with code 1"}

    def test_all_tiers_fail(self, config, db) -> None:
        _, job, _ = self.run_job(config, db, FakeEncoder(fail_qualities={240, 480, 720}))
        assert job.status == JobStatus.FAILED
        assert job.renditions == []

    def test_encoder_unavailable_fails_job(self, config, db) -> None:
        _, job, _ = self.run_job(config, db, FakeEncoder(error=EncoderUnavailable("Failed to start FFmpeg")))
        assert job.status == JobStatus.FAILED
        assert "FFmpeg" in job.error

    def test_keep_source(self, config, db) -> None:
        config.keep_source = True
        _, _, source = self.run_job(config, db, FakeEncoder())
        assert os.path.exists(source)

    def test_job_dict_has_no_paths(self, config, db) -> None:
        _, job, _ = self.run_job(config, db, FakeEncoder())
        data = job.to_dict()
        assert data["qualities"] == [240, 480, 720]
        assert config.static_root not in str(data)
        assert config.upload_dir not in str(data)


class TestCancellationAndDeletion:

    def test_cancel_queued_job(self, config, db) -> None:
        release = threading.Event()
        encoder = FakeEncoder(gate=release)
        manager = make_manager(config, db, encoder)
        try:
            first = submit_ad(manager, config, "ad1")
            assert encoder.started.wait(5)
            second = submit_ad(manager, config, "ad2")
            assert second.status == JobStatus.QUEUED

            assert manager.cancel(second.job_id)
            assert second.status == JobStatus.CANCELLED

            release.set()
            manager.wait(first.job_id, timeout=10)
            assert first.status == JobStatus.COMPLETED
            assert manager.wait(second.job_id, timeout=10).status == JobStatus.CANCELLED
        finally:
            release.set()
            manager.stop()

    def test_cancel_running_job(self, config, db) -> None:
        release = threading.Event()
        encoder = FakeEncoder(gate=release)
        manager = make_manager(config, db, encoder)
        try:
            job = submit_ad(manager, config, "ad1")
            assert encoder.started.wait(5)
            assert manager.cancel(job.job_id)
            manager.wait(job.job_id, timeout=10)
            assert job.status == JobStatus.CANCELLED
        finally:
            release.set()
            manager.stop()

    def test_cancel_unknown_job(self, config, db) -> None:
        manager = make_manager(config, db, FakeEncoder())
        try:
            assert manager.cancel("job_missing") is False
            assert manager.get_job("job_missing") is None
        finally:
            manager.stop()

    def test_delete_ad_removes_renditions_and_files(self, config, db) -> None:
        config.keep_source = True
        manager = make_manager(config, db, FakeEncoder())
        try:
            source = make_source(config, "ad1")
            manager.register_ad("promo", source, ad_id="ad1")
            job = manager.submit("ad1", source)
            manager.wait(job.job_id, timeout=10)
            output_dir = config.get_output_dir("ad1")
            assert len(os.listdir(output_dir)) == 3

            assert manager.delete_ad("ad1") is True
            assert db.get_ad("ad1") is None
            assert db.find_renditions("ad1") == []
            assert not os.path.exists(output_dir)
            assert not os.path.exists(config.get_source_dir("ad1"))
            assert manager.delete_ad("ad1") is False
        finally:
            manager.stop()

    def test_status_summary(self, config, db) -> None:
        manager = make_manager(config, db, FakeEncoder(fail_qualities={240}))
        try:
            job = submit_ad(manager, config, "ad1")
            manager.wait(job.job_id, timeout=10)
            summary = manager.get_status_summary()
            assert summary["total_jobs"] == 1
            assert summary["active_jobs"] == 0
            assert summary["max_concurrent"] == 1
            assert summary["by_status"]["partial"] == 1
            assert len(manager.get_all_jobs()) == 1
        finally:
            manager.stop()

    def test_job_info_is_a_snapshot(self, config, db) -> None:
        release = threading.Event()
        encoder = FakeEncoder(gate=release)
        manager = make_manager(config, db, encoder)
        try:
            job = submit_ad(manager, config, "ad1")
            assert encoder.started.wait(5)
            info = manager.get_job_info(job.job_id)
            assert info["status"] == "running"

            release.set()
            manager.wait(job.job_id, timeout=10)
            assert info["status"] == "running"
            assert manager.get_job_info(job.job_id)["status"] == "completed"
            assert manager.get_job_info("job_missing") is None
        finally:
            release.set()
            manager.stop()
