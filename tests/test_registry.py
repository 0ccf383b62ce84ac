"""
Tests for the artifact registry and the retention sweeper.
"""

import threading
import time

from pdf_workbench_backend.registry import ArtifactRegistry
from pdf_workbench_backend.sweeper import RetentionSweeper


class TestRegister:
    """Tests for ArtifactRegistry.register."""

    def test_register_tracks_path(self, registry, tmp_path):
        """A registered path should be reported as tracked."""
        path = tmp_path / "a.pdf"
        registry.register(path)
        assert path in registry
        assert len(registry) == 1

    def test_register_keeps_first_timestamp(self, registry, clock, tmp_path):
        """Registering the same path twice should not refresh its timestamp."""
        path = tmp_path / "a.pdf"
        registry.register(path)
        clock.advance(30)
        registry.register(path)

        (record,) = registry.snapshot()
        assert record.created_at == 1000.0

    def test_register_normalizes_relative_paths(self, registry, tmp_path, monkeypatch):
        """Relative and absolute spellings of a path should share one entry."""
        monkeypatch.chdir(tmp_path)
        registry.register("out.pdf")
        registry.register(tmp_path / "out.pdf")
        assert len(registry) == 1

    def test_concurrent_registration_loses_nothing(self, tmp_path):
        """Distinct paths registered from many threads should all be present."""
        registry = ArtifactRegistry()
        threads_count, per_thread = 16, 50
        barrier = threading.Barrier(threads_count)

        def worker(index):
            barrier.wait()
            for item in range(per_thread):
                registry.register(tmp_path / f"t{index}-{item}.pdf")

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(registry) == threads_count * per_thread


class TestSweepExpired:
    """Tests for ArtifactRegistry.sweep_expired."""

    def test_artifact_survives_until_ttl(self, registry, clock, tmp_path):
        """An artifact should be kept just before TTL and removed just after."""
        path = tmp_path / "a.pdf"
        path.write_bytes(b"data")
        registry.register(path)

        clock.advance(599)
        assert registry.sweep_expired(600) == 0
        assert path in registry
        assert path.exists()

        clock.advance(2)
        assert registry.sweep_expired(600) == 1
        assert path not in registry
        assert not path.exists()

    def test_sweep_is_idempotent(self, registry, clock, tmp_path):
        """A second sweep with no new registrations should evict nothing."""
        for name in ("a.pdf", "b.pdf"):
            registry.register(tmp_path / name)
        clock.advance(61)

        assert registry.sweep_expired(60) == 2
        assert registry.sweep_expired(60) == 0

    def test_sweep_only_evicts_expired_entries(self, registry, clock, tmp_path):
        """Fresh entries should survive a sweep that evicts older ones."""
        old = tmp_path / "old.pdf"
        registry.register(old)
        clock.advance(100)
        fresh = tmp_path / "fresh.pdf"
        registry.register(fresh)
        clock.advance(1)

        assert registry.sweep_expired(60) == 1
        assert old not in registry
        assert fresh in registry

    def test_missing_file_is_still_evicted(self, registry, clock, tmp_path):
        """A reserved path that was never written should be evicted silently."""
        registry.register(tmp_path / "never-written.pdf")
        clock.advance(61)
        assert registry.sweep_expired(60) == 1
        assert len(registry) == 0

    def test_deletion_failure_drops_entry(self, registry, clock, tmp_path, caplog):
        """An undeletable path should be logged and removed from the registry anyway."""
        stuck = tmp_path / "stuck"
        stuck.mkdir()
        registry.register(stuck)
        clock.advance(61)

        assert registry.sweep_expired(60) == 1
        assert stuck not in registry
        assert stuck.exists()
        assert "Failed to delete" in caplog.text


class TestDiscard:
    """Tests for ArtifactRegistry.discard."""

    def test_discard_removes_file_and_entry(self, registry, tmp_path):
        """Discarding should delete the file immediately."""
        path = tmp_path / "a.pdf"
        path.write_bytes(b"data")
        registry.register(path)

        assert registry.discard(path) is True
        assert path not in registry
        assert not path.exists()

    def test_discard_untracked_path(self, registry, tmp_path):
        """Discarding an unknown path should report False."""
        assert registry.discard(tmp_path / "unknown.pdf") is False


class TestRetentionSweeper:
    """Tests for the background sweeper thread."""

    def test_run_once_sweeps(self, registry, clock, tmp_path):
        """run_once should evict using the configured TTL."""
        registry.register(tmp_path / "a.pdf")
        clock.advance(11)
        sweeper = RetentionSweeper(registry, ttl=10, interval=60)
        assert sweeper.run_once() == 1

    def test_background_loop_evicts_and_stops(self, registry, clock, tmp_path):
        """The loop should sweep on its interval and stop cleanly."""
        registry.register(tmp_path / "a.pdf")
        clock.advance(11)
        sweeper = RetentionSweeper(registry, ttl=10, interval=0.01)

        sweeper.start()
        try:
            deadline = time.monotonic() + 5
            while len(registry) and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(registry) == 0
            assert sweeper.running
        finally:
            sweeper.stop()
        assert not sweeper.running

    def test_failing_tick_does_not_kill_loop(self, tmp_path):
        """An exception during one sweep should not end the loop."""

        class FlakyRegistry(ArtifactRegistry):
            def __init__(self):
                super().__init__()
                self.calls = 0

            def sweep_expired(self, ttl):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("disk hiccup")
                return 0

        flaky = FlakyRegistry()
        sweeper = RetentionSweeper(flaky, ttl=10, interval=0.01)
        sweeper.start()
        try:
            deadline = time.monotonic() + 5
            while flaky.calls < 3 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            sweeper.stop()
        assert flaky.calls >= 3
