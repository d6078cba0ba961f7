"""Tests for deletion_executor: strategy selection, fallbacks and bookkeeping."""

from unittest.mock import MagicMock

import pytest

from error_handler import WorkflowStateError
from rule_filters import BYTES_PER_GB


@pytest.fixture()
def workflow(app, clock):
    from deletion_workflow import DeletionWorkflow
    return DeletionWorkflow(clock=clock)


def _executor(workflow, clock, sonarr=None, radarr=None):
    from deletion_executor import DeletionExecutor
    return DeletionExecutor(clock=clock, workflow=workflow,
                            sonarr_factory=lambda: sonarr,
                            radarr_factory=lambda: radarr)


def _approved_request(workflow, make_rule, strategy=None):
    rule = make_rule(filters=[{"kind": "size", "min_gb": 1}], deletion_strategy=strategy or {})
    request_id = workflow.propose(rule["id"]).request_ids[0]
    return workflow.approve(request_id, approved_by="tester")


class TestLocalFallback:

    def test_missing_file_counts_as_deleted(self, workflow, clock, make_media, make_rule):
        make_media(path="/nonexistent/movies/Gone/gone.mkv", size=2 * BYTES_PER_GB)
        request = _approved_request(workflow, make_rule)

        summary = _executor(workflow, clock).execute_approved()

        assert summary["succeeded"] == 1
        assert summary["results"][0]["results"] == ["File already removed: gone.mkv"]
        done = workflow.get_request(request["id"])
        assert done["status"] == "completed"
        record = workflow.history.list_history()["items"][0]
        assert record["success"] is True
        assert record["bytes_freed"] == 2 * BYTES_PER_GB

    def test_deletes_file_when_service_not_configured(self, workflow, clock, make_media,
                                                      make_rule, tmp_path):
        media_file = tmp_path / "movie.mkv"
        media_file.write_bytes(b"x")
        make_media(path=str(media_file), size=2 * BYTES_PER_GB)
        _approved_request(workflow, make_rule)

        summary = _executor(workflow, clock).execute_approved()

        assert not media_file.exists()
        assert summary["results"][0]["results"] == [
            "Deleted file directly: movie.mkv (Radarr not configured)"
        ]

    def test_other_media_deleted_without_service(self, workflow, clock, make_media,
                                                 make_rule, tmp_path):
        media_file = tmp_path / "clip.mp4"
        media_file.write_bytes(b"x")
        make_media(path=str(media_file), type="other", size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[], media_types=["other"])
        request_id = workflow.propose(rule["id"]).request_ids[0]
        workflow.approve(request_id)

        outcome = _executor(workflow, clock).execute_request(request_id)

        assert outcome["success"] is True
        assert outcome["results"] == ["Deleted file: clip.mp4"]
        assert not media_file.exists()

    def test_path_mapping_applied(self, workflow, clock, make_media, make_rule, tmp_path):
        from config import reload_settings

        (tmp_path / "movies").mkdir()
        media_file = tmp_path / "movies" / "mapped.mkv"
        media_file.write_bytes(b"x")
        reload_settings({"path_mapping": f"/data/movies={tmp_path / 'movies'}"})
        make_media(path="/data/movies/mapped.mkv", size=2 * BYTES_PER_GB)
        _approved_request(workflow, make_rule)

        _executor(workflow, clock).execute_approved()

        assert not media_file.exists()


class TestSonarr:

    def _show(self, make_media, **fields):
        record = {
            "path": "/tv/Show/Season 01/Show - S01E01.mkv",
            "title": "Show - 1x01 - Pilot",
            "type": "show",
            "size": 2 * BYTES_PER_GB,
            "sonarr_id": 11,
            "metadata": {"series_id": 5, "episode_id": 101},
        }
        record.update(fields)
        return make_media(**record)

    def test_stale_file_id_falls_back_to_path_lookup(self, workflow, clock, make_media, make_rule):
        entry = self._show(make_media)
        request = _approved_request(workflow, make_rule)
        sonarr = MagicMock()
        sonarr.get_series_by_id.return_value = {"id": 5, "title": "Show", "path": "/tv/Show"}
        sonarr.delete_episode_file.side_effect = [False, True]
        sonarr.get_episode_files.return_value = [
            {"id": 99, "path": "/tv/Show/Season 01/other.mkv"},
            {"id": 12, "path": entry["path"]},
        ]

        summary = _executor(workflow, clock, sonarr=sonarr).execute_approved()

        assert summary["succeeded"] == 1
        assert sonarr.delete_episode_file.call_args_list[-1].args == (12,)
        sonarr.get_episode_files.assert_called_once_with(5)
        assert workflow.get_request(request["id"])["status"] == "completed"

    def test_missing_file_in_sonarr_fails_request(self, workflow, clock, make_media, make_rule):
        self._show(make_media)
        request = _approved_request(workflow, make_rule)
        sonarr = MagicMock()
        sonarr.get_series_by_id.return_value = {"id": 5, "title": "Show"}
        sonarr.delete_episode_file.return_value = False
        sonarr.get_episode_files.return_value = []

        summary = _executor(workflow, clock, sonarr=sonarr).execute_approved()

        assert summary["failed"] == 1
        failed = workflow.get_request(request["id"])
        assert failed["status"] == "failed"
        assert "Episode file not found" in failed["error"]
        record = workflow.history.list_history()["items"][0]
        assert record["success"] is False
        assert record["bytes_freed"] == 0

    def test_series_resolved_by_path_when_id_unknown(self, workflow, clock, make_media, make_rule):
        self._show(make_media, metadata={})
        _approved_request(workflow, make_rule)
        sonarr = MagicMock()
        sonarr.get_series.return_value = [
            {"id": 3, "title": "Unrelated", "path": "/tv/Other"},
            {"id": 7, "title": "Show", "path": "/tv/Show/"},
        ]
        sonarr.delete_episode_file.return_value = True

        summary = _executor(workflow, clock, sonarr=sonarr).execute_approved()

        assert summary["succeeded"] == 1
        sonarr.get_series_by_id.assert_not_called()
        sonarr.delete_episode_file.assert_called_once_with(11)

    def test_series_not_found_is_failure(self, workflow, clock, make_media, make_rule):
        self._show(make_media, metadata={})
        _approved_request(workflow, make_rule)
        sonarr = MagicMock()
        sonarr.get_series.return_value = []

        summary = _executor(workflow, clock, sonarr=sonarr).execute_approved()

        assert summary["failed"] == 1
        assert "Series not found" in summary["results"][0]["error"]

    def test_unmonitor_strategy(self, workflow, clock, make_media, make_rule):
        self._show(make_media)
        _approved_request(workflow, make_rule,
                          strategy={"sonarr": "unmonitor", "delete_files": False})
        sonarr = MagicMock()
        sonarr.get_series_by_id.return_value = {"id": 5, "title": "Show", "monitored": True}

        summary = _executor(workflow, clock, sonarr=sonarr).execute_approved()

        assert summary["succeeded"] == 1
        sonarr.update_series.assert_called_once_with({"id": 5, "title": "Show", "monitored": False})
        sonarr.delete_series.assert_not_called()

    def test_remove_series_strategy(self, workflow, clock, make_media, make_rule):
        self._show(make_media)
        _approved_request(workflow, make_rule,
                          strategy={"sonarr": "remove_series", "add_import_exclusion": True})
        sonarr = MagicMock()
        sonarr.get_series_by_id.return_value = {"id": 5, "title": "Show"}

        summary = _executor(workflow, clock, sonarr=sonarr).execute_approved()

        assert summary["results"][0]["results"] == ["Removed series: Show"]
        sonarr.delete_series.assert_called_once_with(5, delete_files=True, add_import_exclusion=True)


class TestRadarr:

    def test_file_only_uses_movie_file_id(self, workflow, clock, make_media, make_rule):
        make_media(path="/movies/Film (2020)/film.mkv", title="Film", radarr_id=40,
                   metadata={"movie_id": 4}, size=2 * BYTES_PER_GB)
        _approved_request(workflow, make_rule)
        radarr = MagicMock()
        radarr.get_movie.return_value = {"id": 4, "title": "Film", "movieFile": {"id": 41}}

        summary = _executor(workflow, clock, radarr=radarr).execute_approved()

        assert summary["succeeded"] == 1
        radarr.delete_movie_file.assert_called_once_with(41)
        assert summary["results"][0]["results"] == ["Deleted movie file: film.mkv"]

    def test_remove_movie_strategy(self, workflow, clock, make_media, make_rule):
        make_media(path="/movies/Film (2020)/film.mkv", title="Film",
                   metadata={"movie_id": 4}, size=2 * BYTES_PER_GB)
        _approved_request(workflow, make_rule, strategy={"radarr": "remove_movie"})
        radarr = MagicMock()
        radarr.get_movie.return_value = {"id": 4, "title": "Film"}

        _executor(workflow, clock, radarr=radarr).execute_approved()

        radarr.delete_movie.assert_called_once_with(4, delete_files=True, add_import_exclusion=False)

    def test_service_error_marks_failed(self, workflow, clock, make_media, make_rule):
        from error_handler import ExternalServiceError

        make_media(path="/movies/Film (2020)/film.mkv", title="Film",
                   metadata={"movie_id": 4}, size=2 * BYTES_PER_GB)
        request = _approved_request(workflow, make_rule)
        radarr = MagicMock()
        radarr.get_movie.side_effect = ExternalServiceError("Radarr timed out", service="radarr")

        summary = _executor(workflow, clock, radarr=radarr).execute_approved()

        assert summary["failed"] == 1
        assert workflow.get_request(request["id"])["error"] == "Radarr timed out"


class TestBatch:

    def test_only_due_requests_run(self, workflow, clock, make_media, make_rule):
        make_media(path="/nonexistent/a.mkv", size=2 * BYTES_PER_GB)
        make_media(path="/nonexistent/b.mkv", size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[{"kind": "size", "min_gb": 1}])
        ids = workflow.propose(rule["id"]).request_ids
        workflow.approve(ids[0])
        workflow.approve(ids[1], scheduled_date="2030-01-01T00:00:00Z")

        summary = _executor(workflow, clock).execute_approved()

        assert summary["total"] == 1
        assert workflow.get_request(ids[1])["status"] == "approved"

    def test_failure_does_not_stop_batch(self, workflow, clock, make_media, make_rule):
        make_media(path="/movies/A/a.mkv", title="A", metadata={"movie_id": 1}, size=2 * BYTES_PER_GB)
        make_media(path="/movies/B/b.mkv", title="B", metadata={"movie_id": 2}, size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[{"kind": "size", "min_gb": 1}])
        ids = workflow.propose(rule["id"]).request_ids
        workflow.bulk_approve(ids)
        radarr = MagicMock()
        radarr.get_movie.side_effect = [RuntimeError("boom"), {"id": 2, "movieFile": {"id": 20}}]

        summary = _executor(workflow, clock, radarr=radarr).execute_approved()

        assert summary["processed"] == 2
        assert summary["succeeded"] == 1
        assert summary["failed"] == 1
        assert {workflow.get_request(i)["status"] for i in ids} == {"completed", "failed"}

    def test_status_tracks_last_batch(self, workflow, clock, make_media, make_rule):
        make_media(path="/nonexistent/a.mkv", size=2 * BYTES_PER_GB)
        _approved_request(workflow, make_rule)
        executor = _executor(workflow, clock)

        executor.execute_approved()

        status = executor.get_status()
        assert status["running"] is False
        assert status["total"] == 1
        assert status["succeeded"] == 1
        assert status["finished_at"] is not None

    def test_batch_publishes_lifecycle_events(self, workflow, clock, make_media, make_rule):
        from events import subscribe, unsubscribe

        make_media(path="/nonexistent/a.mkv", size=2 * BYTES_PER_GB)
        _approved_request(workflow, make_rule)
        names = ["deletion_execution_start", "deletion_item_start",
                 "deletion_item_complete", "deletion_progress", "deletion_execution_complete"]
        received = []
        handles = {name: subscribe(name, lambda data, n=name: received.append((n, data)))
                   for name in names}
        try:
            _executor(workflow, clock).execute_approved()
        finally:
            for name, handle in handles.items():
                unsubscribe(name, handle)

        assert [n for n, _ in received] == names
        assert received[-1][1]["details"] == {"succeeded": 1, "failed": 0, "skipped": 0,
                                              "bytes_freed": 2 * BYTES_PER_GB}

    def test_overlapping_runs_rejected(self, workflow, clock):
        executor = _executor(workflow, clock)
        executor._begin(0)
        try:
            with pytest.raises(WorkflowStateError):
                executor.execute_approved()
        finally:
            executor._finish()
        assert executor.is_running() is False

    def test_execute_request_requires_approved(self, workflow, clock, make_media, make_rule):
        make_media(size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[{"kind": "size", "min_gb": 1}])
        request_id = workflow.propose(rule["id"]).request_ids[0]

        with pytest.raises(WorkflowStateError):
            _executor(workflow, clock).execute_request(request_id)

    def test_execute_request_waits_for_scheduled_date(self, workflow, clock, make_media,
                                                      make_rule, tmp_path):
        media_file = tmp_path / "later.mkv"
        media_file.write_bytes(b"x")
        make_media(path=str(media_file), size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[{"kind": "size", "min_gb": 1}])
        request_id = workflow.propose(rule["id"]).request_ids[0]
        workflow.approve(request_id, scheduled_date="2030-01-01T00:00:00Z")
        executor = _executor(workflow, clock)

        with pytest.raises(WorkflowStateError):
            executor.execute_request(request_id)

        assert media_file.exists()
        assert workflow.get_request(request_id)["status"] == "approved"
        assert workflow.history.list_history()["total"] == 0
        assert executor.is_running() is False

    def test_request_cancelled_mid_batch_is_left_alone(self, workflow, clock, make_media,
                                                       make_rule, tmp_path):
        files = []
        for name in ("first.mp4", "second.mp4"):
            media_file = tmp_path / name
            media_file.write_bytes(b"x")
            files.append(media_file)
            make_media(path=str(media_file), type="other", size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[], media_types=["other"])
        ids = workflow.propose(rule["id"]).request_ids
        workflow.bulk_approve(ids)
        executor = _executor(workflow, clock)
        real_execute = executor.execute

        def execute_and_cancel_next(request):
            if request["id"] == ids[0]:
                workflow.cancel(ids[1], cancelled_by="bob")
            return real_execute(request)

        executor.execute = execute_and_cancel_next
        summary = executor.execute_approved()

        assert summary["succeeded"] == 1
        assert summary["skipped"] == 1
        assert not files[0].exists()
        assert files[1].exists()
        assert workflow.get_request(ids[1])["status"] == "cancelled"
        history = workflow.history.list_history()["items"]
        assert [h["pending_deletion_id"] for h in history] == [ids[0]]
        assert executor.get_status()["skipped"] == 1

    def test_bad_strategy_fails_only_its_request(self, workflow, clock, make_media, make_rule):
        import json

        from db.models.deletions import PendingDeletion
        from extensions import db

        make_media(path="/nonexistent/a.mkv", size=2 * BYTES_PER_GB)
        make_media(path="/nonexistent/b.mkv", size=2 * BYTES_PER_GB)
        rule = make_rule(filters=[{"kind": "size", "min_gb": 1}])
        ids = workflow.propose(rule["id"]).request_ids
        workflow.bulk_approve(ids)
        row = db.session.get(PendingDeletion, ids[0])
        row.rule_snapshot_json = json.dumps({"name": "Broken", "deletion_strategy": {"radarr": "nuke"}})
        db.session.commit()

        summary = _executor(workflow, clock).execute_approved()

        assert summary["processed"] == 2
        assert summary["failed"] == 1
        assert summary["succeeded"] == 1
        broken = workflow.get_request(ids[0])
        assert broken["status"] == "failed"
        assert "Unknown Radarr strategy" in broken["error"]
