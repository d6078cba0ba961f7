"""Tests for the pending deletion workflow (propose, approve, cancel, retry)."""

import pytest

from error_handler import NotFoundError, ValidationError, WorkflowStateError
from rule_filters import BYTES_PER_GB


@pytest.fixture()
def workflow(app, clock):
    from deletion_workflow import DeletionWorkflow
    return DeletionWorkflow(clock=clock)


def _size_rule(make_rule, min_gb=5, **fields):
    return make_rule(filters=[{"kind": "size", "min_gb": min_gb}], **fields)


class TestPropose:

    def test_creates_one_request_per_match(self, workflow, make_media, make_rule):
        big = make_media(size=6 * BYTES_PER_GB)
        make_media(size=4 * BYTES_PER_GB)
        rule = _size_rule(make_rule)

        result = workflow.propose(rule["id"])

        assert result.created == 1
        assert result.total_size == 6 * BYTES_PER_GB
        request = workflow.get_request(result.request_ids[0])
        assert request["media_id"] == big["id"]
        assert request["status"] == "pending"
        assert request["size"] == 6 * BYTES_PER_GB

    def test_skips_entries_with_pending_request(self, workflow, make_media, make_rule):
        for _ in range(3):
            make_media(size=6 * BYTES_PER_GB)
        rule = _size_rule(make_rule)
        first = workflow.propose(rule["id"])
        # Leave two of the three pending, cancel the third
        workflow.cancel(first.request_ids[2], cancelled_by="tester")

        second = workflow.propose(rule["id"])

        assert second.created == 1
        assert second.skipped_existing == 2
        pending = workflow.list_requests(status="pending")
        assert pending["total"] == 3

    def test_is_idempotent(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB)
        make_media(size=7 * BYTES_PER_GB)
        rule = _size_rule(make_rule)

        workflow.propose(rule["id"])
        again = workflow.propose(rule["id"])

        assert again.created == 0
        assert again.skipped_existing == 2
        assert workflow.list_requests(status="all")["total"] == 2

    def test_never_proposes_protected_entries(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB, protected=True)
        rule = _size_rule(make_rule)

        result = workflow.propose(rule["id"])

        assert result.created == 0
        assert result.stats["excluded_by_filter"]["protected"] == 1

    def test_skips_entries_already_deleted(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB)
        rule = _size_rule(make_rule)
        request_id = workflow.propose(rule["id"]).request_ids[0]
        workflow.approve(request_id)
        workflow.mark_completed(workflow.get_request(request_id), ["Deleted file: x.mkv"])

        again = workflow.propose(rule["id"])

        assert again.created == 0
        assert again.skipped_completed == 1

    def test_records_last_run(self, workflow, make_media, make_rule):
        rule = _size_rule(make_rule)
        workflow.propose(rule["id"])
        assert workflow.rules.get_rule(rule["id"])["last_run"].startswith("2024-06-01T12:00:00")

    def test_unknown_rule(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.propose(999)

    def test_disabled_rule(self, workflow, make_rule):
        rule = make_rule(enabled=False)
        with pytest.raises(ValidationError):
            workflow.propose(rule["id"])

    def test_emits_run_complete(self, workflow, make_media, make_rule):
        from events import subscribe, unsubscribe

        received = []
        handle = subscribe("rule_run_complete", received.append)
        try:
            make_media(size=6 * BYTES_PER_GB)
            rule = _size_rule(make_rule)
            workflow.propose(rule["id"])
        finally:
            unsubscribe("rule_run_complete", handle)

        assert received and received[0]["created"] == 1


class TestSnapshots:

    def test_rule_edits_do_not_change_pending_request(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB)
        rule = _size_rule(make_rule, name="Big files")
        request_id = workflow.propose(rule["id"]).request_ids[0]

        workflow.rules.update_rule(rule["id"], {"name": "Renamed", "filters": []})

        snapshot = workflow.get_request(request_id)["rule_snapshot"]
        assert snapshot["name"] == "Big files"
        assert snapshot["filters"][0]["min_gb"] == 5

    def test_media_edits_do_not_change_pending_request(self, workflow, make_media, make_rule):
        entry = make_media(size=6 * BYTES_PER_GB, title="Original")
        rule = _size_rule(make_rule)
        request_id = workflow.propose(rule["id"]).request_ids[0]

        make_media(path=entry["path"], title="Changed", size=8 * BYTES_PER_GB)

        snapshot = workflow.get_request(request_id)["media_snapshot"]
        assert snapshot["title"] == "Original"
        assert snapshot["size"] == 6 * BYTES_PER_GB

    def test_snapshot_helpers_copy_values(self):
        from deletion_workflow import media_snapshot, rule_snapshot

        rule = {"id": 1, "name": "r", "filters": [{"kind": "size", "min_gb": 1}]}
        snap = rule_snapshot(rule)
        rule["filters"][0]["min_gb"] = 50
        assert snap["filters"][0]["min_gb"] == 1

        entry = {"tags": ["a"]}
        copy = media_snapshot(entry)
        entry["tags"].append("b")
        assert copy["tags"] == ["a"]


class TestTransitions:

    @pytest.fixture()
    def request_id(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB)
        rule = _size_rule(make_rule)
        return workflow.propose(rule["id"]).request_ids[0]

    def test_approve_defaults_schedule_to_now(self, workflow, request_id):
        approved = workflow.approve(request_id, approved_by="alice", reason="space")
        assert approved["status"] == "approved"
        assert approved["approved_by"] == "alice"
        assert approved["reason"] == "space"
        assert approved["scheduled_date"] == approved["approved_at"]

    def test_approve_with_future_date_is_not_due(self, workflow, request_id):
        workflow.approve(request_id, scheduled_date="2024-07-01T00:00:00Z")
        assert workflow.due_requests() == []

    def test_approve_rejects_bad_date(self, workflow, request_id):
        with pytest.raises(ValidationError):
            workflow.approve(request_id, scheduled_date="next tuesday")
        assert workflow.get_request(request_id)["status"] == "pending"

    def test_approve_twice_rejected(self, workflow, request_id):
        workflow.approve(request_id)
        with pytest.raises(WorkflowStateError):
            workflow.approve(request_id)

    def test_cancel_approved(self, workflow, request_id):
        workflow.approve(request_id)
        cancelled = workflow.cancel(request_id, cancelled_by="bob", reason="keep it")
        assert cancelled["status"] == "cancelled"
        assert cancelled["cancelled_by"] == "bob"

    def test_cancel_completed_rejected_and_status_kept(self, workflow, request_id):
        workflow.approve(request_id)
        workflow.mark_completed(workflow.get_request(request_id), ["Deleted file: x.mkv"])

        with pytest.raises(WorkflowStateError):
            workflow.cancel(request_id)

        assert workflow.get_request(request_id)["status"] == "completed"

    def test_cancelled_cannot_be_approved(self, workflow, request_id):
        workflow.cancel(request_id)
        with pytest.raises(WorkflowStateError):
            workflow.approve(request_id)

    def test_retry_only_from_failed(self, workflow, request_id):
        with pytest.raises(WorkflowStateError):
            workflow.retry(request_id)

        workflow.approve(request_id)
        workflow.mark_failed(workflow.get_request(request_id), "Sonarr unreachable")
        failed = workflow.get_request(request_id)
        assert failed["status"] == "failed"
        assert failed["execution_results"] == ["Error: Sonarr unreachable"]

        retried = workflow.retry(request_id, approved_by="carol")
        assert retried["status"] == "approved"
        assert retried["error"] is None
        assert retried["execution_results"] == []
        assert [r["id"] for r in workflow.due_requests()] == [request_id]

    def test_unknown_request(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.approve(12345)

    def test_mark_completed_writes_success_history(self, workflow, request_id):
        workflow.approve(request_id)
        done = workflow.mark_completed(workflow.get_request(request_id), ["Deleted file: a.mkv"])

        assert done["status"] == "completed"
        assert done["execution_results"] == ["Deleted file: a.mkv"]
        history = workflow.history.list_history()
        assert history["total"] == 1
        record = history["items"][0]
        assert record["success"] is True
        assert record["bytes_freed"] == 6 * BYTES_PER_GB
        assert record["pending_deletion_id"] == request_id

    def test_mark_failed_writes_zero_byte_history(self, workflow, request_id):
        workflow.approve(request_id)
        workflow.mark_failed(workflow.get_request(request_id), "boom")

        record = workflow.history.list_history()["items"][0]
        assert record["success"] is False
        assert record["bytes_freed"] == 0
        assert record["error"] == "boom"

    def test_history_failure_rolls_back_completion(self, workflow, request_id, monkeypatch):
        workflow.approve(request_id)

        def broken_add_record(**kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(workflow.history, "add_record", broken_add_record)
        with pytest.raises(RuntimeError):
            workflow.mark_completed(workflow.get_request(request_id), ["Deleted file: a.mkv"])

        assert workflow.get_request(request_id)["status"] == "approved"

    def test_batch_spans_repositories(self, workflow, request_id):
        with pytest.raises(RuntimeError):
            with workflow.requests.batch():
                workflow.requests.transition(request_id, ("pending",), "approved")
                workflow.history.add_record(rule_id=None, rule_name=None, media_id=None,
                                            files=[], bytes_freed=0, success=True)
                raise RuntimeError("abort")

        assert workflow.get_request(request_id)["status"] == "pending"
        assert workflow.history.list_history()["total"] == 0


class TestBulk:

    def test_bulk_approve_skips_non_pending(self, workflow, make_media, make_rule):
        for _ in range(3):
            make_media(size=6 * BYTES_PER_GB)
        rule = _size_rule(make_rule)
        ids = workflow.propose(rule["id"]).request_ids
        workflow.cancel(ids[0])

        result = workflow.bulk_approve(ids, approved_by="alice")

        assert result == {"updated": 2, "requested": 3, "skipped": 1}
        assert workflow.get_request(ids[0])["status"] == "cancelled"
        assert workflow.get_request(ids[1])["status"] == "approved"

    def test_bulk_cancel(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB)
        make_media(size=6 * BYTES_PER_GB)
        rule = _size_rule(make_rule)
        ids = workflow.propose(rule["id"]).request_ids
        workflow.approve(ids[0])

        result = workflow.bulk_cancel(ids)

        assert result["updated"] == 2
        assert {workflow.get_request(i)["status"] for i in ids} == {"cancelled"}

    @pytest.mark.parametrize("ids", [[], "1,2", ["x"], None])
    def test_bulk_rejects_bad_ids(self, workflow, ids):
        with pytest.raises(ValidationError):
            workflow.bulk_approve(ids)


class TestQueries:

    def test_preview_does_not_create_requests(self, workflow, make_media):
        make_media(size=6 * BYTES_PER_GB)
        make_media(size=9 * BYTES_PER_GB)
        make_media(size=1 * BYTES_PER_GB)

        preview = workflow.preview({"filters": [{"kind": "size", "min_gb": 5}]})

        assert [e["size"] for e in preview["affected_media"]] == [9 * BYTES_PER_GB, 6 * BYTES_PER_GB]
        assert preview["total_size"] == 15 * BYTES_PER_GB
        assert preview["stats"]["excluded_by_filter"]["size"] == 1
        assert workflow.list_requests(status="all")["total"] == 0

    def test_list_rejects_unknown_status(self, workflow):
        with pytest.raises(ValidationError):
            workflow.list_requests(status="exploded")

    def test_summary(self, workflow, make_media, make_rule):
        make_media(size=6 * BYTES_PER_GB)
        make_media(size=8 * BYTES_PER_GB)
        rule = _size_rule(make_rule)
        ids = workflow.propose(rule["id"]).request_ids
        workflow.approve(ids[0])

        summary = workflow.summary()

        assert summary["total_count"] == 2
        assert summary["total_size"] == 14 * BYTES_PER_GB
        assert summary["by_status"]["pending"]["count"] == 1
        assert summary["by_status"]["approved"]["count"] == 1
        assert summary["by_status"]["completed"]["count"] == 0
