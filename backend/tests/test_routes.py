"""Tests for the HTTP API (Flask test client against a temporary database)."""

from rule_filters import BYTES_PER_GB

SIZE_RULE = {
    "name": "Large movies",
    "media_types": ["movie"],
    "filters": [{"kind": "size", "min_gb": 5}],
}


def _create_rule(client, body=None):
    resp = client.post("/api/v1/rules", json=body or SIZE_RULE)
    assert resp.status_code == 201
    return resp.get_json()


class TestSystem:

    def test_index(self, client):
        data = client.get("/").get_json()
        assert data["name"] == "Purgarr"
        assert data["api"] == "/api/v1/health"

    def test_health_without_services(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert data["services"] == {
            "sonarr": "not configured",
            "radarr": "not configured",
            "plex": "not configured",
            "tautulli": "not configured",
        }

    def test_config_redacts_keys(self, client):
        data = client.get("/api/v1/config").get_json()
        assert data["sonarr_api_key"] == ""
        assert "db_path" in data

    def test_config_redacts_notification_urls(self, client, monkeypatch):
        from config import reload_settings

        monkeypatch.setenv("PURGARR_NOTIFICATION_URLS", "tgram://bottoken/chat")
        reload_settings()
        data = client.get("/api/v1/config").get_json()
        assert data["notification_urls"] == "***configured***"

    def test_diskspace_requires_arr_service(self, client):
        resp = client.get("/api/v1/diskspace")
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "CFG_001"

    def test_diskspace_combines_services(self, client, monkeypatch):
        from unittest.mock import MagicMock

        sonarr, radarr = MagicMock(), MagicMock()
        sonarr.get_disk_space.return_value = [
            {"path": "/data", "label": "", "free_space": 400, "total_space": 1000}]
        radarr.get_disk_space.return_value = [
            {"path": "/data", "label": "", "free_space": 400, "total_space": 1000},
            {"path": "/movies", "label": "", "free_space": 1000, "total_space": 2000}]
        monkeypatch.setattr("sonarr_client.get_sonarr_client", lambda: sonarr)
        monkeypatch.setattr("radarr_client.get_radarr_client", lambda: radarr)

        data = client.get("/api/v1/diskspace").get_json()

        assert [(d["path"], d["source"]) for d in data["disks"]] == \
            [("/data", "sonarr"), ("/movies", "radarr")]
        assert data["totals"]["capacity"] == 3000
        assert data["totals"]["used"] == 1600
        assert data["totals"]["percentage"] == 53


class TestRules:

    def test_crud(self, client):
        rule = _create_rule(client)
        assert rule["enabled"] is True
        assert rule["deletion_strategy"]["radarr"] == "file_only"

        listed = client.get("/api/v1/rules").get_json()["rules"]
        assert [r["id"] for r in listed] == [rule["id"]]

        resp = client.put(f"/api/v1/rules/{rule['id']}", json={"enabled": False})
        assert resp.get_json()["enabled"] is False
        assert resp.get_json()["name"] == "Large movies"
        assert client.get("/api/v1/rules?enabled=true").get_json()["rules"] == []

        resp = client.delete(f"/api/v1/rules/{rule['id']}")
        assert resp.get_json() == {"status": "deleted", "id": rule["id"]}
        assert client.get(f"/api/v1/rules/{rule['id']}").status_code == 404

    def test_create_validates(self, client):
        resp = client.post("/api/v1/rules", json={"filters": [{"kind": "size"}]})
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "VAL_001"

        resp = client.post("/api/v1/rules", json={"name": "x", "filters": [{"kind": "mood"}]})
        assert resp.status_code == 400

    def test_database_failure_is_structured(self, client, monkeypatch):
        from sqlalchemy.exc import OperationalError
        from sqlalchemy.orm import Session

        def locked(self):
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(Session, "commit", locked)
        resp = client.post("/api/v1/rules", json=SIZE_RULE)

        assert resp.status_code == 500
        assert resp.get_json()["code"] == "DB_001"

    def test_unknown_rule_is_404(self, client):
        resp = client.put("/api/v1/rules/404", json={"enabled": True})
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "NF_001"

    def test_preview_unsaved(self, client, make_media):
        make_media(size=6 * BYTES_PER_GB)
        make_media(size=2 * BYTES_PER_GB)

        resp = client.post("/api/v1/rules/preview", json={"filters": [{"kind": "size", "min_gb": 5}]})

        data = resp.get_json()
        assert resp.status_code == 200
        assert len(data["affected_media"]) == 1
        assert data["total_size"] == 6 * BYTES_PER_GB

    def test_run_and_stats(self, client, make_media):
        make_media(size=6 * BYTES_PER_GB)
        rule = _create_rule(client)

        run = client.post(f"/api/v1/rules/{rule['id']}/run").get_json()
        assert run["created"] == 1
        again = client.post(f"/api/v1/rules/{rule['id']}/run").get_json()
        assert again["created"] == 0
        assert again["skipped_existing"] == 1

        stats = client.get(f"/api/v1/rules/{rule['id']}/stats").get_json()
        assert stats["total_executions"] == 0
        assert stats["last_run"] is not None

    def test_stats_for_all_rules(self, client):
        from db.repositories.history import DeletionHistoryRepository

        busy = _create_rule(client)
        idle = _create_rule(client, {**SIZE_RULE, "name": "Idle"})
        history = DeletionHistoryRepository()
        history.add_record(busy["id"], busy["name"], None, ["/m/a.mkv"], 2 * BYTES_PER_GB, True)
        history.add_record(busy["id"], busy["name"], None, ["/m/b.mkv"], 0, False, error="locked")

        resp = client.get("/api/v1/rules/stats/all")

        assert resp.status_code == 200
        assert resp.get_json() == [
            {"rule_id": busy["id"], "rule_name": "Large movies", "total_executions": 2,
             "total_media_deleted": 1, "total_size_freed": 2 * BYTES_PER_GB,
             "total_size_freed_gb": 2.0},
            {"rule_id": idle["id"], "rule_name": "Idle", "total_executions": 0,
             "total_media_deleted": 0, "total_size_freed": 0, "total_size_freed_gb": 0.0},
        ]

    def test_run_disabled_rule_rejected(self, client):
        rule = _create_rule(client, {**SIZE_RULE, "enabled": False})
        resp = client.post(f"/api/v1/rules/{rule['id']}/run")
        assert resp.status_code == 400


class TestPendingDeletions:

    def _request_ids(self, client, make_media, count=1):
        for i in range(count):
            make_media(size=6 * BYTES_PER_GB, path=f"/nonexistent/movie-{i}.mkv")
        rule = _create_rule(client)
        return client.post(f"/api/v1/rules/{rule['id']}/run").get_json()["request_ids"]

    def test_list_and_get(self, client, make_media):
        (request_id,) = self._request_ids(client, make_media)

        listed = client.get("/api/v1/pending-deletions").get_json()
        assert listed["total"] == 1
        assert listed["total_size"] == 6 * BYTES_PER_GB

        detail = client.get(f"/api/v1/pending-deletions/{request_id}").get_json()
        assert detail["media_snapshot"]["size"] == 6 * BYTES_PER_GB
        assert detail["rule_snapshot"]["name"] == "Large movies"

        assert client.get("/api/v1/pending-deletions/999").status_code == 404
        assert client.get("/api/v1/pending-deletions?status=bogus").status_code == 400

    def test_approve_then_cancel(self, client, make_media):
        (request_id,) = self._request_ids(client, make_media)

        resp = client.post(f"/api/v1/pending-deletions/{request_id}/approve",
                           json={"approved_by": "alice", "reason": "space"})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "approved"

        again = client.post(f"/api/v1/pending-deletions/{request_id}/approve")
        assert again.status_code == 409
        assert again.get_json()["code"] == "FLOW_001"

        resp = client.post(f"/api/v1/pending-deletions/{request_id}/cancel", json={"cancelled_by": "bob"})
        assert resp.get_json()["status"] == "cancelled"

    def test_non_object_body_rejected(self, client, make_media):
        (request_id,) = self._request_ids(client, make_media)
        resp = client.post(f"/api/v1/pending-deletions/{request_id}/approve", json=[1, 2])
        assert resp.status_code == 400

    def test_bulk_approve_and_summary(self, client, make_media):
        ids = self._request_ids(client, make_media, count=2)

        resp = client.post("/api/v1/pending-deletions/bulk-approve", json={"ids": ids + [999]})
        assert resp.get_json() == {"updated": 2, "requested": 3, "skipped": 1}

        summary = client.get("/api/v1/pending-deletions/stats/summary").get_json()
        assert summary["by_status"]["approved"]["count"] == 2
        assert summary["total_size"] == 12 * BYTES_PER_GB

        resp = client.post("/api/v1/pending-deletions/bulk-cancel", json={"ids": ids})
        assert resp.get_json()["updated"] == 2

    def test_bulk_requires_ids(self, client):
        assert client.post("/api/v1/pending-deletions/bulk-approve", json={}).status_code == 400

    def test_execute_one_and_history(self, client, make_media):
        (request_id,) = self._request_ids(client, make_media)
        client.post(f"/api/v1/pending-deletions/{request_id}/approve")

        resp = client.post(f"/api/v1/pending-deletions/{request_id}/execute")

        data = resp.get_json()
        assert resp.status_code == 200
        assert data["success"] is True
        assert data["results"] == ["File already removed: movie-0.mkv"]
        assert data["request"]["status"] == "completed"

        history = client.get("/api/v1/history").get_json()
        assert history["total"] == 1
        assert history["items"][0]["success"] is True

        cleared = client.delete("/api/v1/history").get_json()
        assert cleared == {"status": "cleared", "deleted": 1}

    def test_execute_one_requires_approval(self, client, make_media):
        (request_id,) = self._request_ids(client, make_media)
        assert client.post(f"/api/v1/pending-deletions/{request_id}/execute").status_code == 409

    def test_retry_requires_failed(self, client, make_media):
        (request_id,) = self._request_ids(client, make_media)
        assert client.post(f"/api/v1/pending-deletions/{request_id}/retry").status_code == 409

    def test_execution_status_idle(self, client):
        data = client.get("/api/v1/pending-deletions/execution/status").get_json()
        assert data["running"] is False
        assert data["schedule"] == {"running": False}

    def test_schedule_stop_without_scheduler(self, client):
        resp = client.post("/api/v1/pending-deletions/schedule/stop")
        assert resp.get_json()["running"] is False


class TestMedia:

    def test_list_and_search(self, client, make_media):
        make_media(title="Alpha")
        make_media(title="Beta", type="show")

        data = client.get("/api/v1/media?search=alp").get_json()
        assert [m["title"] for m in data["items"]] == ["Alpha"]
        assert client.get("/api/v1/media?type=show").get_json()["total"] == 1

    def test_protect(self, client, make_media):
        entry = make_media()

        resp = client.put(f"/api/v1/media/{entry['id']}/protect", json={"protected": True})
        assert resp.get_json()["protected"] is True
        assert client.get("/api/v1/media?protected=true").get_json()["total"] == 1

        assert client.put(f"/api/v1/media/{entry['id']}/protect", json={}).status_code == 400
        assert client.put("/api/v1/media/999/protect", json={"protected": True}).status_code == 404


class TestSync:

    def test_sync_without_sources(self, client):
        resp = client.post("/api/v1/sync")
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "CFG_001"

    def test_status_before_first_run(self, client):
        assert client.get("/api/v1/sync/status").get_json() == {"running": False, "run": None}

    def test_cache_clear(self, client):
        from cache import get_response_cache

        get_response_cache().set("sonarr:GET:/series", [1])
        assert client.post("/api/v1/sync/cache/clear").get_json() == {"cleared": 1}

    def test_schedule_start_and_stop(self, client):
        assert client.post("/api/v1/sync/schedule/start", json={}).status_code == 400

        resp = client.post("/api/v1/sync/schedule/start", json={"interval": 10, "unit": "minutes"})
        try:
            data = resp.get_json()
            assert data["running"] is True
            assert data["interval_minutes"] == 15
        finally:
            stopped = client.post("/api/v1/sync/schedule/stop").get_json()
        assert stopped["running"] is False


class TestNotifications:

    def test_feed_from_rule_run(self, client, make_media):
        make_media(size=6 * BYTES_PER_GB)
        rule = _create_rule(client)
        client.post(f"/api/v1/rules/{rule['id']}/run")

        data = client.get("/api/v1/notifications").get_json()
        (item,) = data["notifications"]
        assert item["title"] == "Deletions proposed"
        assert data["summary"] == {"total": 1, "unread": 1, "by_category": {"deletion": 1}}

        assert client.post(f"/api/v1/notifications/{item['id']}/read").status_code == 200
        assert client.get("/api/v1/notifications/summary").get_json()["unread"] == 0
        assert client.get("/api/v1/notifications?unread=true").get_json()["notifications"] == []
        assert client.post("/api/v1/notifications/999/read").status_code == 404

        assert client.delete(f"/api/v1/notifications/{item['id']}").status_code == 200
        resp = client.delete(f"/api/v1/notifications/{item['id']}")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "NF_001"

    def test_test_notification(self, client):
        resp = client.post("/api/v1/notifications/test", json={"title": "Hello"})
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "VAL_001"

        data = client.post("/api/v1/notifications/test",
                           json={"title": "Hello", "message": "World"}).get_json()
        assert data["notification"]["category"] == "system"
        assert data["delivery"] == {"success": False, "message": "No notification URLs configured"}

        assert client.post("/api/v1/notifications/read-all").get_json() == {"updated": 1}
        assert client.delete("/api/v1/notifications").get_json() == {"cleared": 1}
        assert client.get("/api/v1/notifications/status").get_json()["configured"] is False
