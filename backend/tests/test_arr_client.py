"""Tests for the shared service client: retries, caching and error mapping."""

from unittest.mock import MagicMock

import pytest
import requests

from cache.memory import MemoryCacheBackend
from error_handler import ExternalNotFoundError, ExternalServiceError


def _response(status=200, payload=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    return resp


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def sonarr(sleeps):
    from sonarr_client import SonarrClient

    client = SonarrClient("http://sonarr:8989/", "key", cache=MemoryCacheBackend(),
                          sleep=sleeps.append)
    client.session.request = MagicMock()
    return client


def test_auth_header_and_url(sonarr):
    sonarr.session.request.return_value = _response(payload=[])
    sonarr.get_series()
    method, url = sonarr.session.request.call_args.args
    assert method == "GET"
    assert url == "http://sonarr:8989/api/v3/series"
    assert sonarr.session.headers["X-Api-Key"] == "key"


def test_retries_server_errors_with_backoff(sonarr, sleeps):
    sonarr.session.request.side_effect = [
        _response(503), requests.ConnectionError("refused"), _response(payload=[{"id": 1}]),
    ]

    assert sonarr.get_series() == [{"id": 1}]
    assert sonarr.session.request.call_count == 3
    assert sleeps == [2.0, 4.0]


def test_backoff_doubles_up_to_cap(sonarr, sleeps):
    sonarr.max_retries = 5
    sonarr.backoff_max = 10.0
    sonarr.session.request.side_effect = [_response(502)] * 4 + [_response(payload=[])]

    sonarr.get_series()

    assert sleeps == [2.0, 4.0, 8.0, 10.0]


def test_exhausted_retries_raise(sonarr, sleeps):
    sonarr.session.request.side_effect = requests.Timeout()

    with pytest.raises(ExternalServiceError) as exc:
        sonarr.get_series()

    assert "failed after 3 attempts" in str(exc.value)
    assert exc.value.service == "sonarr"
    assert len(sleeps) == 2


def test_rate_limit_honours_retry_after(sonarr, sleeps):
    sonarr.session.request.side_effect = [
        _response(429, headers={"Retry-After": "7"}), _response(payload=[]),
    ]
    sonarr.get_series()
    assert sleeps == [7]


def test_not_found_is_not_retried(sonarr):
    sonarr.session.request.return_value = _response(404)
    with pytest.raises(ExternalNotFoundError):
        sonarr.get_series_by_id(5)
    assert sonarr.session.request.call_count == 1


def test_client_error_is_not_retried(sonarr):
    sonarr.session.request.return_value = _response(401)
    with pytest.raises(ExternalServiceError):
        sonarr.get_series()
    assert sonarr.session.request.call_count == 1


def test_delete_of_missing_entity_returns_false(sonarr):
    sonarr.session.request.return_value = _response(404)
    assert sonarr.delete_episode_file(12) is False

    sonarr.session.request.return_value = _response(200)
    assert sonarr.delete_episode_file(12) is True


def test_get_responses_are_cached(sonarr):
    sonarr.session.request.return_value = _response(payload=[{"id": 1, "label": "kids"}])

    assert sonarr.get_tags() == {1: "kids"}
    assert sonarr.get_tags() == {1: "kids"}
    assert sonarr.session.request.call_count == 1

    assert sonarr.clear_cache() == 1
    sonarr.get_tags()
    assert sonarr.session.request.call_count == 2


def test_health_check_reports_failure(sonarr):
    sonarr.session.request.return_value = _response(401)
    healthy, message = sonarr.health_check()
    assert healthy is False
    assert "HTTP 401" in message


def test_tautulli_uses_query_key():
    from tautulli_client import TautulliClient

    client = TautulliClient("http://tautulli:8181", "tkey", cache=MemoryCacheBackend(),
                            sleep=lambda s: None)
    client.session.request = MagicMock(return_value=_response(payload={
        "response": {"result": "success", "data": {"data": [], "recordsFiltered": 0}},
    }))

    client.get_history(after="2024-05-01")

    params = client.session.request.call_args.kwargs["params"]
    assert params["apikey"] == "tkey"
    assert params["cmd"] == "get_history"
    assert "X-Api-Key" not in client.session.headers


def test_disk_space_normalized(sonarr):
    sonarr.session.request.return_value = _response(payload=[
        {"path": "/data", "label": "Media", "freeSpace": 250, "totalSpace": 1000},
    ])

    assert sonarr.get_disk_space() == [
        {"path": "/data", "label": "Media", "free_space": 250, "total_space": 1000},
    ]
    assert sonarr.session.request.call_args.args[1] == "http://sonarr:8989/api/v3/diskspace"


def test_combined_disk_space_survives_one_failing_service():
    from disk_space import collect_disk_space

    sonarr, radarr = MagicMock(), MagicMock()
    sonarr.get_disk_space.return_value = [
        {"path": "/tv", "label": "", "free_space": 0, "total_space": 0},
        {"path": "/data", "label": "", "free_space": 300, "total_space": 1200},
    ]
    radarr.get_disk_space.side_effect = ExternalServiceError("radarr unreachable", service="radarr")

    result = collect_disk_space([("sonarr", sonarr), ("radarr", radarr)])

    assert [d["percentage"] for d in result["disks"]] == [0, 75]
    assert result["totals"]["free"] == 300
    assert result["totals"]["percentage"] == 75
    assert result["errors"] == [{"source": "radarr", "error": "radarr unreachable"}]
