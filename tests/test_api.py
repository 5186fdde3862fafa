import time
from dataclasses import replace

from fastapi.testclient import TestClient

from vidpulse.api import create_app
from vidpulse.config import WorkerConfig
from vidpulse.runtime import build_runtime


def _client(config, source, analyzer, *, embedded=False):
    config = replace(
        config,
        worker=WorkerConfig(embedded=embedded),
        broker=replace(config.broker, poll_timeout_seconds=0.05),
    )
    runtime = build_runtime(config, source=source, analyzer=analyzer)
    return TestClient(create_app(config, runtime=runtime)), runtime


def _wait_for(client, job_id, done, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/job-status/{job_id}").json()
        if done(body) or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_root_and_health(config, fake_source, fake_analyzer):
    client, _ = _client(config, fake_source([]), fake_analyzer())
    with client:
        assert client.get("/").json() == {"service": "VidPulse API"}
        health = client.get("/health").json()
        assert health["ok"] is True
        assert "version" in health
        assert "time" in health


def test_analyze_requires_channel_id(config, fake_source, fake_analyzer, make_items):
    client, _ = _client(config, fake_source(make_items(1)), fake_analyzer())
    with client:
        response = client.post("/analyze", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Channel ID is required"}
        assert client.post("/analyze").status_code == 400


def test_analyze_rejects_malformed_body_with_400(config, fake_source, fake_analyzer, make_items):
    client, _ = _client(config, fake_source(make_items(1)), fake_analyzer())
    with client:
        response = client.post(
            "/analyze", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"
        assert "channelId" in response.json()["message"]

        response = client.post("/analyze", json=["UC123"])
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"


def test_analyze_without_videos_is_404(config, fake_source, fake_analyzer):
    client, _ = _client(config, fake_source([]), fake_analyzer())
    with client:
        response = client.post("/analyze", json={"channelId": "UC-empty"})
        assert response.status_code == 404
        assert response.json()["error"] == "No videos found"
        assert "message" in response.json()


def test_unknown_job_is_404(config, fake_source, fake_analyzer):
    client, _ = _client(config, fake_source([]), fake_analyzer())
    with client:
        for path in ("/job-status/job-nope", "/job-results/job-nope"):
            response = client.get(path)
            assert response.status_code == 404
            assert response.json() == {
                "error": "Job not found",
                "message": "The requested job ID does not exist or has expired",
            }


def test_results_before_completion_use_in_progress_shape(config, fake_source, fake_analyzer, make_items):
    client, _ = _client(config, fake_source(make_items(2)), fake_analyzer())
    with client:
        submitted = client.post("/analyze", json={"channelId": "UC123"})
        assert submitted.status_code == 200
        body = submitted.json()
        assert body["status"] == "initializing"
        assert body["videoCount"] == 2
        assert body["estimatedTime"] == "4 minutes"
        assert body["checkStatusUrl"] == f"/job-status/{body['jobId']}"

        status = _wait_for(client, body["jobId"], lambda view: view["status"] == "queued")
        assert status["status"] == "queued"
        assert status["totalVideos"] == 2

        results = client.get(f"/job-results/{body['jobId']}").json()
        assert "results" not in results
        assert results["status"] == "queued"
        assert set(results["videos"]) == {"vid1", "vid2"}
        assert results["message"]


def test_end_to_end_with_embedded_worker(config, fake_source, fake_analyzer, make_items):
    source = fake_source(make_items(3))
    client, _ = _client(config, source, fake_analyzer(fail={"vid2"}), embedded=True)
    with client:
        job_id = client.post("/analyze", json={"channelId": "UC123"}).json()["jobId"]
        status = _wait_for(
            client,
            job_id,
            lambda view: view["completedVideos"] + view["failedVideos"] == view["totalVideos"],
        )

        assert status["status"] == "partially_completed"
        assert status["completedVideos"] == 2
        assert status["failedVideos"] == 1
        assert status["processedVideos"] == 3
        assert status["videos"]["vid2"]["error"] == "analysis exploded"

        results = client.get(f"/job-results/{job_id}").json()
        assert [entry["videoId"] for entry in results["results"]] == ["vid1", "vid3"]
        assert results["results"][0]["results"]["summary"] == "viewers are happy"
    assert source.closed is True
