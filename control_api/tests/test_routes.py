"""Tests for stream control routes."""

from fastapi import status

STREAM = {"name": "Studio A", "device_id": "hw:1,0"}


def start(client, stream_id="studio-a", body=None):
    return client.post(f"/api/v1/streams/{stream_id}/start", json=body or STREAM)


def test_health(client):
    """Test health endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "healthy"


def test_list_streams_empty(client):
    """Test listing with nothing running."""
    response = client.get("/api/v1/streams")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"streams": [], "count": 0}


def test_start_stream(client, spawner):
    """Test starting a stream returns its running snapshot."""
    response = start(client)

    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["id"] == "studio-a"
    assert data["status"] == "running"
    assert data["format_name"] == "MP3"
    assert data["mount"] == "studio-a"
    assert len(spawner.commands) == 1
    assert "hw:1,0" in spawner.commands[0]

    listing = client.get("/api/v1/streams").json()
    assert listing["count"] == 1
    assert listing["streams"][0]["id"] == "studio-a"


def test_start_duplicate_rejected(client):
    """Test a second start with the same id is a conflict."""
    assert start(client).status_code == status.HTTP_201_CREATED

    response = start(client)

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["code"] == "DUPLICATE_STREAM"


def test_start_duplicate_device_rejected(client):
    """Test two streams cannot share an input device."""
    assert start(client).status_code == status.HTTP_201_CREATED

    response = start(client, "studio-b", {"name": "Studio B", "device_id": "hw:1,0"})

    assert response.status_code == status.HTTP_409_CONFLICT


def test_start_invalid_config(client):
    """Test a definition with no input is rejected."""
    response = start(client, body={"name": "No input"})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["code"] == "CONFIGURATION_ERROR"


def test_start_launch_failure(client, spawner):
    """Test a spawn failure is reported as a server error."""
    spawner.launch_error = FileNotFoundError("ffmpeg not found")

    response = start(client)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["code"] == "LAUNCH_ERROR"

    stream = client.get("/api/v1/streams/studio-a").json()
    assert stream["status"] == "error"
    assert stream["last_diagnosis"]["category"] == "launch"


def test_get_unknown_stream(client):
    """Test getting a stream that was never started."""
    response = client.get("/api/v1/streams/nope")

    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_stop_stream(client):
    """Test stopping a running stream."""
    start(client)

    response = client.post("/api/v1/streams/studio-a/stop")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["stopped"] is True
    assert data["stream"]["status"] == "stopped"
    assert client.get("/api/v1/streams").json()["count"] == 0


def test_stop_unknown_stream(client):
    """Test stopping an unknown stream is not an error."""
    response = client.post("/api/v1/streams/nope/stop")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"stream_id": "nope", "stopped": False, "stream": None}


def test_restart_stream(client, spawner):
    """Test restart reuses the previous definition."""
    start(client)

    response = client.post("/api/v1/streams/studio-a/restart")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "running"
    assert len(spawner.commands) == 2


def test_restart_unknown_stream(client):
    """Test restart without any known definition."""
    response = client.post("/api/v1/streams/nope/restart")

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_stop_all(client):
    """Test stopping every stream."""
    start(client)
    start(client, "studio-b", {"name": "Studio B", "input_file": "/music/loop.mp3"})

    response = client.post("/api/v1/streams/stop-all")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"stopped": 2}


def test_stats(client):
    """Test stats count active streams by status."""
    start(client)

    data = client.get("/api/v1/streams/stats").json()

    assert data["active"] == 1
    assert data["by_status"]["running"] == 1


def test_server_info(client):
    """Test the resolved target hides the password and reports liveness."""
    response = client.get("/api/v1/server")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["alive"] is True
    assert data["target"]["host"] == "localhost"
    assert data["target"]["port"] == 8000
    assert data["target"]["source_limit"] == 4
    assert "source_password" not in data["target"]


def test_metrics(client):
    """Test Prometheus metrics export."""
    start(client)

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "supervisor_stream_starts_total 1.0" in response.text


def test_websocket_ping(client):
    """Test the WebSocket greets the client and answers pings."""
    with client.websocket_connect("/ws?client_id=test-client") as websocket:
        greeting = websocket.receive_json()
        assert greeting == {"type": "connected", "data": {"client_id": "test-client"}}

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["type"] == "pong"

        websocket.send_text("not json")
        assert websocket.receive_json()["type"] == "error"


def test_websocket_receives_status_events(client):
    """Test stream transitions are pushed to WebSocket clients."""
    with client.websocket_connect("/ws") as websocket:
        websocket.receive_json()

        start(client)

        first = websocket.receive_json()
        second = websocket.receive_json()
        assert first["type"] == "stream_status"
        assert [first["status"], second["status"]] == ["starting", "running"]
        assert second["stream"]["id"] == "studio-a"


def test_websocket_follow_filters_events(client):
    """Test a following client only receives its streams' events."""
    with client.websocket_connect("/ws") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "follow", "stream_id": "studio-b"})
        assert websocket.receive_json() == {"type": "follow", "data": {"stream_id": "studio-b"}}

        start(client)
        start(client, "studio-b", {"name": "Studio B", "input_file": "/music/loop.mp3"})

        event = websocket.receive_json()
        assert event["stream_id"] == "studio-b"
        assert event["status"] == "starting"
