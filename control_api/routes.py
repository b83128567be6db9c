"""Stream control routes.

Thin forwarding layer: every route calls one public supervisor operation.
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from control_api.websocket import ConnectionManager
from stream_supervisor.models import StreamConfig
from stream_supervisor.supervisor import StreamSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()
root_router = APIRouter()


class StartStreamRequest(BaseModel):
    """Stream start request."""

    name: str = Field(..., description="Display name, unique among active streams")
    device_id: Optional[str] = Field(None, description="Audio input device identifier")
    input_file: Optional[str] = Field(None, description="Audio file or media path")
    bitrate_kbps: Optional[int] = Field(None, description="Bitrate in kbit/s")
    sample_rate: Optional[int] = Field(None, description="Sample rate in Hz")
    channels: Optional[int] = Field(None, description="Channel count")

    def to_config(self) -> StreamConfig:
        return StreamConfig(
            name=self.name,
            device_id=self.device_id,
            input_file=self.input_file,
            bitrate_kbps=self.bitrate_kbps,
            sample_rate=self.sample_rate,
            channels=self.channels,
        )


def get_supervisor(request: Request) -> StreamSupervisor:
    return request.app.state.supervisor


@router.get("/streams")
async def list_streams(supervisor: StreamSupervisor = Depends(get_supervisor)):
    """List active streams ordered by start time.

    Returns:
        dict: Stream snapshots and count.
    """
    streams = [snapshot.to_dict() for snapshot in supervisor.list_active()]
    return {"streams": streams, "count": len(streams)}


@router.get("/streams/stats")
async def get_stats(supervisor: StreamSupervisor = Depends(get_supervisor)):
    """Get counts per status and encoder resource usage."""
    return supervisor.get_stats()


@router.post("/streams/stop-all")
async def stop_all_streams(supervisor: StreamSupervisor = Depends(get_supervisor)):
    """Stop every active stream.

    Returns:
        dict: Number of streams stopped.
    """
    stopped = await supervisor.stop_all()
    return {"stopped": stopped}


@router.get("/streams/{stream_id}")
async def get_stream(stream_id: str, supervisor: StreamSupervisor = Depends(get_supervisor)):
    """Get one stream, active or last known.

    Raises:
        HTTPException: If the stream was never seen.
    """
    snapshot = supervisor.status(stream_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Stream {stream_id} not found")
    return snapshot.to_dict()


@router.post("/streams/{stream_id}/start", status_code=status.HTTP_201_CREATED)
async def start_stream(
    stream_id: str,
    body: StartStreamRequest,
    supervisor: StreamSupervisor = Depends(get_supervisor),
):
    """Start a stream.

    Args:
        stream_id: Stream id, also the mount point.
        body: Stream definition.

    Returns:
        dict: Snapshot of the started stream.
    """
    snapshot = await supervisor.start(stream_id, body.to_config())
    return snapshot.to_dict()


@router.post("/streams/{stream_id}/stop")
async def stop_stream(stream_id: str, supervisor: StreamSupervisor = Depends(get_supervisor)):
    """Stop a stream. Stopping an unknown stream is not an error.

    Returns:
        dict: Whether a running stream was stopped and its final state.
    """
    stopped = await supervisor.stop(stream_id)
    snapshot = supervisor.status(stream_id)
    return {
        "stream_id": stream_id,
        "stopped": stopped,
        "stream": snapshot.to_dict() if snapshot else None,
    }


@router.post("/streams/{stream_id}/restart")
async def restart_stream(
    stream_id: str,
    body: Optional[StartStreamRequest] = None,
    supervisor: StreamSupervisor = Depends(get_supervisor),
):
    """Restart a stream with its previous or a new definition."""
    snapshot = await supervisor.restart(stream_id, body.to_config() if body else None)
    return snapshot.to_dict()


@router.get("/server")
async def get_server(supervisor: StreamSupervisor = Depends(get_supervisor)):
    """Get the resolved ingest target and whether the server answers."""
    target = await supervisor.coordinator.resolve_ingest_target()
    alive = await supervisor.coordinator.check_liveness(target)
    return {"target": target.to_dict(), "alive": alive}


@root_router.get("/metrics")
async def metrics(supervisor: StreamSupervisor = Depends(get_supervisor)):
    """Prometheus metrics."""
    return Response(content=supervisor.metrics.export(), media_type=CONTENT_TYPE_LATEST)


@root_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: Optional[str] = Query(None)):
    """WebSocket endpoint for stream status events.

    Every stream transition is pushed as a ``stream_status`` message.
    Clients may send ``{"type": "ping"}`` and receive a pong, or
    ``{"type": "follow", "stream_id": ...}`` to only receive events of
    the streams they follow.
    """
    manager: ConnectionManager = websocket.app.state.connection_manager
    client_id = client_id or str(uuid.uuid4())

    await manager.connect(websocket, client_id)
    await manager.send_personal_message(
        {"type": "connected", "data": {"client_id": client_id}},
        websocket,
    )

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_personal_message(
                    {"type": "error", "data": {"message": "Invalid JSON"}},
                    websocket,
                )
                continue

            if not isinstance(message, dict):
                continue
            message_type = message.get("type")
            if message_type == "ping":
                await manager.send_personal_message({"type": "pong", "data": {}}, websocket)
            elif message_type in ("follow", "unfollow") and message.get("stream_id"):
                if message_type == "follow":
                    manager.follow(websocket, message["stream_id"])
                else:
                    manager.unfollow(websocket, message["stream_id"])
                await manager.send_personal_message(
                    {"type": message_type, "data": {"stream_id": message["stream_id"]}},
                    websocket,
                )
    except WebSocketDisconnect:
        manager.disconnect(websocket)
