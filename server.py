import asyncio
import json
import logging
from typing import Any, AsyncIterator, List

from fastapi import FastAPI, HTTPException, Path, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from peerexchange.hub import NotSubscribed, RelayHub


logger = logging.getLogger("peerexchange.server")

app = FastAPI(title="peerexchange relay")

MAX_PAYLOAD_BYTES = 32 * 1024
KEEPALIVE_SECONDS = 15.0
CHANNEL_PATTERN = r"^[A-Za-z0-9_-]{1,128}$"


# --- Models ---
class TrackRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=64)
    data: dict


class BroadcastRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=64)
    event: str = Field(..., min_length=1, max_length=64)
    payload: Any = None


# --- In-memory store ---
# Only hashes of connect keys ever arrive here as channel ids
hub = RelayHub()


async def _event_stream(channel_id: str, client_id: str) -> AsyncIterator[str]:
    queue: asyncio.Queue = asyncio.Queue()
    hub.join(channel_id, client_id, queue.put_nowait)
    try:
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(message, separators=(',', ':'))}\n\n"
    finally:
        hub.leave(channel_id, client_id)


# --- Endpoints ---
# Every hub call stays on the event loop: subscriber queues are asyncio.Queues
@app.get("/channels/{channel_id}/events")
async def subscribe(
    channel_id: str = Path(..., pattern=CHANNEL_PATTERN),
    client_id: str = Query(..., min_length=1, max_length=64),
):
    """Server-Sent Events stream of status, presence and broadcast messages."""
    if hub.is_subscribed(channel_id, client_id):
        raise HTTPException(409, "Client already subscribed")
    return StreamingResponse(
        _event_stream(channel_id, client_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@app.post("/channels/{channel_id}/presence")
async def track(req: TrackRequest, channel_id: str = Path(..., pattern=CHANNEL_PATTERN)):
    try:
        status = hub.track(channel_id, req.client_id, req.data)
    except NotSubscribed:
        raise HTTPException(404, "Client not subscribed")
    return {"status": status}


@app.get("/channels/{channel_id}/presence")
async def presence(channel_id: str = Path(..., pattern=CHANNEL_PATTERN)) -> List[dict]:
    return hub.presence_state(channel_id)


@app.post("/channels/{channel_id}/broadcast")
async def broadcast(req: BroadcastRequest, channel_id: str = Path(..., pattern=CHANNEL_PATTERN)):
    size = len(json.dumps(req.payload, separators=(",", ":")).encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise HTTPException(413, f"Payload exceeds {MAX_PAYLOAD_BYTES} bytes")
    try:
        status = hub.broadcast(channel_id, req.client_id, req.event, req.payload)
    except NotSubscribed:
        raise HTTPException(404, "Client not subscribed")
    logger.debug("Broadcast %s on %s (%d bytes)", req.event, channel_id[:8], size)
    return {"status": status}
