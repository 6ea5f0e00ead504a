"""
FastAPI relay server for interest-matched encrypted chat.

This server:
- Pairs anonymous WebSocket connections that announce the same interest
- Relays public keys, ciphertext and typing flags between partners
  (it never sees plaintext and stores nothing)
- Exposes health and aggregate statistics over REST
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket

import config
from .dispatcher import RelayDispatcher

logger = logging.getLogger(__name__)

dispatcher = RelayDispatcher()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Relay started")
    yield
    logger.info("Relay shutting down (%d live connections)", len(dispatcher.outbound))


app = FastAPI(
    title="Interest Chat Relay",
    description="Pairs strangers by interest and relays end-to-end encrypted messages",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/stats")
async def stats():
    """Counts of live connections, waiting participants and sessions"""
    return dispatcher.stats()


async def _pump(websocket: WebSocket, queue: asyncio.Queue, reader: asyncio.Task):
    """Drain a connection's outbound queue onto its socket; stop the reader if sending fails"""
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.info("Outbound pump stopped (%s), closing connection", type(e).__name__)
        reader.cancel()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for matching and relaying.

    Protocol:
    1. Client sends: {"type": "announce", "interest": "...", "display_name": "..."}
    2. Server pairs and sends both sides: {"type": "paired", "peer": "...", "display_name": "..."}
    3. Clients exchange {"type": "public_key"}, {"type": "message"}, {"type": "typing"};
       the server forwards each to the partner with an added "from"
    4. When a partner disconnects the survivor gets {"type": "partner_left"}
       and is queued again on its interest

    Binary frames and anything that is not a JSON object get an error event.
    """
    await websocket.accept()
    conn_id = uuid.uuid4().hex
    queue = dispatcher.register(conn_id)
    writer = asyncio.create_task(_pump(websocket, queue, asyncio.current_task()))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = None
            if message.get("text") is not None:
                try:
                    data = json.loads(message["text"])
                except ValueError:
                    pass
            if not isinstance(data, dict):
                data = {}
            dispatcher.dispatch(conn_id, data)

    except asyncio.CancelledError:
        # Cancelled by our own pump after a failed send
        if not writer.done():
            raise
    except Exception:
        logger.exception("WebSocket error on %s", conn_id)
    finally:
        dispatcher.disconnect(conn_id)
        writer.cancel()


def main():
    import uvicorn

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run(app, host=config.RELAY_HOST, port=config.RELAY_PORT)


if __name__ == "__main__":
    main()
