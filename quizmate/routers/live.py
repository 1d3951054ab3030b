"""
Live updates over WebSockets.

A socket follows one competition (participants, the competition row and chat)
or the caller's random-match ticket. Changes from the in-process feed are
forwarded as JSON; the database stays the source of truth, so clients treat a
message as a cue and may re-fetch over HTTP.

Server -> client messages:
    {"type": "connected", ...}
    {"type": "change", "table": ..., "event": "INSERT|UPDATE|DELETE", "record": {...}}
    {"type": "error", "message": ..., "code": ...}   (then the socket closes)
    {"type": "pong"}                                  (reply to a "ping" text frame)
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from sqlalchemy.engine import Engine
from sqlmodel import Session

from ..config import SESSION_COOKIE_NAME
from ..database import get_engine
from ..dependencies import get_user_for_token
from ..errors import ErrorCode, NotFoundError
from ..models import CompetitionParticipant, User
from ..realtime import ChangeEvent
from ..store.competition_store import VISIBLE_PARTICIPANT_STATUSES, CompetitionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws")

# Application close codes
CLOSE_UNAUTHORIZED = 4001
CLOSE_FORBIDDEN = 4003
CLOSE_NOT_FOUND = 4004


async def _reject(websocket: WebSocket, close_code: int, message: str, code: str) -> None:
    await websocket.accept()
    await websocket.send_json({"type": "error", "message": message, "code": code})
    await websocket.close(code=close_code, reason=message)


def _socket_user(websocket: WebSocket, bind: Engine) -> Optional[User]:
    with Session(bind) as db:
        return get_user_for_token(db, websocket.cookies.get(SESSION_COOKIE_NAME))


def _change_message(event: ChangeEvent) -> Dict[str, Any]:
    return {
        "type": "change",
        "table": event.table,
        "event": event.type,
        "record": jsonable_encoder(event.record or event.old_record or {}),
    }


def _leaderboard(store: CompetitionStore, competition_id: int):
    return [
        {
            "position": position,
            "user_id": participant.user_id,
            "status": participant.status,
            "score": participant.score,
            "time_taken": participant.time_taken,
        }
        for position, participant in enumerate(store.get_live_leaderboard(competition_id), start=1)
    ]


async def _relay(websocket: WebSocket, store: CompetitionStore, subscribe: Callable, greeting: Dict[str, Any]) -> None:
    """
    Forward feed changes to the socket until the client disconnects.

    Feed callbacks run on whichever thread committed the change, so messages
    are handed to the event loop through a queue. ``subscribe`` receives the
    forwarding callback and opens the store subscriptions; they are closed
    through ``store.teardown`` however the socket ends.
    """
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()

    def enqueue(message: Dict[str, Any]) -> None:
        if not loop.is_closed():
            loop.call_soon_threadsafe(outbox.put_nowait, message)

    async def drain() -> None:
        while True:
            await websocket.send_json(await outbox.get())

    subscribe(enqueue)
    await websocket.send_json(greeting)
    sender = asyncio.create_task(drain())
    try:
        while True:
            if await websocket.receive_text() == "ping":
                outbox.put_nowait({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug("Socket for user %s disconnected", store.user_id)
    finally:
        sender.cancel()
        store.teardown()


@router.websocket("/competitions/{competition_id}")
async def competition_updates(
    websocket: WebSocket,
    competition_id: int,
    bind: Engine = Depends(get_engine)
):
    """Participant progress, the live leaderboard, status changes and chat for one competition."""
    user = _socket_user(websocket, bind)
    if user is None:
        await _reject(websocket, CLOSE_UNAUTHORIZED, "Not authenticated", ErrorCode.AUTH_REQUIRED)
        return

    store = CompetitionStore(bind, websocket.app.state.feed, user_id=user.id, user_email=user.email).init()
    try:
        competition = store.load_competition(competition_id)
    except NotFoundError as exc:
        store.teardown()
        await _reject(websocket, CLOSE_NOT_FOUND, exc.message, exc.code)
        return
    if store.load_participant_status(competition_id) not in VISIBLE_PARTICIPANT_STATUSES:
        store.teardown()
        await _reject(
            websocket, CLOSE_FORBIDDEN, "You are not a participant in this competition.", ErrorCode.FORBIDDEN
        )
        return

    await websocket.accept()
    store.load_participants(competition_id)

    def subscribe(enqueue):
        def competition_changed(event: ChangeEvent):
            message = _change_message(event)
            if event.table == CompetitionParticipant.__tablename__:
                message["leaderboard"] = _leaderboard(store, competition_id)
            enqueue(message)

        store.subscribe_to_competition(competition_id, on_change=competition_changed)
        store.subscribe_to_chat(competition_id, on_change=lambda event: enqueue(_change_message(event)))

    await _relay(websocket, store, subscribe, {
        "type": "connected",
        "competition_id": competition_id,
        "status": competition.status,
        "leaderboard": _leaderboard(store, competition_id),
    })


@router.websocket("/queue")
async def queue_updates(
    websocket: WebSocket,
    bind: Engine = Depends(get_engine)
):
    """The caller's random-match ticket, including the matcher's pairing."""
    user = _socket_user(websocket, bind)
    if user is None:
        await _reject(websocket, CLOSE_UNAUTHORIZED, "Not authenticated", ErrorCode.AUTH_REQUIRED)
        return

    store = CompetitionStore(bind, websocket.app.state.feed, user_id=user.id, user_email=user.email).init()
    await websocket.accept()

    def subscribe(enqueue):
        store.subscribe_to_random_queue(on_change=lambda event: enqueue(_change_message(event)))

    await _relay(websocket, store, subscribe, {"type": "connected", "user_id": user.id})
