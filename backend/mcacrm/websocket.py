"""WebSocket real-time notifications using Socket.IO."""

import socketio
import logging
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)

# Create Socket.IO async server
sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*',
    logger=False,
    engineio_logger=False
)

# Socket.IO ASGI app
socket_app = socketio.ASGIApp(
    sio,
    socketio_path='/socket.io'
)

# Track which sids watch which conversation
active_connections: Dict[str, Set[str]] = {}


def get_socket_app():
    """Get the Socket.IO ASGI app for mounting."""
    return socket_app


def conversation_room(conversation_id) -> str:
    return f'conversation_{conversation_id}'


# Socket.IO Event Handlers

@sio.event
async def connect(sid, environ):
    """Handle client connection."""
    logger.info(f"Client connected: {sid}")
    await sio.emit('connected', {
        'message': 'Connected to MCA CRM',
        'sid': sid
    }, room=sid)


@sio.event
async def disconnect(sid):
    """Handle client disconnection."""
    logger.info(f"Client disconnected: {sid}")

    for conversation_id, sids in list(active_connections.items()):
        if sid in sids:
            sids.remove(sid)
            if not sids:
                del active_connections[conversation_id]


@sio.event
async def join_conversation(sid, data):
    """Join a conversation room to receive its events."""
    conversation_id = (data or {}).get('conversation_id') if isinstance(data, dict) else data

    if not conversation_id:
        await sio.emit('error', {
            'message': 'conversation_id is required'
        }, room=sid)
        return

    conversation_id = str(conversation_id)
    await sio.enter_room(sid, conversation_room(conversation_id))
    active_connections.setdefault(conversation_id, set()).add(sid)

    logger.info(f"Client {sid} joined conversation room: {conversation_id}")

    await sio.emit('joined_conversation', {
        'conversation_id': conversation_id
    }, room=sid)


@sio.event
async def leave_conversation(sid, data):
    """Leave a conversation room."""
    conversation_id = (data or {}).get('conversation_id') if isinstance(data, dict) else data
    if not conversation_id:
        return

    conversation_id = str(conversation_id)
    await sio.leave_room(sid, conversation_room(conversation_id))
    sids = active_connections.get(conversation_id)
    if sids:
        sids.discard(sid)
        if not sids:
            del active_connections[conversation_id]


@sio.event
async def ping(sid, data):
    """Handle ping for keepalive."""
    await sio.emit('pong', {
        'timestamp': (data or {}).get('timestamp') if isinstance(data, dict) else None
    }, room=sid)


# Notification Helper Functions
#
# Fan-out is fire-and-forget: a failed emit is logged and never fails the
# request that produced the event.

async def emit_to_conversation(event: str, conversation_id, payload: Dict[str, Any]):
    """Emit an event to everyone watching one conversation."""
    try:
        await sio.emit(event, payload, room=conversation_room(conversation_id))
        logger.debug(f"Emitted {event} to conversation {conversation_id}")
    except Exception as e:
        logger.error(f"Failed to emit {event} to conversation {conversation_id}: {e}")


async def broadcast(event: str, payload: Dict[str, Any]):
    """Emit an event to every connected client."""
    try:
        await sio.emit(event, payload)
        logger.debug(f"Broadcast {event}")
    except Exception as e:
        logger.error(f"Failed to broadcast {event}: {e}")


def get_connection_stats() -> Dict[str, Any]:
    """Get statistics about active connections."""
    return {
        'watched_conversations': len(active_connections),
        'total_connections': sum(len(sids) for sids in active_connections.values()),
        'connections_by_conversation': {
            conversation_id: len(sids)
            for conversation_id, sids in active_connections.items()
        }
    }
