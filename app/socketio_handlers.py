"""Socket.IO event handlers."""

import logging

from flask import request
from flask_socketio import emit, join_room, leave_room

logger = logging.getLogger(__name__)


def register_socketio_handlers(socketio):
    """Register Socket.IO event handlers."""

    @socketio.on('connect')
    def handle_connect():
        """Handle client connection."""
        logger.info(f"Client connected: {request.sid}")
        emit('connected', {'status': 'ok'})

    @socketio.on('case:join')
    def handle_join(data):
        """Join the room of an open case."""
        case_id = (data or {}).get('caseId')
        if case_id:
            join_room(f"case:{case_id}")
            emit('joined', {'caseId': case_id})

    @socketio.on('case:leave')
    def handle_leave(data):
        case_id = (data or {}).get('caseId')
        if case_id:
            leave_room(f"case:{case_id}")
            emit('left', {'caseId': case_id})

    @socketio.on('disconnect')
    def handle_disconnect():
        """Handle client disconnection."""
        logger.info(f"Client disconnected: {request.sid}")


def emit_case_event(socketio, case_id: str, event_type: str, data: dict):
    """Emit an event to a specific case room."""
    socketio.emit(
        f'case:{event_type}',
        data,
        room=f"case:{case_id}"
    )
