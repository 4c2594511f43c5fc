"""Main Flask application server."""

import logging
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from app.config import load_config
from app.routes.case_routes import cases_bp, init_case_routes
from app.socketio_handlers import register_socketio_handlers
from core.interpreter import InterpretationService

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = None
socketio = None


def create_app(
    config: Optional[Dict[str, Any]] = None,
    interpreter_factory: Optional[Callable[[], InterpretationService]] = None,
):
    """Create and configure Flask application."""
    global app, socketio

    # Load configuration
    config = config or load_config()

    # Create Flask app
    app = Flask(__name__)

    # Apply configuration
    app.config['SECRET_KEY'] = config.get('SECRET_KEY', 'dev-secret-key')

    # Setup CORS
    CORS(app, supports_credentials=True, origins=["*"])

    # Initialize Socket.IO
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

    # Register case routes
    init_case_routes(socketio, config=config, interpreter_factory=interpreter_factory)
    app.register_blueprint(cases_bp)
    logger.info("Case routes registered")

    # Root route
    @app.route('/')
    def index():
        return jsonify({"service": "safety-case-assistant", "status": "ok"})

    # Register Socket.IO handlers
    register_socketio_handlers(socketio)
    logger.info("Socket.IO handlers registered")

    return app, socketio


if __name__ == '__main__':
    app, socketio = create_app()
    config = load_config()
    port = int(config.get('port', 8000))
    host = config.get('host', '0.0.0.0')
    debug = config.get('DEBUG', False)

    logger.info(f"Starting server on {host}:{port}")
    socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)
