# battlemap/__init__.py
# Application factory: creates the Flask app and SocketIO

import os
import logging

from flask import Flask
from flask_socketio import SocketIO

from battlemap import config
from battlemap.broadcaster import Broadcaster
from battlemap.codec import MaskCodec
from battlemap.loader import ImageLoader
from battlemap.routes_core import core_bp
from battlemap.routes_maps import maps_bp
from battlemap.session import SessionManager
from battlemap.sockets import register_socket_handlers
from battlemap.store import AdventureStore

socketio = SocketIO()


def create_app(overrides=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=os.urandom(24),
        UPLOADS_FOLDER=config.UPLOADS_FOLDER,
        ADVENTURES_DB_PATH=config.ADVENTURES_DB_PATH,
        DEFAULT_FOG_POLICY=config.DEFAULT_FOG_POLICY,
        HOST_PASSWORD=config.HOST_PASSWORD,
        PORT=config.PORT,
        MASK_SOFT_CAP=config.MASK_SOFT_CAP,
        MASK_HARD_CAP=config.MASK_HARD_CAP,
    )
    if overrides: app.config.update(overrides)
    config.ensure_folders(app.config['UPLOADS_FOLDER'], app.config['ADVENTURES_DB_PATH'])

    # Initialize SocketIO
    socketio.init_app(app, cors_allowed_origins="*", async_mode='threading')

    # Session state: store, loader, codec and broadcaster shared by every session
    broadcaster = Broadcaster(socketio)
    manager = SessionManager(
        AdventureStore(app.config['ADVENTURES_DB_PATH']),
        broadcaster,
        ImageLoader(app.config['UPLOADS_FOLDER']),
        codec=MaskCodec(app.config['MASK_SOFT_CAP'], app.config['MASK_HARD_CAP']),
        fog_policy=app.config['DEFAULT_FOG_POLICY'],
    )
    app.extensions['battlemap_sessions'] = manager
    logging.info(f"Data: uploads={app.config['UPLOADS_FOLDER']} db={app.config['ADVENTURES_DB_PATH']} fog={app.config['DEFAULT_FOG_POLICY']}")

    # Register blueprints
    app.register_blueprint(core_bp)
    app.register_blueprint(maps_bp)

    # Register socket event handlers
    register_socket_handlers(socketio, manager)

    return app
