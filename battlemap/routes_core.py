# battlemap/routes_core.py
# Blueprint: upload serving, host login, snapshots, observer frames and the upload pipeline

import os
import logging

from flask import Blueprint, current_app, request, jsonify, send_from_directory, make_response
from werkzeug.utils import secure_filename

from battlemap import auth
from battlemap import config
from battlemap.camera import parse_viewport
from battlemap.errors import BattlemapError, OversizeError, PersistingError, StageError, StaleReferenceError, ValidationError
from battlemap.pipeline import UploadPipeline
from battlemap.render import frame_jpeg_bytes
from battlemap.session import get_manager

core_bp = Blueprint('core', __name__)


def api_error(e):
    """Map a domain error onto a JSON error response."""
    if isinstance(e, StageError) and not isinstance(e, PersistingError): status = 400
    elif isinstance(e, ValidationError): status = 400
    elif isinstance(e, StaleReferenceError): status = 404
    elif isinstance(e, OversizeError): status = 413
    else: status = 500
    logging.log(logging.ERROR if status >= 500 else logging.INFO, f"API error {status}: {e}")
    body = {"error": str(e)}
    if isinstance(e, StageError): body["stage"] = e.stage
    return jsonify(body), status


def origin_sid():
    """Socket id of the requesting client, skipped when the change is broadcast."""
    return request.headers.get('X-Socket-Id') or None


@core_bp.route('/api/info')
def info():
    return jsonify({"lanIp": config.get_lan_ip(), "port": current_app.config['PORT']})


@core_bp.route('/uploads/<path:filename>')
def serve_upload(filename):
    log_prefix = "[serve_upload]"; safe_filename = secure_filename(filename); uploads_dir = current_app.config['UPLOADS_FOLDER']
    filepath = os.path.join(uploads_dir, safe_filename); logging.debug(f"{log_prefix} Request: {filename} -> '{filepath}'")
    if not safe_filename or not os.path.isfile(filepath) or not os.path.abspath(filepath).startswith(os.path.abspath(uploads_dir)):
        logging.warning(f"{log_prefix} Not found: {filename}"); return jsonify({"error": "Image not found"}), 404
    return send_from_directory(uploads_dir, safe_filename, as_attachment=False)


@core_bp.route('/api/sessions/<session_id>/host', methods=['POST'])
def host_login(session_id):
    if not config.valid_session_id(session_id): return jsonify({"error": "Invalid session id"}), 400
    data = request.get_json(silent=True) or {}
    if not auth.check_host_password(data.get('password')):
        logging.warning(f"Rejected host login for session {session_id}"); return jsonify({"error": "Wrong password"}), 403
    auth.grant_host(session_id)
    logging.info(f"Host verified for session {session_id}")
    return jsonify({"success": True, "sessionId": session_id})


@core_bp.route('/api/sessions/<session_id>/state')
def get_state(session_id):
    try:
        session = get_manager().get(session_id)
        with session.lock: return jsonify(session.snapshot())
    except BattlemapError as e: return api_error(e)


@core_bp.route('/api/sessions/<session_id>/observer-frame')
def observer_frame(session_id):
    """JPEG of what observers currently see, for passive displays without a canvas."""
    try:
        session = get_manager().get(session_id)
        viewport = parse_viewport((request.args.get('width', config.DEFAULT_VIEWPORT[0]), request.args.get('height', config.DEFAULT_VIEWPORT[1])))
        frame = session.replica.render_frame(session.loader, viewport)
    except BattlemapError as e: return api_error(e)
    response = make_response(frame_jpeg_bytes(frame))
    response.headers['Content-Type'] = 'image/jpeg'; response.headers['Cache-Control'] = 'no-store'
    return response


@core_bp.route('/api/sessions/<session_id>/uploads', methods=['POST'])
@auth.host_required
def upload_map(session_id):
    if 'mapFile' not in request.files: return jsonify({"error": "No file part", "stage": "Uploading"}), 400
    form = request.form
    try:
        session = get_manager().get(session_id)
        pipeline = UploadPipeline(session, current_app.config['UPLOADS_FOLDER'])
        with session.lock:
            record = pipeline.run(request.files['mapFile'], name=form.get('name'), scaling=form.get('scaling') or None,
                                  rotation=form.get('rotation'), origin_sid=origin_sid())
    except BattlemapError as e: return api_error(e)
    return jsonify(record), 201
