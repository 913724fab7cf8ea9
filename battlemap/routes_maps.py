# battlemap/routes_maps.py
# Blueprint: map, layer and battlegrid REST endpoints (host only, except reads)

from flask import Blueprint, request, jsonify

from battlemap import auth
from battlemap.errors import BattlemapError, ValidationError
from battlemap.routes_core import api_error, origin_sid
from battlemap.session import get_manager

maps_bp = Blueprint('maps', __name__, url_prefix='/api/sessions/<session_id>/maps')


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict): raise ValidationError("Request body must be a JSON object")
    return data


def _mutate(session_id, operation, status=200):
    """Run one session mutation under the session lock and turn the result into a response."""
    try:
        session = get_manager().get(session_id)
        with session.lock: result = operation(session)
    except BattlemapError as e: return api_error(e)
    if result is None: return '', 204
    return jsonify(result), status


@maps_bp.route('', methods=['GET'])
def list_maps(session_id):
    try:
        session = get_manager().get(session_id)
        with session.lock: return jsonify(session.snapshot()['maps'])
    except BattlemapError as e: return api_error(e)


@maps_bp.route('/<map_id>', methods=['GET'])
def get_map(session_id, map_id):
    try:
        session = get_manager().get(session_id)
        with session.lock: return jsonify(session.require_map(map_id))
    except BattlemapError as e: return api_error(e)


@maps_bp.route('', methods=['POST'])
@auth.host_required
def create_map(session_id):
    def op(session):
        data = _json_body()
        return session.create_map(data.get('name'), data.get('backgroundImage'), data.get('width'), data.get('height'), origin_sid=origin_sid())
    return _mutate(session_id, op, 201)


@maps_bp.route('/<map_id>', methods=['PATCH'])
@auth.host_required
def update_map(session_id, map_id):
    return _mutate(session_id, lambda s: s.update_map(map_id, _json_body(), origin_sid=origin_sid()))


@maps_bp.route('/<map_id>', methods=['DELETE'])
@auth.host_required
def delete_map(session_id, map_id):
    return _mutate(session_id, lambda s: {"activeMapId": s.delete_map(map_id, origin_sid=origin_sid())})


@maps_bp.route('/<map_id>/active', methods=['POST'])
@auth.host_required
def activate_map(session_id, map_id):
    def op(session):
        carry = session.observer_view(session.active_map_id) if session.active_map_id in session.maps else None
        session.set_active_map(map_id, view=carry, origin_sid=origin_sid())
        return {"activeMapId": map_id}
    return _mutate(session_id, op)


@maps_bp.route('/<map_id>/battlegrid', methods=['PUT'])
@auth.host_required
def update_battlegrid(session_id, map_id):
    return _mutate(session_id, lambda s: s.set_battlegrid(map_id, _json_body(), origin_sid=origin_sid()))


@maps_bp.route('/<map_id>/layers', methods=['POST'])
@auth.host_required
def add_layer(session_id, map_id):
    return _mutate(session_id, lambda s: s.add_layer(map_id, _json_body(), origin_sid=origin_sid()), 201)


@maps_bp.route('/<map_id>/layers/order', methods=['PUT'])
@auth.host_required
def reorder_layers(session_id, map_id):
    return _mutate(session_id, lambda s: s.reorder_layers(map_id, _json_body().get('layerIds'), origin_sid=origin_sid()))


@maps_bp.route('/<map_id>/layers/<layer_id>', methods=['PATCH'])
@auth.host_required
def update_layer(session_id, map_id, layer_id):
    return _mutate(session_id, lambda s: s.update_layer(map_id, layer_id, _json_body(), origin_sid=origin_sid()))


@maps_bp.route('/<map_id>/layers/<layer_id>', methods=['DELETE'])
@auth.host_required
def delete_layer(session_id, map_id, layer_id):
    return _mutate(session_id, lambda s: s.delete_layer(map_id, layer_id, origin_sid=origin_sid()))
