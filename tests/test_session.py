import pytest

from conftest import Recorder, write_background
from battlemap.broadcaster import Broadcaster
from battlemap.camera import ObserverView
from battlemap.codec import MaskCodec
from battlemap.errors import PersistingError, StaleReferenceError, ValidationError
from battlemap.loader import ImageLoader
from battlemap.session import SessionManager, default_battlegrid
from battlemap.store import AdventureStore


def decoded_alpha(record):
    return MaskCodec.decode(record['maskEncoded']).convert('RGBA').getchannel('A').getextrema()


def test_first_map_becomes_active_and_is_broadcast(session, recorder, uploads):
    url = write_background(uploads, 'cave.png', (640, 480))
    record = session.create_map('Cave', url)
    assert (record['width'], record['height']) == (640, 480)
    assert record['observerView'] == {'zoom': 1.0, 'panX': 0.0, 'panY': 0.0, 'labelFontSize': 14}
    assert record['battlegridState'] == default_battlegrid()
    assert record['maskMeta']['mime'] == 'image/png'
    assert decoded_alpha(record) == (0, 0)
    assert session.active_map_id == record['id']
    assert recorder.names() == ['map-created', 'active-map-changed', 'observer-view-updated']
    assert all(payload['sessionId'] == 'table1' for payload in recorder.of('map-created'))


def test_hidden_policy_starts_fully_fogged(tmp_path, uploads):
    manager = SessionManager(AdventureStore(str(tmp_path / 'h.db')), Broadcaster(), ImageLoader(uploads), fog_policy='hidden')
    record = manager.get('dungeon').create_map('Crypt', width=200, height=100)
    assert decoded_alpha(record) == (255, 255)
    assert MaskCodec.decode(record['maskEncoded']).size == (200, 100)


def test_second_map_does_not_steal_active(session):
    first = session.create_map('One', width=100, height=100)
    session.create_map('Two', width=100, height=100)
    assert session.active_map_id == first['id']


def test_state_survives_reconnect(tmp_path, uploads, session):
    a = session.create_map('A', width=100, height=100)
    b = session.create_map('B', width=100, height=100)
    session.set_active_map(b['id'])
    session.set_observer_view(b['id'], ObserverView(2.0, -30, 40, 20))
    fresh = SessionManager(session.store, Broadcaster(), ImageLoader(uploads)).get('table1')
    snapshot = fresh.snapshot()
    assert [m['id'] for m in snapshot['maps']] == [a['id'], b['id']]
    assert snapshot['activeMapId'] == b['id']
    assert snapshot['observerView'] == {'zoom': 2.0, 'panX': -30.0, 'panY': 40.0, 'labelFontSize': 20}


def test_update_map_merges_and_protects_mask(session, recorder):
    record = session.create_map('Old', width=100, height=100)
    recorder.clear()
    updated = session.update_map(record['id'], {'name': 'New', 'maskEncoded': 'data:junk', 'notes': 'x'})
    assert updated['name'] == 'New' and updated['notes'] == 'x'
    assert updated['maskEncoded'] == record['maskEncoded']
    assert recorder.names() == ['map-updated']
    assert recorder.of('map-updated')[0]['map']['name'] == 'New'


def test_background_change_reinitializes_mask(session, uploads):
    record = session.create_map('Map', write_background(uploads, 'small.png', (100, 80)))
    host = session.hosts['h1'] = FakeHost()
    updated = session.update_map(record['id'], {'backgroundImage': write_background(uploads, 'big.png', (300, 200))})
    assert (updated['width'], updated['height']) == (300, 200)
    assert MaskCodec.decode(updated['maskEncoded']).size == (300, 200)
    assert host.discarded == [record['id']]


def test_background_size_wins_over_requested_size(session, uploads):
    url = write_background(uploads, 'room.png', (400, 300))
    record = session.create_map('Room', url, 800, 600)
    assert (record['width'], record['height']) == (400, 300)
    assert MaskCodec.decode(record['maskEncoded']).size == (400, 300)
    updated = session.update_map(record['id'], {'width': 50, 'height': 50})
    assert (updated['width'], updated['height']) == (400, 300)
    assert session.create_map('Blank', width=120, height=90)['width'] == 120


def test_unused_backgrounds_are_evicted(session, uploads):
    old_url = write_background(uploads, 'old.png', (60, 40))
    shared_url = write_background(uploads, 'shared.png', (60, 40))
    first = session.create_map('First', old_url)
    second = session.create_map('Second', shared_url)
    third = session.create_map('Third', shared_url)
    session.update_map(first['id'], {'backgroundImage': shared_url})
    assert old_url not in session.loader._futures
    session.delete_map(second['id'])
    assert shared_url in session.loader._futures
    session.delete_map(first['id']); session.delete_map(third['id'])
    assert shared_url not in session.loader._futures


def test_delete_active_map_falls_back_to_first_remaining(session, recorder):
    a = session.create_map('A', width=50, height=50)
    b = session.create_map('B', width=50, height=50)
    c = session.create_map('C', width=50, height=50)
    session.set_active_map(c['id'])
    recorder.clear()
    assert session.delete_map(c['id']) == a['id']
    assert recorder.of('map-deleted') == [{'mapId': c['id'], 'activeMapId': a['id'], 'sessionId': 'table1'}]
    assert session.store.load_session('table1')['active_map_id'] == a['id']
    session.delete_map(a['id']); session.delete_map(b['id'])
    assert session.active_map_id is None


def test_stale_map_references(session):
    with pytest.raises(StaleReferenceError):
        session.delete_map('gone')
    with pytest.raises(StaleReferenceError):
        session.set_observer_view('gone', ObserverView())


def test_layers_lifecycle(session, recorder):
    record = session.create_map('Map', width=50, height=50)
    recorder.clear()
    token = session.add_layer(record['id'], {'name': 'Tokens'})
    notes = session.add_layer(record['id'], {'id': 'notes', 'name': 'Notes'})
    assert token['visible'] is True and token['id']
    session.update_layer(record['id'], 'notes', {'visible': False, 'id': 'hijack'})
    assert session.maps[record['id']]['layers'][1] == {'id': 'notes', 'name': 'Notes', 'visible': False}
    session.reorder_layers(record['id'], ['notes', token['id']])
    assert [l['id'] for l in session.maps[record['id']]['layers']] == ['notes', token['id']]
    session.delete_layer(record['id'], token['id'])
    assert recorder.names() == ['layer-added', 'layer-added', 'layer-updated', 'layers-reordered', 'layer-deleted']
    with pytest.raises(StaleReferenceError):
        session.update_layer(record['id'], token['id'], {'name': 'x'})
    with pytest.raises(ValidationError):
        session.reorder_layers(record['id'], ['notes', 'extra'])
    with pytest.raises(ValidationError):
        session.add_layer(record['id'], {'id': notes['id']})


def test_battlegrid_update(session, recorder):
    record = session.create_map('Map', width=50, height=50)
    grid = session.set_battlegrid(record['id'], {'type': 'hex', 'size': 70, 'unknown': 1})
    assert grid['type'] == 'hex' and grid['size'] == 70.0 and 'unknown' not in grid
    assert recorder.of('battlegrid-updated')[-1]['battlegridState'] == grid
    with pytest.raises(ValidationError):
        session.set_battlegrid(record['id'], {'type': 'triangle'})
    with pytest.raises(ValidationError):
        session.set_battlegrid(record['id'], {'opacity': 3})


def test_set_active_map_can_carry_view(session):
    a = session.create_map('A', width=50, height=50)
    b = session.create_map('B', width=50, height=50)
    session.set_observer_view(a['id'], ObserverView(3.0, 1, 2, 16))
    session.set_active_map(b['id'], view=session.observer_view(a['id']))
    assert session.observer_view(b['id']) == ObserverView(3.0, 1, 2, 16)


def test_relay_only_forwards_known_events(session, recorder):
    session.relay('turn-order-updated', {'order': ['Ann', 'Bo']}, origin_sid='h1')
    assert recorder.of('turn-order-updated') == [{'order': ['Ann', 'Bo'], 'sessionId': 'table1'}]
    with pytest.raises(ValidationError):
        session.relay('mask-updated', {'mapId': 'x'})


def test_failed_persist_changes_nothing(session, recorder):
    record = session.create_map('Map', width=50, height=50)
    recorder.clear()
    session.store.save_map = lambda session_id, rec: False
    with pytest.raises(PersistingError):
        session.update_map(record['id'], {'name': 'Lost'})
    assert session.maps[record['id']]['name'] == 'Map'
    assert recorder.events == []


def test_manager_rejects_bad_session_ids(manager):
    with pytest.raises(ValidationError):
        manager.get('../etc')
    assert manager.get('table1') is manager.get('table1')


def test_manager_tracks_clients(manager):
    session = manager.join('table1', 'sid-1')
    session.report_observer_viewport('sid-1', (1280, 720))
    assert manager.session_for('sid-1') is session
    assert session.observer_viewport() == (1280, 720)
    assert manager.disconnect('sid-1') == 'table1'
    assert manager.session_for('sid-1') is None
    assert manager.disconnect('sid-1') is None


class FakeHost:
    def __init__(self):
        self.discarded = []

    def discard_mask(self, map_id):
        self.discarded.append(map_id)

    def map_deleted(self, map_id):
        pass
