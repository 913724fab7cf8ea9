import pytest

from conftest import write_background
from battlemap.camera import ObserverView
from battlemap.codec import MaskCodec
from battlemap.geometry import Rect
from battlemap.host import HostController


@pytest.fixture
def board(session, recorder, uploads):
    """A session with one 400x300 map and a host looking at it."""
    record = session.create_map('Board', write_background(uploads, 'board.png', (400, 300)))
    redraws = []
    host = HostController(session, 'host-sid', viewport=(1920, 1080), on_redraw=redraws.append)
    session.hosts[host.sid] = host
    host.redraws = redraws
    recorder.clear()
    return record, host


def stored_mask(session, map_id):
    return MaskCodec.decode(session.maps[map_id]['maskEncoded']).convert('RGBA')


def test_brush_gesture_broadcasts_once_on_pointer_up(session, recorder, board):
    record, host = board
    host.set_tool('hide-brush', 20)
    host.pointer_down(50, 50)
    for step in range(1, 6):
        host.pointer_move(50 + step * 10, 50 + step * 10)
    assert recorder.events == []
    assert host.redraws == ['stroke'] * 5
    assert host.mask_store().is_hidden(75, 75)

    assert host.pointer_up(100, 100) == 'stroke'
    assert recorder.names() == ['mask-updated']
    payload = recorder.of('mask-updated')[0]
    assert payload['mapId'] == record['id']
    assert stored_mask(session, record['id']).getpixel((75, 75))[3] == 255
    assert stored_mask(session, record['id']).getpixel((300, 50))[3] == 0


def test_brush_follows_host_camera(session, recorder, board):
    record, host = board
    host.camera.zoom = 2.0; host.camera.pan_x = -100; host.camera.pan_y = 0
    host.set_tool('hide-brush', 10)
    host.pointer_down(100, 100); host.pointer_move(140, 100); host.pointer_up()
    # Screen (120, 100) is image ((120 + 100) / 2, 100 / 2).
    assert stored_mask(session, record['id']).getpixel((110, 50))[3] == 255
    assert stored_mask(session, record['id']).getpixel((60, 50))[3] == 0


def test_click_without_drag_saves_nothing(recorder, board):
    _record, host = board
    host.set_tool('reveal-brush')
    host.pointer_down(10, 10)
    assert host.pointer_up(10, 10) is None
    assert recorder.events == []


def test_rectangle_tool(session, recorder, board):
    record, host = board
    host.set_tool('hide-rect')
    host.pointer_down(10, 10); host.pointer_up(12, 12)
    assert recorder.events == []
    host.pointer_down(10, 10); host.pointer_move(50, 40); host.pointer_up(60, 50)
    assert recorder.names() == ['mask-updated']
    mask = stored_mask(session, record['id'])
    assert mask.getpixel((30, 30))[3] == 255
    assert mask.getpixel((70, 70))[3] == 0


def test_selection_fits_observers_to_host_viewport(session, recorder, board):
    record, host = board
    host.set_tool('view-rect')
    host.pointer_down(100, 100); host.pointer_move(300, 300); host.pointer_up(500, 400)
    assert recorder.names() == ['observer-view-updated']
    payload = recorder.of('observer-view-updated')[0]
    assert payload['zoom'] == pytest.approx(3.6)
    assert (payload['pan']['x'], payload['pan']['y']) == pytest.approx((-120, -360))
    assert session.observer_view(record['id']).zoom == pytest.approx(3.6)


def test_selection_uses_reported_observer_viewport(session, board):
    record, host = board
    session.report_observer_viewport('obs-sid', (1280, 720))
    host.fit_selection(Rect(100, 100, 400, 300))
    view = session.observer_view(record['id'])
    assert view.zoom == pytest.approx(2.4)
    assert (view.pan_x, view.pan_y) == pytest.approx((-80, -240))


def test_tiny_selection_is_ignored(recorder, board):
    _record, host = board
    host.set_tool('view-rect')
    host.pointer_down(100, 100); host.pointer_up(102, 300)
    assert recorder.events == []


def test_fill_all_uses_background_size(session, recorder, board):
    record, host = board
    host.fill_all('hide')
    assert host.mask_store().size == (400, 300)
    assert stored_mask(session, record['id']).getchannel('A').getextrema() == (255, 255)
    assert recorder.names() == ['mask-updated']


def test_camera_moves_are_local(recorder, board):
    _record, host = board
    host.wheel(100, 100, -1)
    assert host.camera.zoom == pytest.approx(1.1)
    host.zoom_out(); host.zoom_in(); host.reset_zoom()
    host.pointer_down(0, 0); host.pointer_move(30, 40); host.pointer_up(30, 40)
    assert (host.camera.pan_x, host.camera.pan_y) == (30, 40)
    host.pan(5, 5)
    assert (host.camera.pan_x, host.camera.pan_y) == (35, 45)
    assert recorder.events == []
    assert 'zoom' in host.redraws and 'pan' in host.redraws


def test_oversize_mask_keeps_previous_state(session, recorder, board):
    record, host = board
    before = session.maps[record['id']]['maskEncoded']
    session.codec = MaskCodec(soft_cap=10, hard_cap=20)
    assert host.fill_all('hide') is None
    assert session.maps[record['id']]['maskEncoded'] == before
    assert recorder.events == []


def test_edit_after_map_deleted_is_a_noop(session, recorder, board):
    record, host = board
    session.delete_map(record['id'])
    recorder.clear()
    host.set_tool('hide-brush')
    assert host.pointer_down(10, 10) is None
    assert host.fill_all('hide') is None
    assert host.reset_observer_view() is None
    assert recorder.events == []


def test_set_active_map_carries_observer_view(session, board):
    record, host = board
    other = session.create_map('Other', width=400, height=300)
    session.set_observer_view(record['id'], ObserverView(2.0, -10, -20, 18))
    host.set_active_map(other['id'])
    assert session.active_map_id == other['id']
    assert session.observer_view(other['id']) == ObserverView(2.0, -10, -20, 18)


def test_reset_and_sync_observer_view(session, board):
    record, host = board
    host.reset_observer_view()
    view = session.observer_view(record['id'])
    assert view.zoom == 1.0
    assert (view.pan_x, view.pan_y) == pytest.approx((760, 390))

    host.set_viewport(800, 600)
    host.camera.zoom = 2.0; host.camera.pan_x = -100; host.camera.pan_y = -50
    host.sync_observer_view()
    view = session.observer_view(record['id'])
    assert view.zoom == 2.0
    assert (view.pan_x, view.pan_y) == pytest.approx((-100, -50))


def test_label_font_size_is_clamped(session, board):
    record, host = board
    host.set_label_font_size(100)
    assert session.observer_view(record['id']).label_font_size == 48
    assert host.set_label_font_size('big') is None


def test_unknown_tool_is_ignored(board):
    _record, host = board
    assert host.set_tool('laser') is None
    assert host.tool == 'select'


def test_view_map_fits_host_camera(session, board):
    _record, host = board
    other = session.create_map('Wide', width=4000, height=3000)
    host.view_map(other['id'])
    assert host.viewing_map_id == other['id']
    assert host.camera.zoom == pytest.approx(0.324)


def test_host_preview_shows_fog_translucent(board):
    _record, host = board
    host.fill_all('hide')
    pixel = host.render_frame().getpixel((10, 10))
    assert all(45 <= channel <= 57 for channel in pixel)
    assert host.render_frame().getpixel((1000, 1000)) == (0, 0, 0)
