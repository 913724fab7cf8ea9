import os
from concurrent.futures import Future

import pytest
from PIL import Image

from battlemap import create_app
from battlemap.broadcaster import Broadcaster
from battlemap.codec import MaskCodec
from battlemap.loader import ImageLoader
from battlemap.session import SessionManager
from battlemap.store import AdventureStore

HOST_PASSWORD = 'open-sesame'


class Recorder:
    """In-process broadcast listener that keeps every (event, payload)."""

    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [event for event, _ in self.events]

    def of(self, name):
        return [payload for event, payload in self.events if event == name]

    def clear(self):
        self.events = []


class ImmediateExecutor:
    """Runs submitted work inline and returns an already-completed future."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class ManualExecutor:
    """Holds submitted work until the test runs it, in any order."""

    def __init__(self):
        self.tasks = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.tasks.append((future, fn, args, kwargs))
        return future

    def run(self, index):
        future, fn, args, kwargs = self.tasks[index]
        future.set_result(fn(*args, **kwargs))
        return future.result()


def write_background(folder, filename, size, color=(255, 255, 255)):
    Image.new('RGB', size, color).save(os.path.join(folder, filename))
    return f"/uploads/{filename}"


@pytest.fixture
def uploads(tmp_path):
    folder = tmp_path / 'uploads'
    folder.mkdir()
    return str(folder)


@pytest.fixture
def manager(tmp_path, uploads):
    return SessionManager(AdventureStore(str(tmp_path / 'adventures.db')), Broadcaster(), ImageLoader(uploads),
                          codec=MaskCodec(), fog_policy='revealed')


@pytest.fixture
def session(manager):
    return manager.get('table1')


@pytest.fixture
def recorder(session):
    rec = Recorder()
    session.broadcaster.subscribe(session.id, rec)
    return rec


@pytest.fixture
def app(tmp_path):
    return create_app({
        'TESTING': True,
        'UPLOADS_FOLDER': str(tmp_path / 'app-uploads'),
        'ADVENTURES_DB_PATH': str(tmp_path / 'app' / 'adventures.db'),
        'HOST_PASSWORD': HOST_PASSWORD,
        'DEFAULT_FOG_POLICY': 'revealed',
    })


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def host_client(client):
    response = client.post('/api/sessions/table1/host', json={'password': HOST_PASSWORD})
    assert response.status_code == 200
    return client
