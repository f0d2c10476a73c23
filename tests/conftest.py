import itertools
import re
import threading
import time
from datetime import datetime, timezone

import pytest

from app import create_app
from services.drive_store import FOLDER_MIME_TYPE
from services.errors import NotifyFailed, UploadFailed


FIXED_NOW = datetime(2025, 3, 1, 10, 30, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


class FakeStore:
    """In-memory document store recording every upload"""

    def __init__(self, folders=None, children=None):
        self.folders = list(folders or [])
        self.children = dict(children or {})
        self.uploads = []
        self.ensured = []
        self.folder_urls = True
        self.fail_files = set()
        self.fail_content = None
        self.fail_listing = False
        self._lock = threading.Lock()

    def find_folders(self, name_query):
        needle = name_query.lower()
        return [dict(f) for f in self.folders if needle in f['name'].lower()]

    def list_children(self, folder_name):
        if self.fail_listing:
            raise RuntimeError("listing unavailable")
        return list(self.children.get(folder_name, []))

    def ensure_folder(self, folder_name):
        with self._lock:
            self.ensured.append((folder_name, len(self.uploads)))
        if not self.folder_urls:
            return None
        return f"https://drive.example.com/{folder_name}"

    def _record(self, folder_name, file_name, content):
        with self._lock:
            self.uploads.append({'folder': folder_name, 'file': file_name, 'content': content})
        return f"https://drive.example.com/{folder_name}/{file_name}"

    def upload_file(self, file_path, file_name, folder_name):
        if file_name in self.fail_files:
            raise UploadFailed(f"quota exceeded for {file_name}")
        with open(file_path, 'rb') as fh:
            content = fh.read()
        return self._record(folder_name, file_name, content)

    def upload_content(self, content, file_name, folder_name, mime_type='application/octet-stream'):
        if self.fail_content:
            raise UploadFailed(self.fail_content)
        return self._record(folder_name, file_name, content)

    def list_drives(self):
        return [{'name': 'Onboarding', 'id': 'drive-1'}]

    def files_named(self, file_name):
        return [u for u in self.uploads if u['file'] == file_name]


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail = None

    def notify(self, subject, html_body, text_body=None):
        if self.fail:
            raise NotifyFailed(self.fail)
        self.sent.append({'subject': subject, 'html_body': html_body, 'text_body': text_body})


class _Request:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class InMemoryDrive:
    """
    Drive v3 files() resource kept in memory.

    Like Drive, names are not unique within a parent. Every list call waits
    list_delay seconds so concurrent find-then-create sequences overlap.
    """

    def __init__(self, library_name='Gold Pre-Trade Clients', list_delay=0.05):
        self.items = {
            'lib-1': {
                'id': 'lib-1',
                'name': library_name,
                'mimeType': FOLDER_MIME_TYPE,
                'parents': ['root']
            }
        }
        self.list_delay = list_delay
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def files(self):
        return self

    def _matches(self, item, query):
        name = re.search(r"name='([^']*)'", query)
        parent = re.search(r"'([^']+)' in parents", query)
        if name and item['name'] != name.group(1):
            return False
        if parent and parent.group(1) not in item['parents']:
            return False
        if 'mimeType=' in query and item['mimeType'] != FOLDER_MIME_TYPE:
            return False
        return True

    def list(self, q, **kwargs):
        def run():
            time.sleep(self.list_delay)
            with self._lock:
                found = [dict(i) for i in self.items.values() if self._matches(i, q)]
            return {'files': found}
        return _Request(run)

    def create(self, body, media_body=None, **kwargs):
        def run():
            with self._lock:
                item_id = f"id-{next(self._ids)}"
                self.items[item_id] = {
                    'id': item_id,
                    'name': body['name'],
                    'mimeType': body.get('mimeType', 'application/octet-stream'),
                    'parents': list(body['parents'])
                }
            return {'id': item_id, 'name': body['name']}
        return _Request(run)

    def update(self, fileId, media_body=None, **kwargs):
        return _Request(lambda: {'id': fileId, 'name': self.items[fileId]['name']})

    def folders_named(self, name):
        return [
            i for i in self.items.values()
            if i['name'] == name and i['mimeType'] == FOLDER_MIME_TYPE
        ]

    def files_in(self, parent_id):
        return [i for i in self.items.values() if parent_id in i['parents']]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def settings(upload_dir):
    return {
        'TESTING': True,
        'DEMO_MODE': False,
        'BASE_URL': 'https://onboarding.example.com',
        'GDRIVE_LIBRARY_NAME': 'Gold Pre-Trade Clients',
        'GDRIVE_SITE_URL': 'https://drive.google.com/drive',
        'SMTP_FROM': 'Pre-Trade Applications <noreply@example.com>',
        'UPLOAD_TMP_DIR': str(upload_dir),
        'UPLOAD_WORKERS': 4,
        'MAX_FILE_SIZE': 1024,
        'DISPLAY_UTC_OFFSET_HOURS': 2,
        'PDF_LOGO_PATH': '',
    }


@pytest.fixture
def app(settings, store, notifier):
    return create_app(settings, store=store, notifier=notifier, clock=fixed_clock)


@pytest.fixture
def client(app):
    return app.test_client()
