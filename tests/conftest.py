"""Shared fixtures: temp SQLite files and in-memory stand-ins for the adapters."""

import io
import tempfile
import threading
import uuid
from pathlib import Path

import pytest

from vidcore.errors import EmailDeliveryError, ExtractorFailed, ObjectNotFound
from vidcore.lifecycle import VideoLifecycle
from vidcore.mailer import EmailSender
from vidcore.queue import SQLiteQueue
from vidcore.records import RecordStore, utc_now
from vidcore.storage import ObjectStore
from vidcore.thumbnails import ThumbnailPipeline

JPEG_12KB = b"\xff\xd8\xff\xe0" + b"\x00" * (12 * 1024 - 6) + b"\xff\xd9"


class InMemoryObjectStore(ObjectStore):
    def __init__(self):
        self.objects = {}
        self.content_types = {}
        self.put_calls = []

    def get(self, key):
        if key not in self.objects:
            raise ObjectNotFound(key)
        return io.BytesIO(self.objects[key])

    def put(self, key, data, content_type):
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type
        self.put_calls.append(key)

    def delete(self, key):
        self.objects.pop(key, None)

    def presign_upload(self, key, content_type, ttl=None):
        return f"https://store.test/{key}?method=PUT&expires={ttl or 3600}"

    def presign_download(self, key, ttl=None):
        return f"https://store.test/{key}?method=GET&expires={ttl or 3600}"


class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self.tables = {}
        self._lock = threading.Lock()

    def insert(self, collection, fields):
        row = {"id": str(uuid.uuid4()), "created_at": utc_now(), **fields}
        with self._lock:
            self.tables.setdefault(collection, []).append(row)
        return dict(row)

    def update(self, collection, key, fields, expected=None):
        expected = expected or {}
        with self._lock:
            for row in self.tables.get(collection, []):
                if row["id"] == key and all(row.get(k) == v for k, v in expected.items()):
                    row.update(fields)
                    return 1
        return 0

    def select(self, collection, filter=None):
        filter = filter or {}
        with self._lock:
            return [
                dict(row)
                for row in self.tables.get(collection, [])
                if all(row.get(k) == v for k, v in filter.items())
            ]

    def delete(self, collection, filter):
        with self._lock:
            rows = self.tables.get(collection, [])
            keep = [r for r in rows if not all(r.get(k) == v for k, v in filter.items())]
            self.tables[collection] = keep
            return len(rows) - len(keep)


class RecordingEmailSender(EmailSender):
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def send(self, to, subject, html_body):
        if self.error is not None:
            raise self.error
        self.sent.append((to, subject, html_body))


class FakeExtractor:
    """Returns a canned image (or raises) after consuming the stream."""

    seek_offset_s = 5

    def __init__(self, image=JPEG_12KB, error=None):
        self.image = image
        self.error = error
        self.calls = 0
        self.inputs = []

    def extract(self, stream):
        self.calls += 1
        self.inputs.append(stream.read())
        if self.error is not None:
            raise self.error
        return self.image


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def queue(temp_dir):
    q = SQLiteQueue(str(temp_dir / "queue.db"), max_attempts=4, retry_backoff_s=0.0)
    yield q
    q.close()


@pytest.fixture
def objects():
    return InMemoryObjectStore()


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def sender():
    return RecordingEmailSender()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def lifecycle(records):
    return VideoLifecycle(records)


@pytest.fixture
def pipeline(objects, records, extractor, lifecycle):
    return ThumbnailPipeline(objects, records, extractor, lifecycle)


@pytest.fixture
def make_video(records, objects):
    """Insert a video record (and optionally its source object)."""

    def _make(video_id="v1", user_id="u1", status="UPLOADING", with_object=True):
        storage_key = f"videos/{user_id}/{video_id}/clip.mp4"
        records.insert(
            "videos",
            {
                "id": video_id,
                "user_id": user_id,
                "title": "clip",
                "filename": "clip.mp4",
                "storage_key": storage_key,
                "size": 1024,
                "status": status,
            },
        )
        if with_object:
            objects.put(storage_key, b"\x00\x00\x00\x18ftypmp42" * 512, "video/mp4")
            objects.put_calls.clear()
        return storage_key

    return _make


def video_status(records, video_id):
    return records.select("videos", {"id": video_id})[0]["status"]


def failing_extractor(returncode=1):
    return FakeExtractor(
        error=ExtractorFailed(
            f"Frame extractor exited with code {returncode}: moov atom not found",
            returncode=returncode,
        )
    )


def rejecting_sender(message="MessageRejected: Email address is not verified."):
    return RecordingEmailSender(error=EmailDeliveryError(message))
