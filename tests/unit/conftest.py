"""Shared fakes for worker, handler and scenario tests."""

import io
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from PIL import Image

from bookmark_pipeline.config import Settings
from bookmark_pipeline.jobs.broker import InMemoryJobQueue
from bookmark_pipeline.jobs.models import BookmarkMutation
from bookmark_pipeline.repositories.bookmarks import BookmarkRecord, BookmarkStore
from bookmark_pipeline.services.browser import FetchedPage
from bookmark_pipeline.services.storage import LocalObjectStorage

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for the in-memory broker."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeBookmarkStore(BookmarkStore):
    """Dict-backed bookmark store. ``fail_writes`` ids raise on apply."""

    def __init__(self, records: Optional[list[BookmarkRecord]] = None):
        self.records: dict[str, BookmarkRecord] = {r.id: r for r in records or []}
        self.applied: list[BookmarkMutation] = []
        self.fail_writes: set[str] = set()

    def add(self, record: BookmarkRecord) -> BookmarkRecord:
        self.records[record.id] = record
        return record

    async def get(self, bookmark_id):
        record = self.records.get(bookmark_id)
        return replace(record) if record else None

    async def list_for_scan(self, owner_id=None):
        records = [
            replace(r) for r in self.records.values() if owner_id is None or r.owner_id == owner_id
        ]
        return sorted(records, key=lambda r: (r.owner_id, r.created_at or T0, r.id))

    async def apply(self, mutation):
        if mutation.bookmark_id in self.fail_writes:
            raise RuntimeError(f"write failed for {mutation.bookmark_id}")
        record = self.records.get(mutation.bookmark_id)
        if record is None:
            return False
        self.applied.append(mutation)
        for column in ("content_snapshot_path", "content_indexed", "is_duplicate", "is_broken"):
            value = getattr(mutation, column)
            if value is not None:
                setattr(record, column, value)
        if mutation.cover_url is not None and (
            record.cover_url is None or not mutation.cover_only_if_missing
        ):
            record.cover_url = mutation.cover_url
        return True


class FakeSearchIndex:
    def __init__(self):
        self.documents = {}
        self.closed = False

    async def upsert(self, documents):
        for doc in documents:
            self.documents[doc.id] = doc
        return {"taskUid": len(self.documents)}

    async def close(self):
        self.closed = True


def make_jpeg(width: int = 1280, height: int = 720) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (30, 120, 200)).save(buf, format="JPEG")
    return buf.getvalue()


PAGE_HTML = """<!DOCTYPE html>
<html><head><title>Example A</title><script>var tracking = 1;</script></head>
<body>
<nav><a href="/">Home</a> <a href="/about">About</a></nav>
<header>Site banner</header>
<article><h1>Example A</h1><p>The archived body text of the page.</p></article>
<footer>Copyright footer</footer>
</body></html>"""


class FakeBrowser:
    """Stands in for BrowserManager; ``error`` is raised from fetch when set."""

    def __init__(self, html: str = PAGE_HTML, status: int = 200):
        self.html = html
        self.status = status
        self.error: Optional[Exception] = None
        self.fetched: list[str] = []
        self.closed = False

    async def fetch(self, url):
        self.fetched.append(url)
        if self.error is not None:
            raise self.error
        return FetchedPage(url=url, html=self.html, screenshot=make_jpeg(), status=self.status)

    async def close(self):
        self.closed = True


def make_bookmark(bookmark_id: str, url: str, owner_id: str = "u1", **kwargs) -> BookmarkRecord:
    kwargs.setdefault("title", f"Bookmark {bookmark_id}")
    kwargs.setdefault("created_at", T0)
    kwargs.setdefault("updated_at", T0)
    return BookmarkRecord(id=bookmark_id, owner_id=owner_id, url=url, **kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        job_queue_mode="memory",
        storage_mode="local",
        storage_local_root=str(tmp_path / "objects"),
        link_check_delay_s=0,
        page_settle_delay_s=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(clock):
    return InMemoryJobQueue(clock=clock)


@pytest.fixture
def bookmarks():
    return FakeBookmarkStore()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture
def search():
    return FakeSearchIndex()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def ctx(settings, bookmarks, storage, search, browser):
    return {
        "settings": settings,
        "bookmarks": bookmarks,
        "storage": storage,
        "search": search,
        "browser": browser,
    }


@pytest.fixture
def bookmark_factory():
    return make_bookmark


@pytest.fixture
def jpeg_bytes():
    return make_jpeg()
