import asyncio
from datetime import datetime, timezone
from typing import Optional

from media_index.config.models import AppConfig, LoggingSettings, ScanSettings, StoreSettings
from media_index.errors import ContentStoreError
from media_index.state.state_store import StateStore
from media_index.store.memory import InMemoryContentStore

ROOT = "/acme/site"
STATE_DIR = f"{ROOT}/.da"
PAST = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_config(**scan_overrides) -> AppConfig:
    scan_values = {
        "lease_settle_seconds": 0.01,
        "batch_poll_seconds": 0.01,
        "max_discovery_workers": 2,
        "internal_hosts": ("www.acme.test",),
    }
    scan_values.update(scan_overrides)
    return AppConfig(
        logging=LoggingSettings(level="WARNING"),
        store=StoreSettings(
            base_url="https://admin.example.test",
            org="acme",
            repo="site",
            max_retries=2,
            retry_base_delay_seconds=0.0,
        ),
        scan=ScanSettings(**scan_values),
    )


def make_state_store(store, *, session_id: str, clock=None, **scan_overrides) -> StateStore:
    config = make_config(**scan_overrides)
    kwargs = {"clock": clock} if clock is not None else {}
    return StateStore(
        store=store,
        store_settings=config.store,
        scan_settings=config.scan,
        session_id=session_id,
        **kwargs,
    )


def page(*body: str) -> str:
    return "<html><head><title>t</title></head><body>" + "".join(body) + "</body></html>"


def seed_site(store: InMemoryContentStore) -> dict[str, str]:
    """Three documents at the root and two in /blog, each referencing one image of its own and a shared logo."""
    pages = {
        f"{ROOT}/index.html": page('<img src="/media/logo.png" alt="Logo">', '<img src="./hero.jpg">'),
        f"{ROOT}/about.html": page('<img src="/media/logo.png">', '<img src="team.png">'),
        f"{ROOT}/contact.html": page('<img src="/media/logo.png">', '<a href="files/map.pdf">Map</a>'),
        f"{ROOT}/blog/first.html": page('<img src="/media/logo.png">', '<img src="cover-1.webp">'),
        f"{ROOT}/blog/second.html": page(
            '<video poster="poster.jpg"><source src="clip.mp4"></video>',
        ),
    }
    for path, html in pages.items():
        store.put(path, html, last_modified_at=PAST)
    return pages


class RecordingListener:
    def __init__(self) -> None:
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


class FlakyContentStore(InMemoryContentStore):
    """Fails the next `fail_writes` writes with the given HTTP status."""

    def __init__(self, *, fail_writes: int = 0, status: Optional[int] = 503) -> None:
        super().__init__()
        self.fail_writes = fail_writes
        self.status = status

    async def write(self, path: str, content: str) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise ContentStoreError("Simulated write failure", path=path, status=self.status)
        await super().write(path, content)


class CountingContentStore(InMemoryContentStore):
    """Records the peak number of concurrent `read` and `list` calls. `slow_lists` delays chosen folders."""

    def __init__(self, *, read_delay: float = 0.0, list_delay: float = 0.0) -> None:
        super().__init__()
        self.read_delay = read_delay
        self.list_delay = list_delay
        self.slow_lists: dict[str, float] = {}
        self.active_reads = 0
        self.peak_reads = 0
        self.active_lists = 0
        self.peak_lists = 0

    async def read(self, path: str) -> str:
        self.active_reads += 1
        self.peak_reads = max(self.peak_reads, self.active_reads)
        try:
            await asyncio.sleep(self.read_delay)
            return await super().read(path)
        finally:
            self.active_reads -= 1

    async def list(self, path: str):
        self.active_lists += 1
        self.peak_lists = max(self.peak_lists, self.active_lists)
        try:
            await asyncio.sleep(self.slow_lists.get(path.rstrip("/"), self.list_delay))
            return await super().list(path)
        finally:
            self.active_lists -= 1
