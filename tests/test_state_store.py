import asyncio
import json
import unittest
from datetime import datetime, timedelta, timezone

from media_index.errors import ContentStoreError, ScanConflictError
from media_index.models import AssetFragment, DocumentDescriptor
from media_index.state.io import LEASE_KIND, RESULTS_KIND, dump_state_file, encode_lease
from media_index.state.models import LEASE_FILE, QUEUE_FILE, RESULTS_FILE, ScanLease, ScanResultRecord
from media_index.state.state_store import needs_scan
from media_index.store.memory import InMemoryContentStore
from media_index.utils import utc_now

from support import PAST, STATE_DIR, FlakyContentStore, make_state_store


def _doc(name: str, modified=PAST) -> DocumentDescriptor:
    return DocumentDescriptor(path=f"/acme/site/{name}.html", name=name, last_modified_at=modified)


def _put_lease(store: InMemoryContentStore, lease: ScanLease) -> None:
    store.put(f"{STATE_DIR}/{LEASE_FILE}", dump_state_file(LEASE_KIND, encode_lease(lease)))


class NeedsScanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.scanned_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.record = ScanResultRecord(path="/acme/site/a.html", last_scanned_at=self.scanned_at, asset_count=0)

    def test_document_without_record_needs_scan(self) -> None:
        self.assertTrue(needs_scan(_doc("a"), None))

    def test_unchanged_document_is_skipped(self) -> None:
        self.assertFalse(needs_scan(_doc("a", modified=self.scanned_at), self.record))
        self.assertFalse(needs_scan(_doc("a", modified=PAST), self.record))

    def test_modified_document_needs_scan(self) -> None:
        self.assertTrue(needs_scan(_doc("a", modified=self.scanned_at + timedelta(seconds=1)), self.record))

    def test_force_rescan_ignores_timestamps(self) -> None:
        self.assertTrue(needs_scan(_doc("a", modified=PAST), self.record, force_rescan=True))

    def test_unknown_modification_time_is_not_a_change(self) -> None:
        self.assertFalse(needs_scan(_doc("a", modified=None), self.record))

    def test_stale_record_rescanned_when_configured(self) -> None:
        now = self.scanned_at + timedelta(hours=30)
        self.assertTrue(needs_scan(_doc("a"), self.record, now=now, rescan_after=timedelta(hours=24)))
        self.assertFalse(needs_scan(_doc("a"), self.record, now=now, rescan_after=timedelta(hours=48)))


class LeaseTests(unittest.IsolatedAsyncioTestCase):
    async def test_acquire_and_release(self) -> None:
        store = InMemoryContentStore()
        state = make_state_store(store, session_id="s1")

        lease = await state.acquire_lease("incremental")

        self.assertTrue(lease.is_active)
        self.assertEqual(lease.session_id, "s1")
        self.assertEqual(lease.status, "running")
        self.assertTrue(await state.is_scan_active())
        self.assertFalse(await state.is_locked_by_other())

        await state.release_lease(status="completed")

        released = await state.load_lease()
        self.assertFalse(released.is_active)
        self.assertIsNone(released.session_id)
        self.assertEqual(released.status, "completed")
        self.assertFalse(await state.is_scan_active())

    async def test_concurrent_acquire_admits_exactly_one_session(self) -> None:
        store = InMemoryContentStore()
        first = make_state_store(store, session_id="first")
        second = make_state_store(store, session_id="second")

        results = await asyncio.gather(
            first.acquire_lease("full"),
            second.acquire_lease("full"),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ScanConflictError)]
        self.assertEqual(len(conflicts), 1)
        lease = await first.load_lease()
        self.assertTrue(lease.is_active)
        winner = first if lease.session_id == "first" else second
        self.assertIn(lease.session_id, {"first", "second"})
        await winner.release_lease()

    async def test_live_lease_of_another_session_blocks_acquire(self) -> None:
        store = InMemoryContentStore()
        now = utc_now()
        _put_lease(store, ScanLease(is_active=True, session_id="other", started_at=now, last_heartbeat_at=now, status="running"))
        state = make_state_store(store, session_id="s1")

        self.assertTrue(await state.is_locked_by_other())
        with self.assertRaises(ScanConflictError) as ctx:
            await state.acquire_lease("full")
        self.assertEqual(ctx.exception.session_id, "other")
        self.assertEqual((await state.load_lease()).session_id, "other")

    async def test_abandoned_lease_is_reclaimed(self) -> None:
        store = InMemoryContentStore()
        stale = utc_now() - timedelta(minutes=10)
        _put_lease(store, ScanLease(is_active=True, session_id="ghost", started_at=stale, last_heartbeat_at=stale, status="running"))
        state = make_state_store(store, session_id="s1")

        lease = await state.acquire_lease("full")

        self.assertEqual(lease.session_id, "s1")
        await state.release_lease()

    async def test_status_check_clears_abandoned_lease(self) -> None:
        store = InMemoryContentStore()
        stale = utc_now() - timedelta(minutes=10)
        _put_lease(store, ScanLease(is_active=True, session_id="ghost", started_at=stale, last_heartbeat_at=stale, status="running"))
        state = make_state_store(store, session_id="observer")

        self.assertFalse(await state.is_scan_active())
        cleared = await state.load_lease()
        self.assertFalse(cleared.is_active)
        self.assertEqual(cleared.status, "error")

    async def test_release_leaves_foreign_lease_untouched(self) -> None:
        store = InMemoryContentStore()
        now = utc_now()
        _put_lease(store, ScanLease(is_active=True, session_id="other", started_at=now, last_heartbeat_at=now, status="running"))
        state = make_state_store(store, session_id="s1")

        await state.release_lease()

        self.assertTrue((await state.load_lease()).is_active)

    async def test_only_owner_updates_progress(self) -> None:
        store = InMemoryContentStore()
        owner = make_state_store(store, session_id="owner")
        intruder = make_state_store(store, session_id="intruder")
        await owner.acquire_lease("full")

        self.assertTrue(await owner.update_progress(total_documents=5, scanned_documents=2, total_assets=7))
        self.assertFalse(await intruder.update_progress(scanned_documents=99))

        lease = await owner.load_lease()
        self.assertEqual(lease.progress.total_documents, 5)
        self.assertEqual(lease.progress.scanned_documents, 2)
        self.assertEqual(lease.progress.total_assets, 7)
        await owner.release_lease()

    async def test_heartbeat_refreshes_lease(self) -> None:
        store = InMemoryContentStore()
        state = make_state_store(store, session_id="s1", heartbeat_interval_seconds=0.02, lease_timeout_seconds=0.5)

        acquired = await state.acquire_lease("full")
        await asyncio.sleep(0.1)
        refreshed = await state.load_lease()
        await state.release_lease()

        self.assertGreater(refreshed.last_heartbeat_at, acquired.last_heartbeat_at)

    async def test_heartbeat_reports_takeover_once(self) -> None:
        store = InMemoryContentStore()
        state = make_state_store(store, session_id="s1", heartbeat_interval_seconds=0.02, lease_timeout_seconds=0.5)
        holders = []

        async def on_lost(holder) -> None:
            holders.append(holder)

        await state.acquire_lease("full", on_lost=on_lost)
        now = utc_now()
        _put_lease(store, ScanLease(is_active=True, session_id="usurper", started_at=now, last_heartbeat_at=now, status="running"))
        await asyncio.sleep(0.1)

        self.assertFalse(await state.update_progress(scanned_documents=1))
        self.assertFalse(await state.verify_lease())
        await state.release_lease()

        self.assertEqual(holders, ["usurper"])
        self.assertEqual((await state.load_lease()).session_id, "usurper")

    async def test_progress_update_reports_takeover(self) -> None:
        store = InMemoryContentStore()
        state = make_state_store(store, session_id="s1")
        holders = []

        async def on_lost(holder) -> None:
            holders.append(holder)

        await state.acquire_lease("full", on_lost=on_lost)
        self.assertTrue(await state.verify_lease())
        await make_state_store(store, session_id="admin").force_release()

        self.assertFalse(await state.update_progress(scanned_documents=1))
        await state.release_lease()

        self.assertEqual(holders, [None])

    async def test_heartbeat_write_failure_is_reported(self) -> None:
        store = FlakyContentStore()
        state = make_state_store(store, session_id="s1", heartbeat_interval_seconds=0.02, lease_timeout_seconds=0.5)
        errors = []

        async def on_heartbeat_error(error) -> None:
            errors.append(error)

        await state.acquire_lease("full", on_heartbeat_error=on_heartbeat_error)
        store.status = 400
        store.fail_writes = 1
        with self.assertLogs("media_index.state.state_store", level="ERROR"):
            await asyncio.sleep(0.1)
        await state.release_lease()

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], ContentStoreError)

    async def test_force_release_clears_any_lease_and_queue(self) -> None:
        store = InMemoryContentStore()
        now = utc_now()
        _put_lease(store, ScanLease(is_active=True, session_id="stuck", started_at=now, last_heartbeat_at=now, status="running"))
        state = make_state_store(store, session_id="admin")
        await state.append_to_queue([_doc("a")])

        await state.force_release()

        self.assertFalse((await state.load_lease()).is_active)
        self.assertEqual(await make_state_store(store, session_id="reader").load_discovery_queue(), [])


class QueueAndResultsTests(unittest.IsolatedAsyncioTestCase):
    async def test_queue_is_an_ordered_set_that_survives_reload(self) -> None:
        store = InMemoryContentStore()
        state = make_state_store(store, session_id="s1")

        self.assertEqual(await state.append_to_queue([_doc("a"), _doc("b")]), 2)
        self.assertEqual(await state.append_to_queue([_doc("b"), _doc("c")]), 3)
        self.assertEqual(await state.remove_from_queue(["/acme/site/a.html"]), 2)

        reloaded = await make_state_store(store, session_id="s2").load_discovery_queue()
        self.assertEqual([d.path for d in reloaded], ["/acme/site/b.html", "/acme/site/c.html"])
        self.assertEqual(reloaded[0].last_modified_at, PAST)

        await state.clear_discovery_queue()
        self.assertEqual(await make_state_store(store, session_id="s3").load_discovery_queue(), [])

    async def test_saved_results_drive_the_inclusion_rule(self) -> None:
        store = InMemoryContentStore()
        state = make_state_store(store, session_id="s1")
        fragment = AssetFragment(src="/media/a.png", used_in=("/acme/site/a.html",))
        await state.save_document_result(path="/acme/site/a.html", assets=[fragment], checksum="abc", scan_duration_ms=4)

        reader = make_state_store(store, session_id="s2")
        changed = _doc("b")
        to_scan = await reader.get_documents_to_scan([_doc("a"), changed])
        self.assertEqual(to_scan, [changed])
        self.assertEqual(len(await reader.get_documents_to_scan([_doc("a"), changed], force_rescan=True)), 2)

        results = await reader.load_scan_results()
        record = results.documents["/acme/site/a.html"]
        self.assertEqual(record.asset_count, 1)
        self.assertEqual(record.checksum, "abc")
        self.assertEqual(record.assets, [fragment])

        stats = await reader.get_scan_statistics()
        self.assertEqual(stats["total_documents"], 1)
        self.assertEqual(stats["total_assets"], 1)
        self.assertEqual(stats["oldest_scan"], record.last_scanned_at)

    async def test_state_file_from_other_schema_version_starts_fresh(self) -> None:
        store = InMemoryContentStore()
        store.put(
            f"{STATE_DIR}/{RESULTS_FILE}",
            json.dumps({"schema_version": 99, "kind": "scan-results", "results": [{"path": "/x.html"}]}),
        )
        state = make_state_store(store, session_id="s1")

        with self.assertLogs("media_index.state.io", level="WARNING"):
            results = await state.load_scan_results()
        self.assertEqual(results.documents, {})

    async def test_malformed_record_in_current_schema_starts_fresh(self) -> None:
        store = InMemoryContentStore()
        store.put(
            f"{STATE_DIR}/{RESULTS_FILE}",
            dump_state_file(RESULTS_KIND, {"results": [{"last_scanned_at": "2025-01-01T00:00:00Z"}]}),
        )
        store.put(f"{STATE_DIR}/{LEASE_FILE}", dump_state_file(LEASE_KIND, {"progress": {"total_documents": "many"}}))
        state = make_state_store(store, session_id="s1")

        with self.assertLogs("media_index.state.state_store", level="ERROR"):
            results = await state.load_scan_results()
            lease = await state.load_lease()

        self.assertEqual(results.documents, {})
        self.assertFalse(lease.is_active)

    async def test_ensure_state_files_creates_missing_files_only(self) -> None:
        store = InMemoryContentStore()
        store.put(f"{STATE_DIR}/{QUEUE_FILE}", "keep")
        state = make_state_store(store, session_id="s1")

        await state.ensure_state_files()

        self.assertEqual(store.get(f"{STATE_DIR}/{QUEUE_FILE}"), "keep")
        self.assertIsNotNone(store.get(f"{STATE_DIR}/{LEASE_FILE}"))
        self.assertEqual(len([p for p in store.files if p.startswith(STATE_DIR)]), 4)


class RetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_transient_write_failures_are_retried(self) -> None:
        store = FlakyContentStore(fail_writes=2, status=503)
        state = make_state_store(store, session_id="s1")

        await state.append_to_queue([_doc("a")])

        self.assertEqual(store.fail_writes, 0)
        self.assertEqual(store.write_count, 1)

    async def test_retries_are_bounded(self) -> None:
        store = FlakyContentStore(fail_writes=10, status=None)
        state = make_state_store(store, session_id="s1")

        with self.assertRaises(ContentStoreError):
            await state.append_to_queue([_doc("a")])
        self.assertEqual(store.fail_writes, 7)

    async def test_client_errors_are_not_retried(self) -> None:
        store = FlakyContentStore(fail_writes=5, status=400)
        state = make_state_store(store, session_id="s1")

        with self.assertRaises(ContentStoreError) as ctx:
            await state.append_to_queue([_doc("a")])
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(store.fail_writes, 4)


if __name__ == "__main__":
    unittest.main()
