import unittest
from datetime import datetime, timedelta, timezone

from media_index.index.merger import AssetIndexMerger, merge_fragments, summarize_assets
from media_index.models import AssetFragment, Dimensions
from media_index.state.models import IndexState
from media_index.store.memory import InMemoryContentStore
from media_index.utils import stable_asset_id

from support import make_state_store

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _fragment(src: str, path: str, **kwargs) -> AssetFragment:
    return AssetFragment(src=src, used_in=(path,), **kwargs)


class MergeFragmentsTests(unittest.TestCase):
    def test_merging_twice_is_idempotent(self) -> None:
        fragments = [_fragment("/media/a.png", "/p1.html"), _fragment("/media/b.mp4", "/p1.html")]
        once = IndexState(assets={})
        twice = IndexState(assets={})

        merge_fragments(once, fragments, path="/p1.html", now=T0)
        merge_fragments(twice, fragments, path="/p1.html", now=T0)
        added_again = merge_fragments(twice, fragments, path="/p1.html", now=T0)

        self.assertEqual(added_again, 0)
        self.assertEqual(once.assets, twice.assets)
        self.assertEqual(twice.assets["/media/a.png"].id, stable_asset_id("/media/a.png"))
        self.assertEqual(twice.assets["/media/a.png"].used_in, ["/p1.html"])

    def test_same_src_from_two_documents_unions_used_in(self) -> None:
        index = IndexState(assets={})

        merge_fragments(index, [_fragment("/media/a.png", "/p1.html")], path="/p1.html", now=T0)
        later = T0 + timedelta(minutes=5)
        merge_fragments(
            index,
            [_fragment("/media/a.png", "/p2.html", alt="Alt", dimensions=Dimensions(width=10, height=20))],
            path="/p2.html",
            now=later,
        )

        self.assertEqual(len(index.assets), 1)
        asset = index.assets["/media/a.png"]
        self.assertEqual(asset.used_in, ["/p1.html", "/p2.html"])
        self.assertEqual(asset.last_seen_at, later)
        self.assertEqual(asset.alt, "Alt")
        self.assertEqual(asset.dimensions, Dimensions(width=10, height=20))

    def test_last_seen_never_moves_backwards(self) -> None:
        index = IndexState(assets={})
        merge_fragments(index, [_fragment("/media/a.png", "/p1.html")], path="/p1.html", now=T0)
        merge_fragments(index, [_fragment("/media/a.png", "/p2.html")], path="/p2.html", now=T0 - timedelta(days=1))

        self.assertEqual(index.assets["/media/a.png"].last_seen_at, T0)

    def test_new_asset_gets_type_and_name_from_src(self) -> None:
        index = IndexState(assets={})
        merge_fragments(
            index,
            [_fragment("https://cdn.partner.test/files/deck.pdf", "/p1.html", is_external=True, context="media-link")],
            path="/p1.html",
            now=T0,
        )

        asset = index.assets["https://cdn.partner.test/files/deck.pdf"]
        self.assertEqual(asset.type, "document")
        self.assertEqual(asset.name, "deck.pdf")
        self.assertTrue(asset.is_external)
        self.assertEqual(asset.context, "media-link")

    def test_incremental_merge_never_shrinks_used_in(self) -> None:
        index = IndexState(assets={})
        merge_fragments(index, [_fragment("/media/a.png", "/p1.html")], path="/p1.html", now=T0)
        merge_fragments(index, [], path="/p1.html", now=T0)

        self.assertEqual(index.assets["/media/a.png"].used_in, ["/p1.html"])

    def test_replace_drops_stale_usages_but_keeps_the_asset(self) -> None:
        index = IndexState(assets={})
        merge_fragments(
            index,
            [_fragment("/media/a.png", "/p1.html"), _fragment("/media/b.png", "/p1.html")],
            path="/p1.html",
            now=T0,
        )
        merge_fragments(index, [_fragment("/media/b.png", "/p2.html")], path="/p2.html", now=T0)

        merge_fragments(index, [_fragment("/media/b.png", "/p1.html")], path="/p1.html", now=T0, replace=True)

        self.assertEqual(index.assets["/media/a.png"].used_in, [])
        self.assertEqual(index.assets["/media/b.png"].used_in, ["/p1.html", "/p2.html"])


class SummarizeAssetsTests(unittest.TestCase):
    def test_counts_and_most_used(self) -> None:
        index = IndexState(assets={})
        merge_fragments(
            index,
            [_fragment("/media/a.png", "/p1.html"), _fragment("https://cdn.partner.test/v.mp4", "/p1.html", is_external=True)],
            path="/p1.html",
            now=T0,
        )
        merge_fragments(index, [_fragment("/media/a.png", "/p2.html")], path="/p2.html", now=T0)
        merge_fragments(index, [_fragment("/media/old.png", "/p3.html")], path="/p3.html", now=T0)
        merge_fragments(index, [], path="/p3.html", now=T0, replace=True)

        summary = summarize_assets(index)

        self.assertEqual(summary["total_assets"], 3)
        self.assertEqual(summary["assets_by_type"], {"image": 2, "video": 1})
        self.assertEqual(summary["external_assets"], 1)
        self.assertEqual(summary["unused_assets"], 1)
        self.assertEqual(summary["most_used_assets"], ["/media/a.png", "https://cdn.partner.test/v.mp4"])


class AssetIndexMergerTests(unittest.IsolatedAsyncioTestCase):
    async def test_merge_persists_the_whole_index(self) -> None:
        store = InMemoryContentStore()
        state_store = make_state_store(store, session_id="s1")
        merger = AssetIndexMerger(state_store=state_store, clock=lambda: T0)

        await merger.merge("/p1.html", [_fragment("/media/a.png", "/p1.html")])
        await merger.merge("/p2.html", [_fragment("/media/a.png", "/p2.html"), _fragment("/media/c.gif", "/p2.html")])

        reloaded = await make_state_store(store, session_id="reader").load_asset_index()
        self.assertEqual(sorted(reloaded.assets), ["/media/a.png", "/media/c.gif"])
        self.assertEqual(reloaded.assets["/media/a.png"].used_in, ["/p1.html", "/p2.html"])
        self.assertEqual(reloaded.assets["/media/a.png"].last_seen_at, T0)

    async def test_clear_empties_the_persisted_index(self) -> None:
        store = InMemoryContentStore()
        merger = AssetIndexMerger(state_store=make_state_store(store, session_id="s1"), clock=lambda: T0)
        await merger.merge("/p1.html", [_fragment("/media/a.png", "/p1.html")])

        await merger.clear()

        self.assertEqual((await merger.load()).assets, {})
        self.assertEqual((await make_state_store(store, session_id="reader").load_asset_index()).assets, {})

    async def test_import_accepts_an_export_and_rejects_anything_else(self) -> None:
        source = AssetIndexMerger(state_store=make_state_store(InMemoryContentStore(), session_id="s1"), clock=lambda: T0)
        await source.merge("/p1.html", [_fragment("/media/a.png", "/p1.html", alt="A")])
        exported = await source.export_index()

        store = InMemoryContentStore()
        target = AssetIndexMerger(state_store=make_state_store(store, session_id="s2"))
        self.assertEqual(await target.import_index(exported, source="a.json"), 1)

        reloaded = await make_state_store(store, session_id="reader").load_asset_index()
        self.assertEqual(reloaded.assets["/media/a.png"].alt, "A")
        self.assertEqual(reloaded.assets["/media/a.png"].used_in, ["/p1.html"])

        missing_src = exported.replace('"src": "/media/a.png"', '"source": "/media/a.png"')
        for raw in ("[]", "{", missing_src):
            with self.assertRaises(ValueError):
                await target.import_index(raw, source="bad.json")
        self.assertEqual(sorted((await target.load()).assets), ["/media/a.png"])


if __name__ == "__main__":
    unittest.main()
