"""Tests for the file system accessors."""

import json

import pytest

from pywchtools.exceptions import WchIOError, WchParseError
from pywchtools.fs import get_site_context_name
from pywchtools.registry import get_fs_accessor, get_helper


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class TestFlatItems:
    """Tests for flat artifact types (one file per id)."""

    @pytest.mark.asyncio
    async def test_save_and_get_round_trip_is_byte_equivalent(self, make_context, tmp_path):
        """Test that saving an item read back from disk rewrites identical bytes."""
        context = make_context()
        fs = get_fs_accessor("types")
        item = {"id": "t1", "rev": "2", "name": "Article", "elements": [{"key": "ä"}]}

        await fs.save_item(context, item)
        path = tmp_path / "types" / "t1.json"
        first = path.read_bytes()
        await fs.save_item(context, await fs.get_item(context, "t1.json"))

        assert path.read_bytes() == first

    @pytest.mark.asyncio
    async def test_colon_in_id_is_replaced(self, make_context, tmp_path):
        """Test that ids with ':' map to portable file names."""
        await get_fs_accessor("types").save_item(make_context(), {"id": "a:draft"})

        assert (tmp_path / "types" / "a_sep_draft.json").exists()

    @pytest.mark.asyncio
    async def test_content_extension(self, make_context, tmp_path):
        """Test that content items use their own file extension."""
        await get_fs_accessor("content").save_item(make_context(), {"id": "c1"})

        assert (tmp_path / "content" / "c1_cmd.json").exists()

    @pytest.mark.asyncio
    async def test_get_item_missing_file(self, make_context):
        """Test that reading a missing file raises WchIOError."""
        with pytest.raises(WchIOError):
            await get_fs_accessor("types").get_item(make_context(), "missing")

    @pytest.mark.asyncio
    async def test_get_item_invalid_json(self, make_context, tmp_path):
        """Test that a corrupt file raises WchParseError."""
        (tmp_path / "types").mkdir()
        (tmp_path / "types" / "bad.json").write_text("{not json")

        with pytest.raises(WchParseError):
            await get_fs_accessor("types").get_item(make_context(), "bad.json")

    @pytest.mark.asyncio
    async def test_list_names(self, make_context, tmp_path):
        """Test listing proxies, including unparseable files."""
        write_json(tmp_path / "types" / "t1.json", {"id": "t1", "name": "Article"})
        (tmp_path / "types" / "broken.json").write_text("{")
        (tmp_path / "types" / "notes.txt").write_text("ignored")
        write_json(tmp_path / "types" / ".wchtoolshashes", {})

        names = await get_fs_accessor("types").list_names(make_context())

        assert names == [
            {"name": "broken.json", "path": "broken.json"},
            {"id": "t1", "name": "Article", "path": "t1.json"},
        ]

    @pytest.mark.asyncio
    async def test_get_items_skips_bad_files(self, make_context, tmp_path):
        """Test that unreadable files are skipped when reading all items."""
        write_json(tmp_path / "types" / "t1.json", {"id": "t1"})
        (tmp_path / "types" / "broken.json").write_text("{")

        items = await get_fs_accessor("types").get_items(make_context())

        assert items == [{"id": "t1"}]

    @pytest.mark.asyncio
    async def test_conflict_file(self, make_context, tmp_path):
        """Test that conflict copies are written beside the item and not tracked."""
        context = make_context()
        fs = get_fs_accessor("types")

        await fs.save_item(context, {"id": "t1", "rev": "9"}, {"conflict": True})

        assert (tmp_path / "types" / "t1.json.conflict").exists()
        assert not (tmp_path / "types" / "t1.json").exists()
        assert fs.get_hash_tracker(context).get_entry("t1") is None
        assert await fs.list_names(context) == []

    @pytest.mark.asyncio
    async def test_delete_item(self, make_context, tmp_path):
        """Test that deleting a file also forgets its hash."""
        context = make_context()
        fs = get_fs_accessor("types")
        await fs.save_item(context, {"id": "t1", "name": "A"})

        deleted = await fs.delete_item(context, "t1.json")

        assert deleted == {"id": "t1", "name": "A"}
        assert not (tmp_path / "types" / "t1.json").exists()
        assert fs.get_hash_tracker(context).get_entry("t1") is None
        assert await fs.delete_item(context, "t1.json") is None

    @pytest.mark.asyncio
    async def test_get_file_stats(self, make_context, tmp_path):
        """Test file stats for existing and missing items."""
        context = make_context()
        fs = get_fs_accessor("types")
        await fs.save_item(context, {"id": "t1"})

        stats = await fs.get_file_stats(context, "t1")

        assert stats.st_size == (tmp_path / "types" / "t1.json").stat().st_size
        assert await fs.get_file_stats(context, "missing.json") is None


class TestPathBasedItems:
    """Tests for artifact types whose file path comes from the item path."""

    @pytest.mark.asyncio
    async def test_save_prunes_path_and_audit_fields(self, make_context, tmp_path):
        """Test that derived fields are not stored but restored on read."""
        context = make_context()
        fs = get_fs_accessor("layouts")
        item = {"id": "l1", "name": "Card", "path": "/cards/card.json", "creator": "me"}

        await fs.save_item(context, item)
        stored = json.loads((tmp_path / "layouts" / "cards" / "card.json").read_text())
        restored = await fs.get_item(context, "cards/card.json")

        assert stored == {"id": "l1", "name": "Card"}
        assert restored == {"id": "l1", "name": "Card", "path": "/cards/card.json"}

    @pytest.mark.asyncio
    async def test_round_trip_is_byte_equivalent(self, make_context, tmp_path):
        """Test that rewriting an item read from disk doesn't change the file."""
        context = make_context()
        fs = get_fs_accessor("layout-mappings")
        await fs.save_item(context, {"id": "m1", "path": "/a/b.json", "mappings": []})
        path = tmp_path / "layout-mappings" / "a" / "b.json"
        first = path.read_bytes()

        await fs.save_item(context, await fs.get_item(context, "a/b.json"))

        assert path.read_bytes() == first

    @pytest.mark.asyncio
    async def test_invalid_path_rejected(self, make_context, tmp_path):
        """Test that URL-like paths are never written locally."""
        fs = get_fs_accessor("layouts")
        for path in ("https://evil/x.json", "/foo/http://evil/x.json"):
            with pytest.raises(WchIOError):
                await fs.save_item(make_context(), {"id": "l1", "path": path})
        assert not (tmp_path / "layouts").exists()

    @pytest.mark.asyncio
    async def test_recursive_listing_with_filter(self, make_context, tmp_path):
        """Test recursive listing restricted to a sub path."""
        write_json(tmp_path / "layouts" / "a" / "one.json", {"id": "1"})
        write_json(tmp_path / "layouts" / "b" / "two.json", {"id": "2"})

        names = await get_fs_accessor("layouts").list_names(
            make_context(), {"filter_path": "/b"}
        )

        assert names == [{"id": "2", "name": None, "path": "b/two.json"}]

    @pytest.mark.asyncio
    async def test_rename_is_idempotent(self, make_context, tmp_path):
        """Test that a renamed item leaves exactly one file, even if handled twice."""
        context = make_context()
        fs = get_fs_accessor("layouts")
        await fs.save_item(context, {"id": "l1", "path": "/old/card.json"})

        await fs.save_item(context, {"id": "l1", "path": "/new/card.json"})
        new_path = tmp_path / "layouts" / "new" / "card.json"
        await fs.handle_rename(context, "l1", new_path)
        await fs.handle_rename(context, "l1", new_path)

        files = sorted(
            p.relative_to(tmp_path / "layouts").as_posix()
            for p in (tmp_path / "layouts").rglob("*.json")
        )
        assert files == ["new/card.json"]
        assert not (tmp_path / "layouts" / "old").exists()
        assert fs.get_hash_tracker(context).get_file_path("l1") == new_path

    @pytest.mark.asyncio
    async def test_local_file_path_map_removes_stale_copies(self, make_context, tmp_path):
        """Test that other files holding the same item are removed on save."""
        context = make_context()
        fs = get_fs_accessor("layouts")
        write_json(tmp_path / "layouts" / "stale" / "x.json", {"id": "l1"})
        write_json(tmp_path / "layouts" / "other.json", {"id": "l2"})
        path_map = await fs.create_local_file_path_map(context)

        await fs.save_item(
            context, {"id": "l1", "path": "/fresh/x.json"}, {"local_file_path_map": path_map}
        )

        assert path_map == {"l1": ["stale/x.json"], "l2": ["other.json"]}
        assert not (tmp_path / "layouts" / "stale").exists()
        assert (tmp_path / "layouts" / "fresh" / "x.json").exists()
        assert (tmp_path / "layouts" / "other.json").exists()


class TestHierarchicalPages:
    """Tests for pages, whose children live in a folder named like the page."""

    @pytest.mark.asyncio
    async def test_page_file_from_hierarchical_path(self, make_context, tmp_path):
        """Test that pages are stored by hierarchical path under their site."""
        await get_fs_accessor("pages").save_item(
            make_context(), {"id": "p1", "hierarchicalPath": "/home/about"}
        )

        assert (tmp_path / "sites" / "default" / "home" / "about.json").exists()

    @pytest.mark.asyncio
    async def test_rename_moves_children(self, make_context, tmp_path):
        """Test that renaming a page moves its child folder and hash paths."""
        context = make_context()
        fs = get_fs_accessor("pages")
        await fs.save_item(context, {"id": "p1", "hierarchicalPath": "/about"})
        await fs.save_item(context, {"id": "p2", "hierarchicalPath": "/about/team"})

        await fs.save_item(context, {"id": "p1", "hierarchicalPath": "/info"})

        site = tmp_path / "sites" / "default"
        assert not (site / "about.json").exists()
        assert not (site / "about").exists()
        assert (site / "info.json").exists()
        assert (site / "info" / "team.json").exists()
        assert fs.get_hash_tracker(context).get_file_path("p2") == site / "info" / "team.json"

    @pytest.mark.asyncio
    async def test_rename_merges_into_existing_folder(self, make_context, tmp_path):
        """Test that children merge into an existing folder without overwriting."""
        context = make_context()
        fs = get_fs_accessor("pages")
        await fs.save_item(context, {"id": "p1", "hierarchicalPath": "/about"})
        await fs.save_item(context, {"id": "p2", "hierarchicalPath": "/about/team"})
        await fs.save_item(context, {"id": "p3", "hierarchicalPath": "/about/jobs"})
        site = tmp_path / "sites" / "default"
        write_json(site / "info" / "team.json", {"id": "p2", "hierarchicalPath": "/info/team"})

        await fs.save_item(context, {"id": "p1", "hierarchicalPath": "/info"})

        assert not (site / "about").exists()
        assert json.loads((site / "info" / "team.json").read_text())["hierarchicalPath"] == "/info/team"
        assert (site / "info" / "jobs.json").exists()
        assert fs.get_hash_tracker(context).get_file_path("p3") == site / "info" / "jobs.json"

    @pytest.mark.asyncio
    async def test_site_specific_folder(self, make_context, tmp_path):
        """Test that pages of another site go to that site's folder."""
        await get_fs_accessor("pages").save_item(
            make_context(), {"id": "p1", "hierarchicalPath": "/home"}, {"site_id": "shop"}
        )

        assert (tmp_path / "sites" / "shop" / "home.json").exists()


class TestSites:
    """Tests for site file naming."""

    def test_context_names(self):
        """Test site file names derived from context roots."""
        assert get_site_context_name({"id": "s1", "contextRoot": "shop"}) == "shop"
        assert (
            get_site_context_name(
                {"id": "s1:draft", "contextRoot": "shop", "status": "draft", "projectId": "p9"}
            )
            == "shop_wchdraft_p9"
        )
        assert (
            get_site_context_name({"id": "s1:draft", "contextRoot": "shop", "status": "draft"})
            == "shop_wchdraft"
        )
        assert get_site_context_name({"id": "default:draft", "status": "draft"}) == "default_wchdraft"
        assert get_site_context_name({"id": "default", "contextRoot": "/"}) == "default"

    @pytest.mark.asyncio
    async def test_context_root_change_renames_file_and_pages(self, make_context, tmp_path):
        """Test that listing sites follows a changed context root."""
        sites = tmp_path / "sites"
        write_json(sites / "shop.json", {"id": "s1", "contextRoot": "store"})
        write_json(sites / "shop" / "home.json", {"id": "p1"})

        names = await get_fs_accessor("sites").list_names(make_context())

        assert names[0]["path"] == "store.json"
        assert (sites / "store.json").exists()
        assert (sites / "store" / "home.json").exists()
        assert not (sites / "shop").exists()

    @pytest.mark.asyncio
    async def test_pull_with_new_context_root_moves_pages(self, service, make_context, tmp_path):
        """Test that pulling a site with a new context root moves its pages folder."""
        service.add("/authoring/v1/sites", {"id": "s1", "contextRoot": "old", "rev": "1"})
        context = make_context()
        helper = get_helper("sites")
        await helper.pull_all_items(context)
        sites = tmp_path / "sites"
        write_json(sites / "old" / "home.json", {"id": "p1"})
        service.items("/authoring/v1/sites")["s1"].update(contextRoot="new", rev="2")

        await helper.pull_all_items(context)

        assert (sites / "new.json").exists()
        assert not (sites / "old.json").exists()
        assert (sites / "new" / "home.json").exists()
        assert not (sites / "old").exists()

    @pytest.mark.asyncio
    async def test_existing_pages_folder_is_kept(self, service, make_context, tmp_path):
        """Test that a pages folder already present for the new name is left alone."""
        service.add("/authoring/v1/sites", {"id": "s1", "contextRoot": "old", "rev": "1"})
        context = make_context()
        helper = get_helper("sites")
        await helper.pull_all_items(context)
        sites = tmp_path / "sites"
        write_json(sites / "old" / "home.json", {"id": "p1"})
        write_json(sites / "new" / "about.json", {"id": "p2"})
        service.items("/authoring/v1/sites")["s1"]["contextRoot"] = "new"

        await helper.pull_all_items(context)

        assert (sites / "old" / "home.json").exists()
        assert not (sites / "new" / "home.json").exists()
        assert (sites / "new" / "about.json").exists()
