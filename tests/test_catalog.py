import json
import tempfile
import unittest
from pathlib import Path

from fakes import FakeGitHub, make_client, marketplace, skill_md, standard_registry

from skillsync.catalog import (
    Catalog,
    CollectionEntry,
    enumerate_packages,
    fetch_snapshot,
    load_mirror,
    parse_catalog,
    resolve_source_path,
    save_mirror,
)
from skillsync.client import ConfigurationError, IntegrityError
from skillsync.reference import parse_reference


class TestParseCatalog(unittest.TestCase):
    def test_entries_and_plugin_root(self) -> None:
        payload = {
            "name": "m",
            "metadata": {"pluginRoot": "./plugins"},
            "plugins": [
                {"name": "a", "source": "./plugins/a", "tags": ["x", 1], "author": {"name": "Ann"}},
                {"name": "ext", "source": {"source": "github", "repo": "other/repo"}},
            ],
        }
        cat = parse_catalog(payload)
        self.assertEqual(cat.collection_root, "./plugins")
        self.assertEqual([e.name for e in cat.entries], ["a", "ext"])
        self.assertEqual(cat.entries[0].tags, ("x",))
        self.assertEqual(cat.entries[0].author, "Ann")
        self.assertTrue(cat.entries[1].is_external)

    def test_invalid_shapes(self) -> None:
        for payload in (
            [],
            {"name": "m"},
            {"plugins": {"a": 1}},
            {"plugins": [{"source": "./a"}]},
            {"plugins": [{"name": "a", "source": 3}]},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(ConfigurationError):
                    parse_catalog(payload)


class TestResolveSourcePath(unittest.TestCase):
    def test_forms(self) -> None:
        def entry(src: str) -> CollectionEntry:
            return CollectionEntry(name="c", source_path=src)

        self.assertEqual(resolve_source_path(entry("./plugins/a"), collection_root=None, subpath=None), "plugins/a")
        self.assertEqual(resolve_source_path(entry("a"), collection_root="./plugins", subpath=None), "plugins/a")
        self.assertEqual(resolve_source_path(entry("./"), collection_root=None, subpath=None), "")
        self.assertEqual(resolve_source_path(entry("./a"), collection_root=None, subpath="packs"), "packs/a")

    def test_traversal_is_rejected(self) -> None:
        for src in ("../outside", "./a/../../b", "a/./b"):
            with self.subTest(src=src):
                with self.assertRaises(IntegrityError):
                    resolve_source_path(CollectionEntry(name="c", source_path=src), collection_root=None, subpath=None)


class TestEnumeratePackages(unittest.TestCase):
    def test_layouts_and_exclusions(self) -> None:
        catalog = Catalog(
            name=None,
            entries=(
                CollectionEntry(name="single", source_path="./single"),
                CollectionEntry(name="multi", source_path="./multi"),
                CollectionEntry(name="flat", source_path="./flat"),
                CollectionEntry(name="empty", source_path="./empty"),
                CollectionEntry(name="ext", external_ref={"source": "url"}),
            ),
        )
        files = [
            "single/SKILL.md",
            "multi/skills/one/SKILL.md",
            "multi/skills/two/SKILL.md",
            "multi/skills/notes/README.md",
            "flat/three/SKILL.md",
            "flat/three/deep/nested/SKILL.md",
            "empty/README.md",
        ]
        with self.assertLogs("skillsync.catalog", level="DEBUG") as logs:
            candidates, excluded = enumerate_packages(catalog, files)

        paths = sorted(c.path for c in candidates)
        self.assertEqual(paths, ["flat/three", "multi/skills/one", "multi/skills/two", "single"])
        reasons = {(e.subject, e.reason) for e in excluded}
        self.assertIn(("multi/skills/notes", "no SKILL.md"), reasons)
        self.assertIn(("empty", "no package with SKILL.md"), reasons)
        self.assertTrue(any(e.subject == "ext" for e in excluded))
        self.assertTrue(any("unsupported source type" in line for line in logs.output))


class TestFetchSnapshot(unittest.TestCase):
    def test_snapshot_end_to_end(self) -> None:
        fake = FakeGitHub(standard_registry(alpha="1.0.0", beta=None))
        client = make_client(fake)
        try:
            snap = fetch_snapshot(client, parse_reference("acme/skills"), max_concurrency=4)
        finally:
            client.close()

        self.assertEqual(snap.branch, "main")
        self.assertEqual(sorted(p.identity for p in snap.packages), ["alpha", "beta"])
        alpha = snap.get("alpha")
        assert alpha is not None
        self.assertEqual(alpha.version, "1.0.0")
        self.assertEqual(alpha.display_name, "toolkit:alpha")
        self.assertIsNone(snap.get("beta").version)  # type: ignore[union-attr]
        self.assertEqual(
            snap.files_for(alpha),
            ["plugins/tools/skills/alpha/SKILL.md", "plugins/tools/skills/alpha/references/guide.md"],
        )

    def test_invalid_descriptor_excludes_only_that_package(self) -> None:
        files = standard_registry(good="1.0.0")
        files["plugins/tools/skills/bad/SKILL.md"] = "---\nname: bad\n---\n"
        fake = FakeGitHub(files)
        client = make_client(fake)
        try:
            with self.assertLogs("skillsync.catalog", level="WARNING"):
                snap = fetch_snapshot(client, parse_reference("acme/skills"))
        finally:
            client.close()
        self.assertEqual([p.identity for p in snap.packages], ["good"])
        self.assertTrue(any(e.subject == "plugins/tools/skills/bad" for e in snap.excluded))

    def test_one_failed_descriptor_fetch_does_not_hide_siblings(self) -> None:
        fake = FakeGitHub(standard_registry(a="1.0.0", b="1.0.0", c="1.0.0"))
        fake.fail_paths.add("plugins/tools/skills/b/SKILL.md")
        client = make_client(fake)
        try:
            with self.assertLogs("skillsync.catalog", level="WARNING"):
                snap = fetch_snapshot(client, parse_reference("acme/skills"))
        finally:
            client.close()
        self.assertEqual(sorted(p.identity for p in snap.packages), ["a", "c"])

    def test_missing_catalog_is_a_configuration_error(self) -> None:
        files = standard_registry(a="1.0.0")
        del files[".claude-plugin/marketplace.json"]
        client = make_client(FakeGitHub(files))
        try:
            with self.assertRaises(ConfigurationError) as ctx:
                fetch_snapshot(client, parse_reference("acme/skills"))
        finally:
            client.close()
        self.assertIn("Catalog not found", str(ctx.exception))

    def test_catalog_that_is_not_json(self) -> None:
        client = make_client(FakeGitHub({".claude-plugin/marketplace.json": "{nope"}))
        try:
            with self.assertRaises(ConfigurationError):
                fetch_snapshot(client, parse_reference("acme/skills"))
        finally:
            client.close()

    def test_duplicate_identity_last_collection_wins(self) -> None:
        files = {
            ".claude-plugin/marketplace.json": marketplace(
                {"name": "first", "source": "./first"},
                {"name": "second", "source": "./second"},
            ),
            "first/SKILL.md": skill_md("dup", "from first", version="1.0.0"),
            "second/SKILL.md": skill_md("dup", "from second", version="2.0.0"),
        }
        client = make_client(FakeGitHub(files))
        try:
            with self.assertLogs("skillsync.catalog", level="WARNING"):
                snap = fetch_snapshot(client, parse_reference("acme/skills"))
        finally:
            client.close()
        self.assertEqual(len(snap.packages), 1)
        self.assertEqual(snap.packages[0].collection, "second")
        self.assertEqual(snap.packages[0].version, "2.0.0")

    def test_subpath_registry(self) -> None:
        files = {
            "packs/core/.claude-plugin/marketplace.json": marketplace({"name": "core", "source": "./"}),
            "packs/core/SKILL.md": skill_md("core", version="0.1.0"),
            "packs/core/extra.md": "x",
            "packs/core/sub/ignored.md": "y",
        }
        client = make_client(FakeGitHub(files))
        try:
            snap = fetch_snapshot(client, parse_reference("https://github.com/acme/skills/tree/main/packs/core"))
        finally:
            client.close()
        pkg = snap.get("core")
        assert pkg is not None
        self.assertEqual(pkg.path, "packs/core")

    def test_mirror_round_trip(self) -> None:
        client = make_client(FakeGitHub(standard_registry(alpha="1.0.0")))
        try:
            snap = fetch_snapshot(client, parse_reference("acme/skills"))
        finally:
            client.close()
        with tempfile.TemporaryDirectory() as td:
            path = save_mirror(snap, Path(td))
            self.assertTrue(path.is_file())
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["branch"], "main")
            loaded = load_mirror(parse_reference("acme/skills"), Path(td))
            self.assertIsNone(load_mirror(parse_reference("acme/other"), Path(td)))
        assert loaded is not None
        self.assertEqual(loaded.get("alpha").descriptor, snap.get("alpha").descriptor)  # type: ignore[union-attr]

    def test_unreadable_mirror_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "catalogs" / "acme__skills.json"
            path.parent.mkdir(parents=True)
            path.write_text("[1, 2", encoding="utf-8")
            with self.assertLogs("skillsync.catalog", level="WARNING"):
                self.assertIsNone(load_mirror(parse_reference("acme/skills"), Path(td)))


if __name__ == "__main__":
    unittest.main()
