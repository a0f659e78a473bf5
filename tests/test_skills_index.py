import tempfile
import unittest
from pathlib import Path

from fakes import make_stores

from skillsync.destinations import WORKSPACE, InstalledPackageRecord
from skillsync.skills_index import DEFAULT_CUSTOMIZATION_SECTION, merge_index, regenerate_index, render_section


def _rec(identity: str, *, active: bool = True, description: str = "desc") -> InstalledPackageRecord:
    return InstalledPackageRecord(
        identity=identity, version="1.0.0", disk_path=f"/x/{identity}", active=active, description=description
    )


class TestSkillsIndex(unittest.TestCase):
    def test_section_lists_active_records_only(self) -> None:
        text = render_section([_rec("b", description="Bee"), _rec("a", description="Ay"), _rec("z", active=False)])
        self.assertEqual(text, "\n\n## Imported Skills\n\n### /a\nAy\n\n### /b\nBee\n")
        self.assertEqual(render_section([_rec("z", active=False)]), "")

    def test_base_and_customization_are_preserved(self) -> None:
        existing = (
            "# Workspace\n\nRules here.\n"
            "\n## Imported Skills\n\n### /old\nstale\n"
            "\n## Customization\n\nMy notes.\n"
        )
        out = merge_index(existing, [_rec("new", description="fresh")])
        self.assertEqual(
            out,
            "# Workspace\n\nRules here.\n\n## Imported Skills\n\n### /new\nfresh\n\n## Customization\n\nMy notes.\n",
        )

    def test_no_records_drops_the_section(self) -> None:
        existing = "# Base\n\n## Imported Skills\n\n### /a\nx\n\n## Customization\n\nKeep me.\n"
        self.assertEqual(merge_index(existing, []), "# Base\n\n## Customization\n\nKeep me.\n")

    def test_new_file_gets_default_sections(self) -> None:
        out = merge_index(None, [_rec("a")])
        self.assertTrue(out.startswith("# Skills\n\n## Imported Skills\n"))
        self.assertTrue(out.endswith(DEFAULT_CUSTOMIZATION_SECTION))

    def test_regenerate_writes_store_index(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ws = make_stores(Path(td))[WORKSPACE]
            ws.upsert(_rec("alpha", description="Alpha things"))
            path = regenerate_index(ws)
            assert path is not None
            content = path.read_text(encoding="utf-8")
            self.assertIn("### /alpha\nAlpha things\n", content)

            path.write_text(content.replace("Add your own", "Mine:"), encoding="utf-8")
            ws.upsert(_rec("beta"))
            content = regenerate_index(ws).read_text(encoding="utf-8")  # type: ignore[union-attr]
            self.assertIn("### /beta", content)
            self.assertIn("Mine:", content)


if __name__ == "__main__":
    unittest.main()
