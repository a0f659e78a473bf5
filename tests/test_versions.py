import unittest

from skillsync.versions import compare_semver, is_semver, is_update_available, parse_semver


class TestSemver(unittest.TestCase):
    def test_parse(self) -> None:
        self.assertEqual(parse_semver("1.2.3"), ((1, 2, 3), None))
        self.assertEqual(parse_semver("1.2.3-rc.1+build.5"), ((1, 2, 3), ("rc", "1")))
        for bad in ("1.2", "01.2.3", "v1.2.3", "1.2.3.4", ""):
            with self.subTest(bad=bad):
                self.assertFalse(is_semver(bad))

    def test_ordering(self) -> None:
        self.assertEqual(compare_semver("1.0.0", "1.0.0"), 0)
        self.assertEqual(compare_semver("1.10.0", "1.9.0"), 1)
        self.assertEqual(compare_semver("1.0.0-alpha", "1.0.0"), -1)
        self.assertEqual(compare_semver("1.0.0-alpha.1", "1.0.0-alpha.beta"), -1)
        self.assertEqual(compare_semver("1.0.0-rc.2", "1.0.0-rc.10"), -1)
        self.assertEqual(compare_semver("1.0.0+a", "1.0.0+b"), 0)


class TestUpdateAvailable(unittest.TestCase):
    def test_semver_needs_strictly_greater(self) -> None:
        self.assertTrue(is_update_available("1.1.0", "1.0.0"))
        self.assertFalse(is_update_available("1.0.0", "1.0.0"))
        self.assertFalse(is_update_available("1.0.0", "2.0.0"))

    def test_non_semver_falls_back_to_inequality(self) -> None:
        self.assertTrue(is_update_available("2024-06", "2024-05"))
        self.assertTrue(is_update_available("2024-05", "2024-06"))
        self.assertFalse(is_update_available("latest", "latest"))
        self.assertTrue(is_update_available("1.0.0", ""))

    def test_missing_catalog_version_is_never_an_update(self) -> None:
        self.assertFalse(is_update_available(None, "1.0.0"))
        self.assertFalse(is_update_available("  ", "1.0.0"))


if __name__ == "__main__":
    unittest.main()
