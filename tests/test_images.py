import tempfile
import unittest
from pathlib import Path

import images
from errors import ImageNotFoundError

CATALOG = """
images:
  - name: builder:centos-gcc4.8.5
    target: centos
    arch: x86_64
    tag: latest
    gcc_versions: ["4.8.5"]
  - name: builder:any-gcc8
    target: any
    arch: x86_64
    gcc_versions: [8, "6"]
  - name: builder:any-gcc12
    target: any
    arch: x86_64
    gcc_versions: ["12.0.0", "11.0.0"]
  - name: builder:arm
    target: any
    arch: aarch64
    gcc_versions: ["13"]
  - name: builder:nightly
    target: any
    arch: x86_64
    tag: nightly
    gcc_versions: ["13"]
  - name: ""
    target: any
    arch: x86_64
    gcc_versions: ["9"]
  - name: builder:nogcc
    target: any
    arch: x86_64
    gcc_versions: []
  - name: builder:mystery
    target: plan9
    arch: x86_64
    gcc_versions: ["10"]
"""


class CatalogFilteringTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = images.ImageCatalog.from_yaml(CATALOG, "x86_64", ["centos", "ubuntu"])

    def test_invalid_entries_are_dropped(self) -> None:
        names = {image.name for image in self.catalog}
        self.assertEqual({"builder:centos-gcc4.8.5", "builder:any-gcc8", "builder:any-gcc12"}, names)

    def test_each_gcc_version_is_an_image(self) -> None:
        self.assertEqual(5, len(self.catalog))
        versions = sorted(image.gcc_version for image in self.catalog if image.target == "any")
        self.assertEqual(["11.0.0", "12.0.0", "6.0.0", "8.0.0"], versions)

    def test_tag_and_arch_select_entries(self) -> None:
        nightly = images.ImageCatalog.from_yaml(CATALOG, "x86_64", tag="nightly")
        self.assertEqual(["builder:nightly"], [image.name for image in nightly])
        arm = images.ImageCatalog.from_yaml(CATALOG, "aarch64")
        self.assertEqual(["builder:arm"], [image.name for image in arm])

    def test_malformed_document_yields_empty_catalog(self) -> None:
        with self.assertLogs(images.LOG, level="WARNING"):
            catalog = images.ImageCatalog.from_yaml("images: [", "x86_64")
        self.assertEqual(0, len(catalog))


class CatalogPickTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = images.ImageCatalog.from_yaml(CATALOG, "x86_64", ["centos", "ubuntu"])

    def test_exact_target_wins(self) -> None:
        self.assertEqual("builder:centos-gcc4.8.5", self.catalog.pick("centos", "4.8.5").name)

    def test_any_target_matches(self) -> None:
        image = self.catalog.pick("ubuntu", "12")
        self.assertEqual("builder:any-gcc12", image.name)
        self.assertEqual("12.0.0", image.gcc_version)

    def test_falls_back_to_closest_lower_gcc(self) -> None:
        image = self.catalog.pick("ubuntu", "10")
        self.assertEqual("8.0.0", image.gcc_version)

    def test_falls_back_to_closest_higher_gcc(self) -> None:
        image = self.catalog.pick("ubuntu", "5")
        self.assertEqual("6.0.0", image.gcc_version)

    def test_exact_pick_never_falls_back(self) -> None:
        with self.assertRaisesRegex(ImageNotFoundError, "no builder image for target ubuntu gcc 10.0.0"):
            self.catalog.pick("ubuntu", "10", exact=True)
        self.assertEqual("8.0.0", self.catalog.pick("ubuntu", "8", exact=True).gcc_version)

    def test_empty_catalog_raises(self) -> None:
        with self.assertRaisesRegex(ImageNotFoundError, "no builder image for target centos gcc 8"):
            images.ImageCatalog().pick("centos", "8")


class CatalogLoadTests(unittest.TestCase):
    def test_builtin_catalog_without_paths(self) -> None:
        catalog = images.ImageCatalog.load([], "x86_64")
        self.assertEqual("4.8.5", catalog.pick("centos", "4.8.5").gcc_version)
        self.assertEqual("13.0.0", catalog.pick("ubuntu", "13").gcc_version)

    def test_earlier_files_win(self) -> None:
        first = "images:\n  - {name: first, target: any, arch: x86_64, gcc_versions: ['8']}\n"
        second = "images:\n  - {name: second, target: any, arch: x86_64, gcc_versions: ['8', '9']}\n"
        with tempfile.TemporaryDirectory() as tmp:
            paths = [Path(tmp) / "first.yaml", Path(tmp) / "second.yaml"]
            paths[0].write_text(first, encoding="utf-8")
            paths[1].write_text(second, encoding="utf-8")
            catalog = images.ImageCatalog.load(paths, "x86_64")

        self.assertEqual("first", catalog.pick("centos", "8").name)
        self.assertEqual("second", catalog.pick("centos", "9").name)

    def test_missing_file_is_skipped(self) -> None:
        with self.assertLogs(images.LOG, level="WARNING"):
            catalog = images.ImageCatalog.load(["/nonexistent/catalog.yaml"], "x86_64")
        self.assertEqual(0, len(catalog))


class NormalizeGccTests(unittest.TestCase):
    def test_normalize(self) -> None:
        self.assertEqual("8.0.0", images.normalize_gcc("8"))
        self.assertEqual("4.8.5", images.normalize_gcc("4.8.5"))
        self.assertEqual("4.9.0", images.normalize_gcc("4.9"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
