import contextlib
import gzip
import os
import sqlite3
import tempfile
import unittest
import urllib.error
from unittest import mock

import registry
import targets_amazon
import targets_deb
import targets_vanilla
from buildconfig import Build
from errors import HeadersNotFoundError, InputError
from kernelrelease import AMD64, ARM64, parse_kernel_release


def _config(target: str, release: str, arch: str = "amd64"):
    return Build(target_type=target, kernel_release=release, architecture=arch).to_config()


class RegistryTests(unittest.TestCase):
    def test_every_ubuntu_spelling_maps_to_ubuntu(self) -> None:
        for tag in ("ubuntu", "ubuntu-generic", "ubuntu-aws"):
            with self.subTest(tag=tag):
                self.assertEqual("ubuntu", registry.get_target(tag).name)

    def test_unknown_target(self) -> None:
        with self.assertRaisesRegex(InputError, "target not found: plan9"):
            registry.get_target("plan9")

    def test_target_names(self) -> None:
        names = registry.target_names()
        self.assertEqual(sorted(names), names)
        expected = ("amazonlinux2", "amazonlinux2023", "archlinux", "centos", "debian", "flatcar", "linuxkit", "redhat")
        for name in expected + ("vanilla",):
            self.assertIn(name, names)


class UbuntuTests(unittest.TestCase):
    def test_extraversion_flavors(self) -> None:
        anchors = {
            "188": ("188", "generic"),
            "1140-aws": ("1140", "aws"),
            "1004-intel-iotg": ("1004", "intel-iotg"),
            "24-lowlatency-hwe-5.15": ("24", "lowlatency-hwe"),
            "abc": ("abc", "generic"),
        }
        for extraversion, expected in anchors.items():
            with self.subTest(extraversion=extraversion):
                self.assertEqual(expected, targets_deb.parse_ubuntu_extraversion(extraversion))

    def test_aws_arm64_headers_discovery(self) -> None:
        base = "http://ports.ubuntu.com/ubuntu-ports/pool/main/l/linux-aws"
        expected = [
            f"{base}/linux-headers-4.15.0-1140-aws_4.15.0-1140.151_arm64.deb",
            f"{base}/linux-aws-headers-4.15.0-1140_4.15.0-1140.151_all.deb",
        ]
        kr = parse_kernel_release("4.15.0-1140-aws", ARM64, "151")
        target = registry.get_target("ubuntu")

        candidates = target.urls(_config("ubuntu", "4.15.0-1140-aws", "arm64"), kr)
        for url in expected:
            self.assertIn(url, candidates)

        with mock.patch("resolver.url_exists", side_effect=lambda url: url in expected):
            resolved = target.resolve(_config("ubuntu", "4.15.0-1140-aws", "arm64"), kr)
        self.assertEqual(expected, resolved)

    def test_one_package_is_not_enough(self) -> None:
        kr = parse_kernel_release("5.4.0-1103-aws", AMD64, "112")
        target = registry.get_target("ubuntu")
        only = "/linux-aws/linux-aws-headers-5.4.0-1103_5.4.0-1103.112_all.deb"
        with mock.patch("resolver.url_exists", side_effect=lambda url: url.endswith(only)):
            with self.assertRaises(HeadersNotFoundError):
                target.resolve(_config("ubuntu", "5.4.0-1103-aws"), kr)

    def test_arch_packages_are_never_architecture_all(self) -> None:
        for release in ("5.4.0-1103-aws", "5.15.0-188-generic", "5.15.0-24-lowlatency-hwe-5.15"):
            kr = parse_kernel_release(release, AMD64, "112")
            with self.subTest(release=release):
                candidates = targets_deb.ubuntu_candidate_urls(targets_deb.UBUNTU_AMD64_BASE_URLS[0], kr)
                self.assertTrue(candidates)
                self.assertFalse([url for url in candidates if url.endswith("_amd64_all.deb")])

    def test_gcc_versions(self) -> None:
        target = registry.get_target("ubuntu")
        self.assertEqual("4.8", target.gcc_version(parse_kernel_release("3.13.0-100")))
        self.assertEqual("8", target.gcc_version(parse_kernel_release("4.15.0-188")))
        self.assertEqual("11", target.gcc_version(parse_kernel_release("5.15.0-1004-intel-iotg")))
        self.assertEqual("12", target.gcc_version(parse_kernel_release("5.19.0-46-generic")))
        self.assertEqual("13", target.gcc_version(parse_kernel_release("6.2.0-26-generic")))


class CentOSTests(unittest.TestCase):
    RELEASE = "3.10.0-957.12.2.el7.x86_64"

    def test_candidate_urls(self) -> None:
        kr = parse_kernel_release(self.RELEASE)
        urls = registry.get_target("centos").urls(_config("centos", self.RELEASE), kr)
        package = "kernel-devel-3.10.0-957.12.2.el7.x86_64.rpm"
        self.assertIn(f"https://mirrors.edge.kernel.org/centos/7/os/x86_64/Packages/{package}", urls)
        self.assertIn(f"https://mirrors.edge.kernel.org/centos/8-stream/BaseOS/x86_64/os/Packages/{package}", urls)
        self.assertIn(f"http://vault.centos.org/7.6.1810/os/x86_64/Packages/{package}", urls)
        self.assertTrue(all(url.endswith(package) for url in urls))

    def test_gcc_versions(self) -> None:
        target = registry.get_target("centos")
        self.assertEqual("4.8.5", target.gcc_version(parse_kernel_release(self.RELEASE)))
        self.assertEqual("5", target.gcc_version(parse_kernel_release("3.18.0")))
        self.assertEqual("4.8", target.gcc_version(parse_kernel_release("2.6.32-754.el6.x86_64")))
        self.assertEqual("8", target.gcc_version(parse_kernel_release("4.18.0-80.el8.x86_64")))


class EntitledTargetTests(unittest.TestCase):
    def test_redhat_skips_url_resolution(self) -> None:
        kr = parse_kernel_release("4.18.0-305.el8.x86_64")
        with mock.patch("resolver.url_exists") as exists:
            self.assertEqual([], registry.get_target("redhat").resolve(_config("redhat", str(kr)), kr))
        exists.assert_not_called()


class VanillaTests(unittest.TestCase):
    def test_kernel_org_url(self) -> None:
        kr = parse_kernel_release("5.10.77-flatcar")
        self.assertEqual(
            "https://cdn.kernel.org/pub/linux/kernel/v5.x/linux-5.10.77.tar.xz",
            targets_vanilla.vanilla_kernel_url(kr),
        )

    def test_rc_kernels_use_git_snapshots(self) -> None:
        url = targets_vanilla.vanilla_kernel_url(parse_kernel_release("6.1.0-rc3"))
        self.assertTrue(url.endswith("/snapshot/linux-6.1.0-rc3.tar.gz"))

    def test_minikube_gcc(self) -> None:
        target = registry.get_target("minikube")
        self.assertEqual("10", target.gcc_version(parse_kernel_release("5.10.57")))
        self.assertEqual("8", target.gcc_version(parse_kernel_release("4.19.202")))


class FlatcarTests(unittest.TestCase):
    PACKAGES = "\n".join(
        [
            "app-shells/bash-5.1_p8::portage-stable",
            "sys-devel/gcc-8.3.0-r2::portage-stable",
            "sys-kernel/coreos-kernel-5.10.77::coreos-overlay",
        ]
    )

    def setUp(self) -> None:
        targets_vanilla.fetch_flatcar_release.cache_clear()
        self.addCleanup(targets_vanilla.fetch_flatcar_release.cache_clear)

    def test_parse_packages(self) -> None:
        self.assertEqual(("8.3.0", "5.10.77"), targets_vanilla.parse_flatcar_packages(self.PACKAGES))

    def test_live_discovery(self) -> None:
        kr = parse_kernel_release("3033.2.0")
        target = registry.get_target("flatcar")
        stable = "https://stable.release.flatcar-linux.net/amd64-usr/3033.2.0/flatcar_production_image_packages.txt"
        with mock.patch("resolver.url_exists", side_effect=lambda url: url == stable), mock.patch(
            "targets_vanilla.fetch_text", return_value=self.PACKAGES
        ) as fetch:
            urls = target.urls(_config("flatcar", "3033.2.0"), kr)
            gcc = target.gcc_version(kr)

        self.assertEqual("", kr.extraversion)
        self.assertEqual(["https://cdn.kernel.org/pub/linux/kernel/v5.x/linux-5.10.77.tar.xz"], urls)
        self.assertEqual("8", gcc)
        fetch.assert_called_once_with(stable)

    def test_gcc_7_maps_to_builder_gcc_6(self) -> None:
        packages = self.PACKAGES.replace("gcc-8.3.0-r2", "gcc-7.3.0")
        kr = parse_kernel_release("2345.3.0")
        with mock.patch("resolver.url_exists", return_value=True), mock.patch(
            "targets_vanilla.fetch_text", return_value=packages
        ):
            self.assertEqual("6", registry.get_target("flatcar").gcc_version(kr))

    def test_unreachable_package_list(self) -> None:
        kr = parse_kernel_release("3033.2.0")
        with mock.patch("resolver.url_exists", return_value=True), mock.patch(
            "resolver.urllib.request.urlopen", side_effect=urllib.error.URLError("connection reset")
        ):
            with self.assertRaisesRegex(HeadersNotFoundError, "unable to fetch .*flatcar_production_image_packages.txt"):
                registry.get_target("flatcar").urls(_config("flatcar", "3033.2.0"), kr)

    def test_rejects_extraversion_and_small_versions(self) -> None:
        target = registry.get_target("flatcar")
        with self.assertRaises(InputError):
            target.release(parse_kernel_release("3033.2.0-rc1"))
        with self.assertRaises(InputError):
            target.release(parse_kernel_release("5.10.77"))


class AmazonTests(unittest.TestCase):
    HREF = "Packages/kernel-devel-4.14.301-224.520.amzn2.x86_64.rpm"

    def _database(self) -> bytes:
        fd, path = tempfile.mkstemp(suffix=".sqlite")
        os.close(fd)
        try:
            with contextlib.closing(sqlite3.connect(path)) as connection:
                connection.execute("CREATE TABLE packages (name TEXT, version TEXT, release TEXT, location_href TEXT)")
                connection.executemany(
                    "INSERT INTO packages VALUES (?, ?, ?, ?)",
                    [
                        ("kernel-devel", "4.14.301", "224.520.amzn2", self.HREF),
                        ("kernel-devel", "4.14.300", "222.518.amzn2", "Packages/old.rpm"),
                        ("kernel", "4.14.301", "224.520.amzn2", "Packages/kernel.rpm"),
                    ],
                )
                connection.commit()
            with open(path, "rb") as file_obj:
                return file_obj.read()
        finally:
            os.unlink(path)

    def test_query_primary_db(self) -> None:
        rows = targets_amazon.query_primary_db(self._database(), "4.14.301", "224.520.amzn2")
        self.assertEqual([self.HREF], rows)

    def test_urls_follow_the_mirror_list(self) -> None:
        kr = parse_kernel_release("4.14.301-224.520.amzn2.x86_64")
        target = registry.get_target("amazonlinux2")
        with mock.patch(
            "targets_amazon.fetch_text", return_value="http://mirror.example/$basearch/\n"
        ) as fetch_text, mock.patch(
            "targets_amazon.fetch_bytes", return_value=gzip.compress(self._database())
        ) as fetch_bytes:
            urls = target.urls(_config("amazonlinux2", str(kr)), kr)

        self.assertEqual([f"http://mirror.example/x86_64/{self.HREF}"], urls)
        fetch_text.assert_called_once_with("http://amazonlinux.us-east-1.amazonaws.com/2/core/2.0/x86_64/mirror.list")
        fetch_bytes.assert_called_once_with("http://mirror.example/x86_64/repodata/primary.sqlite.gz")

    def test_empty_mirror_list(self) -> None:
        kr = parse_kernel_release("4.14.301-224.520.amzn2.x86_64")
        with mock.patch("targets_amazon.fetch_text", return_value=""), self.assertLogs(
            targets_amazon.LOG, level="DEBUG"
        ) as logs:
            urls = registry.get_target("amazonlinux2").urls(_config("amazonlinux2", str(kr)), kr)
        self.assertEqual([], urls)
        self.assertIn("repository not found", "\n".join(logs.output))

    def test_unreachable_repository_is_skipped(self) -> None:
        kr = parse_kernel_release("4.14.301-224.520.amzn2.x86_64")
        broken = "http://amazonlinux.us-east-1.amazonaws.com/2/core/2.0/x86_64/mirror.list"

        def fetch_text(url: str) -> str:
            if url == broken:
                raise HeadersNotFoundError(f"unable to fetch {url}: HTTP Error 404: Not Found")
            return "http://mirror.example/$basearch/\n"

        with mock.patch("targets_amazon.fetch_text", side_effect=fetch_text) as fetch, mock.patch(
            "targets_amazon.fetch_bytes", return_value=gzip.compress(self._database())
        ), self.assertLogs(targets_amazon.LOG, level="DEBUG") as logs:
            urls = registry.get_target("amazonlinux2").urls(_config("amazonlinux2", str(kr)), kr)

        self.assertEqual([f"http://mirror.example/x86_64/{self.HREF}"], urls)
        self.assertEqual(2, fetch.call_count)
        self.assertIn("Skipping repository core/2.0", "\n".join(logs.output))

    def test_amazonlinux2023_mirror_list(self) -> None:
        kr = parse_kernel_release("6.1.61-85.141.amzn2023.x86_64")
        with mock.patch("targets_amazon.fetch_text", return_value="") as fetch_text, self.assertLogs(
            targets_amazon.LOG, level="DEBUG"
        ):
            registry.get_target("amazonlinux2023").urls(_config("amazonlinux2023", str(kr)), kr)
        fetch_text.assert_called_once_with("https://cdn.amazonlinux.com/al2023/core/mirrors/latest/x86_64/mirror.list")


class DebianTests(unittest.TestCase):
    INDEX = "\n".join(
        [
            '<a href="linux-headers-5.10.0-21-amd64_5.10.162-1_amd64.deb">x</a>',
            '<a href="linux-headers-5.10.0-21-common_5.10.162-1_all.deb">x</a>',
            '<a href="linux-kbuild-5.10_5.10.162-1_amd64.deb">x</a>',
        ]
    )

    def test_headers_and_kbuild_from_the_pool_index(self) -> None:
        kr = parse_kernel_release("5.10.0-21-amd64")
        with mock.patch("targets_deb.fetch_text", return_value=self.INDEX):
            urls = registry.get_target("debian").urls(_config("debian", str(kr)), kr)

        base = targets_deb.DEBIAN_BASE_URLS[0]
        self.assertEqual(
            [
                base + "linux-headers-5.10.0-21-amd64_5.10.162-1_amd64.deb",
                base + "linux-headers-5.10.0-21-common_5.10.162-1_all.deb",
                targets_deb.DEBIAN_KBUILD_URL + "linux-kbuild-5.10_5.10.162-1_amd64.deb",
            ],
            urls,
        )

    def test_missing_headers(self) -> None:
        kr = parse_kernel_release("5.10.0-21-amd64")
        index = self.INDEX.split("\n")[2]
        with mock.patch("targets_deb.fetch_text", return_value=index):
            with self.assertRaises(HeadersNotFoundError):
                registry.get_target("debian").urls(_config("debian", str(kr)), kr)

    def test_unreachable_mirror_falls_through_to_the_next(self) -> None:
        kr = parse_kernel_release("5.10.0-21-amd64")
        broken = targets_deb.DEBIAN_BASE_URLS[0]

        def fetch_text(url: str) -> str:
            if url == broken:
                raise HeadersNotFoundError(f"unable to fetch {url}: <urlopen error timed out>")
            return self.INDEX

        with mock.patch("targets_deb.fetch_text", side_effect=fetch_text):
            urls = registry.get_target("debian").urls(_config("debian", str(kr)), kr)

        self.assertTrue(urls[0].startswith(targets_deb.DEBIAN_BASE_URLS[1]))
        self.assertEqual(3, len(urls))

    def test_unreachable_kbuild_pool(self) -> None:
        kr = parse_kernel_release("5.10.0-21-amd64")
        with mock.patch("resolver.urllib.request.urlopen", side_effect=urllib.error.URLError("unreachable")):
            with self.assertRaisesRegex(HeadersNotFoundError, "unable to fetch " + targets_deb.DEBIAN_KBUILD_URL):
                registry.get_target("debian").urls(_config("debian", str(kr)), kr)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
