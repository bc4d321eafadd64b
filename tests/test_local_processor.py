import base64
import io
import re
import subprocess
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import local_processor
from buildconfig import Build
from errors import ArtifactError, InputError
from processors import CommandResult

RELEASE = "5.15.0-1004-intel-iotg"


class LocalProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.src_dir = Path(tmp.name) / "src"
        self.src_dir.mkdir()
        self.out_dir = Path(tmp.name) / "out"
        self.scripts = []

    def _processor(self, **kwargs) -> local_processor.LocalProcessor:
        return local_processor.LocalProcessor(600, src_dir=str(self.src_dir), **kwargs)

    def _run_command(self, produce=None):
        def run_command(command, **kwargs):
            self.scripts.append(command[-1])
            if produce is not None:
                produce(len(self.scripts))
            return CommandResult(command, 0)

        return run_command

    def test_no_compiler_produces_the_module(self) -> None:
        build = Build(target_type="ubuntu", kernel_release=RELEASE, module_file_path=str(self.out_dir / "falco.ko"))
        with mock.patch(
            "local_processor.discover_gccs", return_value=["/usr/bin/gcc-9", "/usr/bin/gcc-11"]
        ), mock.patch("local_processor.run_command", side_effect=self._run_command()):
            with self.assertRaisesRegex(ArtifactError, "failed to find kernel module .ko file"):
                self._processor().start(build)

        self.assertEqual(2, len(self.scripts))
        self.assertIn("make CC=/usr/bin/gcc-9 ", self.scripts[0])
        self.assertIn("make CC=/usr/bin/gcc-11 ", self.scripts[1])

    def test_second_compiler_produces_the_module(self) -> None:
        def produce(attempt: int) -> None:
            if attempt == 2:
                (self.src_dir / "falco.ko").write_bytes(b"module")

        build = Build(target_type="ubuntu", kernel_release=RELEASE, module_file_path=str(self.out_dir / "falco.ko"))
        with mock.patch(
            "local_processor.discover_gccs", return_value=["/usr/bin/gcc-9", "/usr/bin/gcc-11", "/usr/bin/gcc-12"]
        ), mock.patch("local_processor.run_command", side_effect=self._run_command(produce)):
            self._processor().start(build)

        self.assertEqual(2, len(self.scripts))
        self.assertEqual(b"module", (self.out_dir / "falco.ko").read_bytes())

    def test_failing_build_tries_the_next_compiler(self) -> None:
        calls = []

        def run_command(command, **kwargs):
            calls.append(command)
            if len(calls) == 1:
                raise subprocess.CalledProcessError(2, command)
            (self.src_dir / "falco.ko").write_bytes(b"module")
            return CommandResult(command, 0)

        build = Build(target_type="ubuntu", kernel_release=RELEASE, module_file_path=str(self.out_dir / "falco.ko"))
        with mock.patch(
            "local_processor.discover_gccs", return_value=["/usr/bin/gcc-9", "/usr/bin/gcc-11"]
        ), mock.patch("local_processor.run_command", side_effect=run_command):
            with self.assertLogs(local_processor.LOG, level="WARNING"):
                self._processor().start(build)
        self.assertTrue((self.out_dir / "falco.ko").exists())

    def test_probe_only_skips_compiler_discovery(self) -> None:
        def produce(_attempt: int) -> None:
            (self.src_dir / "bpf").mkdir()
            (self.src_dir / "bpf" / "probe.o").write_bytes(b"probe")

        build = Build(target_type="ubuntu", kernel_release=RELEASE, probe_file_path=str(self.out_dir / "probe.o"))
        with mock.patch("local_processor.discover_gccs") as discover, mock.patch(
            "local_processor.run_command", side_effect=self._run_command(produce)
        ):
            self._processor().start(build)

        discover.assert_not_called()
        self.assertEqual(b"probe", (self.out_dir / "probe.o").read_bytes())
        self.assertIn("Build the eBPF probe", self.scripts[0])
        self.assertNotIn("Build the module", self.scripts[0])

    def test_dkms_requires_root(self) -> None:
        build = Build(target_type="ubuntu", kernel_release=RELEASE, module_file_path=str(self.out_dir / "falco.ko"))
        with mock.patch("local_processor.os.geteuid", return_value=1000):
            with self.assertRaisesRegex(InputError, "must be run as root for DKMS build"):
                self._processor(use_dkms=True).start(build)

    def test_dkms_module_path(self) -> None:
        build = Build(target_type="ubuntu", kernel_release=RELEASE, driver_version="5.0.1")
        processor = self._processor(use_dkms=True)
        self.assertEqual(
            f"/var/lib/dkms/falco/5.0.1/{RELEASE}/x86_64/module/falco.*",
            processor.module_path(build, build.kernel_release_object()),
        )

    def test_env_overlay_is_passed_to_the_build(self) -> None:
        build = Build(target_type="ubuntu", kernel_release=RELEASE, module_file_path=str(self.out_dir / "falco.ko"))
        with mock.patch("local_processor.discover_gccs", return_value=["/usr/bin/gcc-11"]), mock.patch(
            "local_processor.run_command", side_effect=self._run_command()
        ) as run_mock:
            with self.assertRaises(ArtifactError):
                self._processor(env={"KERNELDIR": "/opt/headers"}).start(build)
        self.assertEqual("/opt/headers", run_mock.call_args.kwargs["env"]["KERNELDIR"])


class DownloadHeadersTests(unittest.TestCase):
    CONFIG = b"CONFIG_MODULES=y\n"

    def test_vanilla_headers_read_the_kernel_config_from_the_host(self) -> None:
        build = Build(
            target_type="vanilla",
            kernel_release="5.10.77",
            kernel_config_data=base64.b64encode(self.CONFIG).decode(),
            probe_file_path="/tmp/probe.o",
        )
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        headers_dir = str(Path(tmp.name) / "kernel")
        seen = {}

        def run_command(command, **kwargs):
            script = command[-1]
            config_path = re.search(r"^cp (\S+) \.config$", script, re.MULTILINE).group(1)
            with open(config_path, "rb") as file_obj:
                seen["config"] = file_obj.read()
            seen["path"] = config_path
            return CommandResult(command, 0, headers_dir + "\n")

        processor = local_processor.LocalProcessor(600)
        with mock.patch("resolver.url_exists", return_value=True), mock.patch(
            "local_processor.run_command", side_effect=run_command
        ):
            kernel_dir = processor._download_headers(build)
            processor.context.run_cleanups()

        self.assertEqual(headers_dir, kernel_dir)
        self.assertEqual(self.CONFIG, seen["config"])
        self.assertTrue(seen["path"].endswith("/kernel.config"))
        self.assertFalse(Path(seen["path"]).exists())

    def test_failed_header_download_is_only_a_warning(self) -> None:
        build = Build(target_type="centos", kernel_release="3.10.0-957.12.2.el7.x86_64", module_file_path="/tmp/m.ko")
        processor = local_processor.LocalProcessor(600)
        with mock.patch("resolver.url_exists", return_value=False):
            with self.assertLogs(local_processor.LOG, level="WARNING") as logs:
                self.assertEqual("", processor._download_headers(build))
        processor.context.run_cleanups()
        self.assertIn("Failed to download headers", logs.output[-1])


class DiscoverGccsTests(unittest.TestCase):
    def test_missing_gcc(self) -> None:
        with mock.patch("local_processor.shutil.which", return_value=None):
            with self.assertRaisesRegex(InputError, "gcc not found in PATH"):
                local_processor.discover_gccs()

    def test_only_compiler_drivers_are_kept(self) -> None:
        def run(command, **kwargs):
            stdout = "" if command[0].endswith("-ar") else "install: /usr/lib/gcc/x86_64-linux-gnu/11/\n"
            return subprocess.CompletedProcess(command, 0, stdout=stdout)

        with mock.patch("local_processor.shutil.which", return_value="/usr/bin/gcc"), mock.patch(
            "local_processor.glob.glob", return_value=["/usr/bin/gcc-ar", "/usr/bin/gcc-11", "/usr/bin/gcc"]
        ), mock.patch("local_processor.subprocess.run", side_effect=run):
            self.assertEqual(["/usr/bin/gcc", "/usr/bin/gcc-11"], local_processor.discover_gccs())


class ExtractDriverSourcesTests(unittest.TestCase):
    def test_only_the_driver_tree_is_extracted(self) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
            for name in (
                "libs-master/driver/main.c",
                "libs-master/driver/bpf/probe.c",
                "libs-master/userspace/libscap/scap.c",
                "libs-master/driver/../escape.c",
            ):
                info = tarfile.TarInfo(name)
                info.size = 4
                info.mode = 0o644
                archive.addfile(info, io.BytesIO(b"code"))

        with tempfile.TemporaryDirectory() as tmp:
            archive_path = Path(tmp) / "driver.tar.gz"
            archive_path.write_bytes(buffer.getvalue())
            destination = Path(tmp) / "build"
            count = local_processor.extract_driver_sources(archive_path, destination)

            self.assertEqual(2, count)
            self.assertEqual(b"code", (destination / "main.c").read_bytes())
            self.assertTrue((destination / "bpf" / "probe.c").exists())
            self.assertFalse((Path(tmp) / "escape.c").exists())
            self.assertFalse((destination / "libscap").exists())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
