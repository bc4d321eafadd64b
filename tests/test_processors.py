import os
import stat
import subprocess
import tempfile
import threading
import time
import unittest
from pathlib import Path

import cancellation
import processors
from buildconfig import Build
from cancellation import BuildContext
from errors import ArtifactError, BuildInterrupted


class RunCommandTests(unittest.TestCase):
    def test_output_is_logged_and_returned(self) -> None:
        with self.assertLogs(processors.LOG, level="INFO") as logs:
            result = processors.run_command(["sh", "-c", "printf 'one\\ntwo\\n'"])

        self.assertEqual(0, result.returncode)
        self.assertEqual("one\ntwo\n", result.output)
        self.assertEqual(["one", "two"], result.tail)
        self.assertIn("INFO:driverkit.processors:$ sh -c printf 'one\\ntwo\\n'", logs.output)
        self.assertIn("INFO:driverkit.processors:two", logs.output)

    def test_failure_raises_with_output(self) -> None:
        with self.assertRaises(subprocess.CalledProcessError) as ctx:
            processors.run_command(["sh", "-c", "echo oops; exit 3"])
        self.assertEqual(3, ctx.exception.returncode)
        self.assertEqual("oops\n", ctx.exception.output)

    def test_failure_without_check(self) -> None:
        result = processors.run_command(["sh", "-c", "exit 3"], check=False)
        self.assertEqual(3, result.returncode)

    def test_cancelled_context_never_starts_the_process(self) -> None:
        context = BuildContext()
        context.cancel()
        with self.assertRaises(BuildInterrupted):
            processors.run_command(["sh", "-c", "exit 0"], context=context)

    def test_deadline_terminates_the_process(self) -> None:
        context = BuildContext(0.3)
        with self.assertRaises(BuildInterrupted) as ctx:
            processors.run_command(["sleep", "30"], context=context)
        self.assertEqual(cancellation.DEADLINE_EXCEEDED, ctx.exception.reason)


class RunBinaryTests(unittest.TestCase):
    def test_stdout_is_returned_as_bytes(self) -> None:
        output = processors.run_binary(["cat"], input_bytes=b"\x00payload")
        self.assertEqual(b"\x00payload", output)

    def test_failure_carries_stderr(self) -> None:
        with self.assertRaises(subprocess.CalledProcessError) as ctx:
            processors.run_binary(["sh", "-c", "echo denied >&2; exit 4"])
        self.assertEqual(4, ctx.exception.returncode)
        self.assertEqual("denied", processors.stderr_text(ctx.exception))

    def test_cancel_terminates_a_running_command(self) -> None:
        context = BuildContext(600)
        timer = threading.Timer(0.3, context.cancel)
        timer.start()
        self.addCleanup(timer.cancel)

        started = time.monotonic()
        with self.assertRaises(BuildInterrupted) as ctx:
            processors.run_binary(["sleep", "30"], context=context)
        self.assertLess(time.monotonic() - started, 10)
        self.assertEqual(cancellation.INTERRUPTED, ctx.exception.reason)

    def test_deadline_terminates_a_running_command(self) -> None:
        context = BuildContext(0.3)
        with self.assertRaises(BuildInterrupted) as ctx:
            processors.run_binary(["sleep", "30"], context=context)
        self.assertEqual(cancellation.DEADLINE_EXCEEDED, ctx.exception.reason)


class StderrTextTests(unittest.TestCase):
    def test_last_stderr_line(self) -> None:
        exc = subprocess.CalledProcessError(1, ["docker"], stderr=b"warning\nError: no such image\n")
        self.assertEqual("Error: no such image", processors.stderr_text(exc))

    def test_exit_status_without_output(self) -> None:
        exc = subprocess.CalledProcessError(125, ["docker"])
        self.assertEqual("exit status 125", processors.stderr_text(exc))


class ArtifactHelperTests(unittest.TestCase):
    def test_extract_single_file(self) -> None:
        archive = processors.build_tar({"falco.ko": b"module"})
        self.assertEqual(b"module", processors.extract_single_file(archive))

    def test_empty_archive(self) -> None:
        with self.assertRaisesRegex(ArtifactError, "no regular file"):
            processors.extract_single_file(processors.build_tar({}))

    def test_write_artifact_permissions(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            destination = processors.write_artifact(Path(tmp) / "out" / "falco.ko", b"module")
            self.assertEqual(b"module", destination.read_bytes())
            self.assertEqual(0o644, stat.S_IMODE(os.stat(destination).st_mode))

    def test_copy_missing_artifact(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaisesRegex(ArtifactError, "build succeeded but artifact .*falco.ko not produced"):
                processors.copy_artifact(Path(tmp) / "falco.ko", Path(tmp) / "copy.ko")

    def test_ancillary_files(self) -> None:
        build = Build(target_type="vanilla", kernel_release="5.10.0", kernel_config_data="Q09ORklHX0ZPTz15Cg==")
        files = processors.ancillary_files(build)
        self.assertEqual(b"CONFIG_FOO=y\n", files[processors.KERNEL_CONFIG_FILE])
        self.assertIn(b"M=/tmp/driver modules", files[processors.MAKEFILE_FILE])
        self.assertIn(b'#define PROBE_VERSION "master"', files[processors.DRIVER_CONFIG_FILE])

    def test_requested_artifacts(self) -> None:
        build = Build(
            target_type="vanilla",
            kernel_release="5.10.0",
            module_file_path="/out/falco.ko",
            probe_file_path="/out/probe.o",
        )
        self.assertEqual(
            [("/tmp/module/falco.ko", "/out/falco.ko"), ("/tmp/module/probe.o", "/out/probe.o")],
            processors.requested_artifacts(build),
        )

    def test_proxy_env(self) -> None:
        processor = processors.BuildProcessor(proxy="http://proxy:3128")
        self.assertEqual({"http_proxy": "http://proxy:3128", "https_proxy": "http://proxy:3128"}, processor.proxy_env())
        self.assertEqual({}, processors.BuildProcessor().proxy_env())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
