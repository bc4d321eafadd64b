import io
import tempfile
import unittest
import urllib.error
from pathlib import Path
from unittest import mock

import resolver
from cancellation import BuildContext
from errors import BuildInterrupted, DownloadError, HeadersNotFoundError


class _Response(io.BytesIO):
    def __init__(self, body: bytes = b"", status: int = 200) -> None:
        super().__init__(body)
        self.status = status

    def getheader(self, name: str, default=None):
        if name == "Content-Length":
            return str(len(self.getvalue()))
        return default


class UrlExistsTests(unittest.TestCase):
    def test_ok_status(self) -> None:
        with mock.patch("resolver.urllib.request.urlopen", return_value=_Response()) as urlopen:
            self.assertTrue(resolver.url_exists("https://example.com/pkg.rpm"))
        request = urlopen.call_args.args[0]
        self.assertEqual("HEAD", request.get_method())

    def test_not_found_is_false(self) -> None:
        error = urllib.error.HTTPError("https://example.com/pkg.rpm", 404, "Not Found", {}, None)
        with mock.patch("resolver.urllib.request.urlopen", side_effect=error):
            self.assertFalse(resolver.url_exists("https://example.com/pkg.rpm"))

    def test_network_error_is_false(self) -> None:
        with mock.patch("resolver.urllib.request.urlopen", side_effect=urllib.error.URLError("down")):
            self.assertFalse(resolver.url_exists("https://example.com/pkg.rpm"))


class ResolveUrlsTests(unittest.TestCase):
    def test_keeps_order_of_answering_urls(self) -> None:
        alive = {"https://a/2", "https://a/3"}
        with mock.patch("resolver.url_exists", side_effect=lambda url: url in alive):
            resolved = resolver.resolve_urls(["https://a/1", "https://a/3", "https://a/2"])
        self.assertEqual(["https://a/3", "https://a/2"], resolved)

    def test_resolution_is_idempotent(self) -> None:
        alive = {"https://a/1", "https://a/3"}
        with mock.patch("resolver.url_exists", side_effect=lambda url: url in alive):
            first = resolver.resolve_urls(["https://a/1", "https://a/2", "https://a/3"])
            second = resolver.resolve_urls(first)
        self.assertEqual(first, second)

    def test_nothing_resolved(self) -> None:
        with mock.patch("resolver.url_exists", return_value=False):
            with self.assertRaisesRegex(HeadersNotFoundError, "kernel headers not found"):
                resolver.resolve_urls(["https://a/1"])

    def test_minimum_not_met(self) -> None:
        with mock.patch("resolver.url_exists", side_effect=[True, False]):
            with self.assertRaisesRegex(HeadersNotFoundError, "expected at least 2"):
                resolver.resolve_urls(["https://a/1", "https://a/2"], 2)

    def test_cancelled_context_stops_resolution(self) -> None:
        context = BuildContext()
        context.cancel()
        with mock.patch("resolver.url_exists") as exists:
            with self.assertRaises(BuildInterrupted):
                resolver.resolve_urls(["https://a/1"], context=context)
        exists.assert_not_called()


class DownloadTests(unittest.TestCase):
    def test_fetch_text(self) -> None:
        with mock.patch("resolver.urllib.request.urlopen", return_value=_Response(b"hello\n")):
            self.assertEqual("hello\n", resolver.fetch_text("https://example.com/list.txt"))

    def test_download_with_progress_writes_file(self) -> None:
        updates = []
        body = b"x" * 1000
        with tempfile.TemporaryDirectory() as tmp, mock.patch(
            "resolver.urllib.request.urlopen", return_value=_Response(body)
        ):
            destination = Path(tmp) / "nested" / "driver.tar.gz"
            written = resolver.download_with_progress(
                "https://example.com/driver.tar.gz", destination, updates.append
            )
            self.assertEqual(body, destination.read_bytes())

        self.assertEqual(1000, written)
        self.assertTrue(updates)
        self.assertEqual(100.0, updates[-1].percent)
        self.assertEqual("download driver.tar.gz", updates[-1].label)

    def test_fetch_network_error_is_headers_not_found(self) -> None:
        with mock.patch("resolver.urllib.request.urlopen", side_effect=urllib.error.URLError("down")):
            with self.assertRaisesRegex(HeadersNotFoundError, "unable to fetch https://example.com/list.txt"):
                resolver.fetch_text("https://example.com/list.txt")

    def test_fetch_http_error_is_headers_not_found(self) -> None:
        error = urllib.error.HTTPError("https://example.com/list.txt", 404, "Not Found", {}, None)
        with mock.patch("resolver.urllib.request.urlopen", side_effect=error):
            with self.assertRaises(HeadersNotFoundError):
                resolver.fetch_bytes("https://example.com/list.txt")

    def test_download_network_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, mock.patch(
            "resolver.urllib.request.urlopen", side_effect=urllib.error.URLError("down")
        ):
            with self.assertRaisesRegex(DownloadError, "unable to download"):
                resolver.download_with_progress(
                    "https://example.com/driver.tar.gz", Path(tmp) / "driver.tar.gz", lambda update: None
                )


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
