import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from browserq.object_storage import DirectoryObjectStorage
from browserq.sources import SourceResolutionError, file_specs, resolve_files, safe_filename


class SourceTests(unittest.TestCase):
    def test_safe_filename_strips_paths_and_odd_characters(self) -> None:
        self.assertEqual(safe_filename("../../etc/pass wd"), "pass_wd")
        self.assertEqual(safe_filename("C:\\docs\\résumé.pdf"), "r_sum_.pdf")
        self.assertEqual(safe_filename(""), "upload.bin")

    def test_single_entry_payload_is_one_spec(self) -> None:
        payload = {"selector": "#f", "fileSource": "local", "filePath": "/tmp/x"}
        self.assertEqual(file_specs(payload), [payload])

    def test_local_and_object_sources_resolve(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp)
            local = base / "cv.pdf"
            local.write_bytes(b"%PDF")
            storage = DirectoryObjectStorage(base / "objects")
            storage.upload("docs/cover letter.txt", b"hello")
            paths = resolve_files(
                {
                    "files": [
                        {"fileSource": "local", "filePath": str(local)},
                        {"fileSource": "s3", "s3Key": "docs/cover letter.txt"},
                    ]
                },
                base / "work",
                storage,
                limit=1024,
            )
            self.assertEqual(paths[0], local)
            self.assertEqual(paths[1].name, "cover_letter.txt")
            self.assertEqual(paths[1].read_bytes(), b"hello")

    def test_missing_sources_raise_source_unavailable(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp)
            storage = DirectoryObjectStorage(base / "objects")
            with self.assertRaises(SourceResolutionError) as ctx:
                resolve_files({"fileSource": "s3", "s3Key": "nope.pdf"}, base / "w", storage, limit=10)
            self.assertTrue(str(ctx.exception).startswith("source_unavailable:"))
            with self.assertRaises(SourceResolutionError):
                resolve_files({"fileSource": "local", "filePath": str(base / "gone")}, base / "w", None, limit=10)
            with self.assertRaises(SourceResolutionError):
                resolve_files({"fileSource": "s3", "s3Key": "a"}, base / "w", None, limit=10)

    def test_empty_and_oversized_files_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp)
            empty = base / "empty.txt"
            empty.write_bytes(b"")
            big = base / "big.txt"
            big.write_bytes(b"x" * 11)
            with self.assertRaises(SourceResolutionError):
                resolve_files({"fileSource": "local", "filePath": str(empty)}, base / "w", None, limit=10)
            with self.assertRaises(SourceResolutionError):
                resolve_files({"fileSource": "local", "filePath": str(big)}, base / "w", None, limit=10)

    def test_url_source_downloads_with_urllib(self) -> None:
        response = MagicMock()
        response.status = 200
        response.read.return_value = b"remote-bytes"
        response.__enter__.return_value = response
        with tempfile.TemporaryDirectory() as tmp, patch(
            "browserq.sources.urllib.request.urlopen", return_value=response
        ) as urlopen:
            paths = resolve_files(
                {"fileSource": "url", "fileUrl": "https://files.test/a/report.csv?sig=1"},
                Path(tmp),
                None,
                limit=100,
            )
            self.assertEqual(paths[0].name, "report.csv")
            self.assertEqual(paths[0].read_bytes(), b"remote-bytes")
            urlopen.assert_called_once()

    def test_non_http_url_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SourceResolutionError):
                resolve_files({"fileSource": "url", "fileUrl": "file:///etc/passwd"}, Path(tmp), None, limit=100)


if __name__ == "__main__":
    unittest.main()
