import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from browserq.object_storage import (
    ConfigurationError,
    DirectoryObjectStorage,
    ObjectNotFound,
    S3ObjectStorage,
    artifact_key,
    object_storage_from_env,
)


class DirectoryObjectStorageTests(unittest.TestCase):
    def test_upload_download_list_delete(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            storage = DirectoryObjectStorage(Path(tmp))
            stored = storage.upload("docs/a.txt", b"hello")
            self.assertEqual(stored.key, "docs/a.txt")
            self.assertTrue(stored.url.startswith("file://"))
            self.assertEqual(storage.download("docs/a.txt"), b"hello")
            self.assertEqual(storage.list_keys("docs/"), ["docs/a.txt"])
            storage.delete("docs/a.txt")
            with self.assertRaises(ObjectNotFound):
                storage.download("docs/a.txt")

    def test_path_traversal_keys_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            storage = DirectoryObjectStorage(Path(tmp))
            with self.assertRaises(ValueError):
                storage.upload("../escape.txt", b"x")
            with self.assertRaises(ValueError):
                storage.download("/etc/passwd")

    def test_bucket_cannot_leave_storage_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "objects"
            (Path(tmp) / "secret.txt").write_bytes(b"x")
            storage = DirectoryObjectStorage(root)
            for bucket in ("..", "../..", "a/../..", "."):
                with self.assertRaises(ValueError, msg=bucket):
                    storage.download("secret.txt", bucket=bucket)
            storage.upload("a.txt", b"ok")
            self.assertEqual(storage.download("a.txt", bucket="local"), b"ok")

    def test_artifact_keys_are_unique_and_prefixed(self) -> None:
        first = artifact_key("form")
        second = artifact_key("form")
        self.assertTrue(first.startswith("screenshots/form-"))
        self.assertTrue(first.endswith(".png"))
        self.assertNotEqual(first, second)


class S3ObjectStorageTests(unittest.TestCase):
    def test_upload_and_download_use_client(self) -> None:
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b"data")}
        storage = S3ObjectStorage("bucket", endpoint_url="http://minio:9000/", client=client)
        stored = storage.upload("screenshots/x.png", b"png", content_type="image/png")
        client.put_object.assert_called_once_with(
            Bucket="bucket", Key="screenshots/x.png", Body=b"png", ContentType="image/png"
        )
        self.assertEqual(stored.url, "http://minio:9000/bucket/screenshots/x.png")
        self.assertEqual(storage.download("docs/a.pdf", bucket="other"), b"data")
        client.get_object.assert_called_once_with(Bucket="other", Key="docs/a.pdf")

    def test_missing_key_maps_to_object_not_found(self) -> None:
        class _ClientError(Exception):
            response = {"Error": {"Code": "NoSuchKey"}}

        client = MagicMock()
        client.get_object.side_effect = _ClientError("missing")
        storage = S3ObjectStorage("bucket", client=client)
        with self.assertRaises(ObjectNotFound):
            storage.download("docs/missing.pdf")

    def test_list_keys_walks_pages(self) -> None:
        client = MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "a"}, {"Key": "b"}]},
            {},
        ]
        storage = S3ObjectStorage("bucket", client=client)
        self.assertEqual(storage.list_keys("x"), ["a", "b"])


class FromEnvTests(unittest.TestCase):
    def test_without_bucket_uses_directory_storage(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, patch.dict(os.environ, {"BROWSERQ_S3_BUCKET": ""}):
            storage = object_storage_from_env(Path(tmp))
            self.assertIsInstance(storage, DirectoryObjectStorage)
            self.assertEqual(storage.root, Path(tmp) / "objects")

    def test_bucket_without_credentials_is_configuration_error(self) -> None:
        env = {
            "BROWSERQ_S3_BUCKET": "uploads",
            "BROWSERQ_S3_ACCESS_KEY_ID": "",
            "BROWSERQ_S3_SECRET_ACCESS_KEY": "",
        }
        with patch.dict(os.environ, env):
            with self.assertRaises(ConfigurationError):
                object_storage_from_env()

    def test_bucket_with_credentials_builds_boto3_client(self) -> None:
        env = {
            "BROWSERQ_S3_BUCKET": "uploads",
            "BROWSERQ_S3_ACCESS_KEY_ID": "key",
            "BROWSERQ_S3_SECRET_ACCESS_KEY": "secret",
            "BROWSERQ_S3_ENDPOINT": "http://minio:9000",
            "BROWSERQ_S3_REGION": "us-east-1",
        }
        with patch.dict(os.environ, env), patch("boto3.Session") as session_cls:
            storage = object_storage_from_env()
        self.assertIsInstance(storage, S3ObjectStorage)
        session_cls.assert_called_once_with(
            aws_access_key_id="key", aws_secret_access_key="secret", region_name="us-east-1"
        )
        _, kwargs = session_cls.return_value.client.call_args
        self.assertEqual(kwargs["endpoint_url"], "http://minio:9000")


if __name__ == "__main__":
    unittest.main()
