"""Unit tests for docvault.storage.blob_store — LocalBlobStore and S3BlobStore."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoRegionError

from docvault.engine.config import BlobStoreConfig
from docvault.engine.errors import (
    ConfigError,
    ForbiddenError,
    NotFoundError,
    UpstreamStorageError,
    ValidationFailureError,
)
from docvault.storage.blob_store import (
    S3_DELETE_BATCH,
    DeleteResult,
    LocalBlobStore,
    S3BlobStore,
    build_blob_store,
)


def client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, operation)


class TestLocalBlobStore:
    """Filesystem adapter basics."""

    def test_put_get_roundtrip(self, blob_store):
        blob_store.put("1/a.txt", b"hello", "text/plain")
        assert blob_store.get("1/a.txt") == b"hello"
        assert blob_store.exists("1/a.txt")

    def test_no_temp_files_left(self, blob_store):
        blob_store.put("1/a.txt", b"hello")
        assert [p.name for p in (blob_store.root / "1").iterdir()] == ["a.txt"]

    def test_failed_write_removes_temp_file(self, blob_store, monkeypatch):
        def refuse(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("docvault.storage.blob_store.os.replace", refuse)
        with pytest.raises(UpstreamStorageError):
            blob_store.put("1/abc-x.bin", b"partial")
        assert list((blob_store.root / "1").iterdir()) == []
        assert not blob_store.exists("1/abc-x.bin")

    def test_get_missing(self, blob_store):
        with pytest.raises(NotFoundError):
            blob_store.get("1/missing.bin")

    def test_delete_missing_is_ok(self, blob_store):
        blob_store.delete("1/never-existed")
        assert not blob_store.exists("1/never-existed")

    def test_delete(self, blob_store):
        blob_store.put("1/a.txt", b"x")
        blob_store.delete("1/a.txt")
        assert not blob_store.exists("1/a.txt")

    @pytest.mark.parametrize("key", ["", "/etc/passwd", "1/../../escape"])
    def test_rejects_bad_keys(self, blob_store, key):
        with pytest.raises(ValidationFailureError):
            blob_store.put(key, b"x")

    def test_list_keys_prefix(self, blob_store):
        blob_store.put("1/a", b"1")
        blob_store.put("1/b", b"22")
        blob_store.put("2/c", b"333")
        infos = list(blob_store.list_keys("1/"))
        assert [i.key for i in infos] == ["1/a", "1/b"]
        assert infos[1].size == 2
        assert infos[0].last_modified.tzinfo is not None

    def test_delete_many_collects_failures(self, blob_store, monkeypatch):
        blob_store.put("1/a", b"1")
        blob_store.put("1/b", b"1")
        real_delete = blob_store.delete

        def flaky(key):
            if key == "1/b":
                raise UpstreamStorageError("Blob store delete failed", cause="disk on fire")
            real_delete(key)

        monkeypatch.setattr(blob_store, "delete", flaky)
        result = blob_store.delete_many(["1/a", "1/b", "1/a"])
        assert result.deleted == ["1/a"]
        assert result.failed == {"1/b": "disk on fire"}
        assert not result.ok

    def test_requires_signing_key(self, tmp_path):
        with pytest.raises(ConfigError):
            LocalBlobStore(root=str(tmp_path), signing_key="")


class TestLocalSignedUrls:
    """Fernet-signed download URLs with an injectable clock."""

    def test_roundtrip(self, blob_store, base_url):
        blob_store.put("4/doc.pdf", b"%PDF")
        url = blob_store.signed_url("4/doc.pdf", 60)
        assert url.startswith(f"{base_url}/4/doc.pdf?token=")
        assert blob_store.verify_signed_url(url) == "4/doc.pdf"
        assert blob_store.open_signed(url) == b"%PDF"

    def test_valid_until_ttl(self, blob_store, clock):
        url = blob_store.signed_url("4/doc.pdf", 60)
        clock.advance(60)
        assert blob_store.verify_signed_url(url) == "4/doc.pdf"

    def test_expired(self, blob_store, clock):
        url = blob_store.signed_url("4/doc.pdf", 60)
        clock.advance(61)
        with pytest.raises(ForbiddenError, match="invalid or expired"):
            blob_store.verify_signed_url(url)

    def test_tampered_path(self, blob_store):
        url = blob_store.signed_url("4/doc.pdf", 60)
        forged = url.replace("4/doc.pdf", "4/other.pdf")
        with pytest.raises(ForbiddenError, match="does not match"):
            blob_store.verify_signed_url(forged)

    def test_other_signing_key(self, blob_store, tmp_path, clock, base_url):
        other = LocalBlobStore(str(tmp_path / "other"), "another-key", base_url, clock=clock)
        url = other.signed_url("4/doc.pdf", 60)
        with pytest.raises(ForbiddenError):
            blob_store.verify_signed_url(url)

    def test_missing_token(self, blob_store, base_url):
        with pytest.raises(ForbiddenError, match="missing"):
            blob_store.verify_signed_url(f"{base_url}/4/doc.pdf")

    def test_ttl_must_be_positive(self, blob_store):
        with pytest.raises(ValidationFailureError):
            blob_store.signed_url("4/doc.pdf", 0)


class TestS3BlobStore:
    """S3 adapter against a mocked boto3 client."""

    def setup_method(self):
        self.client = MagicMock()
        self.store = S3BlobStore(bucket="vault-test", client=self.client)

    def test_requires_bucket(self):
        with pytest.raises(ConfigError):
            S3BlobStore(bucket="")

    def test_put(self):
        self.store.put("1/a.pdf", b"data", "application/pdf")
        self.client.put_object.assert_called_once_with(
            Bucket="vault-test",
            Key="1/a.pdf",
            Body=b"data",
            ContentType="application/pdf",
            ServerSideEncryption="AES256",
        )

    def test_put_failure_hides_key(self):
        self.client.put_object.side_effect = client_error("AccessDenied", "PutObject")
        with pytest.raises(UpstreamStorageError) as exc_info:
            self.store.put("1/secret.pdf", b"data")
        err = exc_info.value
        assert err.operation == "put"
        assert "secret" not in err.message
        assert err.context["blob_key"] == "1/secret.pdf"

    def test_get_missing(self):
        self.client.get_object.side_effect = client_error("NoSuchKey")
        with pytest.raises(NotFoundError):
            self.store.get("1/a")

    def test_get(self):
        body = MagicMock()
        body.read.return_value = b"abc"
        self.client.get_object.return_value = {"Body": body}
        assert self.store.get("1/a") == b"abc"

    def test_exists(self):
        assert self.store.exists("1/a") is True
        self.client.head_object.side_effect = client_error("404", "HeadObject")
        assert self.store.exists("1/a") is False

    def test_exists_other_error(self):
        self.client.head_object.side_effect = client_error("403", "HeadObject")
        with pytest.raises(UpstreamStorageError):
            self.store.exists("1/a")

    def test_delete_many_batches(self):
        keys = [f"1/{i}" for i in range(S3_DELETE_BATCH + 5)]
        self.client.delete_objects.return_value = {}
        result = self.store.delete_many(keys)
        assert self.client.delete_objects.call_count == 2
        assert len(result.deleted) == len(keys)
        assert result.ok

    def test_delete_many_partial_errors(self):
        self.client.delete_objects.return_value = {
            "Errors": [{"Key": "1/b", "Code": "AccessDenied", "Message": "nope"}],
        }
        result = self.store.delete_many(["1/a", "1/b"])
        assert result.deleted == ["1/a"]
        assert result.failed == {"1/b": "AccessDenied: nope"}

    def test_delete_many_request_failure(self):
        self.client.delete_objects.side_effect = client_error("SlowDown", "DeleteObjects")
        result = self.store.delete_many(["1/a", "1/b"])
        assert result.deleted == []
        assert set(result.failed) == {"1/a", "1/b"}

    def test_client_setup_failure_is_upstream_error(self, monkeypatch):
        monkeypatch.setattr(
            "docvault.storage.blob_store.boto3.client", MagicMock(side_effect=NoRegionError()),
        )
        store = S3BlobStore(bucket="vault-test")
        with pytest.raises(UpstreamStorageError) as exc_info:
            store.delete_many(["1/a"])
        assert exc_info.value.operation == "delete"
        with pytest.raises(UpstreamStorageError) as exc_info:
            list(store.list_keys("1/"))
        assert exc_info.value.operation == "list"

    def test_signed_url(self):
        self.client.generate_presigned_url.return_value = "https://s3/vault-test/1/a?sig"
        assert self.store.signed_url("1/a", 300) == "https://s3/vault-test/1/a?sig"
        self.client.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "vault-test", "Key": "1/a"}, ExpiresIn=300,
        )

    def test_list_keys(self):
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "1/a", "Size": 3, "LastModified": stamp}]},
            {},
        ]
        self.client.get_paginator.return_value = paginator
        infos = list(self.store.list_keys("1/"))
        assert [(i.key, i.size) for i in infos] == [("1/a", 3)]
        paginator.paginate.assert_called_once_with(Bucket="vault-test", Prefix="1/")


class TestBuildBlobStore:
    def test_local(self, tmp_path):
        store = build_blob_store(BlobStoreConfig(root=str(tmp_path), signing_key="k"))
        assert isinstance(store, LocalBlobStore)

    def test_s3(self):
        store = build_blob_store(BlobStoreConfig(backend="s3", bucket="b"))
        assert isinstance(store, S3BlobStore)
        assert store.bucket_name == "b"


class TestDeleteResult:
    def test_ok(self):
        assert DeleteResult().ok
        assert not DeleteResult(failed={"k": "e"}).ok
