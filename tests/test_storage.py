from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from image_convert_backend import storage
from image_convert_backend.configuration import make_runtime_config
from image_convert_backend.errors import UpstreamError
from image_convert_backend.storage import LocalStorage, S3Storage, build_storage, unique_object_name


def test_unique_object_name_keeps_stem_and_extension() -> None:
    first = unique_object_name("converted_1718000000000.pdf")
    second = unique_object_name("converted_1718000000000.pdf")

    assert first.startswith("converted_1718000000000-")
    assert first.endswith(".pdf")
    assert first != second


def test_s3_put_uses_sigv4_and_presigned_url(monkeypatch: pytest.MonkeyPatch) -> None:
    captured_config = None
    mock_client = Mock()
    mock_client.generate_presigned_url.return_value = "https://example.com/presigned"

    def fake_boto3_client(service_name: str, **kwargs: object) -> Mock:
        nonlocal captured_config
        assert service_name == "s3"
        captured_config = kwargs.get("config")
        return mock_client

    monkeypatch.setattr(storage.boto3, "client", fake_boto3_client)

    backend = S3Storage(bucket="class-materials", prefix="converted/")
    stored = backend.put(b"%PDF-1.4", "converted_1.pdf", "application/pdf")

    assert stored.url == "https://example.com/presigned"
    assert stored.storage_id == f"converted/{stored.name}"
    assert getattr(captured_config, "signature_version", None) == "s3v4"
    mock_client.put_object.assert_called_once_with(
        Bucket="class-materials",
        Key=stored.storage_id,
        Body=b"%PDF-1.4",
        ContentType="application/pdf",
    )
    presign_kwargs = mock_client.generate_presigned_url.call_args.kwargs
    assert presign_kwargs["Params"] == {"Bucket": "class-materials", "Key": stored.storage_id}
    assert presign_kwargs["ExpiresIn"] == 3600


def test_s3_put_with_public_base_url() -> None:
    mock_client = Mock()
    backend = S3Storage(
        bucket="class-materials",
        prefix="converted/",
        public_base_url="https://cdn.example.com/",
        client=mock_client,
    )

    stored = backend.put(b"data", "slides.pptx")

    assert stored.url == f"https://cdn.example.com/converted/{stored.name}"
    mock_client.generate_presigned_url.assert_not_called()
    assert mock_client.put_object.call_args.kwargs["ContentType"] == "application/octet-stream"


def test_s3_put_failure_raises_upstream_error_with_message() -> None:
    mock_client = Mock()
    mock_client.put_object.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
    )
    backend = S3Storage(bucket="class-materials", client=mock_client)

    with pytest.raises(UpstreamError) as exc_info:
        backend.put(b"data", "doc.pdf", "application/pdf")

    assert "AccessDenied" in exc_info.value.detail
    assert "Access Denied" in exc_info.value.detail


def test_local_storage_writes_file(tmp_path) -> None:
    backend = LocalStorage(tmp_path / "outputs", "http://localhost:8000/outputs/")

    stored = backend.put(b"hello", "my doc.docx")

    assert (tmp_path / "outputs" / stored.name).read_bytes() == b"hello"
    assert stored.url == f"http://localhost:8000/outputs/{stored.name}"
    assert stored.storage_id == stored.name
    assert " " not in stored.name


def test_local_storage_write_failure(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    backend = LocalStorage(blocker, "http://localhost:8000/outputs")

    with pytest.raises(UpstreamError):
        backend.put(b"hello", "doc.pdf")


def test_build_storage_defaults_to_local(tmp_path) -> None:
    config = make_runtime_config({"paths": {"data_dir": str(tmp_path)}, "storage": {"bucket": "local"}})
    backend = build_storage(config)
    assert isinstance(backend, LocalStorage)
    assert backend.root == tmp_path / "outputs"


def test_build_storage_uses_s3_for_real_bucket(tmp_path) -> None:
    config = make_runtime_config(
        {
            "paths": {"data_dir": str(tmp_path)},
            "storage": {"bucket": "class-materials", "presign_expiration": 600},
        }
    )
    backend = build_storage(config)
    assert isinstance(backend, S3Storage)
    assert backend.bucket == "class-materials"
    assert backend.prefix == "converted/"
    assert backend.presign_expiration == 600
