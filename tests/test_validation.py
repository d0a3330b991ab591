"""
Tests for batch admission rules and the staging area.
"""

import pytest

from image_convert_backend.errors import AdmissionError
from image_convert_backend.models import InputItem, TargetFormat
from image_convert_backend.staging import StagedBatch
from image_convert_backend.utils import display_name, format_file_size, sanitize_filename
from image_convert_backend.validation import MAX_BATCH, MAX_ITEM_BYTES, BatchLimits, validate_batch


def item(name="photo.jpg", size=1024, mime="image/jpeg"):
    return InputItem(name=name, original_name=name, byte_size=size, mime_type=mime)


class TestValidateBatch:
    def test_accepts_valid_batch(self):
        admitted = validate_batch([item(), item("b.png", mime="image/png")], "pdf", "math101")
        assert admitted.target_format == TargetFormat.PDF
        assert admitted.destination == "MATH101"
        assert [i.name for i in admitted.items] == ["photo.jpg", "b.png"]

    def test_format_is_case_insensitive(self):
        assert validate_batch([item()], "PPTX", "c1").target_format == TargetFormat.PPTX

    def test_accepts_enum_format(self):
        assert validate_batch([item()], TargetFormat.DOCX, "c1").target_format == TargetFormat.DOCX

    def test_empty_batch_rejected(self):
        with pytest.raises(AdmissionError, match="No images uploaded"):
            validate_batch([], "pdf", "C1")

    def test_batch_of_twenty_accepted(self):
        admitted = validate_batch([item(f"{i}.jpg") for i in range(MAX_BATCH)], "pdf", "C1")
        assert len(admitted.items) == MAX_BATCH

    def test_batch_of_twenty_one_rejected(self):
        with pytest.raises(AdmissionError, match="Too many images: 21"):
            validate_batch([item(f"{i}.jpg") for i in range(MAX_BATCH + 1)], "pdf", "C1")

    def test_item_at_size_limit_accepted(self):
        validate_batch([item(size=MAX_ITEM_BYTES)], "pdf", "C1")

    def test_item_over_size_limit_rejected(self):
        with pytest.raises(AdmissionError, match="too large") as exc_info:
            validate_batch([item("big.jpg", size=MAX_ITEM_BYTES + 1)], "pdf", "C1")
        assert "big.jpg" in str(exc_info.value)

    def test_non_image_mime_rejected(self):
        with pytest.raises(AdmissionError, match="Invalid file type: application/pdf"):
            validate_batch([item(), item("doc.pdf", mime="application/pdf")], "pdf", "C1")

    def test_mime_check_is_case_insensitive(self):
        validate_batch([item(mime="IMAGE/PNG")], "pdf", "C1")

    @pytest.mark.parametrize("target_format", ["", None, "png", "xlsx"])
    def test_unsupported_format_rejected(self, target_format):
        with pytest.raises(AdmissionError, match="Invalid conversion type"):
            validate_batch([item()], target_format, "C1")

    @pytest.mark.parametrize("destination", ["", "   ", None])
    def test_missing_destination_rejected(self, destination):
        with pytest.raises(AdmissionError, match="Class code is required"):
            validate_batch([item()], "pdf", destination)

    def test_custom_limits(self):
        limits = BatchLimits(max_batch=1)
        with pytest.raises(AdmissionError, match=r"maximum 1\)"):
            validate_batch([item(), item()], "pdf", "C1", limits)

    def test_limits_from_config(self, runtime_config):
        limits = BatchLimits.from_config(runtime_config)
        assert limits.max_batch == 20
        assert limits.max_item_bytes == 10 * 1024 * 1024
        assert "image/webp" in limits.allowed_mime_types


class TestStagedBatch:
    def test_add_bytes_keeps_order_and_metadata(self, tmp_path):
        staged = StagedBatch(tmp_path)
        staged.add_bytes("../Holiday Pic.JPG", "Image/JPEG", b"abc")
        staged.add_bytes("second.png", "image/png", b"defg")

        items = staged.input_items()
        assert [i.name for i in items] == ["01_Holiday_Pic.jpg", "02_second.png"]
        assert items[0].original_name == "../Holiday Pic.JPG"
        assert items[0].mime_type == "image/jpeg"
        assert [i.byte_size for i in items] == [3, 4]
        assert staged.images[1].path.read_bytes() == b"defg"

    def test_release_removes_directory_and_is_idempotent(self, tmp_path):
        staged = StagedBatch(tmp_path)
        staged.add_bytes("a.jpg", "image/jpeg", b"abc")
        directory = staged.directory

        staged.release()
        staged.release()

        assert staged.released
        assert not directory.exists()
        assert len(staged) == 0

    def test_reserve_after_release_fails(self, tmp_path):
        staged = StagedBatch(tmp_path)
        staged.release()
        with pytest.raises(RuntimeError):
            staged.reserve("a.jpg")

    def test_context_manager_releases(self, tmp_path):
        with StagedBatch(tmp_path) as staged:
            staged.add_bytes("a.jpg", "image/jpeg", b"abc")
        assert staged.released
        assert not staged.directory.exists()


class TestUtils:
    def test_sanitize_filename(self):
        assert sanitize_filename("../My Photo (1).JPG") == "My_Photo_1.jpg"
        assert sanitize_filename("???") == "image"

    def test_display_name_strips_xml_invalid_characters(self):
        assert display_name("bad\x01name\x0b.jpg") == "badname.jpg"
        assert display_name("Übung 1.png") == "Übung 1.png"
        assert display_name("\x00\x1f") == "image"

    @pytest.mark.parametrize(
        "num_bytes, expected",
        [(512, "512 bytes"), (2048, "2.00 KB"), (10 * 1024 * 1024, "10.00 MB")],
    )
    def test_format_file_size(self, num_bytes, expected):
        assert format_file_size(num_bytes) == expected
