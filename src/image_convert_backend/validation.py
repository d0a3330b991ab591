from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Sequence, Tuple, Union

from omegaconf import DictConfig

from .errors import AdmissionError
from .models import InputItem, TargetFormat
from .utils import format_file_size

MAX_BATCH = 20
MAX_ITEM_BYTES = 10 * 1024 * 1024

ALLOWED_MIME_TYPES: FrozenSet[str] = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/tiff",
    }
)


@dataclass(frozen=True)
class BatchLimits:
    max_batch: int = MAX_BATCH
    max_item_bytes: int = MAX_ITEM_BYTES
    allowed_mime_types: FrozenSet[str] = field(default=ALLOWED_MIME_TYPES)

    @classmethod
    def from_config(cls, config: DictConfig) -> "BatchLimits":
        limits = config.limits
        return cls(
            max_batch=int(limits.max_batch),
            max_item_bytes=int(limits.max_item_bytes),
            allowed_mime_types=frozenset(str(mime).lower() for mime in limits.allowed_mime_types),
        )


@dataclass(frozen=True)
class AdmittedBatch:
    items: Tuple[InputItem, ...]
    target_format: TargetFormat
    destination: str


def validate_batch(
    items: Sequence[InputItem],
    target_format: Union[str, TargetFormat, None],
    destination: Optional[str],
    limits: BatchLimits = BatchLimits(),
) -> AdmittedBatch:
    """
    Check a candidate batch before any job record exists.

    Args:
        items: Metadata of the staged images, in submission order
        target_format: Requested output format
        destination: Class code the finished document is shared with
        limits: Batch size, item size and MIME type constraints

    Returns:
        The admitted batch with a parsed format and an upper-cased class code

    Raises:
        AdmissionError: With a client-facing message for the first violated rule
    """
    if not items:
        raise AdmissionError("No images uploaded")

    if len(items) > limits.max_batch:
        raise AdmissionError(f"Too many images: {len(items)} (maximum {limits.max_batch})")

    for item in items:
        mime_type = (item.mime_type or "").lower()
        if mime_type not in limits.allowed_mime_types:
            raise AdmissionError(f"Invalid file type: {item.mime_type or 'unknown'}. Only images are allowed.")
        if item.byte_size > limits.max_item_bytes:
            raise AdmissionError(
                f"Image '{item.original_name}' is too large: {format_file_size(item.byte_size)} "
                f"(maximum {format_file_size(limits.max_item_bytes)})"
            )

    raw_format = target_format.value if isinstance(target_format, TargetFormat) else str(target_format or "")
    try:
        parsed_format = TargetFormat(raw_format.strip().lower())
    except ValueError:
        raise AdmissionError("Invalid conversion type. Must be pdf, docx, or pptx") from None

    if destination is None or not destination.strip():
        raise AdmissionError("Class code is required")

    return AdmittedBatch(
        items=tuple(items),
        target_format=parsed_format,
        destination=destination.strip().upper(),
    )
