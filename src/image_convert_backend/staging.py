"""
Transient staging area for uploaded image bytes.

A StagedBatch owns one private directory under the staging root. The HTTP
layer fills it, the job manager takes ownership on submit, and whoever owns it
last calls release() exactly once (extra calls are no-ops). Job records only
keep the metadata returned by input_items().
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple
from uuid import uuid4

from .models import InputItem
from .utils import ensure_directory, sanitize_filename

logger = logging.getLogger(__name__)


@dataclass
class StagedImage:
    index: int
    name: str
    original_name: str
    path: Path
    byte_size: int
    mime_type: str

    def to_input_item(self) -> InputItem:
        return InputItem(
            name=self.name,
            original_name=self.original_name,
            byte_size=self.byte_size,
            mime_type=self.mime_type,
        )


class StagedBatch:
    """Ordered set of staged images backed by a private temporary directory."""

    def __init__(self, root: Path) -> None:
        self.directory = ensure_directory(root / uuid4().hex)
        self.images: List[StagedImage] = []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __len__(self) -> int:
        return len(self.images)

    def __enter__(self) -> "StagedBatch":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def reserve(self, original_name: str) -> Tuple[str, Path]:
        """
        Pick the staged filename and path for the next image.

        The numeric prefix keeps directory listings in submission order.
        """
        if self._released:
            raise RuntimeError("Staging area has already been released.")
        index = len(self.images) + 1
        name = f"{index:02d}_{sanitize_filename(original_name)}"
        return name, self.directory / name

    def register(self, name: str, original_name: str, path: Path, byte_size: int, mime_type: str) -> StagedImage:
        image = StagedImage(
            index=len(self.images) + 1,
            name=name,
            original_name=original_name,
            path=path,
            byte_size=byte_size,
            mime_type=(mime_type or "").lower(),
        )
        self.images.append(image)
        return image

    def add_bytes(self, original_name: str, mime_type: str, data: bytes) -> StagedImage:
        name, path = self.reserve(original_name)
        path.write_bytes(data)
        return self.register(name, original_name, path, len(data), mime_type)

    def input_items(self) -> List[InputItem]:
        return [image.to_input_item() for image in self.images]

    def release(self) -> None:
        """Delete every staged file and forget the images."""
        if self._released:
            return
        self._released = True
        self.images = []
        try:
            shutil.rmtree(self.directory)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(f"Failed to remove staging directory {self.directory}: {exc}")
