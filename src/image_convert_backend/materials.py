"""
Registration of converted documents as class materials.

MaterialsRegistry implements the MaterialsGateway protocol on top of the
service's SQLite database: a successful conversion becomes a "material" file
record shared with the destination class code.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from .database import connect
from .errors import UpstreamError
from .interfaces import ArtifactDescriptor, Identity
from .utils import utcnow

logger = logging.getLogger(__name__)


class MaterialsRegistry:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS materials (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    original_name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    byte_size INTEGER NOT NULL,
                    mime_type TEXT NOT NULL,
                    class_code TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'material',
                    uploaded_by TEXT NOT NULL,
                    uploader_name TEXT NOT NULL,
                    storage_id TEXT,
                    is_converted INTEGER NOT NULL DEFAULT 0,
                    original_conversion_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_materials_class_code
                ON materials(class_code, created_at DESC)
            """)

    def register(self, artifact: ArtifactDescriptor, destination: str, owner: Identity) -> str:
        """
        Record the artifact as a material of the destination class.

        Returns:
            The new material id

        Raises:
            UpstreamError: If the descriptor is incomplete or the insert fails
        """
        problems = []
        if not destination or not destination.strip():
            problems.append("class code is required")
        if not artifact.url:
            problems.append("url is required")
        if not artifact.name:
            problems.append("name is required")
        if artifact.byte_size <= 0:
            problems.append("size must be positive")
        if problems:
            raise UpstreamError(f"Material validation failed: {', '.join(problems)}")

        material_id = uuid4().hex
        try:
            with connect(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO materials (
                        id, name, original_name, url, byte_size, mime_type, class_code, type,
                        uploaded_by, uploader_name, storage_id, is_converted,
                        original_conversion_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 'material', ?, ?, ?, 1, ?, ?)
                """, (
                    material_id,
                    artifact.name,
                    artifact.original_name,
                    artifact.url,
                    artifact.byte_size,
                    artifact.mime_type,
                    destination.strip().upper(),
                    owner.owner_id,
                    owner.display_name or owner.owner_id,
                    artifact.storage_id,
                    artifact.conversion_id,
                    utcnow().isoformat(timespec="microseconds"),
                ))
        except sqlite3.Error as exc:
            logger.error(f"Failed to register material for conversion {artifact.conversion_id}: {exc}")
            raise UpstreamError(f"Material registration failed: {exc}") from exc

        logger.info(f"Registered material {material_id} for class {destination.strip().upper()}")
        return material_id

    def list_for_class(self, class_code: str) -> List[Dict[str, Any]]:
        """List the materials shared with a class, newest first."""
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM materials WHERE class_code = ? ORDER BY created_at DESC",
                (class_code.strip().upper(),),
            ).fetchall()
            return [dict(row) for row in rows]
