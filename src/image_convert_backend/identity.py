import hashlib
import secrets
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

from .database import connect
from .interfaces import Identity
from .models import APIKeyRecord, Role
from .utils import utcnow

KEY_PREFIX = "icv_"


class IdentityStore:
    """
    Maps API keys to educator/admin identities using the local SQLite database.

    Only a SHA-256 hash of each key is stored; the raw key is returned once,
    at creation time.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    def create_key(self, owner_id: str, display_name: str = "", role: Role = Role.EDUCATOR) -> Tuple[str, APIKeyRecord]:
        """
        Generate a new API key for an educator or admin.

        Returns:
            Tuple[str, APIKeyRecord]: (raw_api_key, key_record)
            WARNING: raw_api_key is shown ONLY ONCE here.
        """
        raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
        record = APIKeyRecord(
            id=str(uuid4()),
            prefix=raw_key[:8],
            owner_id=owner_id,
            display_name=display_name or owner_id,
            role=Role(role),
            is_active=True,
            created_at=utcnow().isoformat(),
        )

        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO api_keys (id, key_hash, prefix, owner_id, display_name, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                self._hash_key(raw_key),
                record.prefix,
                record.owner_id,
                record.display_name,
                record.role.value,
                record.created_at,
            ))
        return raw_key, record

    def validate_key(self, key: Optional[str]) -> Optional[Identity]:
        """
        Resolve an API key to the identity it belongs to, if the key is active.
        """
        if not key:
            return None

        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT owner_id, display_name, role FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(key),),
            ).fetchone()

        if row is None:
            return None
        return Identity(owner_id=row["owner_id"], display_name=row["display_name"], role=Role(row["role"]))

    def list_keys(self) -> list[APIKeyRecord]:
        """List all API keys (admin only)."""
        with connect(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY created_at DESC").fetchall()
        return [
            APIKeyRecord(
                id=row["id"],
                prefix=row["prefix"],
                owner_id=row["owner_id"],
                display_name=row["display_name"],
                role=Role(row["role"]),
                is_active=bool(row["is_active"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with connect(self.db_path) as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            return cursor.rowcount > 0
