"""
Registered population storage.

``IdentityStore`` persists identities and verification attempts in SQLite.
``IdentityRegistry`` keeps the in-memory population that matching runs
against and publishes it as immutable snapshots: writers build a new tuple
and swap it in, so a match in progress always scans one consistent
population.
"""
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..exceptions import DuplicateIdentityError, NearDuplicateEmbeddingError
from ..models.data_models import RegisteredIdentity
from .encoding_matcher import EncodingMatcher

logger = logging.getLogger(__name__)


class IdentityStore:
    """Service for managing SQLite persistence of the registered population"""

    def __init__(self, db_path: str):
        """
        Initialize the store

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._memory_conn = None  # Store connection for :memory: databases
        self._ensure_database_exists()

    def _ensure_database_exists(self):
        """Create database directory and initialize schema if needed"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _initialize_schema(self):
        """Initialize database schema from schema.sql"""
        schema_path = Path(__file__).parent.parent / 'schema.sql'

        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema_sql)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections"""
        # For in-memory databases, reuse the same connection
        if self.db_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._memory_conn.row_factory = sqlite3.Row
            yield self._memory_conn
        else:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    # Identity operations

    def save_identity(self, identity: RegisteredIdentity) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO registered_identities (identity_id, embedding, registered_at)
                VALUES (?, ?, ?)
                """,
                (identity.identity_id, json.dumps(list(identity.embedding)), identity.registered_at)
            )
            conn.commit()

    def load_identities(self) -> List[RegisteredIdentity]:
        """Return every stored identity in registration order"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT identity_id, embedding, registered_at
                FROM registered_identities
                ORDER BY registered_at, identity_id
                """
            )
            return [
                RegisteredIdentity(
                    identity_id=row['identity_id'],
                    embedding=json.loads(row['embedding']),
                    registered_at=row['registered_at'],
                )
                for row in cursor.fetchall()
            ]

    def delete_identity(self, identity_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM registered_identities WHERE identity_id = ?",
                (identity_id,)
            )
            conn.commit()
            return cursor.rowcount > 0

    # Audit operations

    def record_attempt(
        self,
        session_id: str,
        purpose: str,
        claimed_identity: Optional[str],
        accepted: bool,
        reason: str,
        similarity: Optional[float] = None,
    ) -> None:
        """Append one verification outcome to the audit trail"""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO verification_attempts
                    (session_id, purpose, claimed_identity, accepted, reason, similarity, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, purpose, claimed_identity, int(accepted), reason, similarity, time.time())
            )
            conn.commit()

    def get_attempts(self, claimed_identity: Optional[str] = None) -> List[dict]:
        with self._get_connection() as conn:
            if claimed_identity is None:
                cursor = conn.execute(
                    "SELECT * FROM verification_attempts ORDER BY attempt_id"
                )
            else:
                cursor = conn.execute(
                    """
                    SELECT * FROM verification_attempts
                    WHERE claimed_identity = ?
                    ORDER BY attempt_id
                    """,
                    (claimed_identity,)
                )
            return [dict(row) for row in cursor.fetchall()]


class IdentityRegistry:
    """
    Read-mostly registered population.

    ``snapshot()`` returns an immutable tuple that is never modified after
    publication. ``register`` and ``remove`` serialise on a lock, build the
    next tuple and swap the reference.
    """

    def __init__(self, matcher: EncodingMatcher, store: Optional[IdentityStore] = None):
        self.matcher = matcher
        self.store = store
        self._lock = threading.Lock()
        self._snapshot: Tuple[RegisteredIdentity, ...] = tuple(store.load_identities()) if store else ()
        if self._snapshot:
            logger.info(f"Loaded {len(self._snapshot)} registered identities")

    def snapshot(self) -> Tuple[RegisteredIdentity, ...]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, identity_id: str) -> bool:
        return self.get(identity_id) is not None

    def get(self, identity_id: str) -> Optional[RegisteredIdentity]:
        for identity in self._snapshot:
            if identity.identity_id == identity_id:
                return identity
        return None

    def register(
        self,
        identity_id: str,
        embedding: Sequence[float],
        registered_at: Optional[float] = None,
    ) -> RegisteredIdentity:
        """
        Add an identity after checking key and face uniqueness.

        Args:
            identity_id: External identity key (e.g. national identifier)
            embedding: Embedding captured by a passed liveness check

        Returns:
            RegisteredIdentity: The stored identity

        Raises:
            DuplicateIdentityError: If the key is already registered
            NearDuplicateEmbeddingError: If the face is within the duplicate
                                         threshold of another identity
            DimensionMismatchError: If the embedding has the wrong length
        """
        with self._lock:
            current = self._snapshot
            if any(identity.identity_id == identity_id for identity in current):
                raise DuplicateIdentityError("Identity already registered", {"identity_id": identity_id})

            duplicate = self.matcher.find_near_duplicate(embedding, current)
            if duplicate.matched:
                logger.warning(f"Rejected registration: face already registered (distance {duplicate.distance:.4f})")
                raise NearDuplicateEmbeddingError(duplicate.identity_id, duplicate.distance)

            identity = RegisteredIdentity(
                identity_id=identity_id,
                embedding=embedding,
                registered_at=time.time() if registered_at is None else registered_at,
            )
            if self.store is not None:
                self.store.save_identity(identity)
            self._snapshot = current + (identity,)

        logger.info(f"Registered identity {identity_id} (population {len(self._snapshot)})")
        return identity

    def remove(self, identity_id: str) -> bool:
        with self._lock:
            current = self._snapshot
            remaining = tuple(identity for identity in current if identity.identity_id != identity_id)
            if len(remaining) == len(current):
                return False
            if self.store is not None:
                self.store.delete_identity(identity_id)
            self._snapshot = remaining
        logger.info(f"Removed identity {identity_id}")
        return True
