"""
Relational store module.

SQLite-backed persistence for identities, their face embeddings and
attendance marks. A new connection is opened per operation so the store can
be shared across request threads and background workers.
"""

import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .descriptors import encode_descriptor, group_descriptors
from .errors import ConflictError, StoreError
from .logging_config import get_logger
from .models import AttendanceMark, AttendanceStatus, Embedding, Identity

logger = get_logger(__name__)

# Stay well under SQLITE_MAX_VARIABLE_NUMBER
_IN_CHUNK = 400

SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS identities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identity_key TEXT UNIQUE NOT NULL,
        external_key TEXT UNIQUE NOT NULL,
        display_name TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS embeddings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identity_key TEXT NOT NULL,
        descriptor TEXT NOT NULL,
        source_ref TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (identity_key) REFERENCES identities(identity_key)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_embeddings_identity ON embeddings(identity_key)',
    '''
    CREATE TABLE IF NOT EXISTS attendance_marks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identity_key TEXT NOT NULL,
        session_key TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('Present', 'Absent')),
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (identity_key, session_key)
    )
    ''',
)


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class AttendanceStore:
    """
    Keyed access to the three record kinds.

    Uniqueness of identity_key / external_key and of (identity_key,
    session_key) is enforced by table constraints, not only by callers.
    """

    def __init__(self, db_path: str, timeout: float = 10.0):
        """
        Args:
            db_path: SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back and wrap errors on failure."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreError(f'Cannot open database {self.db_path}: {e}') from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute('PRAGMA foreign_keys = ON')
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f'Database error: {e}') from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create tables if they do not exist."""
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f'Database schema ready at {self.db_path}')

    def ping(self) -> None:
        """
        Verify the database is reachable.

        Raises:
            StoreError: If the database cannot be queried
        """
        with self._connect() as conn:
            conn.execute('SELECT 1').fetchone()

    # ------------------------------------------------------------------
    # Identities / embeddings
    # ------------------------------------------------------------------

    def identity_exists(self, external_key: str, identity_key: Optional[str] = None) -> bool:
        """
        Check whether either key is already bound to an identity.

        Args:
            external_key: External (application) key
            identity_key: Roster key, if known

        Returns:
            True if a matching identity exists
        """
        with self._connect() as conn:
            if identity_key is None:
                row = conn.execute(
                    'SELECT 1 FROM identities WHERE external_key = ? LIMIT 1', (external_key,)
                ).fetchone()
            else:
                row = conn.execute(
                    'SELECT 1 FROM identities WHERE external_key = ? OR identity_key = ? LIMIT 1',
                    (external_key, identity_key)
                ).fetchone()
        return row is not None

    def create_identity(self, identity: Identity, embeddings: Sequence[Embedding]) -> None:
        """
        Insert an identity together with its embeddings in one transaction.

        Args:
            identity: Identity to create
            embeddings: Embeddings owned by the identity

        Raises:
            ConflictError: If identity_key or external_key is already taken
            StoreError: On any other database failure (nothing is persisted)
        """
        with self._connect() as conn:
            try:
                conn.execute(
                    'INSERT INTO identities (identity_key, external_key, display_name) VALUES (?, ?, ?)',
                    (identity.identity_key, identity.external_key, identity.display_name)
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError('duplicate identity') from e

            conn.executemany(
                'INSERT INTO embeddings (identity_key, descriptor, source_ref) VALUES (?, ?, ?)',
                [
                    (identity.identity_key, encode_descriptor(emb.vector), emb.source_ref)
                    for emb in embeddings
                ]
            )

        logger.info(
            f'Stored identity {identity.identity_key} ({identity.display_name}) '
            f'with {len(embeddings)} embeddings'
        )

    def get_identity(self, identity_key: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT identity_key, external_key, display_name FROM identities WHERE identity_key = ?',
                (identity_key,)
            ).fetchone()
        if row is None:
            return None
        return Identity(row['identity_key'], row['external_key'], row['display_name'])

    def count_identities(self) -> int:
        with self._connect() as conn:
            return conn.execute('SELECT COUNT(*) FROM identities').fetchone()[0]

    def count_embeddings(self, identity_key: Optional[str] = None) -> int:
        with self._connect() as conn:
            if identity_key is None:
                return conn.execute('SELECT COUNT(*) FROM embeddings').fetchone()[0]
            return conn.execute(
                'SELECT COUNT(*) FROM embeddings WHERE identity_key = ?', (identity_key,)
            ).fetchone()[0]

    def load_descriptor_rows(self, identity_keys: Sequence[str]) -> List[Tuple[str, str]]:
        """
        Raw stored descriptors for the given identities.

        Args:
            identity_keys: Roster keys

        Returns:
            List of (identity_key, descriptor JSON) rows
        """
        keys = sorted(set(identity_keys))
        rows: List[Tuple[str, str]] = []

        with self._connect() as conn:
            for chunk in _chunks(keys):
                placeholders = ','.join('?' for _ in chunk)
                cursor = conn.execute(
                    f'SELECT identity_key, descriptor FROM embeddings '
                    f'WHERE identity_key IN ({placeholders}) ORDER BY identity_key, id',
                    tuple(chunk)
                )
                rows.extend((row['identity_key'], row['descriptor']) for row in cursor)

        return rows

    def load_embeddings(self, identity_keys: Sequence[str]) -> Dict[str, List[np.ndarray]]:
        """
        Stored embeddings grouped by identity, malformed records skipped.

        Args:
            identity_keys: Roster keys

        Returns:
            identity_key -> list of vectors
        """
        return group_descriptors(self.load_descriptor_rows(identity_keys))

    # ------------------------------------------------------------------
    # Attendance marks
    # ------------------------------------------------------------------

    def upsert_marks(
        self,
        session_key: str,
        identity_keys: Sequence[str],
        status: AttendanceStatus
    ) -> int:
        """
        Set the status of every given identity for a session.

        Re-running with the same arguments leaves the table unchanged apart
        from updated_at.

        Args:
            session_key: Session identifier
            identity_keys: Identities to mark
            status: Status to write

        Returns:
            Number of marks written
        """
        keys = sorted(set(identity_keys))
        if not keys:
            return 0

        with self._connect() as conn:
            conn.executemany(
                '''
                INSERT INTO attendance_marks (identity_key, session_key, status)
                VALUES (?, ?, ?)
                ON CONFLICT (identity_key, session_key)
                DO UPDATE SET status = excluded.status, updated_at = CURRENT_TIMESTAMP
                ''',
                [(key, session_key, status.value) for key in keys]
            )

        logger.debug(f'Upserted {len(keys)} {status.value} marks for session {session_key}')
        return len(keys)

    def get_marks(self, session_key: str) -> List[AttendanceMark]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT identity_key, session_key, status FROM attendance_marks '
                'WHERE session_key = ? ORDER BY identity_key',
                (session_key,)
            ).fetchall()
        return [
            AttendanceMark(row['identity_key'], row['session_key'], AttendanceStatus(row['status']))
            for row in rows
        ]

    def get_attendance(self, session_key: str) -> List[dict]:
        """
        Attendance records for a session joined with identity details.

        Roster members that were never enrolled still appear, with a null name.

        Args:
            session_key: Session identifier

        Returns:
            List of dicts ordered by display name
        """
        with self._connect() as conn:
            rows = conn.execute(
                '''
                SELECT a.id, a.status, a.updated_at, a.identity_key,
                       i.external_key, i.display_name
                FROM attendance_marks a
                LEFT JOIN identities i ON i.identity_key = a.identity_key
                WHERE a.session_key = ?
                ORDER BY i.display_name IS NULL, i.display_name, a.identity_key
                ''',
                (session_key,)
            ).fetchall()

        return [
            {
                'id': row['id'],
                'status': row['status'],
                'student_id': row['identity_key'],
                'app_id': row['external_key'],
                'name': row['display_name'],
                'updated_at': row['updated_at'],
            }
            for row in rows
        ]
