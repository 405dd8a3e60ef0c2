"""
Local Cache

SQLite store for reconstructed notes, keyed by (account, chain, token, nonce),
plus per-account state: the last known nonce and tree snapshot metadata.

The cache is never authoritative. A known older schema is migrated in
place; any other version mismatch drops every table and starts over, since
everything here can be rebuilt from the ledger.

The cache also records the hash of the protocol parameters it was built
under and is invalidated when opened with different ones. Chain ids are
field elements and are stored as hex text, like tokens.
"""

from __future__ import annotations
from contextlib import contextmanager
import json
import logging
from pathlib import Path
import sqlite3
import threading
import time
from typing import Iterator, List, Optional, Union

from .config import StorageConfig
from .curve import CurvePoint
from .errors import StoreError
from .keys import Address, token_to_field
from .merkle import LeanIMT, MerkleProof
from .params import PARAMS_DEFAULT, LedgerParams
from .reconstruct import NoteState, ReconstructionResult
from .tags import NoteKind, OperationTag

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 3

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_state (
    account TEXT NOT NULL,
    chain_id TEXT NOT NULL,
    token TEXT NOT NULL,
    last_nonce INTEGER NOT NULL,
    updated_at REAL NOT NULL,
    tree_snapshot TEXT,
    PRIMARY KEY (account, chain_id, token)
);

CREATE TABLE IF NOT EXISTS notes (
    account TEXT NOT NULL,
    chain_id TEXT NOT NULL,
    token TEXT NOT NULL,
    nonce INTEGER NOT NULL,
    leaf TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (account, chain_id, token, nonce)
);

CREATE INDEX IF NOT EXISTS idx_notes_leaf ON notes(leaf);
"""

_TABLES = ('notes', 'account_state', 'metadata', 'schema_version')


def _hex(value: int) -> str:
    return f"0x{value:064x}"


def note_to_dict(note: NoteState) -> dict:
    return {
        'nonce': note.nonce,
        'kind': note.kind.value,
        'operation': int(note.operation),
        'balance': _hex(note.balance),
        'shares_committed': _hex(note.shares_committed),
        'nullifier': _hex(note.nullifier),
        'unlocks_at': note.unlocks_at,
        'nonce_commitment': _hex(note.nonce_commitment),
        'point': [_hex(note.point.x), _hex(note.point.y)],
        'leaf': _hex(note.leaf),
        'leaf_index': note.leaf_index,
        'proof': note.proof.serialize().hex() if note.proof is not None else None,
        'verified': note.verified,
    }


def note_from_dict(data: dict) -> NoteState:
    proof = data.get('proof')
    return NoteState(
        nonce=data['nonce'],
        kind=NoteKind(data['kind']),
        operation=OperationTag(data['operation']),
        balance=int(data['balance'], 16),
        shares_committed=int(data['shares_committed'], 16),
        nullifier=int(data['nullifier'], 16),
        unlocks_at=data['unlocks_at'],
        nonce_commitment=int(data['nonce_commitment'], 16),
        point=CurvePoint(int(data['point'][0], 16), int(data['point'][1], 16)),
        leaf=int(data['leaf'], 16),
        leaf_index=data.get('leaf_index'),
        proof=MerkleProof.deserialize(bytes.fromhex(proof)) if proof else None,
        verified=data.get('verified', True),
    )


class LocalStore:
    """
    Versioned note cache.

    One connection shared across threads behind a lock.
    """

    def __init__(
        self,
        config: Optional[StorageConfig] = None,
        path: Optional[Union[str, Path]] = None,
        params: LedgerParams = PARAMS_DEFAULT,
    ):
        self.config = config or StorageConfig()
        self.params = params
        if path is None:
            path = Path(self.config.data_dir) / self.config.db_name
        self.db_path = str(path)

        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level='DEFERRED',
        )
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ':memory:':
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        self._init_schema()
        self._check_params()

    @classmethod
    def from_config(cls, config) -> Optional[LocalStore]:
        """Store for a LedgerConfig, or None when storage is disabled."""
        if not config.storage.enabled:
            return None
        return cls(config.storage, params=config.params)

    # =========================================================================
    # Schema
    # =========================================================================

    def _init_schema(self) -> None:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT name FROM sqlite_master
                WHERE type='table' AND name='schema_version'
            """)

            if cursor.fetchone() is None:
                self._create_schema()
                return

            cursor.execute("SELECT version FROM schema_version")
            row = cursor.fetchone()
            version = row[0] if row is not None else None

            if version == SCHEMA_VERSION:
                return
            if version is not None and 1 <= version < SCHEMA_VERSION:
                self._migrate_schema(version, SCHEMA_VERSION)
            else:
                logger.warning("Cache schema version %s is not supported; invalidating", version)
                self.invalidate()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(SCHEMA)
        cursor.execute("INSERT INTO schema_version VALUES (?)", (SCHEMA_VERSION,))
        self.conn.commit()
        logger.info("Cache initialized with schema version %d", SCHEMA_VERSION)

    def _migrate_schema(self, from_version: int, to_version: int) -> None:
        logger.info("Migrating cache from v%d to v%d", from_version, to_version)
        cursor = self.conn.cursor()

        # v1 -> v2: tree snapshot metadata per account
        if from_version < 2 <= to_version:
            cursor.execute("ALTER TABLE account_state ADD COLUMN tree_snapshot TEXT")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_leaf ON notes(leaf)")
            cursor.execute("UPDATE schema_version SET version = ?", (2,))
            self.conn.commit()

        # v2 -> v3: chain ids stored as field hex, parameter binding
        if from_version < 3 <= to_version:
            cursor.executescript(f"""
                ALTER TABLE account_state RENAME TO account_state_v2;
                ALTER TABLE notes RENAME TO notes_v2;
                DROP INDEX IF EXISTS idx_notes_leaf;
                {SCHEMA}
                INSERT INTO account_state
                    SELECT account, printf('0x%064x', chain_id), token, last_nonce, updated_at, tree_snapshot
                    FROM account_state_v2;
                INSERT INTO notes
                    SELECT account, printf('0x%064x', chain_id), token, nonce, leaf, data
                    FROM notes_v2;
                DROP TABLE account_state_v2;
                DROP TABLE notes_v2;
            """)
            cursor.execute("UPDATE schema_version SET version = ?", (3,))

        self.conn.commit()
        logger.info("Migration to v%d complete", to_version)

    def _check_params(self) -> None:
        """Bind the cache to the protocol parameters it was built under."""
        expected = self.params.hash().hex()
        with self._lock:
            row = self.conn.execute("SELECT value FROM metadata WHERE key = 'params_hash'").fetchone()
            if row is not None and row['value'] != expected:
                logger.warning("Cache was built under different protocol parameters; invalidating")
                self.invalidate()
                row = None
            if row is None:
                self.conn.execute("INSERT INTO metadata VALUES ('params_hash', ?)", (expected,))
                self.conn.commit()

    def invalidate(self) -> None:
        """Drop everything and recreate an empty schema."""
        with self._lock:
            cursor = self.conn.cursor()
            for table in _TABLES:
                cursor.execute(f"DROP TABLE IF EXISTS {table}")
            self.conn.commit()
            self._create_schema()

    @property
    def schema_version(self) -> int:
        row = self.conn.execute("SELECT version FROM schema_version").fetchone()
        return row[0]

    @property
    def params_hash(self) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM metadata WHERE key = 'params_hash'").fetchone()
        return row['value'] if row is not None else None

    # =========================================================================
    # Connection
    # =========================================================================

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store is closed")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        with self._lock:
            conn = self.conn
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Transaction failed: {e}") from e
            except Exception:
                conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> LocalStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Notes
    # =========================================================================

    def save_result(
        self,
        account: str,
        chain_id: int,
        result: ReconstructionResult,
        current_nonce: int,
        tree: Optional[LeanIMT] = None,
    ) -> None:
        """
        Cache every note of a run.

        The last known nonce only moves forward on complete runs.
        """
        token = _hex(result.token)
        snapshot = json.dumps(tree.snapshot()) if tree is not None else None

        with self.transaction() as conn:
            for note in result.notes:
                conn.execute("""
                    INSERT OR REPLACE INTO notes (account, chain_id, token, nonce, leaf, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (account, _hex(chain_id), token, note.nonce, _hex(note.leaf), json.dumps(note_to_dict(note))))

            if not result.aborted:
                conn.execute("""
                    INSERT INTO account_state (account, chain_id, token, last_nonce, updated_at, tree_snapshot)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account, chain_id, token) DO UPDATE SET
                        last_nonce = MAX(last_nonce, excluded.last_nonce),
                        updated_at = excluded.updated_at,
                        tree_snapshot = COALESCE(excluded.tree_snapshot, tree_snapshot)
                """, (account, _hex(chain_id), token, current_nonce, time.time(), snapshot))

        logger.debug("Cached %d notes for token %s", len(result.notes), token)

    def load_notes(self, account: str, chain_id: int, token: Address) -> List[NoteState]:
        """Cached notes, most recent first."""
        rows = self.conn.execute("""
            SELECT data FROM notes
            WHERE account = ? AND chain_id = ? AND token = ?
            ORDER BY nonce DESC
        """, (account, _hex(chain_id), _hex(token_to_field(token)))).fetchall()
        try:
            return [note_from_dict(json.loads(row['data'])) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Corrupt cached note: {e}") from e

    def find_by_leaf(self, leaf: int) -> Optional[NoteState]:
        row = self.conn.execute("SELECT data FROM notes WHERE leaf = ?", (_hex(leaf),)).fetchone()
        if row is None:
            return None
        return note_from_dict(json.loads(row['data']))

    def last_nonce(self, account: str, chain_id: int, token: Address) -> Optional[int]:
        row = self.conn.execute("""
            SELECT last_nonce FROM account_state
            WHERE account = ? AND chain_id = ? AND token = ?
        """, (account, _hex(chain_id), _hex(token_to_field(token)))).fetchone()
        return row['last_nonce'] if row is not None else None

    def load_tree(self, account: str, chain_id: int, token: Address) -> Optional[LeanIMT]:
        row = self.conn.execute("""
            SELECT tree_snapshot FROM account_state
            WHERE account = ? AND chain_id = ? AND token = ?
        """, (account, _hex(chain_id), _hex(token_to_field(token)))).fetchone()
        if row is None or row['tree_snapshot'] is None:
            return None
        return LeanIMT.from_snapshot(json.loads(row['tree_snapshot']))
