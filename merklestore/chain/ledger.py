"""
Root Commitment Ledger

Design Decision: Commitment Backend
===================================

Signing and broadcasting transactions belongs to the blockchain client, not
to this engine; uploads only need "commit root, get transaction hash".

Options Considered for the bundled implementation:
1. In-memory dict - lost on restart, useless for the CLI
2. JSON file      - no atomic appends under concurrent uploads
3. SQLite         - embedded, ACID, async via aiosqlite

Decision: SQLite with aiosqlite
- Append-only table of (tx_hash, root, metadata, committed_at)
- A chain-backed CommitService can replace it without touching uploads

Tables:
- commitments: one row per commit call
"""

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from ..errors import ChainCommitError

logger = logging.getLogger(__name__)


class CommitService:
    """Commits a file's root hash, returning the transaction hash."""

    async def commit(self, root: str, metadata: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def close(self):
        pass


class LedgerCommitService(CommitService):
    """
    Local append-only commitment ledger.

    Transaction hashes are sha256 over the row id, root, metadata and commit
    time, so committing the same root twice yields two distinct records.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = await aiosqlite.connect(self.db_path)
        connection.row_factory = aiosqlite.Row
        try:
            await self._init_schema(connection)
        except BaseException:
            await connection.close()
            raise
        self._connection = connection
        logger.debug(f"Ledger connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
        self._lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()

    async def __aenter__(self) -> 'LedgerCommitService':
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def _ensure_connected(self):
        """Connect on first use; concurrent first callers share one connection."""
        if self._connection is not None:
            return
        async with self._connect_lock:
            if self._connection is None:
                await self.connect()

    async def _init_schema(self, connection: aiosqlite.Connection):
        await connection.executescript("""
            CREATE TABLE IF NOT EXISTS commitments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT UNIQUE,
                root TEXT NOT NULL,
                metadata TEXT NOT NULL,
                committed_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_commitments_root ON commitments(root);
        """)
        await connection.commit()

    async def commit(self, root: str, metadata: Dict[str, Any]) -> str:
        await self._ensure_connected()

        metadata_json = json.dumps(metadata, sort_keys=True)
        committed_at = time.time()

        try:
            async with self._lock:
                cursor = await self._connection.execute(
                    "INSERT INTO commitments (root, metadata, committed_at) VALUES (?, ?, ?)",
                    (root, metadata_json, committed_at)
                )
                row_id = cursor.lastrowid
                tx_hash = '0x' + hashlib.sha256(
                    f"{row_id}:{root}:{metadata_json}:{committed_at!r}".encode('utf-8')
                ).hexdigest()
                await self._connection.execute(
                    "UPDATE commitments SET tx_hash = ? WHERE id = ?",
                    (tx_hash, row_id)
                )
                await self._connection.commit()
        except sqlite3.Error as e:
            raise ChainCommitError(f"Ledger write failed for root {root}: {e}") from e

        logger.debug(f"Ledger recorded {root[:16]}... as {tx_hash}")
        return tx_hash

    async def lookup(self, root: str) -> List[Dict[str, Any]]:
        """All commitments of `root`, oldest first."""
        await self._ensure_connected()

        async with self._connection.execute(
            """SELECT tx_hash, root, metadata, committed_at
               FROM commitments WHERE root = ? ORDER BY id""",
            (root,)
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            {
                'tx_hash': row['tx_hash'],
                'root': row['root'],
                'metadata': json.loads(row['metadata']),
                'committed_at': row['committed_at'],
            }
            for row in rows
        ]
