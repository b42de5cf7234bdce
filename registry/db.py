"""
Database module

SQLite connection setup and the schema backing the document store.
"""
import logging
import os
import sqlite3

logger = logging.getLogger(__name__)


def get_connection(db_path: str, wal: bool = True) -> sqlite3.Connection:
    """
    Open a connection for the document store

    Args:
        db_path: database file path, ":memory:" is accepted
        wal: enable WAL journal mode

    Returns:
        sqlite3.Connection instance with the schema created
    """
    if db_path != ":memory:":
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

    # used from worker threads, access is serialized by the store lock
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)

    try:
        if wal and db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA synchronous=NORMAL")
    except sqlite3.Error as e:
        logger.warning("database pragma setup failed: %s", e)

    init_db(conn)
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """
    Create the documents table

    One row per document; rowid keeps insertion order for get_all.

    Args:
        conn: database connection
    """
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            doc_id TEXT NOT NULL,
            data TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (collection, doc_id)
        );
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);")
    conn.commit()


def close_connection(conn: sqlite3.Connection) -> None:
    try:
        conn.close()
    except sqlite3.Error as e:
        logger.warning("closing database failed: %s", e)
