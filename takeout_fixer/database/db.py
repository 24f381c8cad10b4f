"""
Opens the output manifest kept at the destination root.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional, Union

from ..exceptions import OutputWriteError
from .schema import CURRENT_SCHEMA_VERSION, init_schema, read_schema_version

MEMORY = ":memory:"


class DBManager:
    """
    One connection per run, shared by the output workers. Reads go straight
    through; writes must hold write_lock.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()

    @classmethod
    def in_memory(cls) -> "DBManager":
        """A manifest that disappears with the run (dry runs)."""
        return cls(MEMORY)

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == MEMORY

    def connect(self) -> sqlite3.Connection:
        """
        Opens the manifest, applies pragmas and brings the schema up to date.
        Raises OutputWriteError when the file is unusable or was written by a
        newer schema.
        """
        if self._conn:
            return self._conn

        if self.is_memory:
            logging.debug("Using an in-memory manifest")
        else:
            logging.info(f"Opening manifest: {self.db_path}")

        conn = None
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            if not self.is_memory:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")

            found = read_schema_version(conn)
            if found is not None and found > CURRENT_SCHEMA_VERSION:
                raise OutputWriteError(
                    f"Manifest {self.db_path} has schema v{found}; this version understands v{CURRENT_SCHEMA_VERSION}"
                )
            init_schema(conn)
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            raise OutputWriteError(f"Cannot open manifest {self.db_path}: {e}") from e
        except OutputWriteError:
            conn.close()
            raise

        self._conn = conn
        return conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.Lock:
        return self._write_lock
