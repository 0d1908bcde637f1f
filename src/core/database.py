"""
PostgreSQL connection handling shared by the engine's stores.

Statements run through get_cursor(): one cursor per unit of work, committed
when the block exits cleanly and rolled back otherwise.
"""

from contextlib import contextmanager
from typing import Any, Iterator

import psycopg2
import psycopg2.extras
import structlog

logger = structlog.get_logger(__name__)


class PostgresConnection:
    """Owns one psycopg2 connection"""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        connect_timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self.connection = None
        self._connect()

    def _connect(self):
        try:
            self.connection = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                connect_timeout=self.connect_timeout,
            )
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL", host=self.host, database=self.database, error=str(e)
            )
            raise
        logger.info("PostgreSQL connection established", host=self.host, database=self.database)

    @contextmanager
    def get_cursor(self, dict_rows: bool = False) -> Iterator[Any]:
        """Cursor for one unit of work

        Args:
            dict_rows: Return rows as column-keyed dicts (RealDictCursor)
        """
        if dict_rows:
            cursor = self.connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        else:
            cursor = self.connection.cursor()
        try:
            yield cursor
            self.connection.commit()
        except Exception as e:
            self.connection.rollback()
            logger.error("Database operation failed, rolled back", error=str(e))
            raise
        finally:
            cursor.close()

    def fetch_all(self, query: str, params: Any = None) -> list[dict[str, Any]]:
        with self.get_cursor(dict_rows=True) as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def fetch_one(self, query: str, params: Any = None) -> dict[str, Any] | None:
        with self.get_cursor(dict_rows=True) as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
        return dict(row) if row is not None else None

    def check_health(self) -> bool:
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self):
        if self.connection is None:
            return
        self.connection.close()
        self.connection = None
        logger.info("PostgreSQL connection closed", database=self.database)
