from __future__ import annotations

import asyncio
import pathlib
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pluginfed.core.base import PluginfedManager
from pluginfed.models import Base
from pluginfed.utils.exceptions import (
    ManagerInitializationError,
    ManagerShutdownError,
    StorageFailure,
)


class DatabaseManager(PluginfedManager):
    """Owns the durable record store for one federation instance.

    Every session handed out by :meth:`session` is serialized through a single
    writer lock, so all mutations for the instance happen one at a time.
    Sessions must never be held across a network call.
    """

    def __init__(self, config_manager: Any, logger_manager: Any) -> None:
        """Initialize the database manager.

        Args:
            config_manager: The configuration manager
            logger_manager: The logging manager
        """
        super().__init__(name='database_manager')
        self._config_manager = config_manager
        self._logger = logger_manager.get_logger('database_manager')
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._write_lock = asyncio.Lock()
        self._url: Optional[str] = None
        self._queries_total = 0
        self._queries_failed = 0
        self._slow_query_threshold = 0.5

    async def initialize(self) -> None:
        """Create the engine and run the schema migration.

        Raises:
            ManagerInitializationError: If initialization fails
        """
        try:
            db_config = await self._config_manager.get('database', {})
            self._url = db_config.get('url', 'sqlite:///data/pluginfed.db')
            url = make_url(self._url)

            engine_args: Dict[str, Any] = {'echo': db_config.get('echo', False)}
            if url.get_backend_name() == 'sqlite':
                if url.database and url.database != ':memory:':
                    pathlib.Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                engine_args['connect_args'] = {'check_same_thread': False}

            self._engine = create_engine(url, **engine_args)

            if url.get_backend_name() == 'sqlite':
                event.listen(self._engine, 'connect', self._enable_sqlite_foreign_keys)
            event.listen(self._engine, 'before_cursor_execute', self._before_cursor_execute)
            event.listen(self._engine, 'after_cursor_execute', self._after_cursor_execute)

            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

            with self._engine.connect() as conn:
                conn.execute(text('SELECT 1'))

            await self.run_migrations()

            self._logger.info(f'Database Manager initialized ({url.get_backend_name()})')
            self._mark_started()
        except Exception as e:
            self._logger.error(f'Failed to initialize Database Manager: {str(e)}')
            raise ManagerInitializationError(
                f'Failed to initialize DatabaseManager: {str(e)}',
                manager_name=self.name
            ) from e

    async def run_migrations(self) -> None:
        """Create every table and index that does not exist yet.

        Safe to run on every start.
        """
        async with self._write_lock:
            Base.metadata.create_all(self._engine, checkfirst=True)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[Session, None]:
        """Get a session holding the single-writer lock.

        Commits on success and rolls back on any error. SQLAlchemy errors are
        wrapped in :class:`StorageFailure` without exposing statement text.

        Yields:
            Session: A SQLAlchemy session

        Raises:
            StorageFailure: If the database operation fails
        """
        if not self._session_factory:
            raise StorageFailure('Database is not initialized')

        async with self._write_lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                self._queries_failed += 1
                self._logger.error(f'Database error: {str(e)}')
                raise StorageFailure('Database operation failed', error_type=type(e).__name__) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    async def check_connection(self) -> bool:
        """Check that the database answers a trivial query."""
        if not self._engine:
            return False
        try:
            async with self._write_lock:
                with self._engine.connect() as conn:
                    conn.execute(text('SELECT 1'))
            return True
        except SQLAlchemyError as e:
            self._logger.warning(f'Database connection check failed: {str(e)}')
            return False

    @staticmethod
    def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

    def _before_cursor_execute(
            self, conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
    ) -> None:
        conn.info.setdefault('query_start_time', []).append(time.time())

    def _after_cursor_execute(
            self, conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
    ) -> None:
        self._queries_total += 1
        start_times = conn.info.get('query_start_time')
        if not start_times:
            return
        elapsed = time.time() - start_times.pop()
        if elapsed > self._slow_query_threshold:
            self._logger.warning(f'Slow query took {elapsed:.3f}s')

    async def shutdown(self) -> None:
        """Dispose of the engine.

        Raises:
            ManagerShutdownError: If shutdown fails
        """
        if not self._initialized:
            return
        try:
            if self._engine:
                self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._mark_stopped()
            self._logger.info('Database Manager shut down')
        except Exception as e:
            raise ManagerShutdownError(
                f'Failed to shut down DatabaseManager: {str(e)}',
                manager_name=self.name
            ) from e

    def status(self) -> Dict[str, Any]:
        """Get the status of the database manager.

        Returns:
            Dictionary with status information
        """
        status = super().status()
        status.update({
            'backend': make_url(self._url).get_backend_name() if self._url else None,
            'queries_total': self._queries_total,
            'queries_failed': self._queries_failed,
        })
        return status
