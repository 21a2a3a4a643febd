import glob
import logging
import os
import threading
from typing import Callable, Dict, List

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from dbclone import config
from dbclone.services.exceptions import (
    AlreadyExistsError,
    PermissionDeniedError,
    StorageError,
    StorageNotFoundError,
    TransientIOError,
)

logger = logging.getLogger(__name__)

DATA_FILE_PATTERNS = ("*.mdf", "*.ndf", "*.ldf")


def quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


def classify_db_error(action: str, e: SQLAlchemyError) -> StorageError:
    message = f"{action} failed: {e}"
    lowered = str(e).lower()
    if "permission" in lowered or "access is denied" in lowered or "login failed" in lowered:
        return PermissionDeniedError(message)
    if "already exists" in lowered:
        return AlreadyExistsError(message)
    if isinstance(e, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return TransientIOError(message)
    if isinstance(e, DBAPIError) and e.connection_invalidated:
        return TransientIOError(message)
    return StorageError(message)


class SqlServerDriver:
    """
    SQL Server 인스턴스에 데이터 파일을 attach/detach 합니다.

    인스턴스마다 AUTOCOMMIT 엔진을 하나씩 만들어 재사용합니다.
    (CREATE DATABASE ... FOR ATTACH 는 트랜잭션 안에서 실행할 수 없습니다.)
    """

    def __init__(self, url_template: str = None, engine_factory: Callable[..., Engine] = create_engine):
        self.url_template = url_template or config.SQLSERVER_URL_TEMPLATE
        self._engine_factory = engine_factory
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine(self, sql_instance: str) -> Engine:
        with self._lock:
            engine = self._engines.get(sql_instance)
            if engine is None:
                engine = self._engine_factory(
                    self.url_template.format(instance=sql_instance),
                    isolation_level="AUTOCOMMIT",
                    pool_pre_ping=True,
                )
                self._engines[sql_instance] = engine
            return engine

    @staticmethod
    def find_data_files(access_path: str) -> List[str]:
        files = []
        for pattern in DATA_FILE_PATTERNS:
            files.extend(glob.glob(os.path.join(access_path, "**", pattern), recursive=True))
        # mdf가 맨 앞에 와야 primary 파일로 인식됩니다.
        return sorted(files, key=lambda path: (not path.lower().endswith(".mdf"), path))

    def is_attached(self, sql_instance: str, database_name: str) -> bool:
        try:
            with self._engine(sql_instance).connect() as conn:
                row = conn.execute(
                    text("SELECT 1 FROM sys.databases WHERE name = :name"), {"name": database_name}
                ).first()
        except SQLAlchemyError as e:
            raise classify_db_error(f"lookup of database '{database_name}' on {sql_instance}", e) from e
        return row is not None

    def attach_database(self, access_path: str, sql_instance: str, database_name: str) -> None:
        if self.is_attached(sql_instance, database_name):
            logger.debug("Database %s already attached on %s, skipping", database_name, sql_instance)
            return

        files = self.find_data_files(access_path)
        if not files:
            raise StorageNotFoundError(f"No database files found under '{access_path}'.")

        file_list = ", ".join(f"(FILENAME = {quote_literal(path)})" for path in files)
        statement = f"CREATE DATABASE {quote_identifier(database_name)} ON {file_list} FOR ATTACH"
        try:
            with self._engine(sql_instance).connect() as conn:
                conn.execute(text(statement))
        except SQLAlchemyError as e:
            raise classify_db_error(f"attach of '{database_name}' on {sql_instance}", e) from e
        logger.info("Attached database %s on %s from %s", database_name, sql_instance, access_path)

    def detach_database(self, sql_instance: str, database_name: str) -> None:
        if not self.is_attached(sql_instance, database_name):
            logger.debug("Database %s not attached on %s, skipping detach", database_name, sql_instance)
            return
        try:
            with self._engine(sql_instance).connect() as conn:
                conn.execute(text(
                    f"ALTER DATABASE {quote_identifier(database_name)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE"
                ))
                conn.execute(text("EXEC master.dbo.sp_detach_db @dbname = :name"), {"name": database_name})
        except SQLAlchemyError as e:
            raise classify_db_error(f"detach of '{database_name}' on {sql_instance}", e) from e
        logger.info("Detached database %s on %s", database_name, sql_instance)

    def dispose(self):
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
