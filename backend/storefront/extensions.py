# Overview: Flask extension instances for database and migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import event

db = SQLAlchemy()
migrate = Migrate()


def configure_sqlite_transactions(engine) -> None:
    """
    Let SQLAlchemy own transaction boundaries on SQLite.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT semantics. Emitting BEGIN IMMEDIATE ourselves also makes
    concurrent writers queue on the busy timeout instead of failing with a
    lock upgrade error mid-transaction.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
