"""
Pattern Unit of Work.

Le Unit of Work (UoW) gère la notion de transaction atomique : la
mutation d'une cellule et l'enregistrement d'outbox qui l'accompagne
sont validés ensemble, ou pas du tout.

Le UoW agit comme un context manager :
    with uow:
        # ... opérations sur la gate ...
        uow.commit()

Les pannes d'infrastructure sont traduites ici en deux exceptions :
- UpstreamUnavailable : la base est injoignable, rien n'a été écrit ;
- CommitOutcomeUnknown : la panne est survenue pendant le commit,
  l'appelant doit relire avant de réessayer.
"""

from __future__ import annotations

import abc

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from inventory import config
from inventory.adapters import orm, repository


class UpstreamUnavailable(Exception):
    """Levée quand la base de données est injoignable."""
    pass


class CommitOutcomeUnknown(Exception):
    """Levée quand le commit a échoué sans que l'on sache s'il a été appliqué."""
    pass


def make_engine(settings: config.Settings) -> Engine:
    engine = create_engine(settings.database_uri, **config.get_engine_options(settings))
    if engine.dialect.name == "sqlite":
        serialize_sqlite_writers(engine)
    return engine


def serialize_sqlite_writers(engine: Engine) -> None:
    """
    SQLite ignore FOR UPDATE : chaque transaction prend le verrou
    d'écriture dès son BEGIN, les écrivains concurrents attendent
    leur tour (jusqu'au timeout de connexion) au lieu d'entrer en conflit.
    """

    @event.listens_for(engine, "connect")
    def disable_driver_transactions(dbapi_connection, connection_record):
        # pysqlite ouvre ses transactions en différé, BEGIN est émis ci-dessous.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(settings: config.Settings, create_tables: bool = False) -> sessionmaker:
    engine = make_engine(settings)
    if create_tables:
        orm.metadata.create_all(engine)
    return sessionmaker(bind=engine)


class AbstractUnitOfWork(abc.ABC):
    """
    Interface abstraite du Unit of Work.

    Fournit la gate `cells` et gère commit/rollback.
    Le rollback est automatique si commit() n'est pas appelé
    (grâce au __exit__ du context manager).
    """

    cells: repository.AbstractCellStore

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args: object) -> None:
        self.rollback()

    def commit(self) -> None:
        self._commit()

    @abc.abstractmethod
    def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    Implémentation concrète du UoW avec SQLAlchemy.

    Crée une session à l'entrée du context manager,
    la ferme à la sortie. Rollback automatique si pas de commit.
    Une instance sert une seule transaction à la fois : le message bus
    en crée une par message.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def __enter__(self) -> SqlAlchemyUnitOfWork:
        self.session: Session = self.session_factory()
        self.cells = repository.SqlAlchemyCellStore(self.session)
        return super().__enter__()

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            super().__exit__(exc_type, exc, tb)
        finally:
            self.session.close()
        if isinstance(exc, PoolTimeoutError) or (
            isinstance(exc, DBAPIError) and not isinstance(exc, IntegrityError)
        ):
            raise UpstreamUnavailable(str(exc)) from exc

    def _commit(self) -> None:
        try:
            self.session.commit()
        except DBAPIError as e:
            raise CommitOutcomeUnknown(str(e)) from e

    def rollback(self) -> None:
        self.session.rollback()
