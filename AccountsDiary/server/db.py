import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import create_engine, SQLModel, Session

from ..settings import lib


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """Create the engine for `database_url`, defaulting to a SQLite file in the db directory."""
    if not database_url:
        database_url = f'sqlite:///{lib.settings.server_db_path}'

    connect_args = {}
    if database_url.startswith('sqlite'):
        # Requests are served from a thread pool
        connect_args['check_same_thread'] = False

    logging.debug(f'Using server database: {database_url}')
    return create_engine(database_url, echo=False, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    from . import models  # noqa
    SQLModel.metadata.create_all(engine)


def get_session(request: Request):
    with Session(request.app.state.engine) as s:
        yield s
