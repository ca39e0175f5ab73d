"""HTTP API the client synchronises with.

Endpoints:
    - ``POST /register`` and ``POST /login``: issue bearer tokens.
    - ``GET /expenses``: newest non-deleted rows of the user.
    - ``POST /expenses``: upsert a batch of rows, reporting per-row outcomes.
    - ``DELETE /expenses?id=``: soft-delete a row.
    - ``GET /health``: database connectivity check.

Every error answers ``{"success": false, "message": ...}``.

Run with ``uvicorn --factory AccountsDiary.server.app:create_app``.
"""
import datetime
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import JWTError
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import security
from .db import create_db_engine, get_session, init_db
from .models import Expense, User
from ..core import ids
from ..core.database import DISPLAY_DATE_FORMAT, to_amount, to_date
from ..settings import lib


class RegisterIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ExpensesIn(BaseModel):
    expenses: Optional[List[Dict[str, Any]]] = None


def get_user(request: Request, authorization: Optional[str] = Header(default=None, alias='Authorization')) -> str:
    """Return the user id carried by the bearer token."""
    if not authorization or not authorization.lower().startswith('bearer '):
        raise HTTPException(401, 'Unauthorized')
    token = authorization.split(' ', 1)[1]
    try:
        payload = security.decode_token(token, request.app.state.config['jwt_secret'])
    except JWTError:
        raise HTTPException(401, 'Invalid token')
    user_id = payload.get('userId')
    if not user_id:
        raise HTTPException(401, 'Invalid token')
    return user_id


def _user_out(user: User) -> Dict[str, str]:
    return {'id': user.id, 'email': user.email, 'name': user.name}


def _expense_out(expense: Expense) -> Dict[str, Any]:
    return {
        'id': expense.id,
        'date': expense.date.strftime(DISPLAY_DATE_FORMAT),
        'description': expense.description,
        'amount': expense.amount,
        'main_category': expense.main_category,
        'sub_category': expense.sub_category,
        'created_at': expense.created_at.isoformat() if expense.created_at else None,
        'updated_at': expense.updated_at.isoformat() if expense.updated_at else None,
    }


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'success': False, 'message': message})


def create_app(
        database_url: Optional[str] = None,
        jwt_secret: Optional[str] = None,
        token_days: Optional[int] = None,
        max_rows: Optional[int] = None,
) -> FastAPI:
    """Build the API application.

    Arguments left as None are read from the ``server`` settings section
    (``DATABASE_URL`` and ``JWT_SECRET`` environment variables take precedence there).
    """
    config = lib.settings.get_section('server')
    config.update({k: v for k, v in {
        'database_url': database_url,
        'jwt_secret': jwt_secret,
        'token_days': token_days,
        'max_rows': max_rows,
    }.items() if v is not None})

    app = FastAPI(title='accountsdiary-api')
    app.state.config = config
    app.state.engine = create_db_engine(config.get('database_url'))
    init_db(app.state.engine)

    @app.exception_handler(StarletteHTTPException)
    def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error(400, 'Invalid request body')

    @app.exception_handler(Exception)
    def unhandled_exception_handler(request: Request, exc: Exception):
        logging.error(f'Unhandled error on {request.method} {request.url.path}: {exc}', exc_info=True)
        return _error(500, 'Internal server error')

    def issue_token(user: User) -> str:
        return security.create_token(user.id, user.email, config['jwt_secret'], config['token_days'])

    @app.post('/register', status_code=201)
    def register(body: RegisterIn, session: Session = Depends(get_session)):
        email = (body.email or '').strip().lower()
        if not email or not body.password:
            raise HTTPException(400, 'Email and password are required')

        if session.exec(select(User).where(User.email == email)).first():
            raise HTTPException(400, 'User already exists')

        user_id = ids.new_user_id(lambda candidate: session.get(User, candidate) is not None)
        name = (body.name or '').strip() or email.split('@')[0]
        user = User(id=user_id, email=email, password_hash=security.hash_password(body.password), name=name)
        session.add(user)
        session.commit()
        session.refresh(user)
        logging.info(f'Registered user {user.id}')

        return {
            'success': True,
            'message': 'User registered successfully',
            'user': _user_out(user),
            'token': issue_token(user),
        }

    @app.post('/login')
    def login(body: LoginIn, session: Session = Depends(get_session)):
        email = (body.email or '').strip().lower()
        if not email or not body.password:
            raise HTTPException(400, 'Email and password are required')

        user = session.exec(select(User).where(User.email == email)).first()
        if not user or not security.verify_password(body.password, user.password_hash):
            raise HTTPException(401, 'Invalid credentials')

        return {
            'success': True,
            'message': 'Login successful',
            'user': _user_out(user),
            'token': issue_token(user),
        }

    @app.get('/expenses')
    def get_expenses(user_id: str = Depends(get_user), session: Session = Depends(get_session)):
        rows = session.exec(
            select(Expense)
            .where(Expense.user_id == user_id, Expense.deleted == False)  # noqa: E712
            .order_by(Expense.date.desc())
            .limit(config['max_rows'])
        ).all()
        expenses = [_expense_out(r) for r in rows]
        return {'success': True, 'expenses': expenses, 'count': len(expenses)}

    @app.post('/expenses')
    def sync_expenses(body: ExpensesIn, user_id: str = Depends(get_user), session: Session = Depends(get_session)):
        if body.expenses is None:
            raise HTTPException(400, 'Invalid data format. Expected {expenses: array}')
        if not body.expenses:
            return {
                'success': True,
                'message': 'No expenses to sync',
                'inserted': 0,
                'updated': 0,
                'successes': [],
            }

        inserted = 0
        updated = 0
        successes: List[str] = []
        errors: List[Dict[str, str]] = []

        for row in body.expenses:
            entry_id = row.get('id')
            if not entry_id or not row.get('date') or row.get('amount') is None:
                errors.append({'id': str(entry_id or ''), 'error': 'Missing required fields (id, date, amount)'})
                continue

            try:
                values = {
                    'date': to_date(row['date']),
                    'description': str(row.get('description') or ''),
                    'amount': to_amount(row['amount']),
                    'main_category': str(row.get('main_category') or ''),
                    'sub_category': str(row.get('sub_category') or ''),
                    'deleted': row.get('sync_state') == 'deleted',
                }
            except ValueError as e:
                errors.append({'id': str(entry_id), 'error': str(e)})
                continue

            try:
                existing = session.exec(
                    select(Expense).where(Expense.id == entry_id, Expense.user_id == user_id)
                ).first()
                if existing:
                    for k, v in values.items():
                        setattr(existing, k, v)
                    existing.updated_at = datetime.datetime.now(datetime.timezone.utc)
                    session.add(existing)
                    session.commit()
                    updated += 1
                else:
                    session.add(Expense(id=entry_id, user_id=user_id, **values))
                    session.commit()
                    inserted += 1
                successes.append(entry_id)
            except SQLAlchemyError as e:
                session.rollback()
                logging.error(f'Failed to store expense {entry_id}: {e}')
                errors.append({'id': str(entry_id), 'error': 'Database error'})

        result = {
            'success': True,
            'message': f'Sync complete: {inserted} inserted, {updated} updated',
            'inserted': inserted,
            'updated': updated,
            'successes': successes,
        }
        if errors:
            result['errors'] = errors
        return result

    @app.delete('/expenses')
    def delete_expense(id: Optional[str] = None, user_id: str = Depends(get_user),
                       session: Session = Depends(get_session)):
        if not id:
            raise HTTPException(400, 'Expense ID required')

        expense = session.exec(select(Expense).where(Expense.id == id, Expense.user_id == user_id)).first()
        if expense:
            expense.deleted = True
            expense.updated_at = datetime.datetime.now(datetime.timezone.utc)
            session.add(expense)
            session.commit()
        return {'success': True, 'message': 'Expense marked as deleted'}

    @app.get('/health')
    def health(session: Session = Depends(get_session)):
        try:
            session.connection().execute(text('SELECT 1'))
        except SQLAlchemyError as e:
            logging.error(f'Health check failed: {e}')
            return _error(500, 'Database connection failed')
        return {
            'success': True,
            'message': 'API and database are healthy',
            'timestamp': datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    return app
