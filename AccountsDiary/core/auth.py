"""
Session token management and the login/logout flow.

The server issues an opaque bearer token with an expiry. The token and the user record
are kept in ``auth/session.json`` so a restarted client can reopen the user's store
without signing in again.
"""

import datetime
import json
import logging
import threading
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from . import lifecycle
from . import service
from ..actions import signals
from ..settings import lib
from ..status import status


def token_expiry(token: str) -> Optional[datetime.datetime]:
    """Read the expiry of a token without verifying its signature.

    Returns:
        Optional[datetime.datetime]: The UTC expiry, or None if the token carries none.

    Raises:
        status.CredsInvalidException: If the token cannot be decoded.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as ex:
        raise status.CredsInvalidException('Malformed session token.') from ex
    exp = claims.get('exp')
    if exp is None:
        return None
    return datetime.datetime.fromtimestamp(int(exp), tz=datetime.timezone.utc)


def is_expired(token: str) -> bool:
    expiry = token_expiry(token)
    if expiry is None:
        return False
    return expiry <= datetime.datetime.now(datetime.timezone.utc)


class AuthManager:
    """Holds the signed-in user and their token, thread-safe."""

    def __init__(self):
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._user: Optional[Dict[str, Any]] = None

    @property
    def token(self) -> Optional[str]:
        """The current token, or None when signed out or expired."""
        with self._lock:
            if not self._token:
                return None
            try:
                if is_expired(self._token):
                    logging.info('Session token has expired.')
                    return None
            except status.CredsInvalidException:
                return None
            return self._token

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return dict(self._user) if self._user else None

    def save(self, token: str, user: Dict[str, Any]) -> None:
        """Persist the token and user to the session file."""
        with self._lock:
            self._token = token
            self._user = dict(user)
            lib.settings.session_path.parent.mkdir(parents=True, exist_ok=True)
            with lib.settings.session_path.open('w', encoding='utf-8') as f:
                json.dump({'token': token, 'user': user}, f, indent=4)
        logging.debug(f'Session saved to {lib.settings.session_path}')

    def load(self) -> Dict[str, Any]:
        """Load the saved session.

        Raises:
            status.CredsNotFoundException: If there is no saved session.
            status.CredsInvalidException: If the file is corrupt or the token expired.
        """
        path = lib.settings.session_path
        if not path.exists():
            raise status.CredsNotFoundException

        try:
            with path.open('r', encoding='utf-8') as f:
                data = json.load(f)
            token = data['token']
            user = data['user']
            if not user.get('id'):
                raise ValueError('Saved user has no id.')
        except (ValueError, KeyError, TypeError, AttributeError) as ex:
            self.clear()
            raise status.CredsInvalidException('Failed to load the saved session.') from ex

        if is_expired(token):
            self.clear()
            raise status.CredsInvalidException('The saved session has expired.')

        with self._lock:
            self._token = token
            self._user = dict(user)
        return data

    def clear(self) -> None:
        """Forget the token and delete the session file."""
        with self._lock:
            self._token = None
            self._user = None
            if lib.settings.session_path.exists():
                logging.debug(f'Deleting {lib.settings.session_path}...')
                lib.settings.session_path.unlink()

    def _start_session(self, data: Dict[str, Any]) -> Dict[str, Any]:
        token = data.get('token')
        user = data.get('user') or {}
        if not token or not user.get('id'):
            raise status.RemoteRejectedException('The server answer has no token or user.')

        self.save(token, user)
        session = lifecycle.lifecycle.open(user['id'])

        config = lib.settings.get_section('sync')
        if config.get('clear_other_users'):
            lifecycle.lifecycle.destroy_others(user['id'])

        if config.get('sync_on_login'):
            from .sync import sync
            try:
                sync.pull(session)
            except status.BaseStatusException as ex:
                # Offline sign-in still works, the next reconcile catches up
                logging.warning(f'Initial pull failed: {ex}')

        signals.authenticationChanged.emit(self.user)
        return self.user

    def register(self, email: str, password: str, name: Optional[str] = None,
                 api: Optional[service.RemoteAPI] = None) -> Dict[str, Any]:
        """Create an account, save its token and open the new user's store.

        Returns:
            Dict[str, Any]: The user record.
        """
        api = api or service.remote
        data = api.register(email, password, name=name)
        logging.info(f'Registered {email}.')
        return self._start_session(data)

    def login(self, email: str, password: str, api: Optional[service.RemoteAPI] = None) -> Dict[str, Any]:
        """Sign in, save the token and open the user's store.

        When configured, stores of other users are removed and remote rows are pulled.

        Returns:
            Dict[str, Any]: The user record.
        """
        api = api or service.remote
        data = api.login(email, password)
        logging.info(f'Signed in as {email}.')
        return self._start_session(data)

    def restore(self) -> Optional[Dict[str, Any]]:
        """Reopen the store of the saved session, if it is still valid.

        Returns:
            Optional[Dict[str, Any]]: The user record, or None if sign-in is required.
        """
        try:
            data = self.load()
        except (status.CredsNotFoundException, status.CredsInvalidException):
            signals.authenticationRequested.emit()
            return None

        lifecycle.lifecycle.open(data['user']['id'])
        signals.authenticationChanged.emit(self.user)
        return self.user

    def logout(self) -> None:
        """Close the store and forget the session. The store file stays for offline use."""
        lifecycle.lifecycle.close()
        self.clear()
        logging.info('Signed out.')
        signals.authenticationChanged.emit(None)


auth_manager = AuthManager()
