"""Remote expenses API client and asynchronous execution helpers.

Provides:
    - RemoteAPI: a thin ``requests`` client for the register, login, expenses and health endpoints.
    - AsyncWorker: a QThread running a blocking function with retries.
    - start_asynchronous: runs a blocking function on a worker while waiting on a Qt event loop.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from PySide6 import QtCore

from ..settings import lib
from ..status import status

TOTAL_TIMEOUT: int = 180
MAX_RETRIES: int = 6

# Raised immediately by AsyncWorker, retrying cannot help
FATAL_EXCEPTIONS = (
    status.NotAuthenticatedException,
    status.RemoteRejectedException,
    status.NoActiveUserException,
    status.StoreNotInitializedException,
    status.EntryOwnershipException,
    status.InvalidTransitionException,
    status.CredsNotFoundException,
    status.CredsInvalidException,
)

_app: Optional[QtCore.QCoreApplication] = None


def _default_token() -> Optional[str]:
    from .auth import auth_manager
    return auth_manager.token


class RemoteAPI:
    """Client for the remote expenses API.

    Args:
        base_url: Server root URL. Defaults to the ``api.url`` setting.
        timeout: Transport timeout in seconds. Defaults to the ``api.timeout`` setting.
        http: Object with a ``requests``-compatible ``request()`` method. Defaults to a ``requests.Session``.
        token_provider: Callable returning the bearer token. Defaults to the saved session token.
    """

    def __init__(
            self,
            base_url: Optional[str] = None,
            timeout: Optional[float] = None,
            http: Any = None,
            token_provider: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self.http = http if http is not None else requests.Session()
        self.token_provider = token_provider or _default_token

    @property
    def base_url(self) -> str:
        return (self._base_url or lib.settings.get('api', 'url', '')).rstrip('/')

    @property
    def timeout(self) -> float:
        return self._timeout or lib.settings.get('api', 'timeout', 30.0)

    def _request(
            self,
            method: str,
            path: str,
            json: Optional[Dict[str, Any]] = None,
            params: Optional[Dict[str, Any]] = None,
            authenticated: bool = True,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            status.NotAuthenticatedException: If there is no token or the server answers 401.
            status.ServiceUnavailableException: If the server cannot be reached.
            status.RemoteRejectedException: If the server answers without ``success``.
        """
        headers = {}
        if authenticated:
            token = self.token_provider()
            if not token:
                raise status.NotAuthenticatedException('No session token available.')
            headers['Authorization'] = f'Bearer {token}'

        url = f'{self.base_url}{path}'
        logging.debug(f'{method} {url}')
        try:
            response = self.http.request(
                method, url, json=json, params=params, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as ex:
            raise status.ServiceUnavailableException(f'{method} {url} failed: {ex}') from ex

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        message = data.get('message') or f'HTTP {response.status_code}'
        if response.status_code == 401:
            raise status.NotAuthenticatedException(message)
        if not (200 <= response.status_code < 300) or not data.get('success'):
            raise status.RemoteRejectedException(message)
        return data

    def health(self) -> Dict[str, Any]:
        return self._request('GET', '/health', authenticated=False)

    def register(self, email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        """Create an account. Returns the ``user`` and ``token`` answered by the server."""
        payload = {'email': email, 'password': password}
        if name:
            payload['name'] = name
        return self._request('POST', '/register', json=payload, authenticated=False)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        return self._request('POST', '/login', json={'email': email, 'password': password}, authenticated=False)

    def fetch_expenses(self) -> List[Dict[str, Any]]:
        """Return the remote rows of the authenticated user."""
        data = self._request('GET', '/expenses')
        rows = data.get('expenses') or []
        logging.debug(f'Fetched {len(rows)} remote rows.')
        return rows

    def push_expenses(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Upload a batch of rows. The answer lists per-row ``successes`` and ``errors``."""
        return self._request('POST', '/expenses', json={'expenses': rows})

    def delete_expense(self, entry_id: str) -> Dict[str, Any]:
        return self._request('DELETE', '/expenses', params={'id': entry_id})


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread with retry logic for blocking functions.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args

        self.max_attempts = kwargs.pop('max_attempts', MAX_RETRIES)
        self.wait_seconds = kwargs.pop('wait_seconds', 2.0)
        self.kwargs = kwargs

    def run(self) -> None:
        attempts = 0
        last_exception = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = self.func(*self.args, **self.kwargs)
                self.resultReady.emit(result)
                return
            except status.NotAuthenticatedException as ex:
                from ..actions import signals
                signals.authenticationRequested.emit()
                self.errorOccurred.emit(ex)
                return
            except FATAL_EXCEPTIONS as ex:
                self.errorOccurred.emit(ex)
                return
            except Exception as ex:
                last_exception = ex
                logging.warning(f'Attempt {attempts}/{self.max_attempts} failed: {ex}')
                if attempts < self.max_attempts:
                    time.sleep(self.wait_seconds)
        self.errorOccurred.emit(last_exception)


def start_asynchronous(func: Callable[..., Any], *args: Any, total_timeout: int = TOTAL_TIMEOUT,
                       status_text: str = 'Working.',
                       on_terminated: Optional[Callable[[], None]] = None, **kwargs: Any) -> Any:
    """
    Run a blocking function on an AsyncWorker and wait for it on a local event loop.

    Args:
        func: The blocking function to run.
        *args, **kwargs: Arguments passed to func. ``max_attempts`` and ``wait_seconds``
            are consumed by the worker.
        total_timeout (int): Seconds to wait before giving up.
        status_text (str): Logged when the operation starts.
        on_terminated: Called after a timed out worker was terminated. Anything the worker
            may have left locked must be released or replaced here.

    Returns:
        The result of the function on success.

    Raises:
        status.BaseStatusException: Re-raised from the worker.
        status.ServiceUnavailableException: If the operation timed out.
        status.UnknownException: For any other error.
    """
    global _app
    if not QtCore.QCoreApplication.instance():
        _app = QtCore.QCoreApplication([])

    logging.debug(status_text)
    worker: AsyncWorker = AsyncWorker(func, *args, **kwargs)

    result: Dict[str, Any] = {'data': None, 'error': None}
    loop: QtCore.QEventLoop = QtCore.QEventLoop()

    worker.resultReady.connect(lambda d: result.update({'data': d}), QtCore.Qt.DirectConnection)
    worker.errorOccurred.connect(lambda err: result.update({'error': err}), QtCore.Qt.DirectConnection)
    # Queued so the quit is delivered once the loop runs, even if the worker is already done
    worker.finished.connect(loop.quit, QtCore.Qt.QueuedConnection)

    timer: QtCore.QTimer = QtCore.QTimer()
    timer.setSingleShot(True)
    timer.setInterval(total_timeout * 1000)
    timer.timeout.connect(loop.quit)

    worker.start()
    timer.start()
    loop.exec()
    timer.stop()

    if worker.isRunning():
        worker.terminate()
        worker.wait()
        if on_terminated:
            on_terminated()
        raise status.ServiceUnavailableException(f'Operation timed out after {total_timeout}s.')
    worker.wait()

    if result['error']:
        err = result['error']
        if isinstance(err, status.BaseStatusException):
            raise err
        raise status.UnknownException(str(err)) from err
    return result['data']


remote = RemoteAPI()
