"""Identifier generation for entries and users.

Entry ids combine a Base61 timestamp, an intra-second sequence, a random part and the
owner id, so ids generated on different devices of the same user do not collide.
User ids combine a Base61 timestamp with a random suffix that grows on collision.
"""
import datetime
import itertools
import logging
import threading
from typing import Callable, Optional

from . import base61
from ..status import status

SEQUENCE_LENGTH: int = 2
ENTRY_RANDOM_LENGTH: int = 3
USER_RANDOM_LENGTH: int = 3
MAX_USER_ID_ATTEMPTS: int = 5

_sequence = itertools.count()
_sequence_lock = threading.Lock()


def _next_sequence() -> str:
    with _sequence_lock:
        n = next(_sequence) % (base61.BASE ** SEQUENCE_LENGTH)
    return base61.encode(n).rjust(SEQUENCE_LENGTH, base61.ALPHABET[0])


def new_entry_id(owner: str, dt: Optional[datetime.datetime] = None) -> str:
    """Generate an entry id for `owner`.

    Args:
        owner (str): The active user id. Appended verbatim to the id.
        dt (datetime.datetime, optional): Timestamp to encode. Defaults to now.

    Returns:
        str: ``<base61 timestamp><sequence><random><owner>``.

    Raises:
        status.NoActiveUserException: If owner is empty.
    """
    if not owner:
        raise status.NoActiveUserException('Cannot generate an entry id without an owner.')
    return (
        base61.base61_timestamp(dt)
        + _next_sequence()
        + base61.random(ENTRY_RANDOM_LENGTH)
        + owner
    )


def new_user_id(exists: Callable[[str], bool], dt: Optional[datetime.datetime] = None) -> str:
    """Generate a user id that `exists` reports as unused.

    The random suffix starts at three symbols and grows by one after every
    collision. Errors raised by `exists` propagate unchanged.

    Args:
        exists: Synchronous lookup returning True if the id is taken.
        dt (datetime.datetime, optional): Timestamp to encode. Defaults to now.

    Returns:
        str: The new user id.

    Raises:
        status.IdGenerationException: If every attempt collided.
    """
    prefix = base61.base61_timestamp(dt)
    length = USER_RANDOM_LENGTH
    for attempt in range(1, MAX_USER_ID_ATTEMPTS + 1):
        candidate = prefix + base61.random(length)
        if not exists(candidate):
            return candidate
        logging.warning(f'User id collision on attempt {attempt}: {candidate}')
        length += 1

    raise status.IdGenerationException(f'Gave up after {MAX_USER_ID_ATTEMPTS} attempts.')
