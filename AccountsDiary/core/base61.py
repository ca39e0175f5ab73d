"""Base61 codec used for compact, sortable-ish identifiers.

The alphabet drops ``0`` and keeps ``1-9``, ``A-Z`` and ``a-z``, so encoded values never
start with a zero and stay readable in URLs and file names.
"""
import datetime
import random as _random
from typing import Optional

ALPHABET: str = '123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz'
BASE: int = len(ALPHABET)

_INDEX = {c: i for i, c in enumerate(ALPHABET)}
_rng = _random.SystemRandom()


class InvalidBase61CharacterError(ValueError):
    """Raised when a string contains a character outside the Base61 alphabet."""

    def __init__(self, char: str):
        super().__init__(f'Invalid base61 character: {char}')
        self.char = char


def encode(num: int) -> str:
    """Encode a non-negative integer.

    Args:
        num (int): The number to encode.

    Returns:
        str: The Base61 representation. ``0`` encodes to the first symbol, ``'1'``.

    Raises:
        ValueError: If num is negative.
        TypeError: If num is not an integer.
    """
    if isinstance(num, bool) or not isinstance(num, int):
        raise TypeError(f'Expected an int, got {type(num)}')
    if num < 0:
        raise ValueError(f'Cannot encode a negative number: {num}')
    if num == 0:
        return ALPHABET[0]

    chars = []
    while num > 0:
        num, remainder = divmod(num, BASE)
        chars.append(ALPHABET[remainder])
    return ''.join(reversed(chars))


def decode(value: str) -> int:
    """Decode a Base61 string.

    Raises:
        InvalidBase61CharacterError: On the first character outside the alphabet.
        ValueError: If `value` is empty.
    """
    if not value:
        raise ValueError('Cannot decode an empty string.')

    result = 0
    for char in value:
        try:
            result = result * BASE + _INDEX[char]
        except KeyError:
            raise InvalidBase61CharacterError(char) from None
    return result


def random(length: int) -> str:
    """Return `length` random Base61 symbols."""
    if length < 0:
        raise ValueError('Length must be non-negative.')
    return ''.join(_rng.choice(ALPHABET) for _ in range(length))


def timestamp_string(dt: Optional[datetime.datetime] = None) -> str:
    """Format a datetime as ``YYMMDDHHMMSS`` followed by the tenth-of-second digit.

    Args:
        dt (datetime.datetime, optional): Defaults to the current local time.

    Returns:
        str: A 13 digit string, e.g. ``'2501311423057'``.
    """
    dt = dt or datetime.datetime.now()
    return f'{dt:%y%m%d%H%M%S}{dt.microsecond // 100000}'


def base61_timestamp(dt: Optional[datetime.datetime] = None) -> str:
    """Encode :func:`timestamp_string` as a Base61 number."""
    return encode(int(timestamp_string(dt)))
