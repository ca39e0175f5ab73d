import datetime
from typing import Any, Dict

from jose import jwt
from passlib.context import CryptContext

ALGO = 'HS256'

pwd = CryptContext(schemes=['bcrypt'], deprecated='auto')


def hash_password(password: str) -> str:
    return pwd.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd.verify(password, password_hash)
    except ValueError:
        return False


def create_token(user_id: str, email: str, secret: str, days: int) -> str:
    exp = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=days)
    return jwt.encode({'userId': user_id, 'email': email, 'exp': exp}, secret, algorithm=ALGO)


def decode_token(token: str, secret: str) -> Dict[str, Any]:
    """Verify a token and return its claims.

    Raises:
        jose.JWTError: If the signature is invalid or the token expired.
    """
    return jwt.decode(token, secret, algorithms=[ALGO])
