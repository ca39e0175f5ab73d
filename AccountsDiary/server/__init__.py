"""
Remote collaborator of the client: a FastAPI service over a SQL database.

- :mod:`AccountsDiary.server.app` – Application factory and endpoints.
- :mod:`AccountsDiary.server.models` – SQLModel tables for users and expenses.
- :mod:`AccountsDiary.server.db` – Engine creation and request-scoped sessions.
- :mod:`AccountsDiary.server.security` – Password hashing and bearer tokens.
"""
