"""
Core package for AccountsDiary: the local-first store and its synchronisation.

This package includes:

- :mod:`AccountsDiary.core.base61` – Base61 codec and timestamp encoding.
- :mod:`AccountsDiary.core.ids` – Entry and user identifier generation.
- :mod:`AccountsDiary.core.state` – The sync-state machine of local entries.
- :mod:`AccountsDiary.core.database` – Owner-scoped SQLite entry store and its schema.
- :mod:`AccountsDiary.core.lifecycle` – Opening, closing and destroying per-user stores.
- :mod:`AccountsDiary.core.service` – Remote API client and asynchronous workers.
- :mod:`AccountsDiary.core.auth` – Session token storage and the login/logout flow.
- :mod:`AccountsDiary.core.sync` – Push, mark and pull reconciliation with the remote.
"""
