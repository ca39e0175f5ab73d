"""
Logging subsystem for AccountsDiary.

Modules:

- :mod:`AccountsDiary.log.log` – Root logger setup, Qt message bridge and the in-memory ``TankHandler``.
"""
