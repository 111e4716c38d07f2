"""Persistence layer: Postgres repositories + SQL migrations.

Postgres drivers are imported lazily inside functions so config parsing and
pure helpers stay importable without a database.
"""

from __future__ import annotations
