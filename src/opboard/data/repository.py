from __future__ import annotations

from opboard.data.data_repository import DataRepositoryImpl
from opboard.data.db import Db
from opboard.data.users_repository import UsersRepositoryImpl


class Repository:
    """Facade handed to the UI layer.

    ``data`` owns config, audit and the state snapshot; ``users`` owns accounts.
    The production service is created lazily and shared by every page, so all
    clients see (and write) the same in-memory state.
    """

    def __init__(self, db: Db):
        self.db = db
        self.data = DataRepositoryImpl(db)
        self.users = UsersRepositoryImpl(db, self.data)
        self._production = None

    def get_production_service(self):
        if self._production is None:
            from opboard.production.service import ProductionService

            self._production = ProductionService(self.data)
        return self._production

    # Convenience passthroughs used by pages and the app entrypoint.
    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        return self.data.get_config(key=key, default=default)

    def set_config(self, *, key: str, value: str) -> None:
        self.data.set_config(key=key, value=value)

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        self.data.log_audit(category, message, details)
