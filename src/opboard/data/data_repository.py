from __future__ import annotations

import json
import logging

from opboard.core.errors import ValidationError
from opboard.core.models import AppState, AuditEntry
from opboard.data import snapshot
from opboard.data.db import Db


logger = logging.getLogger(__name__)

STATE_KEY = "state"


class DataRepositoryImpl:
    """Data module repository implementation.

    Handles:
    - App config (key/value)
    - Audit log
    - Application state snapshot (load, write-through save, backup import/export)
    """

    def __init__(self, db: Db):
        self.db = db

    # ---------- Audit & Logging ----------
    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        """Record a business event in the audit log."""
        try:
            with self.db.connect() as con:
                con.execute(
                    "INSERT INTO audit_log (category, message, details) VALUES (?, ?, ?)",
                    (category, message, details),
                )
        except Exception:
            # Audit failures never abort the business operation.
            logger.exception("Failed to write audit log")

    def get_recent_audit_entries(self, limit: int = 100) -> list[AuditEntry]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [
                AuditEntry(
                    id=row["id"],
                    timestamp=row["timestamp"],
                    category=row["category"],
                    message=row["message"],
                    details=row["details"],
                )
                for row in rows
            ]

    # ---------- App config ----------
    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        key = str(key).strip()
        if not key:
            raise ValueError("config key vazio")
        with self.db.connect() as con:
            row = con.execute("SELECT config_value FROM app_config WHERE config_key = ?", (key,)).fetchone()
        if row is None:
            return default
        return str(row[0])

    def set_config(self, *, key: str, value: str) -> None:
        key = str(key).strip()
        if not key:
            raise ValueError("config key vazio")

        old_val = self.get_config(key=key, default="(none)")
        self.log_audit("CONFIG", f"Updated '{key}'", f"From '{old_val}' to '{value}'")

        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO app_config(config_key, config_value) VALUES(?, ?)
                ON CONFLICT(config_key) DO UPDATE SET config_value=excluded.config_value, updated_at=CURRENT_TIMESTAMP
                """,
                (key, str(value).strip()),
            )

    def get_config_int(self, *, key: str, default: int) -> int:
        raw = self.get_config(key=key, default=None)
        try:
            return int(str(raw).strip()) if raw is not None else default
        except ValueError:
            logger.warning("Config %s=%r is not an integer, using %s", key, raw, default)
            return default

    def get_config_list(self, *, key: str) -> list[str]:
        """Comma-separated config value as a list (blank entries dropped)."""
        raw = self.get_config(key=key, default="") or ""
        return [s.strip() for s in raw.split(",") if s.strip()]

    # ---------- State snapshot ----------
    def load_state(self) -> AppState:
        with self.db.connect() as con:
            row = con.execute("SELECT state_json FROM app_state WHERE state_key = ?", (STATE_KEY,)).fetchone()
        if row is None:
            return AppState()
        return snapshot.loads(row["state_json"])

    def save_state(self, state: AppState) -> None:
        payload = snapshot.dumps(state)
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO app_state(state_key, state_json) VALUES(?, ?)
                ON CONFLICT(state_key) DO UPDATE SET state_json=excluded.state_json, saved_at=CURRENT_TIMESTAMP
                """,
                (STATE_KEY, payload),
            )
        logger.debug("State saved (%d bytes)", len(payload))

    def get_state_saved_at(self) -> str | None:
        with self.db.connect() as con:
            row = con.execute("SELECT saved_at FROM app_state WHERE state_key = ?", (STATE_KEY,)).fetchone()
        return str(row[0]) if row else None

    def export_json(self, state: AppState | None = None) -> str:
        return snapshot.dumps(state if state is not None else self.load_state(), indent=2)

    def import_json(self, text: str) -> AppState:
        """Replace the stored state with a backup document.

        The stored snapshot is only touched after the document decodes cleanly.
        """
        if not str(text or "").strip():
            raise ValidationError("Arquivo de backup vazio")
        state = snapshot.loads(text)
        self.save_state(state)
        self.log_audit(
            "BACKUP",
            "Imported state",
            json.dumps(
                {
                    "clients": len(state.clients),
                    "products": len(state.products),
                    "orders": len(state.orders),
                    "runs": len(state.runs),
                }
            ),
        )
        return state

    def clear_state(self) -> AppState:
        state = AppState()
        self.save_state(state)
        self.log_audit("BACKUP", "State reset")
        return state
