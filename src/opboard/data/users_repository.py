"""Users repository: accounts, roles and password authentication."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
import secrets
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import uuid4

from opboard.core.errors import NotFoundError, ValidationError
from opboard.core.models import User
from opboard.data.db import Db

if TYPE_CHECKING:
    from opboard.data.data_repository import DataRepositoryImpl


logger = logging.getLogger(__name__)

ROLES: tuple[str, ...] = ("admin", "producao", "comercial", "viewer")
USER_STATUSES: tuple[str, ...] = ("ativo", "inativo")
ALL_PERMISSIONS: tuple[str, ...] = (
    "dashboard", "clientes", "produtos", "pedidos", "ops", "kanban", "financeiro", "relatorios", "config",
)
PROTECTED_USER_IDS = frozenset({"admin-fixed", "admin-1"})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_HASH_ALGO = "pbkdf2_sha256"
_HASH_ITERATIONS = 260_000


def hash_password(password: str, *, salt: str | None = None, iterations: int = _HASH_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{_HASH_ALGO}${iterations}${salt}${base64.b64encode(digest).decode('ascii')}"


def verify_password(password: str, encoded: str | None) -> bool:
    try:
        algo, iterations, salt, _ = str(encoded or "").split("$", 3)
    except ValueError:
        return False
    if algo != _HASH_ALGO:
        return False
    candidate = hash_password(password, salt=salt, iterations=int(iterations))
    return hmac.compare_digest(candidate, str(encoded))


class UsersRepositoryImpl:
    """User accounts stored in the ``app_user`` table.

    Protected accounts (fixed ids plus the ``protected_emails`` config list)
    cannot be deleted and cannot change e-mail.
    """

    def __init__(self, db: Db, data_repo: DataRepositoryImpl) -> None:
        self.db = db
        self.data_repo = data_repo

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=str(row["user_id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            role_id=str(row["role_id"]),
            permissions=list(json.loads(row["permissions_json"] or "[]")),
            status=str(row["status"]),
            phone=row["phone"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _is_protected(self, user_id: str, email: str) -> bool:
        protected_emails = {e.lower() for e in self.data_repo.get_config_list(key="protected_emails")}
        return user_id in PROTECTED_USER_IDS or email.lower() in protected_emails

    @staticmethod
    def _clean_email(email: str | None) -> str:
        s = str(email or "").strip()
        if not _EMAIL_RE.match(s):
            raise ValidationError(f"E-mail inválido: {email!r}")
        return s

    def _email_taken(self, con, email: str, *, exclude_id: str | None = None) -> bool:
        row = con.execute(
            "SELECT user_id FROM app_user WHERE lower(email) = lower(?) AND user_id != ?",
            (email, exclude_id or ""),
        ).fetchone()
        return row is not None

    # ---------- Queries ----------
    def count_users(self) -> int:
        with self.db.connect() as con:
            return int(con.execute("SELECT COUNT(*) FROM app_user").fetchone()[0])

    def list_users(self, q: str | None = None) -> list[User]:
        needle = str(q or "").strip().lower()
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM app_user ORDER BY name").fetchall()
        users = [self._row_to_user(r) for r in rows]
        if not needle:
            return users
        return [u for u in users if needle in u.name.lower() or needle in u.email.lower()]

    def get_user(self, user_id: str) -> User:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM app_user WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Usuário não encontrado: {user_id}")
        return self._row_to_user(row)

    # ---------- Mutations ----------
    def create_user(
        self,
        *,
        name: str,
        email: str,
        password: str,
        role_id: str = "viewer",
        permissions: list[str] | None = None,
        phone: str | None = None,
        status: str = "ativo",
        user_id: str | None = None,
    ) -> User:
        name = str(name or "").strip()
        if len(name) < 2:
            raise ValidationError("Nome deve ter ao menos 2 caracteres")
        email = self._clean_email(email)
        if len(str(password or "")) < 6:
            raise ValidationError("Senha deve ter ao menos 6 caracteres")
        if role_id not in ROLES:
            raise ValidationError(f"Perfil inválido: {role_id!r}")
        if status not in USER_STATUSES:
            raise ValidationError(f"Status inválido: {status!r}")

        uid = user_id or str(uuid4())
        now = datetime.now().isoformat(timespec="seconds")
        with self.db.connect() as con:
            if self._email_taken(con, email):
                raise ValidationError("E-mail já cadastrado")
            con.execute(
                """
                INSERT INTO app_user(
                    user_id, name, email, phone, role_id, permissions_json, status, password_hash,
                    created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uid,
                    name,
                    email,
                    phone,
                    role_id,
                    json.dumps(list(permissions or [])),
                    status,
                    hash_password(password),
                    now,
                    now,
                ),
            )
        self.data_repo.log_audit("USER", f"Created user {email}", json.dumps({"id": uid, "role": role_id}))
        return self.get_user(uid)

    def update_user(self, user_id: str, **patch) -> User:
        current = self.get_user(user_id)
        allowed = {"name", "email", "phone", "role_id", "permissions", "status", "password"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValidationError(f"Campos não suportados: {', '.join(sorted(unknown))}")

        sets: list[str] = []
        params: list = []

        if "email" in patch and patch["email"] is not None:
            email = self._clean_email(patch["email"])
            if email.lower() != current.email.lower() and self._is_protected(current.id, current.email):
                raise ValidationError("E-mail do usuário protegido não pode ser alterado")
            sets.append("email = ?")
            params.append(email)
        if "name" in patch and patch["name"] is not None:
            name = str(patch["name"]).strip()
            if len(name) < 2:
                raise ValidationError("Nome deve ter ao menos 2 caracteres")
            sets.append("name = ?")
            params.append(name)
        if "phone" in patch:
            sets.append("phone = ?")
            params.append(patch["phone"])
        if "role_id" in patch and patch["role_id"] is not None:
            if patch["role_id"] not in ROLES:
                raise ValidationError(f"Perfil inválido: {patch['role_id']!r}")
            sets.append("role_id = ?")
            params.append(patch["role_id"])
        if "permissions" in patch and patch["permissions"] is not None:
            sets.append("permissions_json = ?")
            params.append(json.dumps(list(patch["permissions"])))
        if "status" in patch and patch["status"] is not None:
            if patch["status"] not in USER_STATUSES:
                raise ValidationError(f"Status inválido: {patch['status']!r}")
            sets.append("status = ?")
            params.append(patch["status"])
        if patch.get("password"):
            if len(str(patch["password"])) < 6:
                raise ValidationError("Senha deve ter ao menos 6 caracteres")
            sets.append("password_hash = ?")
            params.append(hash_password(str(patch["password"])))

        if not sets:
            return current

        sets.append("updated_at = ?")
        params.append(datetime.now().isoformat(timespec="seconds"))
        with self.db.connect() as con:
            if "email" in patch and patch["email"] is not None and self._email_taken(con, patch["email"], exclude_id=user_id):
                raise ValidationError("E-mail já cadastrado")
            con.execute(f"UPDATE app_user SET {', '.join(sets)} WHERE user_id = ?", (*params, user_id))

        changed = sorted(k for k in patch if k != "password") + (["password"] if patch.get("password") else [])
        self.data_repo.log_audit("USER", f"Updated user {current.email}", ", ".join(changed))
        return self.get_user(user_id)

    def delete_user(self, user_id: str) -> None:
        victim = self.get_user(user_id)
        if self._is_protected(victim.id, victim.email):
            logger.warning("Attempt to delete protected user %s", victim.email)
            raise ValidationError("Este usuário é protegido e não pode ser excluído.")
        with self.db.connect() as con:
            con.execute("DELETE FROM app_user WHERE user_id = ?", (user_id,))
        self.data_repo.log_audit("USER", f"Deleted user {victim.email}")

    # ---------- Authentication ----------
    def authenticate(self, *, email: str, password: str) -> User | None:
        """Return the user for valid credentials, None otherwise.

        Unknown e-mail, inactive account and wrong password are not told apart.
        """
        with self.db.connect() as con:
            row = con.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(?)", (str(email or "").strip(),)
            ).fetchone()
        if row is None:
            logger.info("Login failed for %s: user not found", email)
            return None
        if row["status"] != "ativo":
            logger.info("Login failed for %s: user inactive", email)
            return None
        if not verify_password(str(password or ""), row["password_hash"]):
            logger.info("Login failed for %s: bad password", email)
            return None
        return self._row_to_user(row)

    def seed_admin_if_empty(self, *, email: str | None, password: str | None, name: str = "Administrador") -> User | None:
        if self.count_users() > 0:
            return None
        if not email or not password:
            logger.warning("No users and no seed admin credentials configured")
            return None
        user = self.create_user(
            user_id="admin-1",
            name=name,
            email=email,
            password=password,
            role_id="admin",
            permissions=list(ALL_PERMISSIONS),
        )
        logger.info("Seed admin created: %s", email)
        return user
