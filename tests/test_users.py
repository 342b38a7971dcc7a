from __future__ import annotations

import pytest

from opboard.core.errors import NotFoundError, ValidationError
from opboard.data.db import Db
from opboard.data.repository import Repository
from opboard.data.users_repository import hash_password, verify_password


@pytest.fixture
def repo(tmp_path):
    db = Db(tmp_path / "users.db")
    db.ensure_schema()
    return Repository(db)


def _user(repo: Repository, email: str = "ana@malharia.com", **overrides):
    fields = dict(name="Ana Souza", email=email, password="segredo1", role_id="producao", permissions=["kanban"])
    fields.update(overrides)
    return repo.users.create_user(**fields)


def test_password_hash_is_salted_and_verifiable():
    a = hash_password("segredo1")
    b = hash_password("segredo1")
    assert a != b
    assert a.startswith("pbkdf2_sha256$")
    assert verify_password("segredo1", a)
    assert not verify_password("segredo2", a)
    assert not verify_password("segredo1", "texto-puro")


def test_authenticate(repo):
    user = _user(repo)
    assert repo.users.authenticate(email="ANA@malharia.com", password="segredo1").id == user.id
    assert repo.users.authenticate(email="ana@malharia.com", password="errada") is None
    assert repo.users.authenticate(email="ninguem@malharia.com", password="segredo1") is None

    repo.users.update_user(user.id, status="inativo")
    assert repo.users.authenticate(email="ana@malharia.com", password="segredo1") is None


def test_create_user_validation(repo):
    _user(repo)
    with pytest.raises(ValidationError, match="já cadastrado"):
        _user(repo, email="Ana@Malharia.com")
    with pytest.raises(ValidationError):
        _user(repo, email="sem-arroba")
    with pytest.raises(ValidationError):
        _user(repo, email="b@malharia.com", password="123")
    with pytest.raises(ValidationError):
        _user(repo, email="c@malharia.com", role_id="dono")
    with pytest.raises(ValidationError):
        _user(repo, email="d@malharia.com", name="A")
    assert repo.users.count_users() == 1


def test_update_user_and_password_change(repo):
    user = _user(repo)
    updated = repo.users.update_user(user.id, name="Ana S.", role_id="comercial", password="novasenha")
    assert (updated.name, updated.role_id) == ("Ana S.", "comercial")
    assert repo.users.authenticate(email=user.email, password="novasenha") is not None
    with pytest.raises(ValidationError):
        repo.users.update_user(user.id, is_admin=True)


def test_email_change_cannot_collide(repo):
    _user(repo)
    other = _user(repo, email="beto@malharia.com", name="Beto")
    with pytest.raises(ValidationError, match="já cadastrado"):
        repo.users.update_user(other.id, email="ana@malharia.com")


def test_protected_accounts(repo):
    admin = repo.users.seed_admin_if_empty(email="admin@malharia.com", password="admin123")
    assert admin.id == "admin-1"
    assert admin.role_id == "admin"
    assert repo.users.seed_admin_if_empty(email="outro@malharia.com", password="admin123") is None

    with pytest.raises(ValidationError, match="protegido"):
        repo.users.delete_user("admin-1")
    with pytest.raises(ValidationError, match="protegido"):
        repo.users.update_user("admin-1", email="novo@malharia.com")
    assert repo.users.update_user("admin-1", name="Admin Geral").name == "Admin Geral"

    dono = _user(repo, email="dono@malharia.com", name="Dono")
    repo.set_config(key="protected_emails", value="DONO@malharia.com")
    with pytest.raises(ValidationError, match="protegido"):
        repo.users.delete_user(dono.id)


def test_seed_needs_credentials(repo):
    assert repo.users.seed_admin_if_empty(email=None, password=None) is None
    assert repo.users.count_users() == 0


def test_delete_and_list(repo):
    ana = _user(repo)
    _user(repo, email="beto@malharia.com", name="Beto Lima")
    assert [u.name for u in repo.users.list_users()] == ["Ana Souza", "Beto Lima"]
    assert [u.name for u in repo.users.list_users("LIMA")] == ["Beto Lima"]
    assert [u.email for u in repo.users.list_users("ana@")] == ["ana@malharia.com"]

    repo.users.delete_user(ana.id)
    with pytest.raises(NotFoundError):
        repo.users.get_user(ana.id)
    with pytest.raises(NotFoundError):
        repo.users.delete_user(ana.id)
    assert repo.data.get_recent_audit_entries(limit=1)[0].message == "Deleted user ana@malharia.com"
