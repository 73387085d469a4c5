import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlmodel import Session, select

from ..core import db
from ..core.db import get_session, set_engine
from ..main import app
from ..models import UserModel
from ..services import Balance, LedgerRepository, ReconciliationWorker
from .helpers import FakeResolver, processed

ORDERS = "/api/user/orders"


@pytest.fixture
def client(engine) -> TestClient:
    original_engine = db.engine
    set_engine(engine)

    def _get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session_override

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    set_engine(original_engine)


def _register(client: TestClient, login: str, password: str = "secret") -> dict[str, str]:
    response = client.post("/api/user/register", json={"login": login, "password": password})
    assert response.status_code == 200
    token = response.cookies["jwt"]
    client.cookies.clear()
    return {"Authorization": f"Bearer {token}"}


def _submit(client: TestClient, auth: dict[str, str], number: str):
    return client.post(ORDERS, content=number, headers={**auth, "Content-Type": "text/plain"})


def _reconcile(engine, outcomes) -> None:
    ReconciliationWorker(lambda: Session(engine), FakeResolver(outcomes)).run_cycle()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_register_and_login(client: TestClient) -> None:
    _register(client, "alice", "pa55")

    duplicate = client.post("/api/user/register", json={"login": "alice", "password": "x"})
    assert duplicate.status_code == 409

    wrong = client.post("/api/user/login", json={"login": "alice", "password": "nope"})
    assert wrong.status_code == 401
    unknown = client.post("/api/user/login", json={"login": "carol", "password": "pa55"})
    assert unknown.status_code == 401

    login = client.post("/api/user/login", json={"login": "alice", "password": "pa55"})
    assert login.status_code == 200
    assert "jwt" in login.cookies

    # Cookie set by login authenticates the next request.
    assert client.get("/api/user/balance").status_code == 200


def test_requests_without_valid_token_are_rejected(client: TestClient) -> None:
    assert client.get(ORDERS).status_code == 401
    bad = client.get("/api/user/balance", headers={"Authorization": "Bearer garbage"})
    assert bad.status_code == 401


def test_new_order_is_accepted(client: TestClient) -> None:
    auth = _register(client, "alice")

    response = _submit(client, auth, "18")
    assert response.status_code == 202

    orders = client.get(ORDERS, headers=auth)
    assert orders.status_code == 200
    [order] = orders.json()
    assert order["number"] == "18"
    assert order["status"] == "NEW"
    assert order["accrual"] is None


def test_resubmitting_own_order_is_idempotent(client: TestClient) -> None:
    auth = _register(client, "alice")

    assert _submit(client, auth, "182").status_code == 202
    assert _submit(client, auth, "182").status_code == 200
    assert len(client.get(ORDERS, headers=auth).json()) == 1


def test_order_owned_by_another_user_conflicts(client: TestClient) -> None:
    owner = _register(client, "bob")
    intruder = _register(client, "alice")

    assert _submit(client, owner, "1826").status_code == 202
    assert _submit(client, intruder, "1826").status_code == 409
    assert client.get(ORDERS, headers=intruder).status_code == 204
    assert len(client.get(ORDERS, headers=owner).json()) == 1


def test_order_number_validation(client: TestClient) -> None:
    auth = _register(client, "alice")

    assert _submit(client, auth, "19").status_code == 422
    assert _submit(client, auth, "abc").status_code == 400
    assert client.get(ORDERS, headers=auth).status_code == 204


def test_reconciled_order_shows_accrual(client: TestClient, engine) -> None:
    auth = _register(client, "alice")
    _submit(client, auth, "18")

    _reconcile(engine, {18: processed(18, 50000)})

    [order] = client.get(ORDERS, headers=auth).json()
    assert order["status"] == "PROCESSED"
    assert order["accrual"] == 500.0
    assert client.get("/api/user/balance", headers=auth).json() == {
        "current": 500.0,
        "withdrawn": 0.0,
    }


def test_withdraw_against_balance(client: TestClient, engine) -> None:
    auth = _register(client, "alice")
    _submit(client, auth, "18")
    _reconcile(engine, {18: processed(18, 10000)})

    assert client.get("/api/user/withdrawals", headers=auth).status_code == 204

    ok = client.post(
        "/api/user/balance/withdraw",
        json={"order": "2377225624", "sum": 50},
        headers=auth,
    )
    assert ok.status_code == 200
    assert client.get("/api/user/balance", headers=auth).json() == {
        "current": 50.0,
        "withdrawn": 50.0,
    }

    too_much = client.post(
        "/api/user/balance/withdraw",
        json={"order": "79927398713", "sum": 200},
        headers=auth,
    )
    assert too_much.status_code == 402

    withdrawals = client.get("/api/user/withdrawals", headers=auth)
    assert withdrawals.status_code == 200
    [withdrawal] = withdrawals.json()
    assert withdrawal["order"] == "2377225624"
    assert withdrawal["sum"] == 50.0
    assert client.get("/api/user/balance/withdrawals", headers=auth).json() == withdrawals.json()


def test_withdraw_validation(client: TestClient, engine) -> None:
    auth = _register(client, "alice")
    _submit(client, auth, "18")
    _reconcile(engine, {18: processed(18, 10000)})

    bad_checksum = client.post(
        "/api/user/balance/withdraw", json={"order": "19", "sum": 1}, headers=auth
    )
    assert bad_checksum.status_code == 422

    reused = client.post(
        "/api/user/balance/withdraw", json={"order": "18", "sum": 1}, headers=auth
    )
    assert reused.status_code == 409

    assert client.get("/api/user/balance", headers=auth).json()["current"] == 100.0


def test_withdrawal_that_loses_a_race_gets_402(client: TestClient, engine, monkeypatch) -> None:
    auth = _register(client, "alice")
    _submit(client, auth, "18")
    _reconcile(engine, {18: processed(18, 10000)})

    # A concurrent withdrawal spent the points after this request read the balance.
    monkeypatch.setattr(
        LedgerRepository, "get_balance", lambda self, user_id: Balance(current=10000, withdrawn=0)
    )
    with Session(engine) as other:
        user_id = other.exec(select(UserModel.id).where(UserModel.login == "alice")).one()
        spent = update(UserModel).where(UserModel.id == user_id).values(balance=4000)
        other.connection().execute(spent)
        other.commit()

    response = client.post(
        "/api/user/balance/withdraw",
        json={"order": "2377225624", "sum": 60},
        headers=auth,
    )
    assert response.status_code == 402

    monkeypatch.undo()
    assert client.get("/api/user/withdrawals", headers=auth).status_code == 204


def test_rejected_order_insert_is_a_conflict(client: TestClient, monkeypatch) -> None:
    auth = _register(client, "alice")
    assert _submit(client, auth, "18").status_code == 202

    monkeypatch.setattr(LedgerRepository, "lookup_owner", lambda self, order_id: None)

    assert _submit(client, auth, "18").status_code == 409
