from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from invoicing.database import Base, get_db
from invoicing.main import app
from invoicing.models import Client, User


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture(scope="session")
def engine(tmp_path_factory):
    # A file rather than :memory: so the threaded numbering tests share one database.
    path = tmp_path_factory.mktemp("ledger") / "ledger.db"
    engine = create_engine(
        f"sqlite:///{path}", connect_args={"check_same_thread": False, "timeout": 30}
    )
    event.listen(engine, "connect", _enable_foreign_keys)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def SessionTesting(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def schema(engine):
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(SessionTesting):
    with SessionTesting() as session:
        yield session


@pytest.fixture
def api(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def user(db_session):
    u = User(email="freelancer@example.com", full_name="Free Lancer", default_currency="EUR")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def other_user(db_session):
    u = User(email="other@example.com", full_name="Other")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def customer(db_session, user):
    c = Client(user_id=user.id, name="ClientX", email="billing@clientx.test", company_name="X Ltd")
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture
def auth_headers(user):
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def today():
    return date.today()
