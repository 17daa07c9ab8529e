from __future__ import annotations

import pytest

from devmetrics.config.database import create_database


@pytest.fixture
def database():
    handle = create_database("sqlite://")
    handle.create_all()
    yield handle
    handle.dispose()


@pytest.fixture
def session(database):
    db = database.session()
    yield db
    db.close()
