"""Shared fixtures for kdbxcore tests."""

import pytest

from kdbxcore import Database
from kdbxcore.testing import fast_kdf_config

TEST_PASSWORD = "password"


@pytest.fixture
def new_db() -> Database:
    """Empty database with a fast KDF."""
    return Database.create(
        password=TEST_PASSWORD,
        database_name="Test DB",
        kdf_config=fast_kdf_config(),
    )


@pytest.fixture
def populated_db(new_db: Database) -> Database:
    """Database with a small group tree."""
    work = new_db.add_group("Work")
    personal = new_db.add_group("Personal")

    new_db.add_entry(title="GitHub", username="dev@example.com", url="https://github.com")
    new_db.add_entry(work, title="Jira", username="dev@work.com", tags=["work", "tracking"])
    new_db.add_entry(work, title="Slack", username="dev@work.com", tags=["work", "chat"])
    new_db.add_entry(personal, title="Gmail", username="me@gmail.com", tags=["personal", "email"])
    return new_db
