"""
Shared fixtures for the test suite

PostgreSQL tests run only when MINIBANK_TEST_POSTGRES_URL points at a
disposable database, and are skipped otherwise. The tables they use are
emptied before each test.
"""

import os

import pytest

from minibank.storage import PostgreSQLStorage


LEDGER_TABLES = ("accounts", "account_emails", "transactions", "transactions_head")


@pytest.fixture
def postgres_factory():
    """Open PostgreSQL backends for one test, closing them afterwards"""
    url = os.environ.get("MINIBANK_TEST_POSTGRES_URL")
    if not url:
        pytest.skip("MINIBANK_TEST_POSTGRES_URL not set")

    opened = []

    def connect(tables=LEDGER_TABLES, clear=True):
        try:
            backend = PostgreSQLStorage(url)
        except ImportError:
            pytest.skip("psycopg2 not available")
        except Exception as e:
            pytest.skip(f"PostgreSQL connection failed: {e}")

        opened.append(backend)
        if clear:
            for table in tables:
                backend.clear_table(table)
        return backend

    yield connect

    for backend in opened:
        backend.close()
