"""
Integration tests for the recordsync library.

These tests run the SQL stores against real databases:
- SQLite (aiosqlite) on a temporary file, always
- PostgreSQL (asyncpg) when RECORDSYNC_TEST_POSTGRES_URL is set

Run integration tests:
    pytest tests/integration/ -v

Run only PostgreSQL tests:
    RECORDSYNC_TEST_POSTGRES_URL=postgresql+asyncpg://... pytest tests/integration/ -v -m postgres

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
