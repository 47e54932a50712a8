"""
Integration tests for the batchmigrate library.

These tests run the SQLAlchemy stores and full migration runs against a
file-backed SQLite database (aiosqlite). No external infrastructure is needed.

Run integration tests:
    pytest tests/integration/ -v

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
