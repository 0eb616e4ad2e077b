"""
Test suite for the control number payment gateway.

Test categories:
- Unit tests: registry, ledger, reconciliation and delivery services
  against an in-memory SQLite session
- API tests: the FastAPI app through an ASGI client
- Integration tests: races on a file-backed database, the sweeper task
"""
