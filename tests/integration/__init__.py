"""
Integration tests for pm-health.

These tests run the whole engine against a scripted pm2 CLI and a
recording alert transport.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
