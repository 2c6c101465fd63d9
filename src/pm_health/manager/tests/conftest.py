"""
Process manager layer test fixtures.

Provides a scripted pm2 command runner so Pm2Client can be tested without
a PM2 installation.
"""
import json

import pytest


class FakePm2:
    """Scripted replacement for the pm2 CLI."""

    def __init__(self):
        self.ping_code = 0
        self.jlist_code = 0
        self.processes = []
        self.raw_jlist = None
        self.calls = []

    async def __call__(self, args):
        self.calls.append(args[1:])
        command = args[1]
        if command == "ping":
            return self.ping_code, "{ msg: 'pong' }", "daemon not running" if self.ping_code else ""
        if command == "jlist":
            stdout = self.raw_jlist if self.raw_jlist is not None else json.dumps(self.processes)
            return self.jlist_code, stdout, "jlist error" if self.jlist_code else ""
        raise AssertionError(f"unexpected pm2 command: {args}")


@pytest.fixture
def fake_pm2():
    return FakePm2()
