"""Test doubles shared across the AfkGuard test-suite."""

from afkguard.alerts import OperatorRef
from afkguard.channels.base import BaseChannel


class RecordingChannel(BaseChannel):
    """Channel that records deliveries and can be told to fail."""

    name = "recording"

    def __init__(self, config=None, on_message=None, fail_direct=False, fail_broadcast=False):
        super().__init__(config or {}, on_message)
        self.fail_direct = fail_direct
        self.fail_broadcast = fail_broadcast
        self.direct = []
        self.broadcasts = []

    async def start(self):
        pass

    async def stop(self):
        pass

    async def send_direct(self, recipient, text):
        if self.fail_direct:
            raise RuntimeError("DMs are closed")
        self.direct.append((recipient, text))

    async def broadcast(self, text):
        if self.fail_broadcast:
            raise RuntimeError("channel missing")
        self.broadcasts.append(text)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


OPERATOR = OperatorRef(id="42", display_name="alice")


def connect_and_spawn(supervisor, driver, **spawn):
    """Drive a supervisor from IDLE to CONNECTED through the simulation driver."""
    supervisor.request_connect(requested_by=OPERATOR)
    driver.emit("login")
    data = {"health": 20, "position": [0, 64, 0], "username": "Bot", "dimension": "overworld"}
    data.update(spawn)
    driver.emit("spawn", **data)
