"""Shared fixtures: a controllable clock and a scripted install metadata source."""

from __future__ import annotations

import asyncio

import pytest

from outline_manager.server.install import InstallStatus
from outline_manager.trust import CertificateTrustStore

FINGERPRINT = "ab" * 32
API_URL = "https://203.0.113.7:8081/Secr3tPrefix/"


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the real loop; for work that finishes in a worker thread."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakeClock:
    """Clock whose time only moves when a test says so.

    In manual mode ``sleep`` blocks until ``advance`` moves time past its
    deadline. In auto mode every ``sleep`` advances time immediately.
    """

    def __init__(self, auto: bool = False):
        self.now = 0.0
        self.auto = auto
        self.sleep_calls: list[float] = []
        self._sleepers: list[tuple[float, asyncio.Future]] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        if self.auto:
            self.now += seconds
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + seconds, future))
        await future

    async def advance(self, seconds: float) -> None:
        self.now += seconds
        due = [s for s in self._sleepers if s[0] <= self.now]
        self._sleepers = [s for s in self._sleepers if s[0] > self.now]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        await settle()

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())


class FakeMetadataSource:
    """Metadata source driven by a script of refresh outcomes.

    Each refresh pops the next item: an InstallStatus becomes the snapshot,
    an exception is raised. An empty script leaves the snapshot unchanged.
    """

    def __init__(self, initial: InstallStatus | None = None, script: list | None = None, fail_with=None):
        self.status = initial or InstallStatus()
        self.script = list(script or [])
        self.fail_with = fail_with
        self.refresh_count = 0
        self.gate: asyncio.Event | None = None

    def read_install_status(self) -> InstallStatus:
        return self.status

    async def refresh(self) -> None:
        self.refresh_count += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            self.status = item


READY = InstallStatus(certificate_fingerprint=FINGERPRINT, api_url=API_URL)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auto_clock():
    return FakeClock(auto=True)


@pytest.fixture
def trust_store():
    return CertificateTrustStore()
