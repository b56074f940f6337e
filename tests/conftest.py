"""Shared fixtures for the build-import test suite."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from poebuild import codec
from poebuild.cache import TTLCache
from poebuild.cascade import BuildResolver
from poebuild.fetch_client import ResilientFetchClient

Handler = Callable[[httpx.Request], httpx.Response]


class FakeClock:
    """Manually advanced clock; also usable as a ``sleep`` function."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sample_document() -> str:
    return (
        '<PathOfBuilding><Build level="92" className="Witch" ascendClassName="Occultist"/>'
        '<Skills/><Items/><Tree activeSpec="1"><Spec/></Tree></PathOfBuilding>'
    )


@pytest.fixture()
def sample_share_code(sample_document: str) -> str:
    return codec.encode(sample_document)


@pytest.fixture()
def make_fetch_client(clock: FakeClock) -> Callable[..., ResilientFetchClient]:
    """Build a fetch client whose transport is *handler* and whose sleeps are recorded."""

    def _make(handler: Handler, **kwargs) -> ResilientFetchClient:
        kwargs.setdefault("backoff_base", 0.3)
        return ResilientFetchClient(
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=clock.sleep,
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture()
def make_resolver(
    make_fetch_client: Callable[..., ResilientFetchClient], clock: FakeClock
) -> Callable[..., BuildResolver]:
    """Build a resolver over a mocked upstream and a stub reconstructor."""

    def _make(handler: Handler, reconstruct: Callable[..., str] | None = None) -> BuildResolver:
        return BuildResolver(
            fetch_client=make_fetch_client(handler, max_attempts=2),
            cache=TTLCache(ttl=60, clock=clock),
            reconstruct=reconstruct or (lambda data, *, timeout=None: "<PathOfBuilding/>"),
            clock=clock,
        )

    return _make
