"""Tests for upstream request spacing and the API client stub."""

import asyncio
import time

import pytest

from nursery_import.ingest.api_client import SourceApiClient
from nursery_import.ingest.errors import EndpointNotAvailableError, SourceError
from nursery_import.ingest.rate_limiter import IntervalLimiter, UpstreamGate


@pytest.mark.asyncio
async def test_gate_admits_one_request_at_a_time():
    gate = UpstreamGate(min_interval=0)

    async def request(label):
        async with gate.slot(label):
            await asyncio.sleep(0.01)

    await asyncio.gather(*(request(f"r{i}") for i in range(5)))

    assert gate.total_requests == 5
    assert gate.max_in_flight == 1
    assert gate.in_flight == 0


@pytest.mark.asyncio
async def test_gate_spaces_request_starts():
    gate = UpstreamGate(min_interval=0.05)
    starts = []

    for _ in range(3):
        async with gate.slot():
            starts.append(time.monotonic())

    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert all(gap >= 0.045 for gap in gaps)


@pytest.mark.asyncio
async def test_gate_releases_slot_on_error():
    gate = UpstreamGate(min_interval=0)
    with pytest.raises(RuntimeError):
        async with gate.slot():
            raise RuntimeError("boom")
    assert gate.in_flight == 0

    async with gate.slot():
        pass
    assert gate.total_requests == 2


@pytest.mark.asyncio
async def test_interval_limiter_first_call_does_not_wait():
    limiter = IntervalLimiter(0.05)
    assert await limiter.wait() == 0.0
    assert await limiter.wait() > 0


@pytest.mark.asyncio
async def test_api_client_reports_missing_endpoints():
    client = SourceApiClient(base_url="https://api.example.test", request_interval=0)
    assert client.get_source_name() == "API"

    with pytest.raises(EndpointNotAvailableError) as exc_info:
        await client.list_products(1)
    assert "/api/products" in exc_info.value.endpoint
    assert isinstance(exc_info.value, SourceError)

    for call in (client.get_product("123"), client.search_products("acer"), client.get_categories()):
        with pytest.raises(EndpointNotAvailableError):
            await call


@pytest.mark.asyncio
async def test_api_client_waits_between_calls():
    client = SourceApiClient(request_interval=0.05)
    started = time.monotonic()
    for _ in range(2):
        with pytest.raises(EndpointNotAvailableError):
            await client.get_product("1")
    assert time.monotonic() - started >= 0.045
