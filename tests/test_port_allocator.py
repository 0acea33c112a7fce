from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from devspace.engine.errors import ResourceExhaustedError
from devspace.engine.port_allocator import PortAllocator


def test_acquire_hands_out_lowest_free_port():
    ports = PortAllocator(base_port=3000)
    assert ports.acquire() == 3000
    assert ports.acquire() == 3001
    assert ports.acquire() == 3002

    ports.release(3001)
    assert ports.acquire() == 3001
    assert ports.in_use() == [3000, 3001, 3002]


def test_release_is_idempotent():
    ports = PortAllocator(base_port=5000)
    port = ports.acquire()
    ports.release(port)
    ports.release(port)
    ports.release(9999)
    assert not ports.is_in_use(port)
    assert ports.acquire() == 5000


def test_exhausted_range_raises():
    ports = PortAllocator(base_port=6000, max_port=6001)
    ports.acquire()
    ports.acquire()
    with pytest.raises(ResourceExhaustedError) as exc_info:
        ports.acquire()
    assert exc_info.value.resource == "port"


@pytest.mark.parametrize("base, maximum", [(0, 10), (5000, 4000), (3000, 70000)])
def test_invalid_range_rejected(base, maximum):
    with pytest.raises(ValueError):
        PortAllocator(base_port=base, max_port=maximum)


def test_concurrent_acquire_never_duplicates():
    ports = PortAllocator(base_port=7000)
    with ThreadPoolExecutor(max_workers=16) as pool:
        acquired = list(pool.map(lambda _: ports.acquire(), range(200)))
    assert len(set(acquired)) == 200
    assert sorted(acquired) == list(range(7000, 7200))
