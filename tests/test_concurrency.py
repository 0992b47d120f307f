"""
Concurrency tests
The nullifier claim must admit exactly one of many simultaneous submissions,
and concurrent distinct registrations must never lose an increment.
"""

import asyncio

import pytest

from zkcensus.database import AsyncSessionLocal
from zkcensus.errors import DuplicateNullifier


async def _register_in_own_session(census_service, submission):
    async with AsyncSessionLocal() as db:
        return await census_service.register(db, **submission)


@pytest.mark.asyncio
async def test_concurrent_same_nullifier(db_session, census_service, census, make_submission):
    """Run the same submission concurrently; only ONE may succeed"""
    submission = make_submission("c1", b"racer", age_bracket=2, continent=3)

    results = await asyncio.gather(
        *[_register_in_own_session(census_service, submission) for _ in range(4)],
        return_exceptions=True
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert successes == [0], f"Expected exactly one success, got {results}"
    assert all(isinstance(f, DuplicateNullifier) for f in failures)

    stats = await census_service.get_stats(db_session, "c1")
    assert stats.total_members == 1
    assert stats.age_distribution == [0, 0, 1, 0, 0, 0, 0]
    assert stats.continent_distribution == [0, 0, 0, 1, 0, 0, 0]


@pytest.mark.asyncio
async def test_concurrent_distinct_nullifiers(db_session, census_service, census, make_submission):
    """Every distinct registrant is counted exactly once"""
    submissions = [
        make_submission("c1", f"member-{i}".encode(), age_bracket=i % 7, continent=1)
        for i in range(4)
    ]

    indexes = await asyncio.gather(
        *[_register_in_own_session(census_service, s) for s in submissions]
    )

    assert sorted(indexes) == [0, 1, 2, 3]
    stats = await census_service.get_stats(db_session, "c1")
    assert stats.total_members == 4
    assert sum(stats.age_distribution) == 4
    assert stats.continent_distribution[1] == 4


@pytest.mark.asyncio
async def test_close_while_registering(db_session, census_service, census, creator, make_submission):
    """A registration never lands after the close it raced with commits"""
    submission = make_submission("c1", b"late-comer")

    async def close_census():
        async with AsyncSessionLocal() as db:
            await census_service.close(db, "c1", creator)

    results = await asyncio.gather(
        _register_in_own_session(census_service, submission),
        close_census(),
        return_exceptions=True
    )

    stats = await census_service.get_stats(db_session, "c1")
    record = await census_service.get_census(db_session, "c1")
    assert record.active is False
    if isinstance(results[0], Exception):
        assert stats.total_members == 0
    else:
        assert stats.total_members == 1
