import pytest

from core.errors import PersistenceError
from core.retry import async_retrying


@pytest.mark.asyncio
async def test_async_retrying_succeeds_after_failures():
    attempts = {"n": 0}

    async def flaky():
        attempts["n"] += 1
        if attempts["n"] < 2:
            raise PersistenceError("database is locked")
        return "ok"

    assert await async_retrying(PersistenceError, attempts=2, initial_delay=0)(flaky) == "ok"
    assert attempts["n"] == 2


@pytest.mark.asyncio
async def test_async_retrying_reraises_last_error():
    attempts = {"n": 0}

    async def broken():
        attempts["n"] += 1
        raise PersistenceError(f"failure {attempts['n']}")

    with pytest.raises(PersistenceError, match="failure 2"):
        await async_retrying(PersistenceError, attempts=2, initial_delay=0)(broken)


@pytest.mark.asyncio
async def test_async_retrying_ignores_other_errors():
    attempts = {"n": 0}

    async def wrong():
        attempts["n"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await async_retrying(PersistenceError, attempts=3, initial_delay=0)(wrong)
    assert attempts["n"] == 1
