import pytest
import pytest_asyncio

from encrypted_storage import MemoryMedium, create_store


SECRET = "s1"
SALT = "salt1"


@pytest.fixture
def medium():
    """Fresh in-memory medium shared by the stores of one test."""
    return MemoryMedium()


@pytest_asyncio.fixture
async def store(medium):
    """Ready store over the in-memory medium, closed after the test."""
    async with await create_store(SECRET, SALT, medium=medium) as st:
        yield st
