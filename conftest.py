import pytest


@pytest.fixture
def anyio_backend():
    # The suite targets asyncio (see pytest.mark.anyio("asyncio") in the tests).
    return "asyncio"
