import asyncio

import numpy as np
import pytest


@pytest.fixture
def frame():
    """640x480 mid-gray frame."""
    return np.full((480, 640, 3), 90, dtype=np.uint8)


@pytest.fixture
def run():
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run
