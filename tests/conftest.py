import os
import sys

import pytest

# Make the top-level packages and the test helpers importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import MappingEmbedder
from indexer.sqlite_adapter import SQLiteAdapter


@pytest.fixture
def embedder():
    return MappingEmbedder()


@pytest.fixture
async def store(tmp_path, embedder):
    """SQLite document store on a temporary file."""
    adapter = SQLiteAdapter(str(tmp_path / "sitefoundry-test.db"), embedder, retry_delay=0.0)
    await adapter.initialize()
    yield adapter
    await adapter.close()
