import pytest

from synthetic import seeded_store


@pytest.fixture
def season_store():
    return seeded_store()
