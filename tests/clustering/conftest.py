import pytest

from clustering_helpers import make_corpus


@pytest.fixture
def corpus():
    c = make_corpus()
    yield c
    c.engine.close()
