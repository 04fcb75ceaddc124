import pytest

from probe import Target


@pytest.fixture
def targets():
    return [
        Target(id="vendor/alpha", label="Alpha", tier="S"),
        Target(id="vendor/beta", label="Beta", tier="A"),
        Target(id="vendor/gamma", label="Gamma", tier="B"),
    ]
