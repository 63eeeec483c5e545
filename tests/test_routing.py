import pytest

from services.shared.routing import routing_key_matches


@pytest.mark.parametrize(
    "pattern, routing_key",
    [
        ("inventory.reserved", "inventory.reserved"),
        ("inventory.*", "inventory.reserved"),
        ("inventory.#", "inventory.reserved"),
        ("inventory.#", "inventory"),
        ("inventory.#", "inventory.a.b"),
        ("#", "anything.at.all"),
        ("*.deleted", "user.deleted"),
        ("#.deleted", "product.deleted"),
    ],
)
def test_matches(pattern, routing_key):
    assert routing_key_matches(pattern, routing_key)


@pytest.mark.parametrize(
    "pattern, routing_key",
    [
        ("inventory.reserved", "inventory.restored"),
        ("inventory.*", "inventory"),
        ("inventory.*", "inventory.a.b"),
        ("user.#", "product.deleted"),
        ("*.deleted", "user.updated"),
    ],
)
def test_does_not_match(pattern, routing_key):
    assert not routing_key_matches(pattern, routing_key)
