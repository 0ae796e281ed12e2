import pytest
from pydantic import ValidationError

from storesync.sync.progress import (
    OrdersProgress,
    ProductsProgress,
    dump_progress,
    initial_progress,
    parse_entity_progress,
    parse_progress,
)


def test_initial_progress_has_one_snapshot_per_entity() -> None:
    snapshot = initial_progress(["orders", "products"])

    assert isinstance(snapshot["orders"], OrdersProgress)
    assert isinstance(snapshot["products"], ProductsProgress)
    assert snapshot["orders"].status == "pending"


def test_progress_survives_a_json_round_trip() -> None:
    snapshot = initial_progress(["orders"])
    snapshot["orders"].status = "completed"
    snapshot["orders"].synced = 12
    snapshot["orders"].items_synced = 30

    restored = parse_progress(dump_progress(snapshot))

    assert restored["orders"].items_synced == 30
    assert restored["orders"].finished


def test_discriminator_rejects_mismatched_shapes() -> None:
    with pytest.raises(ValidationError):
        parse_entity_progress({"kind": "orders", "variations_synced": 3})
    with pytest.raises(ValidationError):
        parse_entity_progress({"kind": "customers"})
    with pytest.raises(ValueError, match="holds a 'products' snapshot"):
        parse_progress({"orders": {"kind": "products"}})


def test_empty_progress_parses_to_empty_snapshot() -> None:
    assert parse_progress(None) == {}
    assert parse_progress({}) == {}
