"""Progress snapshots stored on ``sync_tasks.progress``.

Each entity kind has its own model, discriminated by ``kind``, so a status
reader can validate the stored JSON instead of guessing at its shape.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

KindStatus = Literal["pending", "running", "completed", "completed_with_errors", "failed", "skipped"]


class _KindProgress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: KindStatus = "pending"
    total: Optional[int] = None
    synced: int = 0
    fetched: int = 0
    pages: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "completed_with_errors")


class OrdersProgress(_KindProgress):
    kind: Literal["orders"] = "orders"
    items_synced: int = 0


class ProductsProgress(_KindProgress):
    kind: Literal["products"] = "products"
    variations_synced: int = 0


EntityProgress = Annotated[Union[OrdersProgress, ProductsProgress], Field(discriminator="kind")]

_entity_adapter: TypeAdapter[EntityProgress] = TypeAdapter(EntityProgress)
_snapshot_adapter: TypeAdapter[Dict[str, EntityProgress]] = TypeAdapter(Dict[str, EntityProgress])

_MODELS = {"orders": OrdersProgress, "products": ProductsProgress}


def initial_progress(entities: Iterable[str]) -> Dict[str, EntityProgress]:
    return {entity: _MODELS[entity]() for entity in entities}


def parse_progress(raw: Any) -> Dict[str, EntityProgress]:
    if not raw:
        return {}
    snapshot = _snapshot_adapter.validate_python(raw)
    for key, value in snapshot.items():
        if key != value.kind:
            raise ValueError(f"progress entry {key!r} holds a {value.kind!r} snapshot")
    return snapshot


def dump_progress(snapshot: Dict[str, EntityProgress]) -> Dict[str, Any]:
    return {key: value.model_dump(mode="json") for key, value in snapshot.items()}


def parse_entity_progress(raw: Any) -> EntityProgress:
    return _entity_adapter.validate_python(raw)
