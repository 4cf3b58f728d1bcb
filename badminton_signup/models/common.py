import uuid
from typing import Any

from pydantic import BaseModel


def new_id() -> str:
    return uuid.uuid4().hex


def to_document(model: BaseModel) -> dict[str, Any]:
    """Serialize a model for the document store (JSON-safe values only)."""
    return model.model_dump(mode="json")
