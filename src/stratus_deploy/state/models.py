"""State record data models."""

from datetime import datetime, timezone
from typing import Any, Dict, List
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReplacedResource(BaseModel):
    """Provider resource superseded by a replacement and not yet deleted."""

    type: str
    provider_id: str


class StateRecord(BaseModel):
    """Last-applied snapshot of one resource node."""

    node_id: str = Field(..., description="Logical resource ID")
    type: str = Field(..., description="Resource type (e.g., AWS::EC2::VPC)")
    provider_id: str = Field(..., description="Provider-assigned identifier")
    properties: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved properties last applied"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Output attributes published by the provider"
    )
    content_hash: str = Field(..., description="Digest of type and resolved properties")
    dependencies: List[str] = Field(
        default_factory=list, description="Node IDs this node depended on when applied"
    )
    position: int = Field(0, description="Declaration position when applied")
    deletion_policy: str = Field("Delete", description="Delete or Retain")
    replaced: List[ReplacedResource] = Field(
        default_factory=list, description="Superseded resources awaiting deletion"
    )
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        """Deserialize from a dictionary."""
        return cls.model_validate(data)

    def output_bag(self) -> Dict[str, Any]:
        """Outputs plus the provider id under ``id``."""
        values = dict(self.outputs)
        values["id"] = self.provider_id
        return values
