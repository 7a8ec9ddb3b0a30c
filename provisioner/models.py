from __future__ import annotations
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, model_validator


class DeclarationSpec(BaseModel):
    """One entry of a declaration file, keyed by its id in the enclosing mapping."""
    type: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    references: List[str] = Field(default_factory=list)
    # Attribute names that force a replace when they change, on top of the
    # ones the type registry already knows about.
    immutable: List[str] = Field(default_factory=list)


class Declaration(DeclarationSpec):
    id: str


class Stack(BaseModel):
    project: str = "labs"
    env: str = "dev"
    region: Optional[str] = None
    declarations: Dict[str, DeclarationSpec] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _null_declarations(cls, data: Any):
        if isinstance(data, dict) and data.get("declarations") is None and "declarations" in data:
            data = {**data, "declarations": {}}
        return data

    def declaration_list(self) -> List[Declaration]:
        return [Declaration(id=k, **v.model_dump()) for k, v in self.declarations.items()]


class ObservedResource(BaseModel):
    """Last known materialised state of one declaration."""
    id: str
    type: str
    external_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    references: List[str] = Field(default_factory=list)
    # Subset of references whose outputs were interpolated into attributes.
    interpolates: List[str] = Field(default_factory=list)


class PlanRequest(BaseModel):
    stack: Stack
    targets: List[str] = Field(default_factory=list)


class ApplyRequest(BaseModel):
    stack: Stack
    targets: List[str] = Field(default_factory=list)
    concurrency: Optional[int] = Field(default=None, ge=1, le=64)
    dry_run: bool = False
    rotate: List[str] = Field(default_factory=list)


class DestroyRequest(BaseModel):
    project: str
    env: str
    targets: List[str] = Field(default_factory=list)
    concurrency: Optional[int] = Field(default=None, ge=1, le=64)
    dry_run: bool = False
