"""Request body accepted by the plan endpoint."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from parley.models.planning_session import Party

REQUIRED_FIELDS = ("prompt", "modelA", "modelB")


class HistoryEntry(BaseModel):
    """One prior turn in ``{role, content}`` form."""

    role: Party
    content: str


class PlanRequest(BaseModel):
    """Input to one turn-loop run.

    ``history`` is the sealed turn sequence so far; ``human_input`` is an
    intervention to append before the loop resumes.
    """

    prompt: str = Field(..., min_length=1)
    model_a: str = Field(..., min_length=1, alias="modelA")
    model_b: str = Field(..., min_length=1, alias="modelB")
    history: List[HistoryEntry] = Field(default_factory=list)
    human_input: Optional[str] = Field(None, alias="humanInput")

    class Config:
        """Pydantic configuration."""
        populate_by_name = True
        protected_namespaces = ()

    @field_validator('prompt', 'model_a', 'model_b')
    @classmethod
    def validate_not_blank(cls, v):
        """Reject whitespace-only values."""
        if not v.strip():
            raise ValueError("Value cannot be blank")
        return v

    def history_dicts(self) -> List[Dict[str, str]]:
        return [{"role": entry.role.value, "content": entry.content} for entry in self.history]

    def to_payload(self) -> Dict[str, Any]:
        """Wire form posted to the plan endpoint."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _is_blank(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    return not value


def missing_required_fields(body: Any) -> List[str]:
    """Return the required plan fields that are absent, empty or blank in ``body``."""
    if not isinstance(body, dict):
        return list(REQUIRED_FIELDS)
    return [name for name in REQUIRED_FIELDS if _is_blank(body.get(name))]
