"""Data models for the memory context client.

Wire envelopes are modelled as mutually exclusive variants: a response is
either a ``JsonRpcResult`` or a ``JsonRpcErrorResponse``, never both.
Domain records mirror the fact store's camelCase wire names through
aliases, so callers work with snake_case attributes.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

JSONRPC_VERSION = "2.0"

# =============================================================================
# JSON-RPC Envelopes
# =============================================================================


class JsonRpcRequest(BaseModel):
    """Outgoing request envelope. ``id`` is None for notifications."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: Optional[int] = None
    method: str = Field(min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class JsonRpcErrorDetail(BaseModel):
    code: int
    message: str
    data: Any = None


class _ResponseBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = Field(
        default=JSONRPC_VERSION,
        validation_alias=AliasChoices("jsonrpc", "protocol"),
    )
    id: Optional[Union[int, str]] = None


class JsonRpcResult(_ResponseBase):
    """Success variant of a response envelope."""

    result: Any = None


class JsonRpcErrorResponse(_ResponseBase):
    """Error variant of a response envelope."""

    error: JsonRpcErrorDetail


JsonRpcResponse = Union[JsonRpcResult, JsonRpcErrorResponse]


# =============================================================================
# Tool / Resource Results
# =============================================================================


class TextContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "text"
    text: str = ""


class ToolCallResult(BaseModel):
    """Result of a ``tools/call`` invocation.

    ``is_error`` is an application-level answer from the tool (e.g. an
    unknown fact id); the round trip itself succeeded.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    content: List[TextContent] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    @property
    def text(self) -> str:
        """Text of the first text content item (empty if none)."""
        for item in self.content:
            if item.type == "text":
                return item.text
        return ""


class ResourceContent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uri: str
    text: str = ""
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ResourceReadResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    contents: List[ResourceContent] = Field(default_factory=list)


# =============================================================================
# Domain Records
# =============================================================================


class Fact(BaseModel):
    """A subject-predicate-object fact owned by a user.

    Attributes:
        id: Store-assigned identifier.
        subject: What the fact is about.
        predicate: The relationship.
        object: The value.
        user_id: Owner of the fact.
        timestamp: When the fact was observed.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    subject: str
    predicate: str
    object: str
    user_id: str = Field(alias="userId")
    timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    def triple(self) -> tuple:
        return (self.subject, self.predicate, self.object)


class CreateFact(BaseModel):
    """Arguments of the ``create-fact`` tool."""

    model_config = ConfigDict(populate_by_name=True)

    subject: str = Field(min_length=1)
    predicate: str = Field(min_length=1)
    object: str = Field(min_length=1)
    user_id: str = Field(min_length=1, alias="userId")


class UpdateFact(BaseModel):
    """Partial update for the ``update-fact`` tool. Unset fields are left alone."""

    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = Field(default=None, min_length=1)
    predicate: Optional[str] = Field(default=None, min_length=1)
    object: Optional[str] = Field(default=None, min_length=1)


class FactQuery(BaseModel):
    """Arguments of the ``get-facts`` tool."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(min_length=1, alias="userId")
    subject: Optional[str] = None
    predicate: Optional[str] = None
    limit: Optional[int] = Field(default=None, gt=0, le=1000)


class MemoryContext(BaseModel):
    """All facts known about one user."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_id: str = Field(alias="userId")
    facts: List[Fact] = Field(default_factory=list)
    total_count: int = Field(default=0, alias="totalCount")

    @classmethod
    def empty(cls, user_id: str) -> "MemoryContext":
        return cls(user_id=user_id, facts=[], total_count=0)


class FactsSummary(BaseModel):
    """Per-predicate fact counts for one user."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_id: str = Field(alias="userId")
    predicate_count: Dict[str, int] = Field(default_factory=dict, alias="predicateCount")
    total_facts: int = Field(default=0, alias="totalFacts")

    @classmethod
    def empty(cls, user_id: str) -> "FactsSummary":
        return cls(user_id=user_id, predicate_count={}, total_facts=0)
