"""
Request and response models for the HTTP facade.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryTurn(BaseModel):
    role: str
    content: str

    @field_validator('role')
    @classmethod
    def role_must_be_valid(cls, v):
        valid_roles = ['user', 'assistant', 'system']
        if v not in valid_roles:
            raise ValueError(f'role must be one of: {valid_roles}')
        return v


class ActionRequest(CamelModel):
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)
    approval_id: Optional[str] = None


class CommandRequest(CamelModel):
    command: Optional[str] = None
    prompt: Optional[str] = None
    history: List[HistoryTurn] = Field(default_factory=list)
    approval_id: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    actions: Optional[List[ActionRequest]] = None
    task_id: Optional[str] = None
    reason: Optional[str] = None
    agent_name: Optional[str] = None


class ApprovalCreateRequest(CamelModel):
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)
    reason: str
    requester: Optional[str] = None

    @field_validator('reason')
    @classmethod
    def reason_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reason cannot be empty')
        return v


class ApprovalResponse(CamelModel):
    id: str
    action_name: str
    params: Dict[str, Any]
    reason: str
    requester: str
    state: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None


class ApprovalListResponse(BaseModel):
    pending: List[ApprovalResponse]
    count: int


class BulkScheduleRequest(CamelModel):
    post_ids: List[int]
    start_date: datetime
    interval: str = "1d"
    reason: Optional[str] = None

    @field_validator('post_ids')
    @classmethod
    def post_ids_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('postIds must contain at least one id')
        return v


class LogStatsResponse(CamelModel):
    total: int
    pending: int
    success: int
    failed: int
    success_rate: str


class HealthResponse(CamelModel):
    status: str
    version: str
    db_health: bool
    actions: int
