"""Pydantic models for queued operations"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.operation_queue import OperationStatus


class OperationModel(BaseModel):
    """A queued operation as stored"""
    id: str
    operation_type: str
    status: OperationStatus
    path: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None
    pid: Optional[int] = None
    result: Optional[Dict[str, Any]] = None


class ProcessModel(BaseModel):
    """A live par2 process"""
    pid: int
    operation_id: Optional[str] = None
    command_line: str
    cpu: float = 0.0
    memory: float = 0.0
    progress: Optional[float] = None


class ActiveOperationModel(BaseModel):
    """Entry in the active operations list; id is None for an unmatched process"""
    id: Optional[str] = None
    operation_type: Optional[str] = None
    status: str
    path: Optional[str] = None
    pid: Optional[int] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    progress: Optional[float] = None
    process: Optional[ProcessModel] = None


class RecentActivityModel(BaseModel):
    """A finished operation"""
    id: str
    operation_type: str
    status: OperationStatus
    path: Optional[str] = None
    completed_at: Optional[str] = None
    result_status: Optional[str] = None
    error: Optional[str] = None


class OperationResponseModel(BaseModel):
    success: bool
    operation: Optional[OperationModel] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
