"""Pydantic models for protection requests and responses"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from models.operations import ActiveOperationModel, OperationModel, RecentActivityModel


class ProtectRequestModel(BaseModel):
    """Request to protect a file or directory"""
    path: str
    redundancy: Optional[int] = Field(default=None, ge=1, le=100)
    force: bool = False
    file_types: Optional[List[str]] = None


class VerifyRequestModel(BaseModel):
    """Request to verify one path, several paths, or every protected item"""
    target: Union[str, List[str]]
    force: bool = False
    wait: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)


class RemoveRequestModel(BaseModel):
    """Request to remove protection from paths"""
    paths: List[str] = Field(min_length=1)


class ErrorModel(BaseModel):
    """A failed target or request"""
    path: Optional[str] = None
    error: str
    kind: str
    context: Dict[str, Any] = Field(default_factory=dict)


class ProtectedItemModel(BaseModel):
    """Catalog entry as returned by list"""
    path: str
    mode: str
    redundancy: int
    size: int = 0
    par2_size: int = 0
    parity_location: str
    last_status: str
    last_details: Optional[str] = None
    protected_date: str
    last_verified: Optional[str] = None
    file_types: Optional[List[str]] = None


class ProtectResponseModel(BaseModel):
    success: bool
    operation_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class VerifyStatsModel(BaseModel):
    total_files: int = 0
    verified_files: int = 0
    failed_files: int = 0
    errors: List[ErrorModel] = []


class VerifyResponseModel(BaseModel):
    success: bool
    stats: VerifyStatsModel = Field(default_factory=VerifyStatsModel)
    tasks: List[OperationModel] = []
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class RemoveResponseModel(BaseModel):
    success: bool
    message: str = ""
    removed: List[str] = []
    errors: List[ErrorModel] = []
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class StatsModel(BaseModel):
    """Catalog aggregates plus overall health"""
    total_files: int = 0
    total_size: int = 0
    total_par2_size: int = 0
    total_size_display: str = ""
    total_par2_size_display: str = ""
    last_verification: Optional[str] = None
    counts_by_status: Dict[str, int] = Field(default_factory=dict)
    health: str = "unknown"


class StatusDataModel(BaseModel):
    stats: StatsModel
    active_operations: List[ActiveOperationModel] = []
    recent_activity: List[RecentActivityModel] = []
    system_resources: Dict[str, Any] = Field(default_factory=dict)


class StatusResponseModel(BaseModel):
    success: bool
    data: Optional[StatusDataModel] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class CancelResponseModel(BaseModel):
    success: bool
    killed_processes: int = 0
    status: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ListResponseModel(BaseModel):
    success: bool
    items: List[ProtectedItemModel] = []
    error: Optional[str] = None
    kind: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
