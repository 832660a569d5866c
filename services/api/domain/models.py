"""API request/response models."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from shared.constants import PROXY_REQUEST_TIMEOUT_SECONDS
from shared.types import (
    Environment,
    ExecutionPreferences,
    FlowDefinition,
    ProjectConfig,
    RunKind,
    RunStatus,
    SequenceDefinition,
)


class RunFlowRequest(BaseModel):
    """Request body for running a single flow"""
    flow: FlowDefinition
    parameters: Dict[str, Any] = Field(default_factory=dict)
    preferences: ExecutionPreferences = Field(default_factory=ExecutionPreferences)
    environment: Optional[Environment] = None
    sub_environment: Optional[str] = None


class RunSequenceRequest(BaseModel):
    """Request body for running a sequence; flows carries every flow the steps reference"""
    sequence: SequenceDefinition
    flows: List[FlowDefinition]
    preferences: ExecutionPreferences = Field(default_factory=ExecutionPreferences)
    project: Optional[ProjectConfig] = None
    environment: Optional[Environment] = None
    sub_environment: Optional[str] = None


class RunCreatedResponse(BaseModel):
    run_id: str
    kind: RunKind
    status: RunStatus


class StopRunResponse(BaseModel):
    run_id: str
    status: str
    message: str


class RunLogEntry(BaseModel):
    timestamp: int
    level: str
    message: str
    details: Optional[str] = None


class RunLogsResponse(BaseModel):
    run_id: str
    logs: List[RunLogEntry]


class ProxyCookie(BaseModel):
    name: str
    value: str = ""
    domain: Optional[str] = None
    path: Optional[str] = "/"
    expires: Optional[int] = None
    secure: bool = False
    http_only: bool = False


class ProxyRequest(BaseModel):
    """Request the relay performs on behalf of the engine"""
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    cookies: List[ProxyCookie] = Field(default_factory=list)
    timeout_seconds: float = Field(default=PROXY_REQUEST_TIMEOUT_SECONDS, gt=0)


class ProxyResponse(BaseModel):
    status: int
    status_text: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    cookies: List[ProxyCookie] = Field(default_factory=list)
