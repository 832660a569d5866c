"""Shared types for API, Orchestrator and engine."""

from enum import Enum
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from shared.constants import (
    DEFAULT_REQUEST_TIMEOUT_MS,
    MIN_REQUEST_TIMEOUT_MS,
    MAX_REQUEST_TIMEOUT_MS,
    DEFAULT_RETRY_COUNT,
    MAX_RETRY_ATTEMPTS,
)


class InvocationState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


class RunKind(str, Enum):
    FLOW = "flow"
    SEQUENCE = "sequence"


class AssertionDataSource(str, Enum):
    RESPONSE = "response"
    TRANSFORMED_DATA = "transformed_data"


class AssertionType(str, Enum):
    STATUS_CODE = "status_code"
    RESPONSE_TIME = "response_time"
    HEADER = "header"
    JSON_BODY = "json_body"


class MappingSourceType(str, Enum):
    PROJECT_VARIABLE = "project_variable"
    PREVIOUS_OUTPUT = "previous_output"
    STATIC_VALUE = "static_value"
    ENVIRONMENT_VARIABLE = "environment_variable"
    FUNCTION = "function"


# Flow definitions

class HeaderValue(BaseModel):
    name: str
    value: Any = ""
    enabled: bool = True


class Transformation(BaseModel):
    alias: str
    expression: str = ""


class Assertion(BaseModel):
    id: str = ""
    data_source: AssertionDataSource = AssertionDataSource.RESPONSE
    assertion_type: AssertionType = AssertionType.JSON_BODY
    data_id: str = ""
    operator: str
    expected_value: Any = None
    expected_value_type: Optional[str] = None
    enabled: bool = True
    is_template_expression: bool = False


class StepEndpoint(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    endpoint_id: str
    api_id: Optional[str] = None
    path_params: Dict[str, Any] = Field(default_factory=dict)
    query_params: Dict[str, Any] = Field(default_factory=dict)
    headers: List[HeaderValue] = Field(default_factory=list)
    body: Any = None
    transformations: List[Transformation] = Field(default_factory=list)
    assertions: List[Assertion] = Field(default_factory=list)
    skip_default_status_check: bool = False


class FlowStep(BaseModel):
    step_id: str
    label: str = ""
    endpoints: List[StepEndpoint] = Field(default_factory=list)
    clear_cookies_before_execution: bool = False


class EndpointParameter(BaseModel):
    """Declared OpenAPI parameter of an endpoint"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    location: str = Field(default="query", alias="in")
    schema_def: Dict[str, Any] = Field(default_factory=dict, alias="schema")
    style: Optional[str] = None
    explode: Optional[bool] = None
    collection_format: Optional[str] = Field(default=None, alias="collectionFormat")

    @property
    def is_array(self) -> bool:
        return self.schema_def.get("type") == "array"


class EndpointDefinition(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    method: str = "GET"
    path: str = ""
    parameters: List[EndpointParameter] = Field(default_factory=list)

    def find_parameter(self, name: str, location: str = "query") -> Optional[EndpointParameter]:
        for param in self.parameters:
            if param.name == name and param.location == location:
                return param
        return None


class FlowParameter(BaseModel):
    name: str
    type: str = "string"
    required: bool = False
    default_value: Any = None
    description: str = ""


class FlowOutput(BaseModel):
    name: str
    value: Any = ""
    type: str = "string"
    is_template: bool = True


class ApiHost(BaseModel):
    url: str
    name: str = ""
    description: str = ""


class FlowEnvironmentBinding(BaseModel):
    """Links flow parameters to variables of the selected sub-environment"""
    environment_id: Optional[str] = None
    sub_environment: Optional[str] = None
    parameter_mappings: Dict[str, str] = Field(default_factory=dict)


class FlowSettings(BaseModel):
    api_hosts: Dict[str, ApiHost] = Field(default_factory=dict)
    environment: Optional[FlowEnvironmentBinding] = None


class FlowDefinition(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    name: str = ""
    steps: List[FlowStep] = Field(default_factory=list)
    parameters: List[FlowParameter] = Field(default_factory=list)
    outputs: List[FlowOutput] = Field(default_factory=list)
    endpoints: List[EndpointDefinition] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)

    def find_endpoint(self, endpoint_id: str) -> Optional[EndpointDefinition]:
        for endpoint in self.endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None


class ExecutionPreferences(BaseModel):
    parallel_execution: bool = False
    stop_on_error: bool = True
    server_cookie_handling: bool = False
    retry_count: int = Field(default=DEFAULT_RETRY_COUNT)
    timeout_ms: Optional[int] = Field(default=DEFAULT_REQUEST_TIMEOUT_MS)

    @field_validator('timeout_ms')
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> int:
        if v is None:
            return DEFAULT_REQUEST_TIMEOUT_MS
        if v < MIN_REQUEST_TIMEOUT_MS or v > MAX_REQUEST_TIMEOUT_MS:
            raise ValueError(
                f"timeout_ms must be between {MIN_REQUEST_TIMEOUT_MS} and {MAX_REQUEST_TIMEOUT_MS}"
            )
        return v

    @field_validator('retry_count')
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        if v < 0 or v > MAX_RETRY_ATTEMPTS:
            raise ValueError(f"retry_count must be between 0 and {MAX_RETRY_ATTEMPTS}")
        return v


# Environments and projects

class SubEnvironment(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    api_hosts: Dict[str, str] = Field(default_factory=dict)


class Environment(BaseModel):
    id: str = ""
    name: str = ""
    environments: Dict[str, SubEnvironment] = Field(default_factory=dict)

    def get_sub_environment(self, name: Optional[str]) -> Optional[SubEnvironment]:
        if not name:
            return None
        return self.environments.get(name)


class ProjectVariable(BaseModel):
    name: str
    default_value: Any = None
    type: str = "string"


class ProjectApiHost(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    api_id: str
    name: str = ""
    default_host: str = ""


class ProjectEnvironmentMapping(BaseModel):
    environment_id: str
    variable_mappings: Dict[str, str] = Field(default_factory=dict)


class ProjectConfig(BaseModel):
    variables: List[ProjectVariable] = Field(default_factory=list)
    api_hosts: List[ProjectApiHost] = Field(default_factory=list)
    environment_mappings: List[ProjectEnvironmentMapping] = Field(default_factory=list)

    def find_variable(self, name: str) -> Optional[ProjectVariable]:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None


# Sequences

class ParameterMapping(BaseModel):
    flow_parameter_name: str
    source_type: MappingSourceType
    source_value: Any = ""
    source_flow_step: Optional[int] = None
    source_output_field: Optional[str] = None
    data_type: Optional[str] = None


class SequenceStep(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = ""
    test_flow_id: str
    step_order: int
    parameter_mappings: List[ParameterMapping] = Field(default_factory=list)
    expects_error: bool = False


class SequenceDefinition(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    name: str = ""
    steps: List[SequenceStep] = Field(default_factory=list)


# Results

class AssertionResult(BaseModel):
    assertion_id: str = ""
    passed: bool
    actual_value: Any = None
    expected_value: Any = None
    original_expected_value: Any = None
    message: Optional[str] = None
    error: Optional[str] = None


class AssertionRunResult(BaseModel):
    passed: bool = True
    results: List[AssertionResult] = Field(default_factory=list)
    failure_message: Optional[str] = None


class PreparedRequest(BaseModel):
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None


class InvocationResult(BaseModel):
    invocation_id: str
    state: InvocationState = InvocationState.PENDING
    request: Optional[PreparedRequest] = None
    status_code: Optional[int] = None
    reason: str = ""
    response_headers: Dict[str, str] = Field(default_factory=dict)
    response_body: Any = None
    timing_ms: int = 0
    attempts: int = 0
    transformations: Dict[str, Any] = Field(default_factory=dict)
    assertions: Optional[AssertionRunResult] = None
    error: Optional[str] = None


class FlowRunResult(BaseModel):
    flow_id: str
    success: bool
    error: Optional[str] = None
    stopped: bool = False
    assertions_passed: bool = True
    missing_parameters: List[str] = Field(default_factory=list)
    parameter_values: Dict[str, Any] = Field(default_factory=dict)
    stored_responses: Dict[str, Any] = Field(default_factory=dict)
    stored_transformations: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    output_errors: Dict[str, str] = Field(default_factory=dict)
    invocations: Dict[str, InvocationResult] = Field(default_factory=dict)
    execution_time_ms: int = 0


class SequenceFlowResult(BaseModel):
    flow_id: str
    flow_name: str = ""
    step_order: int
    success: bool
    stopped: bool = False
    error: Optional[str] = None
    expected_error: Optional[str] = None
    assertions_passed: bool = True
    outputs: Dict[str, Any] = Field(default_factory=dict)
    responses: Dict[str, Any] = Field(default_factory=dict)
    parameter_values: Dict[str, Any] = Field(default_factory=dict)
    execution_time_ms: int = 0


class SequenceRunResult(BaseModel):
    sequence_id: str
    success: bool
    error: Optional[str] = None
    stopped: bool = False
    completed_flows: int = 0
    total_flows: int = 0
    flow_results: List[SequenceFlowResult] = Field(default_factory=list)
    sequence_outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


# Run tracking (API <-> orchestrator)

class RunStatusResponse(BaseModel):
    run_id: str
    kind: RunKind
    status: RunStatus
    error: Optional[str] = None
    progress: int = 0


class RunResultsResponse(BaseModel):
    run_id: str
    kind: RunKind
    status: RunStatus
    result: Optional[Dict[str, Any]] = None
