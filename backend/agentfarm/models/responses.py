"""Pydantic response models for the dashboard API."""

from typing import Optional

from pydantic import BaseModel

from .state import BuilderStatus, PortAllocation, ProjectPorts, ProjectState


class ErrorDetail(BaseModel):
    """Standard error response body."""
    detail: str
    error: Optional[str] = None


class HealthOut(BaseModel):
    app: str
    version: str
    status: str
    project_root: str
    base_port: int
    db: str


class StateOut(BaseModel):
    project_root: str
    ports: ProjectPorts
    state: ProjectState
    # pid liveness, keyed "architect", "builder:<id>", "util:<id>"
    alive: dict[str, bool]


class PortsOut(BaseModel):
    allocations: list[PortAllocation]


class StatusUpdate(BaseModel):
    status: BuilderStatus


class CompletedOut(BaseModel):
    id: str
    released: bool
