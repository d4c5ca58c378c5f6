"""Request dependencies for the pipeline routes."""

from typing import Annotated

from fastapi import Depends, Request, WebSocket

from src.bootstrap import Pipeline
from src.services.pipeline_service import PipelineService
from src.services.progress_hub import ProgressHub


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_pipeline_service(request: Request) -> PipelineService:
    return request.app.state.pipeline.service


def get_progress_hub(websocket: WebSocket) -> ProgressHub:
    return websocket.app.state.pipeline.hub


PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]
PipelineServiceDep = Annotated[PipelineService, Depends(get_pipeline_service)]
ProgressHubDep = Annotated[ProgressHub, Depends(get_progress_hub)]
