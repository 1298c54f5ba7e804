"""
Shared fixtures for API route tests.

The global pipeline service is replaced with one backed by an in-memory
database and mock agents, so no test touches disk or the network.
"""
import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.services.pipeline_service import PipelineService, set_pipeline_service
from core.chapter_pipeline import MockAgentExecutor, PipelineConfig, TaskRepository
from core.database import create_db_engine


@pytest.fixture
def pipeline_service():
    service = PipelineService(
        repository=TaskRepository(create_db_engine("sqlite://")),
        agent_executor=MockAgentExecutor(),
        config=PipelineConfig(heartbeat_interval=60.0),
    )
    set_pipeline_service(service)
    yield service
    set_pipeline_service(None)


@pytest.fixture
def client(pipeline_service):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def project(pipeline_service):
    return pipeline_service.repository.create_project("The Harbor Letters", genre="mystery")


@pytest.fixture
def chapter(pipeline_service, project):
    return pipeline_service.repository.create_chapter(project.id, 1, title="Rain")
