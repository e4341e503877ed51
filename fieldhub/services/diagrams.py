"""
Diagram persistence.
Each job has at most one stored graph; every write replaces it and bumps its version.
"""
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from ..models.models import Job, JobDiagram
from ..schemas.diagram import DiagramGraph
from ..schemas.jobs import JobResponse
from .ledger import LedgerError

logger = structlog.get_logger(__name__)


class JobNotFoundError(LedgerError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DiagramStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def save_graph(self, job_id: str, graph: DiagramGraph) -> None:
        await self._run(self._save_graph, job_id, graph)

    async def load_graph(self, job_id: str) -> Optional[DiagramGraph]:
        return await self._run(self._load_graph, job_id)

    async def get_job(self, job_id: str) -> Optional[JobResponse]:
        return await self._run(self._get_job, job_id)

    async def _run(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            logger.error("diagram_io_failed", operation=fn.__name__, error=str(e))
            raise LedgerError(str(e)) from e

    def _save_graph(self, job_id: str, graph: DiagramGraph) -> None:
        with self._session_factory() as db:
            row = db.query(JobDiagram).filter(JobDiagram.job_id == job_id).first()
            if row is None:
                row = JobDiagram(job_id=job_id, version=0)
                db.add(row)
            row.graph = graph.model_dump(mode="json")
            row.version = (row.version or 0) + 1
            row.updated_at = datetime.now(timezone.utc)
            db.commit()

    def _load_graph(self, job_id: str) -> Optional[DiagramGraph]:
        with self._session_factory() as db:
            row = db.query(JobDiagram).filter(JobDiagram.job_id == job_id).first()
            if row is None:
                return None
            return DiagramGraph.model_validate(row.graph)

    def _get_job(self, job_id: str) -> Optional[JobResponse]:
        with self._session_factory() as db:
            row = db.query(Job).filter(Job.id == job_id).first()
            return JobResponse.model_validate(row) if row else None
