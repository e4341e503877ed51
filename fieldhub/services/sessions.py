"""
Job diagram sessions.

A JobDiagramSession is the live, in-memory editing context of one job's diagram. It owns
the graph, the set of serials being released, and per-job allocator and sync coordinator.
The SessionRegistry wires the shared pieces (ledger, history, toasts, diagram store, save
coordinator, conflict reconciler) and opens sessions on demand.
"""
import asyncio
from typing import Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy.orm import sessionmaker
from starlette.requests import Request

from ..config import settings
from ..schemas.diagram import DiagramGraph, DiagramState, EquipmentUsage, SavePriority
from ..schemas.equipment import AvailabilityReport, TargetKind
from ..schemas.jobs import JobResponse
from .allocator import EquipmentAllocator
from .availability import AvailabilityValidator
from .conflicts import ConflictReconciler
from .diagrams import DiagramStore, JobNotFoundError
from .history import HistoryStore
from .ledger import LedgerError, SqlLedger
from .notifications import ToastChannel
from .saving import SaveCoordinator
from .sync import SyncCoordinator
from .usage import analyze_usage

logger = structlog.get_logger(__name__)


class JobDiagramSession:
    def __init__(self, job: JobResponse, graph: DiagramGraph, registry: "SessionRegistry"):
        self.job_id = job.id
        self.job_name = job.name
        self.location_id = job.location_id
        self.graph = graph
        self.pending_deletions: Set[str] = set()
        self._registry = registry

        self.allocator = EquipmentAllocator(
            self,
            registry.ledger,
            registry.history,
            registry.notifier,
            reconciler=registry.reconciler,
            job_lookup=registry.job_name,
        )
        self.sync = SyncCoordinator(
            self,
            registry.ledger,
            self.allocator,
            registry.reconciler,
            registry.notifier,
            job_lookup=registry.job_name,
            interval=registry.sync_interval,
        )
        self.validator = AvailabilityValidator(registry.ledger, registry.notifier)

    @property
    def usage(self) -> EquipmentUsage:
        return analyze_usage(self.graph.nodes, self.graph.edges)

    async def analyze(self) -> EquipmentUsage:
        """Usage with cable names resolved from the ledger's equipment types."""
        try:
            equipment_types = await self._registry.ledger.fetch_types()
        except LedgerError:
            equipment_types = {}
        return analyze_usage(self.graph.nodes, self.graph.edges, equipment_types)

    async def validate(self, target_location_id: Optional[str] = None) -> AvailabilityReport:
        return await self.validator.validate(
            self.usage,
            target_location_id or self.location_id,
            job_id=self.job_id,
        )

    def state(self) -> DiagramState:
        return DiagramState(
            job_id=self.job_id,
            job_name=self.job_name,
            graph=self.graph,
            usage=self.usage,
            sync_status=self.sync.status.value,
            last_sync_time=self.sync.last_sync_time,
            pending_deletions=sorted(self.pending_deletions),
        )

    async def update_graph(
        self,
        graph: DiagramGraph,
        reason: str = "diagram edit",
        priority: SavePriority = SavePriority.medium,
    ) -> List[str]:
        """
        Replace the graph after a UI edit.

        Equipment bindings are owned by the allocator: bindings on surviving nodes/edges
        are carried over, bindings the incoming graph invents are dropped, and equipment
        bound to removed nodes/edges is released. Returns the serials released.
        """
        kept: Dict[Tuple[TargetKind, str], str] = {
            (b.kind, b.target_id): b.equipment_id for b in self.graph.bindings()
        }
        incoming = graph.snapshot()
        targets = [(TargetKind.node, n.id) for n in incoming.nodes] + [(TargetKind.edge, e.id) for e in incoming.edges]
        for kind, target_id in targets:
            serial = kept.get((kind, target_id))
            if serial:
                incoming.bind(kind, target_id, serial)
            elif incoming.binding(kind, target_id):
                incoming.unbind(kind, target_id)
        removed = [serial for (kind, target_id), serial in kept.items() if incoming.find(kind, target_id) is None]

        self.graph = incoming
        self.pending_deletions.update(removed)
        self.request_save(reason, priority)

        released = []
        for serial in removed:
            result = await self.allocator.release_serial(serial, "Released after removal from diagram")
            if result:
                self.pending_deletions.discard(serial)
                released.append(serial)
        if removed:
            logger.info("diagram_targets_removed", job_id=self.job_id, released=released, pending=sorted(self.pending_deletions))
        return released

    def request_save(self, reason: str, priority: SavePriority = SavePriority.medium) -> None:
        self._registry.saver.request_save(self.job_id, self.graph, reason, priority)

    def after_allocation(self, reason: str) -> None:
        self.request_save(reason, SavePriority.high)
        if self._registry.sync_after_mutation:
            self.sync.request_sync()

    def release_binding(self, equipment_id: str, reason: str) -> List[Tuple[TargetKind, str]]:
        cleared = self.graph.unbind_equipment(equipment_id)
        if cleared:
            self.request_save(reason, SavePriority.high)
        return cleared

    async def close(self) -> None:
        await self.sync.stop()


class SessionRegistry:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Optional[ToastChannel] = None,
        sync_interval: Optional[float] = None,
        sync_after_mutation: Optional[bool] = None,
        save_batch_delay: Optional[float] = None,
        save_min_interval: Optional[float] = None,
        history_secret: Optional[str] = None,
    ):
        self.ledger = SqlLedger(session_factory)
        self.history = HistoryStore(session_factory, integrity_secret=history_secret)
        self.notifier = notifier or ToastChannel()
        self.store = DiagramStore(session_factory)
        self.saver = SaveCoordinator(self.store.save_graph, batch_delay=save_batch_delay, min_interval=save_min_interval)
        self.reconciler = ConflictReconciler(self, self.notifier)
        self.sync_interval = settings.sync_interval_s if sync_interval is None else sync_interval
        self.sync_after_mutation = settings.sync_after_mutation if sync_after_mutation is None else sync_after_mutation

        self._sessions: Dict[str, JobDiagramSession] = {}
        self._open_lock = asyncio.Lock()

    def get(self, job_id: str) -> Optional[JobDiagramSession]:
        return self._sessions.get(job_id)

    @property
    def sessions(self) -> List[JobDiagramSession]:
        return list(self._sessions.values())

    async def open(self, job_id: str) -> JobDiagramSession:
        async with self._open_lock:
            session = self._sessions.get(job_id)
            if session is not None:
                return session
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            graph = self.saver.pending_graph(job_id) or await self.store.load_graph(job_id) or DiagramGraph()
            session = JobDiagramSession(job, graph, self)
            self._sessions[job_id] = session
            session.sync.start()
            logger.info("diagram_session_opened", job_id=job_id, nodes=len(graph.nodes), edges=len(graph.edges))
            return session

    async def get_or_open(self, job_id: str) -> JobDiagramSession:
        return self._sessions.get(job_id) or await self.open(job_id)

    async def job_name(self, job_id: str) -> str:
        session = self._sessions.get(job_id)
        if session is not None:
            return session.job_name
        job = await self.store.get_job(job_id)
        return job.name if job else job_id

    async def release_binding(self, job_id: str, equipment_id: str, reason: str) -> List[Tuple[TargetKind, str]]:
        """Clear a serial from a job's diagram, whether or not that job is open."""
        session = self._sessions.get(job_id)
        if session is not None:
            return session.release_binding(equipment_id, reason)
        try:
            graph = self.saver.pending_graph(job_id) or await self.store.load_graph(job_id)
        except LedgerError as e:
            logger.error("release_binding_failed", job_id=job_id, equipment_id=equipment_id, error=str(e))
            return []
        if graph is None:
            return []
        cleared = graph.unbind_equipment(equipment_id)
        if cleared:
            self.saver.request_save(job_id, graph, reason, SavePriority.high)
        return cleared

    async def close(self, job_id: str) -> None:
        session = self._sessions.pop(job_id, None)
        if session is not None:
            await session.close()
            await self.saver.flush(job_id)

    async def close_all(self) -> None:
        for job_id in list(self._sessions):
            await self.close(job_id)
        await self.saver.flush()
        await self.saver.close()
        await self.history.drain()


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry
